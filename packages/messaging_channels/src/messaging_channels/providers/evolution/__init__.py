"""
Evolution API provider for WhatsApp instances.
"""

from messaging_channels.providers.evolution.client import EvolutionApiClient
from messaging_channels.providers.evolution.connection import EvolutionConnectionService

__all__ = ["EvolutionApiClient", "EvolutionConnectionService"]
