"""Instance lifecycle: transition rules and the lifecycle manager."""

from messaging_channels.lifecycle.manager import (
    CodeStatus,
    ConnectionRequest,
    InstanceLifecycleManager,
    InstanceSummary,
    TransitionOutcome,
)
from messaging_channels.lifecycle.transitions import can_reconcile, can_transition

__all__ = [
    "CodeStatus",
    "ConnectionRequest",
    "InstanceLifecycleManager",
    "InstanceSummary",
    "TransitionOutcome",
    "can_reconcile",
    "can_transition",
]
