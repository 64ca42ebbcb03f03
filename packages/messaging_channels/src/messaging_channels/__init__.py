"""
Messaging Channels Engine

Multi-tenant channel instances on top of third-party chat gateways:
connection lifecycle, code-connection polling, webhook processing and
recovery tooling.
"""

__version__ = "0.1.0"
