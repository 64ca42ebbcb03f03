"""Code-connection polling: circuit breaker, poll tick and supervisor."""

from messaging_channels.connection.circuit_breaker import (
    BreakerState,
    CircuitBreaker,
    CooldownPolicy,
)
from messaging_channels.connection.flow import (
    CodeConnectionFlow,
    ConnectionAttempt,
    PollOutcome,
    PollResult,
)
from messaging_channels.connection.supervisor import ConnectionSupervisor

__all__ = [
    "BreakerState",
    "CircuitBreaker",
    "CodeConnectionFlow",
    "ConnectionAttempt",
    "ConnectionSupervisor",
    "CooldownPolicy",
    "PollOutcome",
    "PollResult",
]
