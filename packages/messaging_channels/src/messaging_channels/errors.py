"""
Channel Engine Errors

Domain errors raised by the registry, lifecycle, connection flow,
webhook processing and recovery tooling.
"""

from typing import Any


class ChannelError(Exception):
    """Base error for the channels engine."""

    code = "channel_error"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}


class UnsupportedChannelType(ChannelError):
    """No implementation registered for the requested channel type."""

    code = "unsupported_channel_type"

    def __init__(self, channel_type: str):
        super().__init__(
            f"Unsupported channel type: {channel_type}",
            details={"channel_type": channel_type},
        )
        self.channel_type = channel_type


class MissingRequiredData(ChannelError):
    """Webhook payload is structurally invalid."""

    code = "missing_required_data"


class ConnectionStalled(ChannelError):
    """Circuit breaker stayed open for more than one full cycle."""

    code = "connection_stalled"

    def __init__(self, instance_id: Any, message: str | None = None):
        super().__init__(
            message or "Connection stalled: upstream unavailable",
            details={"instance_id": str(instance_id)},
        )
        self.instance_id = instance_id


class ConflictActiveConversations(ChannelError):
    """Deletion blocked because the instance still has active conversations."""

    code = "conflict_active_conversations"

    def __init__(self, instance_id: Any, active_conversations: int):
        super().__init__(
            f"Instance has {active_conversations} active conversation(s); "
            "resolve or archive them before deleting",
            details={
                "instance_id": str(instance_id),
                "active_conversations": active_conversations,
            },
        )
        self.instance_id = instance_id
        self.active_conversations = active_conversations


class InstanceNotFound(ChannelError):
    """Instance does not exist (or is not visible to the tenant)."""

    code = "instance_not_found"

    def __init__(self, instance_id: Any):
        super().__init__(
            f"Channel instance not found: {instance_id}",
            details={"instance_id": str(instance_id)},
        )
        self.instance_id = instance_id


class ConversationNotFound(ChannelError):
    """Conversation does not exist (or is not visible to the tenant)."""

    code = "conversation_not_found"

    def __init__(self, conversation_id: Any):
        super().__init__(
            f"Conversation not found: {conversation_id}",
            details={"conversation_id": str(conversation_id)},
        )


class InvalidStatusTransition(ChannelError):
    """Requested status change is not allowed from the current status."""

    code = "invalid_status_transition"

    def __init__(self, current: str, target: str, operation: str | None = None):
        message = f"Cannot move instance from {current} to {target}"
        if operation:
            message = f"{operation}: {message}"
        super().__init__(
            message,
            details={"current": current, "target": target, "operation": operation},
        )
        self.current = current
        self.target = target


class InstanceValidationError(ChannelError):
    """Instance fields or config failed validation."""

    code = "instance_validation_error"
