"""Redis Streams publishing for the channels engine."""

from messaging_channels.streams.producer import ChannelEventPublisher

__all__ = ["ChannelEventPublisher"]
