"""Change feed module."""

from .change_feed import Channel, ChangeFeed, ChannelHandler, IChangeFeed

__all__ = ["Channel", "ChangeFeed", "ChannelHandler", "IChangeFeed"]
