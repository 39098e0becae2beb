"""In-process change feed keyed by conversation.

Models the hosted realtime service: row-level insert/update events are
published per conversation and fanned out to every open channel. While
the transport is disconnected, published events are dropped and never
replayed; channels are told about the reconnect instead.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Protocol

from ..logging_config import get_logger
from ..models import ChangeEvent

logger = get_logger(__name__)


ChannelHandler = Callable[[ChangeEvent], Awaitable[None]]
ReconnectHandler = Callable[[], Awaitable[None]]
TapHandler = Callable[[str, ChangeEvent], Awaitable[None]]


@dataclass(eq=False)
class Channel:
    """One subscription to one conversation's changes."""

    conversation_id: str
    handler: ChannelHandler
    on_reconnect: ReconnectHandler | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    active: bool = True


class IChangeFeed(Protocol):
    """Publish/subscribe channel of row changes, keyed by conversation."""

    def subscribe(
        self,
        conversation_id: str,
        handler: ChannelHandler,
        on_reconnect: ReconnectHandler | None = None,
    ) -> Channel:
        """Open a channel for a conversation."""
        ...

    def unsubscribe(self, channel: Channel) -> None:
        """Remove a channel. Idempotent."""
        ...

    async def publish(self, conversation_id: str, event: ChangeEvent) -> None:
        """Deliver an event to every channel of the conversation."""
        ...


class ChangeFeed:
    """In-memory change feed."""

    def __init__(self):
        self._channels: dict[str, list[Channel]] = {}
        self._taps: list[TapHandler] = []
        self._connected = True

    @property
    def connected(self) -> bool:
        return self._connected

    def subscribe(
        self,
        conversation_id: str,
        handler: ChannelHandler,
        on_reconnect: ReconnectHandler | None = None,
    ) -> Channel:
        """Open a channel for a conversation."""
        channel = Channel(
            conversation_id=conversation_id,
            handler=handler,
            on_reconnect=on_reconnect,
        )
        self._channels.setdefault(conversation_id, []).append(channel)
        logger.debug(f"Channel {channel.id} subscribed to {conversation_id}")
        return channel

    def unsubscribe(self, channel: Channel) -> None:
        """Remove a channel. Idempotent."""
        channel.active = False
        channels = self._channels.get(channel.conversation_id, [])
        if channel in channels:
            channels.remove(channel)
        if not channels:
            self._channels.pop(channel.conversation_id, None)

    def channel_count(self, conversation_id: str | None = None) -> int:
        if conversation_id is not None:
            return len(self._channels.get(conversation_id, []))
        return sum(len(channels) for channels in self._channels.values())

    def tap(self, handler: TapHandler) -> None:
        """Observe every published event, regardless of conversation."""
        self._taps.append(handler)

    async def publish(self, conversation_id: str, event: ChangeEvent) -> None:
        """Deliver an event to every channel of the conversation."""
        if not self._connected:
            logger.debug(
                f"Feed disconnected, dropping {type(event).__name__} for {conversation_id}"
            )
            return

        channels = list(self._channels.get(conversation_id, []))
        calls = [channel.handler(event) for channel in channels if channel.active]
        calls.extend(tap(conversation_id, event) for tap in self._taps)

        if calls:
            results = await asyncio.gather(*calls, return_exceptions=True)
            for i, result in enumerate(results):
                if isinstance(result, Exception):
                    logger.error("Error in feed handler %s: %s", i, result)

    async def disconnect(self) -> None:
        """Simulate a transport drop."""
        if self._connected:
            self._connected = False
            logger.info("Change feed disconnected")

    async def reconnect(self) -> None:
        """Restore the transport and let every channel resynchronize."""
        if self._connected:
            return
        self._connected = True
        logger.info("Change feed reconnected")

        callbacks = [
            channel.on_reconnect()
            for channels in self._channels.values()
            for channel in channels
            if channel.active and channel.on_reconnect is not None
        ]
        if callbacks:
            results = await asyncio.gather(*callbacks, return_exceptions=True)
            for i, result in enumerate(results):
                if isinstance(result, Exception):
                    logger.error("Error in reconnect handler %s: %s", i, result)
