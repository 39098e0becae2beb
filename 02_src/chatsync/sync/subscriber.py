"""ChangeFeedSubscriber implementation."""

from dataclasses import dataclass, field
from typing import Awaitable, Callable

from ..feed import Channel, IChangeFeed
from ..logging_config import get_logger
from ..models import (
    Attachment,
    ChangeEvent,
    FeedEvent,
    Message,
    Resynchronized,
    Resynchronizing,
)
from ..storage import IStorage

logger = get_logger(__name__)


EventHandler = Callable[[FeedEvent], Awaitable[None]]


async def load_snapshot(
    storage: IStorage, conversation_id: str, limit: int = 100
) -> tuple[list[Message], list[Attachment]]:
    """Bulk-load query: message history plus the conversation's unlinked attachments."""
    messages = await storage.get_messages(conversation_id, limit=limit)
    unlinked = await storage.get_attachments(conversation_id, unlinked_only=True)
    return messages, unlinked


@dataclass(eq=False)
class SubscriptionHandle:
    """Cancellable handle of one open conversation subscription."""

    conversation_id: str
    _subscriber: "ChangeFeedSubscriber" = field(repr=False)
    _channel: Channel = field(repr=False)

    @property
    def closed(self) -> bool:
        return not self._channel.active

    def close(self) -> None:
        self._subscriber.close(self)


class ChangeFeedSubscriber:
    """Keeps exactly one feed subscription for the open conversation."""

    def __init__(self, feed: IChangeFeed, storage: IStorage, message_limit: int = 100):
        self._feed = feed
        self._storage = storage
        self._message_limit = message_limit
        self._active: SubscriptionHandle | None = None

    @property
    def active(self) -> SubscriptionHandle | None:
        return self._active

    def open(self, conversation_id: str, on_event: EventHandler) -> SubscriptionHandle:
        """Subscribe to a conversation, closing any previous subscription first."""
        if self._active is not None:
            self.close(self._active)

        async def deliver(event: ChangeEvent) -> None:
            if handle.closed:
                return
            await on_event(event)

        async def resync() -> None:
            if handle.closed:
                return
            logger.info(
                "Feed reconnected, resynchronizing",
                extra={"conversation_id": conversation_id},
            )
            await on_event(Resynchronizing(conversation_id=conversation_id))
            messages, attachments = await load_snapshot(
                self._storage, conversation_id, self._message_limit
            )
            if handle.closed:
                return
            await on_event(
                Resynchronized(
                    conversation_id=conversation_id,
                    messages=messages,
                    attachments=attachments,
                )
            )

        channel = self._feed.subscribe(conversation_id, deliver, on_reconnect=resync)
        handle = SubscriptionHandle(
            conversation_id=conversation_id, _subscriber=self, _channel=channel
        )
        self._active = handle
        logger.debug(f"Subscribed to conversation {conversation_id}")
        return handle

    def close(self, handle: SubscriptionHandle) -> None:
        """Close a subscription. Idempotent."""
        if not handle.closed:
            self._feed.unsubscribe(handle._channel)
            logger.debug(f"Unsubscribed from conversation {handle.conversation_id}")
        if self._active is handle:
            self._active = None
