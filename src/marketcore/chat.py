"""
Live conversations over order chats and direct messages.

A conversation subscribes to the change feed for its topic, loads the stored
history, and from then on merges feed events with messages sent locally.
Every locally composed message carries a client-generated correlation id:
the optimistic echo is shown at once and is replaced in place by the stored
record when either the write acknowledgement or the feed insert arrives, so
each message appears exactly once in either kind of conversation.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Union
from uuid import UUID, uuid4
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError

from marketcore import crud
from marketcore.crud import StoreError, NotAParticipant, OrderNotFound
from marketcore.db import AsyncSessionLocal
from marketcore.messaging import ChangeFeed, Subscription, SubscriptionError
from marketcore.models import User, utcnow
from marketcore.schemas import ChangeEvent, ChatMessage

logger = logging.getLogger("market.chat")

CLOSED = "closed"
OPEN   = "open"

class EmptyMessage(ValueError):
    pass

class OrderKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: UUID

    @property
    def topic(self) -> str:
        return crud.order_topic(self.order_id)

class DirectKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_a: UUID
    user_b: UUID

    @classmethod
    def between(cls, first: UUID, second: UUID) -> "DirectKey":
        low, high = sorted((first, second), key=str)
        return cls(user_a=low, user_b=high)

    @property
    def topic(self) -> str:
        return crud.direct_topic(self.user_a, self.user_b)

    def __contains__(self, user_id: UUID) -> bool:
        return user_id in (self.user_a, self.user_b)

    def other(self, user_id: UUID) -> UUID:
        return self.user_b if user_id == self.user_a else self.user_a

ConversationKey = Union[OrderKey, DirectKey]


class Conversation:
    def __init__(self, engine: "MessagingEngine", key: ConversationKey, viewer_id: UUID):
        self.id = uuid4()
        self.key = key
        self.viewer_id = viewer_id
        self.messages: List[ChatMessage] = []
        self.state = CLOSED
        self.error: SubscriptionError | None = None
        self._engine = engine
        self._subscription: Subscription | None = None
        self._buffer: List[ChangeEvent] | None = None
        self._listeners: List[Callable[["Conversation"], None]] = []

    @property
    def is_open(self) -> bool:
        return self.state == OPEN

    def add_listener(self, listener: Callable[["Conversation"], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[["Conversation"], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    async def _handle_event(self, event: ChangeEvent) -> None:
        if not self.is_open:
            return
        if self._buffer is not None:
            self._buffer.append(event)
            return
        self._apply(event)

    def _apply(self, event: ChangeEvent) -> None:
        if event.kind == "insert":
            self.on_remote_insert(ChatMessage(**event.row))
        elif event.kind == "delete" and "order_id" in event.row:
            self.on_remote_delete(UUID(str(event.row["order_id"])))

    def _on_feed_error(self, exc: SubscriptionError) -> None:
        logger.error("[Chat] Conversation %s lost its feed: %s", self.key.topic, exc)
        self.error = exc

    def on_remote_insert(self, message: ChatMessage) -> bool:
        """Merges a stored message into the log; returns False for duplicates."""
        if not self.is_open:
            return False
        if message.id is not None and any(m.id == message.id for m in self.messages):
            return False
        if message.client_id is not None:
            for i, m in enumerate(self.messages):
                if m.pending and m.client_id == message.client_id:
                    self.messages[i] = message
                    self._notify()
                    return True
        self.messages.append(message)
        self._notify()
        return True

    def on_remote_delete(self, order_id: UUID) -> None:
        if not self.is_open or not isinstance(self.key, OrderKey):
            return
        kept = [m for m in self.messages if m.order_id != order_id]
        if len(kept) != len(self.messages):
            self.messages = kept
            self._notify()

    def _echo(self, message: ChatMessage) -> None:
        if self.is_open:
            self.messages.append(message)
            self._notify()

    def _drop_echo(self, client_id: UUID) -> None:
        kept = [m for m in self.messages if not (m.pending and m.client_id == client_id)]
        if len(kept) != len(self.messages):
            self.messages = kept
            self._notify()

    async def send(self, content: str) -> ChatMessage:
        if self.error is not None:
            raise self.error
        return await self._engine.send(self.key, self.viewer_id, content)

    async def close(self) -> None:
        await self._engine.close(self)

    async def __aenter__(self) -> "Conversation":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class MessagingEngine:
    def __init__(self, feed: ChangeFeed, session_factory=AsyncSessionLocal):
        self.feed = feed
        self._sessions = session_factory
        self._active: dict[UUID, Conversation] = {}

    def active_conversations(self) -> List[Conversation]:
        return list(self._active.values())

    def _handles(self, key: ConversationKey, viewer_id: UUID | None = None) -> List[Conversation]:
        return [
            c for c in self._active.values()
            if c.key == key and (viewer_id is None or c.viewer_id == viewer_id)
        ]

    async def _authorize(self, key: ConversationKey, viewer_id: UUID) -> None:
        if isinstance(key, DirectKey):
            if viewer_id not in key:
                raise NotAParticipant()
            return
        async with self._sessions() as session:
            order = await crud.get_order(key.order_id, session)
        if order is None:
            raise OrderNotFound()
        if viewer_id not in (order.buyer_id, order.seller_id):
            raise NotAParticipant()

    async def _load_snapshot(self, key: ConversationKey) -> List[ChatMessage]:
        async with self._sessions() as session:
            if isinstance(key, OrderKey):
                rows = await crud.get_order_messages(key.order_id, session)
            else:
                rows = await crud.get_direct_messages(key.user_a, key.user_b, session)
        return [ChatMessage.model_validate(r) for r in rows]

    async def open(self, key: ConversationKey, viewer_id: UUID) -> Conversation:
        """
        Subscribes first and loads history second; events arriving while the
        history loads are buffered and replayed on top of it, deduplicated by id.
        """
        try:
            await self._authorize(key, viewer_id)
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

        conv = Conversation(self, key, viewer_id)
        conv._buffer = []
        conv.state = OPEN
        self._active[conv.id] = conv
        try:
            sub = await self.feed.subscribe(key.topic, conv._handle_event, conv._on_feed_error)
            if not conv.is_open:
                await sub.cancel()
                return conv
            conv._subscription = sub
            snapshot = await self._load_snapshot(key)
        except SQLAlchemyError as e:
            await self.close(conv)
            raise StoreError(str(e)) from e
        except BaseException:
            await self.close(conv)
            raise

        if not conv.is_open:
            logger.info("[Chat] %s closed while loading, snapshot discarded", key.topic)
            return conv

        conv.messages = snapshot
        buffered, conv._buffer = conv._buffer, None
        for event in buffered:
            conv._apply(event)
        logger.info("[Chat] Opened %s for %s with %d messages", key.topic, viewer_id, len(conv.messages))
        conv._notify()
        return conv

    @asynccontextmanager
    async def conversation(self, key: ConversationKey, viewer_id: UUID) -> AsyncIterator[Conversation]:
        conv = await self.open(key, viewer_id)
        try:
            yield conv
        finally:
            await self.close(conv)

    async def close(self, conv: Conversation) -> None:
        if conv.state == CLOSED and conv._subscription is None:
            return
        conv.state = CLOSED
        conv._buffer = None
        self._active.pop(conv.id, None)
        sub, conv._subscription = conv._subscription, None
        if sub is not None:
            await sub.cancel()
        logger.info("[Chat] Closed %s for %s", conv.key.topic, conv.viewer_id)

    async def send(self, key: ConversationKey, sender_id: UUID, content: str) -> ChatMessage:
        if not content or not content.strip():
            raise EmptyMessage("message is empty")
        if isinstance(key, DirectKey) and sender_id not in key:
            raise NotAParticipant()

        client_id = uuid4()
        echo = ChatMessage(
            client_id=client_id,
            sender_id=sender_id,
            content=content,
            created_at=utcnow(),
            order_id=key.order_id if isinstance(key, OrderKey) else None,
            receiver_id=key.other(sender_id) if isinstance(key, DirectKey) else None,
            pending=True,
        )
        handles = self._handles(key, sender_id)
        for conv in handles:
            conv._echo(echo)

        try:
            async with self._sessions() as session:
                if isinstance(key, OrderKey):
                    row = await crud.add_order_message(key.order_id, sender_id, content, client_id, session)
                else:
                    row = await crud.add_direct_message(sender_id, key.other(sender_id), content, client_id, session)
        except SQLAlchemyError as e:
            logger.error("[Chat] Write to %s failed: %s", key.topic, e)
            for conv in handles:
                conv._drop_echo(client_id)
            raise StoreError(str(e)) from e
        except Exception:
            for conv in handles:
                conv._drop_echo(client_id)
            raise

        stored = ChatMessage.model_validate(row)
        for conv in handles:
            conv.on_remote_insert(stored)
        return stored

    async def contacts(self, user_id: UUID) -> List[User]:
        try:
            async with self._sessions() as session:
                return await crud.get_contacts(user_id, session)
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    async def purge(self, order_id: UUID) -> int:
        """Deletes an order's whole chat and clears it from every open handle."""
        try:
            async with self._sessions() as session:
                count = await crud.purge_order_messages(order_id, session)
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

        for conv in self._handles(OrderKey(order_id=order_id)):
            conv.on_remote_delete(order_id)
        logger.info("[Chat] Purged %d messages of order %s", count, order_id)
        return count
