import asyncio
import json
import logging
from typing import Awaitable, Callable
from aio_pika import connect_robust, ExchangeType, Message
from aio_pika.abc import AbstractRobustConnection, AbstractRobustChannel, AbstractQueue
from fastapi.encoders import jsonable_encoder
from pydantic import ValidationError
from marketcore.config import settings
from marketcore.schemas import ChangeEvent

logger = logging.getLogger("market.messaging")

EventHandler = Callable[[ChangeEvent], Awaitable[None]]
ErrorHandler = Callable[[Exception], None]

class SubscriptionError(Exception):
    """The live change feed for a subscription could not be set up or was lost."""

rabbit_connection: AbstractRobustConnection | None = None
rabbit_channel:    AbstractRobustChannel     | None = None

async def init_rabbit(retry_attempts: int = 5, retry_delay: int = 2) -> None:
    global rabbit_connection, rabbit_channel

    for attempt in range(1, retry_attempts + 1):
        try:
            logger.info(f"[Feed] Connecting to RabbitMQ (attempt {attempt}/{retry_attempts})")
            rabbit_connection = await connect_robust(settings.rabbit_url)
            rabbit_channel    = await rabbit_connection.channel()

            await rabbit_channel.declare_exchange(
                settings.FEED_EXCHANGE, ExchangeType.TOPIC, durable=True
            )

            logger.info("[Feed] RabbitMQ setup complete")
            return
        except Exception as e:
            logger.error(f"[Feed] RabbitMQ init failed: {e}")
            if attempt < retry_attempts:
                await asyncio.sleep(retry_delay)
            else:
                logger.critical("[Feed] Could not connect to RabbitMQ, giving up")
                raise

async def get_channel() -> AbstractRobustChannel:
    if rabbit_channel is None:
        await init_rabbit()
    return rabbit_channel

async def close_rabbit() -> None:
    global rabbit_connection, rabbit_channel
    if rabbit_connection:
        await rabbit_connection.close()
        rabbit_connection = None
        rabbit_channel = None
        logger.info("[Feed] RabbitMQ connection closed")


class Subscription:
    """
    A live filter on the change feed. ``cancel`` stops delivery to the handler
    immediately; releasing the underlying resources may finish later.
    """

    def __init__(self, topic: str, handler: EventHandler, on_error: ErrorHandler | None = None):
        self.topic = topic
        self.active = True
        self._released = False
        self._handler = handler
        self._on_error = on_error

    async def deliver(self, event: ChangeEvent) -> None:
        if not self.active:
            return
        await self._handler(event)

    def fail(self, exc: Exception) -> None:
        logger.error("[Feed] Subscription %s lost: %s", self.topic, exc)
        self.active = False
        if self._on_error is not None:
            self._on_error(SubscriptionError(str(exc)))

    async def release(self) -> None:
        pass

    async def cancel(self) -> None:
        self.active = False
        if self._released:
            return
        self._released = True
        await self.release()


class ChangeFeed:
    async def publish(self, event: ChangeEvent) -> None:
        raise NotImplementedError

    async def subscribe(
        self, topic: str, handler: EventHandler, on_error: ErrorHandler | None = None
    ) -> Subscription:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class LocalSubscription(Subscription):
    def __init__(self, feed: "LocalChangeFeed", topic: str, handler: EventHandler, on_error: ErrorHandler | None):
        super().__init__(topic, handler, on_error)
        self._feed = feed

    async def release(self) -> None:
        self._feed._detach(self)


class LocalChangeFeed(ChangeFeed):
    """In-process feed: events are handed to subscribers in publish order."""

    def __init__(self):
        self._subscribers: dict[str, list[LocalSubscription]] = {}

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self._subscribers.get(topic, []))
        return sum(len(subs) for subs in self._subscribers.values())

    async def publish(self, event: ChangeEvent) -> None:
        for sub in list(self._subscribers.get(event.topic, [])):
            try:
                await sub.deliver(event)
            except Exception as e:
                logger.error("[Feed] Handler for %s failed: %s", event.topic, e)

    async def subscribe(
        self, topic: str, handler: EventHandler, on_error: ErrorHandler | None = None
    ) -> Subscription:
        sub = LocalSubscription(self, topic, handler, on_error)
        self._subscribers.setdefault(topic, []).append(sub)
        return sub

    def _detach(self, sub: LocalSubscription) -> None:
        subs = self._subscribers.get(sub.topic, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._subscribers.pop(sub.topic, None)


class RabbitSubscription(Subscription):
    def __init__(self, topic: str, handler: EventHandler, on_error: ErrorHandler | None, queue: AbstractQueue):
        super().__init__(topic, handler, on_error)
        self.queue = queue
        self.task: asyncio.Task | None = None

    async def consume(self) -> None:
        try:
            async with self.queue.iterator() as it:
                async for message in it:
                    async with message.process():
                        if not self.active:
                            continue
                        body = message.body.decode()
                        try:
                            event = ChangeEvent(**json.loads(body))
                        except (ValueError, ValidationError) as e:
                            logger.error("[Feed] Invalid message format: %s", e)
                            continue
                        await self.deliver(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.fail(e)

    async def release(self) -> None:
        if self.task is not None:
            self.task.cancel()
        try:
            await self.queue.delete(if_unused=False, if_empty=False)
        except Exception as e:
            logger.warning("[Feed] Could not delete queue for %s: %s", self.topic, e)


class RabbitChangeFeed(ChangeFeed):
    """
    Change feed on a RabbitMQ topic exchange. Every subscription gets its own
    exclusive queue bound to the conversation topic, consumed sequentially so
    per-subscription order is kept.
    """

    async def publish(self, event: ChangeEvent) -> None:
        channel = await get_channel()
        exchange = await channel.declare_exchange(
            settings.FEED_EXCHANGE, ExchangeType.TOPIC, durable=True
        )
        await exchange.publish(
            Message(body=json.dumps(jsonable_encoder(event)).encode()),
            routing_key=event.topic,
        )

    async def subscribe(
        self, topic: str, handler: EventHandler, on_error: ErrorHandler | None = None
    ) -> Subscription:
        try:
            channel = await get_channel()
            exchange = await channel.declare_exchange(
                settings.FEED_EXCHANGE, ExchangeType.TOPIC, durable=True
            )
            queue = await channel.declare_queue(exclusive=True, auto_delete=True)
            await queue.bind(exchange, routing_key=topic)
        except Exception as e:
            logger.error("[Feed] Subscribe to %s failed: %s", topic, e)
            raise SubscriptionError(str(e)) from e

        sub = RabbitSubscription(topic, handler, on_error, queue)
        sub.task = asyncio.create_task(sub.consume())
        return sub

    async def close(self) -> None:
        await close_rabbit()


def create_feed() -> ChangeFeed:
    if settings.FEED_BACKEND == "local":
        return LocalChangeFeed()
    return RabbitChangeFeed()
