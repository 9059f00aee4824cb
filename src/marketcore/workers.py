import asyncio
import logging

from sqlalchemy import func

from marketcore import crud
from marketcore.chat import MessagingEngine
from marketcore.config import settings
from marketcore.crud import StoreError
from marketcore.db import AsyncSessionLocal
from marketcore.messaging import ChangeFeed
from marketcore.saga import SettlementSaga
from marketcore.schemas import ChangeEvent

logger = logging.getLogger("market.workers")

async def publish_pending(feed: ChangeFeed, session_factory=AsyncSessionLocal) -> int:
    """One relay pass: unpublished outbox rows go to the feed in insertion order."""
    async with session_factory() as session:
        events = await crud.get_unpublished_events(settings.OUTBOX_BATCH_SIZE, session)
        if not events:
            return 0
        logger.debug("[Outbox] Pending outbox events: %d", len(events))

        published = 0
        for ev in events:
            await feed.publish(ChangeEvent(topic=ev.topic, kind=ev.event_type, row=ev.payload))
            ev.published_at = func.now()
            session.add(ev)
            published += 1

        await session.commit()
        logger.info("[Outbox] Published %d events", published)
        return published

async def retry_payouts(saga: SettlementSaga, session_factory=AsyncSessionLocal) -> int:
    async with session_factory() as session:
        pending = await crud.get_pending_payouts(settings.OUTBOX_BATCH_SIZE, session)
        order_ids = [p.order_id for p in pending]

    for order_id in order_ids:
        try:
            await saga.dispatch_payout(order_id)
        except StoreError as e:
            logger.error("[Payouts] Retry for order %s failed: %s", order_id, e)
    return len(order_ids)

async def sweep_purges(messaging: MessagingEngine, session_factory=AsyncSessionLocal) -> int:
    async with session_factory() as session:
        orders = await crud.get_unpurged_delivered_orders(settings.OUTBOX_BATCH_SIZE, session)
        order_ids = [o.id for o in orders]

    purged = 0
    for order_id in order_ids:
        try:
            await messaging.purge(order_id)
            purged += 1
        except StoreError as e:
            logger.error("[Purge] Order %s chat purge failed again: %s", order_id, e)
    return purged

async def outbox_publisher(feed: ChangeFeed, session_factory=AsyncSessionLocal):
    INTERVAL = settings.OUTBOX_POLL_INTERVAL

    while True:
        try:
            await publish_pending(feed, session_factory)
        except Exception as e:
            logger.error("[Outbox] Publish pass failed: %s", e)
        await asyncio.sleep(INTERVAL)

async def payout_retrier(saga: SettlementSaga, session_factory=AsyncSessionLocal):
    INTERVAL = settings.OUTBOX_POLL_INTERVAL * 20

    while True:
        try:
            await retry_payouts(saga, session_factory)
        except Exception as e:
            logger.error("[Payouts] Retry pass failed: %s", e)
        await asyncio.sleep(INTERVAL)

async def purge_sweeper(messaging: MessagingEngine, session_factory=AsyncSessionLocal):
    INTERVAL = settings.OUTBOX_POLL_INTERVAL * 20

    while True:
        try:
            await sweep_purges(messaging, session_factory)
        except Exception as e:
            logger.error("[Purge] Sweep pass failed: %s", e)
        await asyncio.sleep(INTERVAL)
