import asyncio

import pytest
from sqlalchemy import select

from marketcore.chat import DirectKey
from marketcore.messaging import LocalChangeFeed
from marketcore.models import FeedOutbox
from marketcore import workers
from marketcore.config import settings
from marketcore.workers import publish_pending


@pytest.mark.asyncio
async def test_relay_publishes_in_insertion_order_once(messaging, session_factory, buyer, seller):
    key = DirectKey.between(buyer.id, seller.id)
    for text in ("one", "two", "three"):
        await messaging.send(key, buyer.id, text)

    received = []
    feed = LocalChangeFeed()

    async def collect(event):
        received.append(event)

    await feed.subscribe(key.topic, collect)

    assert await publish_pending(feed, session_factory) == 3
    assert await publish_pending(feed, session_factory) == 0
    assert [e.row["content"] for e in received] == ["one", "two", "three"]
    assert {e.kind for e in received} == {"insert"}

    async with session_factory() as session:
        rows = (await session.execute(select(FeedOutbox))).scalars().all()
    assert all(r.published_at is not None for r in rows)

@pytest.mark.asyncio
async def test_events_only_reach_their_topic(messaging, session_factory, buyer, seller, other_buyer):
    await messaging.send(DirectKey.between(buyer.id, seller.id), buyer.id, "for seller")
    await messaging.send(DirectKey.between(buyer.id, other_buyer.id), buyer.id, "for other")

    received = []
    feed = LocalChangeFeed()

    async def collect(event):
        received.append(event.row["content"])

    await feed.subscribe(DirectKey.between(seller.id, buyer.id).topic, collect)
    await publish_pending(feed, session_factory)

    assert received == ["for seller"]

@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others(messaging, session_factory, buyer, seller):
    key = DirectKey.between(buyer.id, seller.id)
    await messaging.send(key, seller.id, "hello")
    received = []
    feed = LocalChangeFeed()

    async def broken(event):
        raise RuntimeError("view crashed")

    async def collect(event):
        received.append(event)

    await feed.subscribe(key.topic, broken)
    await feed.subscribe(key.topic, collect)
    await publish_pending(feed, session_factory)

    assert len(received) == 1

@pytest.mark.asyncio
@pytest.mark.parametrize("loop_name, pass_name", [
    ("payout_retrier", "retry_payouts"),
    ("purge_sweeper", "sweep_purges"),
])
async def test_background_loops_survive_unexpected_errors(monkeypatch, loop_name, pass_name):
    calls = []

    async def flaky_pass(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("gateway client crashed")
        return 0

    monkeypatch.setattr(settings, "OUTBOX_POLL_INTERVAL", 0.001)
    monkeypatch.setattr(workers, pass_name, flaky_pass)

    task = asyncio.create_task(getattr(workers, loop_name)(None, None))
    for _ in range(200):
        if len(calls) >= 2:
            break
        await asyncio.sleep(0.01)
    assert not task.done()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(calls) >= 2
