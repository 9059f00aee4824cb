import pytest
from sqlalchemy.exc import OperationalError

from marketcore import crud
from marketcore.chat import MessagingEngine, OrderKey
from marketcore.crud import OrderNotFound
from marketcore.lifecycle import DeliveryNotConfirmed, NotOrderSeller
from marketcore.workers import sweep_purges


@pytest.mark.asyncio
async def test_only_seller_with_confirmation_can_deliver(buy, make_product, buyer, seller, lifecycle):
    order = await buy(await make_product(), buyer)

    with pytest.raises(DeliveryNotConfirmed):
        await lifecycle.mark_delivered(order.id, seller.id)
    with pytest.raises(NotOrderSeller):
        await lifecycle.mark_delivered(order.id, buyer.id, confirmed=True)
    with pytest.raises(OrderNotFound):
        await lifecycle.mark_delivered(buyer.id, seller.id, confirmed=True)

    assert (await lifecycle.get_order(order.id)).status == "paid"

@pytest.mark.asyncio
async def test_delivery_purges_chat_for_every_later_handle(buy, make_product, buyer, seller, messaging, lifecycle, session_factory):
    order = await buy(await make_product(), buyer)
    key = OrderKey(order_id=order.id)
    await messaging.send(key, buyer.id, "paid, thanks")
    await messaging.send(key, seller.id, "shipped today")

    delivered = await lifecycle.mark_delivered(order.id, seller.id, confirmed=True)

    assert delivered.status == "delivered"
    assert delivered.delivered_at is not None
    assert delivered.purged_at is not None
    for viewer in (buyer, seller):
        async with messaging.conversation(key, viewer.id) as conv:
            assert conv.messages == []
    async with session_factory() as session:
        assert await crud.get_order_messages(order.id, session) == []

@pytest.mark.asyncio
async def test_shipped_then_delivered_scenario(buy, make_product, buyer, seller, feed, session_factory, lifecycle, relay):
    order = await buy(await make_product(), buyer)
    key = OrderKey(order_id=order.id)
    # the buyer is connected to another process, it only sees the feed
    buyer_side = MessagingEngine(feed, session_factory)
    buyer_conv = await buyer_side.open(key, buyer.id)

    await lifecycle.messaging.send(key, seller.id, "shipped today")
    await relay()
    assert [m.content for m in buyer_conv.messages] == ["shipped today"]

    await lifecycle.mark_delivered(order.id, seller.id, confirmed=True)
    assert len(buyer_conv.messages) == 1
    await relay()
    assert buyer_conv.messages == []
    await buyer_conv.close()

@pytest.mark.asyncio
async def test_local_handles_are_cleared_immediately(buy, make_product, buyer, seller, messaging, lifecycle):
    order = await buy(await make_product(), buyer)
    key = OrderKey(order_id=order.id)
    async with messaging.conversation(key, buyer.id) as conv:
        await messaging.send(key, buyer.id, "ok")
        assert len(conv.messages) == 1

        await lifecycle.mark_delivered(order.id, seller.id, confirmed=True)

        assert conv.messages == []

@pytest.mark.asyncio
async def test_failed_purge_leaves_delivered_order_for_sweeper(buy, make_product, buyer, seller, messaging, lifecycle, session_factory, monkeypatch):
    order = await buy(await make_product(), buyer)
    await messaging.send(OrderKey(order_id=order.id), seller.id, "on its way")

    async def broken(*args, **kwargs):
        raise OperationalError("DELETE", {}, Exception("database is locked"))

    with monkeypatch.context() as m:
        m.setattr(crud, "purge_order_messages", broken)
        delivered = await lifecycle.mark_delivered(order.id, seller.id, confirmed=True)

    assert delivered.status == "delivered"
    assert delivered.purged_at is None
    async with session_factory() as session:
        assert len(await crud.get_order_messages(order.id, session)) == 1

    assert await sweep_purges(messaging, session_factory) == 1
    async with session_factory() as session:
        assert await crud.get_order_messages(order.id, session) == []
        assert (await crud.get_order(order.id, session)).purged_at is not None
    assert await sweep_purges(messaging, session_factory) == 0

@pytest.mark.asyncio
async def test_repeated_delivery_is_a_no_op(buy, make_product, buyer, seller, lifecycle):
    order = await buy(await make_product(), buyer)
    first = await lifecycle.mark_delivered(order.id, seller.id, confirmed=True)
    second = await lifecycle.mark_delivered(order.id, seller.id, confirmed=True)

    assert first.status == second.status == "delivered"
    assert first.delivered_at == second.delivered_at

@pytest.mark.asyncio
async def test_order_lists(buy, make_product, buyer, other_buyer, seller, lifecycle):
    product = await make_product(quantity=3)
    mine = await buy(product, buyer)
    theirs = await buy(product, other_buyer)

    assert [o.id for o in await lifecycle.orders_for_buyer(buyer.id)] == [mine.id]
    assert {o.id for o in await lifecycle.orders_for_seller(seller.id)} == {mine.id, theirs.id}
