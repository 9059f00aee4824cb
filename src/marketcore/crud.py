from decimal import Decimal
from typing import List
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, func, or_, and_
from sqlalchemy.exc import IntegrityError
from fastapi.encoders import jsonable_encoder

from marketcore.models import (
    User, Product, Order, PendingPurchase, OrderMessage, DirectMessage, Payout, Compensation, FeedOutbox,
    ORDER_PAID, ORDER_DELIVERED, PAYOUT_PENDING, PAYOUT_SENT, PAYOUT_ESCALATED, utcnow,
)
from marketcore.schemas import ChatMessage

class StoreError(Exception):
    pass

class SoldOut(Exception):
    pass

class ProductNotFound(Exception):
    pass

class UserNotFound(Exception):
    pass

class OrderNotFound(Exception):
    pass

class OrderExistsError(Exception):
    pass

class OrderClosed(Exception):
    pass

class NotAParticipant(Exception):
    pass

class PaymentRefunded(SoldOut):
    """The payment was already sent to the refund ledger and can never settle."""

def order_topic(order_id: UUID) -> str:
    return f"order.{order_id}"

def direct_topic(user_a: UUID, user_b: UUID) -> str:
    low, high = sorted((str(user_a), str(user_b)))
    return f"direct.{low}.{high}"

def _event_row(message) -> dict:
    return jsonable_encoder(ChatMessage.model_validate(message))

# --- users / products ---

async def get_user(user_id: UUID, session: AsyncSession) -> User | None:
    return await session.get(User, user_id)

async def get_product(product_id: UUID, session: AsyncSession) -> Product | None:
    return await session.get(Product, product_id, populate_existing=True)

# --- orders ---

async def get_order(order_id: UUID, session: AsyncSession) -> Order | None:
    return await session.get(Order, order_id, populate_existing=True)

async def get_order_by_payment(payment_id: str, session: AsyncSession) -> Order | None:
    result = await session.execute(select(Order).where(Order.payment_id == payment_id))
    return result.scalar_one_or_none()

async def get_orders_by_buyer(buyer_id: UUID, session: AsyncSession) -> List[Order]:
    result = await session.execute(
        select(Order).where(Order.buyer_id == buyer_id).order_by(Order.created_at.desc())
    )
    return result.scalars().all()

async def get_orders_by_seller(seller_id: UUID, session: AsyncSession) -> List[Order]:
    result = await session.execute(
        select(Order).where(Order.seller_id == seller_id).order_by(Order.created_at.desc())
    )
    return result.scalars().all()

async def record_pending_purchase(
    payment_id: str,
    product_id: UUID,
    buyer_id: UUID,
    amount: Decimal,
    session: AsyncSession
) -> PendingPurchase:
    pending = PendingPurchase(payment_id=payment_id, product_id=product_id, buyer_id=buyer_id, amount=amount)
    session.add(pending)
    await session.commit()
    await session.refresh(pending)
    return pending

async def get_pending_purchase(payment_id: str, session: AsyncSession) -> PendingPurchase | None:
    return await session.get(PendingPurchase, payment_id)

async def settle_purchase(
    payment_id: str,
    product_id: UUID,
    buyer_id: UUID,
    amount: Decimal,
    shipping_address: dict | None,
    session: AsyncSession
) -> Order:
    """
    Takes one unit of stock, creates the order and its payout row in a single transaction.

    The decrement is one conditional UPDATE so concurrent buyers can never
    drive quantity below zero; it runs first so the write lock is taken
    before anything else in the transaction. ``amount`` is what the buyer
    actually paid and becomes both the order price and the payout.
    """
    result = await session.execute(
        update(Product)
        .where(Product.id == product_id, Product.quantity > 0)
        .values(quantity=Product.quantity - 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        if await session.get(Product, product_id) is None:
            raise ProductNotFound()
        raise SoldOut()

    if await get_compensation(payment_id, session) is not None:
        await session.rollback()
        raise PaymentRefunded()

    product = await session.get(Product, product_id, populate_existing=True)
    order = Order(
        payment_id=payment_id,
        buyer_id=buyer_id,
        seller_id=product.seller_id,
        product_id=product.id,
        product_title=product.title,
        price=amount,
        shipping_address=shipping_address,
        status=ORDER_PAID,
    )
    session.add(order)
    try:
        await session.flush()  # чтобы получить order.id
    except IntegrityError:
        await session.rollback()
        raise OrderExistsError()

    session.add(Payout(
        order_id=order.id,
        seller_id=product.seller_id,
        amount=amount,
        pix_key=product.pix_key,
        pix_key_type=product.pix_key_type,
        status=PAYOUT_PENDING,
    ))
    await session.commit()
    await session.refresh(order)
    return order

async def mark_order_delivered(order_id: UUID, session: AsyncSession) -> bool:
    result = await session.execute(
        update(Order)
        .where(Order.id == order_id, Order.status == ORDER_PAID)
        .values(status=ORDER_DELIVERED, delivered_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1

async def get_unpurged_delivered_orders(limit: int, session: AsyncSession) -> List[Order]:
    result = await session.execute(
        select(Order)
        .where(Order.status == ORDER_DELIVERED, Order.purged_at.is_(None))
        .order_by(Order.delivered_at)
        .limit(limit)
    )
    return result.scalars().all()

# --- compensation ledger ---

async def get_compensation(payment_id: str, session: AsyncSession) -> Compensation | None:
    result = await session.execute(
        select(Compensation).where(Compensation.payment_id == payment_id)
    )
    return result.scalar_one_or_none()

async def record_compensation(
    payment_id: str,
    buyer_id: UUID,
    product_id: UUID,
    amount: Decimal,
    reason: str,
    session: AsyncSession
) -> Compensation:
    comp = Compensation(
        payment_id=payment_id,
        buyer_id=buyer_id,
        product_id=product_id,
        amount=amount,
        reason=reason,
    )
    session.add(comp)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        result = await session.execute(
            select(Compensation).where(Compensation.payment_id == payment_id)
        )
        return result.scalar_one()
    await session.refresh(comp)
    return comp

# --- payouts ---

async def get_payout(order_id: UUID, session: AsyncSession) -> Payout | None:
    return await session.get(Payout, order_id, populate_existing=True)

async def get_pending_payouts(limit: int, session: AsyncSession) -> List[Payout]:
    result = await session.execute(
        select(Payout)
        .where(Payout.status == PAYOUT_PENDING)
        .order_by(Payout.created_at)
        .limit(limit)
    )
    return result.scalars().all()

async def mark_payout_sent(order_id: UUID, gateway_ref: str | None, session: AsyncSession) -> None:
    await session.execute(
        update(Payout)
        .where(Payout.order_id == order_id, Payout.status == PAYOUT_PENDING)
        .values(status=PAYOUT_SENT, gateway_ref=gateway_ref,
                attempts=Payout.attempts + 1, last_error=None, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    await session.commit()

async def record_payout_failure(
    order_id: UUID,
    error: str,
    max_attempts: int,
    session: AsyncSession
) -> Payout:
    """
    Counts a failed attempt; once max_attempts is reached the payout is
    escalated for manual settlement and no longer retried.
    """
    payout = await session.get(Payout, order_id, with_for_update=True, populate_existing=True)
    payout.attempts += 1
    payout.last_error = error
    if payout.status == PAYOUT_PENDING and payout.attempts >= max_attempts:
        payout.status = PAYOUT_ESCALATED
    session.add(payout)
    await session.commit()
    await session.refresh(payout)
    return payout

# --- messages ---

async def add_order_message(
    order_id: UUID,
    sender_id: UUID,
    content: str,
    client_id: UUID | None,
    session: AsyncSession
) -> OrderMessage:
    stmt = select(Order).where(Order.id == order_id).with_for_update()
    order = (await session.execute(stmt)).scalar_one_or_none()
    if order is None:
        await session.rollback()
        raise OrderNotFound()
    if sender_id not in (order.buyer_id, order.seller_id):
        await session.rollback()
        raise NotAParticipant()
    if order.status != ORDER_PAID:
        await session.rollback()
        raise OrderClosed()

    message = OrderMessage(
        client_id=client_id,
        order_id=order_id,
        sender_id=sender_id,
        content=content,
    )
    session.add(message)
    await session.flush()
    session.add(FeedOutbox(
        topic=order_topic(order_id),
        event_type="insert",
        payload=_event_row(message),
    ))
    await session.commit()
    return message

async def add_direct_message(
    sender_id: UUID,
    receiver_id: UUID,
    content: str,
    client_id: UUID | None,
    session: AsyncSession
) -> DirectMessage:
    message = DirectMessage(
        client_id=client_id,
        sender_id=sender_id,
        receiver_id=receiver_id,
        content=content,
    )
    session.add(message)
    await session.flush()
    session.add(FeedOutbox(
        topic=direct_topic(sender_id, receiver_id),
        event_type="insert",
        payload=_event_row(message),
    ))
    await session.commit()
    return message

async def get_order_messages(order_id: UUID, session: AsyncSession) -> List[OrderMessage]:
    result = await session.execute(
        select(OrderMessage)
        .where(OrderMessage.order_id == order_id)
        .order_by(OrderMessage.created_at)
    )
    return result.scalars().all()

async def get_direct_messages(user_a: UUID, user_b: UUID, session: AsyncSession) -> List[DirectMessage]:
    result = await session.execute(
        select(DirectMessage)
        .where(or_(
            and_(DirectMessage.sender_id == user_a, DirectMessage.receiver_id == user_b),
            and_(DirectMessage.sender_id == user_b, DirectMessage.receiver_id == user_a),
        ))
        .order_by(DirectMessage.created_at)
    )
    return result.scalars().all()

async def get_contacts(user_id: UUID, session: AsyncSession) -> List[User]:
    """
    Возвращает собеседников пользователя, начиная с самой свежей переписки.
    """
    result = await session.execute(
        select(DirectMessage.sender_id, DirectMessage.receiver_id)
        .where(or_(DirectMessage.sender_id == user_id, DirectMessage.receiver_id == user_id))
        .order_by(DirectMessage.created_at.desc())
    )
    ordered: list[UUID] = []
    for sender_id, receiver_id in result.all():
        other = receiver_id if sender_id == user_id else sender_id
        if other not in ordered:
            ordered.append(other)
    if not ordered:
        return []

    users = await session.execute(select(User).where(User.id.in_(ordered)))
    by_id = {u.id: u for u in users.scalars().all()}
    return [by_id[uid] for uid in ordered if uid in by_id]

async def purge_order_messages(order_id: UUID, session: AsyncSession) -> int:
    """
    Удаляет всю переписку заказа одним запросом и публикует событие удаления.
    """
    result = await session.execute(
        delete(OrderMessage)
        .where(OrderMessage.order_id == order_id)
        .execution_options(synchronize_session=False)
    )
    await session.execute(
        update(Order)
        .where(Order.id == order_id)
        .values(purged_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    session.add(FeedOutbox(
        topic=order_topic(order_id),
        event_type="delete",
        payload={"order_id": str(order_id)},
    ))
    await session.commit()
    return result.rowcount

# --- outbox ---

async def get_unpublished_events(limit: int, session: AsyncSession) -> List[FeedOutbox]:
    result = await session.execute(
        select(FeedOutbox)
        .where(FeedOutbox.published_at.is_(None))
        .order_by(FeedOutbox.id)
        .limit(limit)
    )
    return result.scalars().all()
