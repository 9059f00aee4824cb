import logging
from typing import List
from uuid import UUID
from sqlalchemy.exc import SQLAlchemyError

from marketcore import crud
from marketcore.chat import MessagingEngine
from marketcore.crud import OrderNotFound, StoreError
from marketcore.db import AsyncSessionLocal
from marketcore.models import Order, ORDER_PAID

logger = logging.getLogger("market.lifecycle")

class NotOrderSeller(Exception):
    pass

class DeliveryNotConfirmed(Exception):
    pass

class OrderLifecycle:
    """
    paid -> delivered, once, by the seller. Delivery erases the order chat,
    so the caller has to pass confirmed=True explicitly.
    """

    def __init__(self, messaging: MessagingEngine, session_factory=AsyncSessionLocal):
        self.messaging = messaging
        self._sessions = session_factory

    async def get_order(self, order_id: UUID) -> Order:
        try:
            async with self._sessions() as session:
                order = await crud.get_order(order_id, session)
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e
        if order is None:
            raise OrderNotFound()
        return order

    async def orders_for_buyer(self, buyer_id: UUID) -> List[Order]:
        try:
            async with self._sessions() as session:
                return await crud.get_orders_by_buyer(buyer_id, session)
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    async def orders_for_seller(self, seller_id: UUID) -> List[Order]:
        try:
            async with self._sessions() as session:
                return await crud.get_orders_by_seller(seller_id, session)
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    async def mark_delivered(self, order_id: UUID, seller_id: UUID, confirmed: bool = False) -> Order:
        if not confirmed:
            raise DeliveryNotConfirmed()

        order = await self.get_order(order_id)
        if order.seller_id != seller_id:
            raise NotOrderSeller()

        if order.status == ORDER_PAID:
            try:
                async with self._sessions() as session:
                    changed = await crud.mark_order_delivered(order_id, session)
            except SQLAlchemyError as e:
                raise StoreError(str(e)) from e
            if changed:
                logger.info("[Orders] Order %s delivered", order_id)
            else:
                logger.info("[Orders] Order %s was already delivered", order_id)
        else:
            logger.info("[Orders] Order %s already final status %s", order_id, order.status)

        order = await self.get_order(order_id)
        if order.purged_at is None:
            try:
                await self.messaging.purge(order_id)
            except StoreError as e:
                # the sweeper picks up delivered orders whose chat is still there
                logger.warning("[Orders] Purge of order %s chat failed, will retry: %s", order_id, e)
            else:
                order = await self.get_order(order_id)
        return order
