import asyncio
import logging
from typing import Awaitable, Callable, Iterable
from uuid import UUID
from sqlalchemy.exc import SQLAlchemyError

from marketcore import crud
from marketcore.config import settings
from marketcore.crud import SoldOut, StoreError, ProductNotFound, UserNotFound
from marketcore.db import AsyncSessionLocal
from marketcore.gateway import GatewayError, PaymentGateway
from marketcore.models import Compensation, Order, Payout, PendingPurchase, PAYOUT_PENDING, PAYOUT_ESCALATED
from marketcore.schemas import PaymentIntent, ShippingAddress

logger = logging.getLogger("market.saga")

class NotYetPaid(Exception):
    def __init__(self, status: str | None):
        self.status = status
        super().__init__(f"payment not confirmed yet (status {status})")

class OrderCreateError(Exception):
    pass

class BuyerSuspended(Exception):
    pass

class PaymentMismatch(Exception):
    """The charge was not issued for this product and buyer."""

RefundHook = Callable[[Compensation], Awaitable[None]]

async def log_refund_required(comp: Compensation) -> None:
    logger.warning(
        "[Settlement] Refund required: payment %s of %s by buyer %s (%s)",
        comp.payment_id, comp.amount, comp.buyer_id, comp.reason,
    )

class SettlementSaga:
    """
    Turns a paid Pix charge into an order, one unit less of stock and a payout
    to the seller.

    Order and stock change commit together with the payout ledger row, so an
    order never exists without its stock decrement. The payout itself goes
    out after commit with the order id as idempotency key; failed payouts stay
    pending for the payout worker and are escalated after
    ``payout_max_attempts``. A charge that cannot be honoured (sold out) is
    written to the compensation ledger and handed to ``refund_hook``.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        session_factory=AsyncSessionLocal,
        success_statuses: Iterable[str] | None = None,
        refund_hook: RefundHook | None = None,
        payout_max_attempts: int | None = None,
        poll_initial_delay: float | None = None,
        poll_max_delay: float | None = None,
    ):
        self.gateway = gateway
        self._sessions = session_factory
        self.success_statuses = frozenset(
            s.upper() for s in (success_statuses or settings.PAYMENT_SUCCESS_STATUSES)
        )
        self.refund_hook = refund_hook or log_refund_required
        self.payout_max_attempts = payout_max_attempts or settings.PAYOUT_MAX_ATTEMPTS
        self.poll_initial_delay = poll_initial_delay or settings.PAYMENT_POLL_INITIAL_DELAY
        self.poll_max_delay = poll_max_delay or settings.PAYMENT_POLL_MAX_DELAY

    async def initiate(self, product_id: UUID, buyer_id: UUID) -> PaymentIntent:
        try:
            async with self._sessions() as session:
                product = await crud.get_product(product_id, session)
                buyer = await crud.get_user(buyer_id, session)
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

        if product is None:
            raise ProductNotFound()
        if buyer is None:
            raise UserNotFound()
        if buyer.status == "suspended":
            raise BuyerSuspended()
        if product.quantity < 1:
            raise SoldOut()

        intent = await self.gateway.create_payment(product.price, f"Order: {product.title}")
        try:
            async with self._sessions() as session:
                await crud.record_pending_purchase(intent.id, product.id, buyer.id, intent.amount, session)
        except SQLAlchemyError as e:
            logger.error("[Settlement] Could not record intent %s, it cannot be confirmed: %s", intent.id, e)
            raise StoreError(str(e)) from e
        logger.info("[Settlement] Intent %s issued to buyer %s for product %s", intent.id, buyer_id, product_id)
        return intent

    async def poll_status(self, intent: PaymentIntent, timeout: float | None = None) -> str:
        """
        Returns the gateway status once it is a success status. Without a
        timeout the gateway is asked once; with one it is polled with
        exponential backoff until the deadline.
        """
        if not timeout:
            status = await self.gateway.get_payment_status(intent.id)
            if status not in self.success_statuses:
                raise NotYetPaid(status)
            return status

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        delay = self.poll_initial_delay
        while True:
            last_error: GatewayError | None = None
            status = None
            try:
                status = await self.gateway.get_payment_status(intent.id)
                if status in self.success_statuses:
                    return status
            except GatewayError as e:
                logger.warning("[Settlement] Status poll for %s failed: %s", intent.id, e)
                last_error = e

            remaining = deadline - loop.time()
            if remaining <= 0:
                if last_error is not None:
                    raise last_error
                raise NotYetPaid(status)
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, self.poll_max_delay)

    async def confirm(
        self,
        intent: PaymentIntent,
        product_id: UUID,
        buyer_id: UUID,
        shipping_address: ShippingAddress | None = None,
        timeout: float | None = None,
    ) -> Order:
        """
        Settles a charge issued by ``initiate``. Product, buyer and amount come
        from the stored purchase for ``intent.id``; the caller's ids only have
        to agree with it, the caller's amount is never used.
        """
        try:
            async with self._sessions() as session:
                pending = await crud.get_pending_purchase(intent.id, session)
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e
        if pending is None:
            raise PaymentMismatch(f"payment {intent.id} was not issued here")
        if pending.product_id != product_id or pending.buyer_id != buyer_id:
            logger.warning("[Settlement] Payment %s was issued to buyer %s for product %s, not %s / %s",
                           intent.id, pending.buyer_id, pending.product_id, buyer_id, product_id)
            raise PaymentMismatch(f"payment {intent.id} belongs to another purchase")

        status = await self.poll_status(intent, timeout)
        logger.info("[Settlement] Payment %s reported %s", intent.id, status)

        try:
            async with self._sessions() as session:
                existing = await crud.get_order_by_payment(intent.id, session)
                refunded = await crud.get_compensation(intent.id, session)
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e
        if existing is not None:
            logger.info("[Settlement] Payment %s already settled as order %s", intent.id, existing.id)
            await self._pay_seller(existing.id)
            return existing
        if refunded is not None:
            logger.warning("[Settlement] Payment %s is already marked for refund, not settling", intent.id)
            raise crud.PaymentRefunded()

        address = shipping_address.model_dump() if shipping_address else None
        try:
            async with self._sessions() as session:
                order = await crud.settle_purchase(
                    intent.id, pending.product_id, pending.buyer_id, pending.amount, address, session
                )
        except crud.PaymentRefunded:
            logger.warning("[Settlement] Payment %s was marked for refund meanwhile, not settling", intent.id)
            raise
        except SoldOut:
            logger.warning("[Settlement] Product %s sold out after payment %s was captured", product_id, intent.id)
            await self._compensate(pending, "sold_out")
            raise
        except crud.OrderExistsError:
            async with self._sessions() as session:
                order = await crud.get_order_by_payment(intent.id, session)
            if order is None:
                raise OrderCreateError(f"order for payment {intent.id} vanished")
        except SQLAlchemyError as e:
            logger.error("[Settlement] Order creation for payment %s failed: %s", intent.id, e)
            raise OrderCreateError(str(e)) from e

        logger.info("[Settlement] Order %s created for payment %s", order.id, intent.id)
        await self._pay_seller(order.id)
        return order

    async def _pay_seller(self, order_id: UUID) -> None:
        try:
            await self.dispatch_payout(order_id)
        except StoreError as e:
            logger.error("[Settlement] Payout bookkeeping for order %s failed, left to worker: %s", order_id, e)

    async def dispatch_payout(self, order_id: UUID) -> Payout | None:
        """Sends a pending payout; safe to repeat, the gateway dedups on the order id."""
        try:
            async with self._sessions() as session:
                payout = await crud.get_payout(order_id, session)
            if payout is None or payout.status != PAYOUT_PENDING:
                return payout

            try:
                ref = await self.gateway.create_withdraw(
                    payout.amount, payout.pix_key, payout.pix_key_type, idempotency_key=str(order_id)
                )
            except GatewayError as e:
                async with self._sessions() as session:
                    payout = await crud.record_payout_failure(order_id, str(e), self.payout_max_attempts, session)
                if payout.status == PAYOUT_ESCALATED:
                    logger.error("[Settlement] Payout for order %s escalated after %d attempts: %s",
                                 order_id, payout.attempts, e)
                else:
                    logger.warning("[Settlement] Payout for order %s failed (attempt %d): %s",
                                   order_id, payout.attempts, e)
                return payout

            async with self._sessions() as session:
                await crud.mark_payout_sent(order_id, ref, session)
                payout = await crud.get_payout(order_id, session)
        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e
        logger.info("[Settlement] Seller paid for order %s", order_id)
        return payout

    async def _compensate(self, pending: PendingPurchase, reason: str) -> None:
        try:
            async with self._sessions() as session:
                comp = await crud.record_compensation(
                    pending.payment_id, pending.buyer_id, pending.product_id, pending.amount, reason, session
                )
        except SQLAlchemyError as e:
            logger.error("[Settlement] Could not record compensation for payment %s: %s", pending.payment_id, e)
            return
        await self.refund_hook(comp)
