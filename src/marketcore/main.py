import asyncio
import logging
from typing import List, Optional
from uuid import UUID
from fastapi import FastAPI, HTTPException, Depends, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
import uvicorn

from marketcore import schemas, workers
from marketcore.chat import DirectKey, EmptyMessage, MessagingEngine, OrderKey
from marketcore.crud import (
    NotAParticipant, OrderClosed, OrderNotFound, ProductNotFound, SoldOut, StoreError, UserNotFound,
)
from marketcore.db import engine, Base, AsyncSessionLocal
from marketcore.gateway import GatewayError, PaymentGateway
from marketcore.lifecycle import DeliveryNotConfirmed, NotOrderSeller, OrderLifecycle
from marketcore.messaging import SubscriptionError, create_feed, init_rabbit, RabbitChangeFeed
from marketcore.saga import BuyerSuspended, NotYetPaid, OrderCreateError, PaymentMismatch, SettlementSaga

logger = logging.getLogger(__name__)
app = FastAPI(title="Marketplace Core")

@app.on_event("startup")
async def startup_event():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    feed = create_feed()
    if isinstance(feed, RabbitChangeFeed):
        await init_rabbit()

    app.state.feed = feed
    app.state.gateway = PaymentGateway()
    app.state.messaging = MessagingEngine(feed, AsyncSessionLocal)
    app.state.saga = SettlementSaga(app.state.gateway, AsyncSessionLocal)
    app.state.lifecycle = OrderLifecycle(app.state.messaging, AsyncSessionLocal)

    app.state.outbox_task = asyncio.create_task(workers.outbox_publisher(feed))
    app.state.payout_task = asyncio.create_task(workers.payout_retrier(app.state.saga))
    app.state.purge_task  = asyncio.create_task(workers.purge_sweeper(app.state.messaging))

@app.on_event("shutdown")
async def shutdown_event():
    app.state.outbox_task.cancel()
    app.state.payout_task.cancel()
    app.state.purge_task.cancel()
    for conv in app.state.messaging.active_conversations():
        await conv.close()
    await app.state.gateway.aclose()
    await app.state.feed.close()


def get_saga(request: Request) -> SettlementSaga:
    return request.app.state.saga

def get_lifecycle(request: Request) -> OrderLifecycle:
    return request.app.state.lifecycle

def get_messaging(request: Request) -> MessagingEngine:
    return request.app.state.messaging


@app.post("/purchases", response_model=schemas.PaymentIntent)
async def start_purchase(
    req: schemas.PurchaseRequest,
    saga: SettlementSaga = Depends(get_saga)
):
    try:
        return await saga.initiate(req.product_id, req.buyer_id)
    except (ProductNotFound, UserNotFound):
        raise HTTPException(404, "Product or buyer not found")
    except BuyerSuspended:
        raise HTTPException(403, "Buyer account is suspended")
    except SoldOut:
        raise HTTPException(409, "Sold out")
    except GatewayError as e:
        raise HTTPException(502, f"Payment gateway error: {e}")
    except StoreError as e:
        raise HTTPException(503, str(e))

@app.post("/purchases/{payment_id}/confirm", response_model=schemas.OrderRead)
async def confirm_purchase(
    payment_id: str,
    req: schemas.ConfirmRequest,
    saga: SettlementSaga = Depends(get_saga)
):
    intent = schemas.PaymentIntent(id=payment_id, amount=req.amount, description=req.description)
    try:
        return await saga.confirm(intent, req.product_id, req.buyer_id, req.shipping_address, req.timeout)
    except NotYetPaid as e:
        raise HTTPException(402, f"Payment not confirmed yet. Status: {e.status}")
    except ProductNotFound:
        raise HTTPException(404, "Product not found")
    except PaymentMismatch as e:
        raise HTTPException(409, str(e))
    except SoldOut:
        raise HTTPException(409, "Sold out; the payment was registered for refund")
    except GatewayError as e:
        raise HTTPException(502, f"Payment gateway error: {e}")
    except (OrderCreateError, StoreError) as e:
        raise HTTPException(503, f"Could not create order, try again: {e}")

@app.get("/orders", response_model=List[schemas.OrderRead])
async def list_orders(
    buyer_id: Optional[UUID] = None,
    seller_id: Optional[UUID] = None,
    lifecycle: OrderLifecycle = Depends(get_lifecycle)
):
    if buyer_id is None and seller_id is None:
        raise HTTPException(400, "buyer_id or seller_id is required")
    try:
        if buyer_id is not None:
            return await lifecycle.orders_for_buyer(buyer_id)
        return await lifecycle.orders_for_seller(seller_id)
    except StoreError as e:
        raise HTTPException(503, str(e))

@app.get("/orders/{order_id}", response_model=schemas.OrderRead)
async def get_order(
    order_id: UUID,
    user_id: UUID,
    lifecycle: OrderLifecycle = Depends(get_lifecycle)
):
    try:
        order = await lifecycle.get_order(order_id)
    except OrderNotFound:
        raise HTTPException(404, "Order not found")
    except StoreError as e:
        raise HTTPException(503, str(e))
    if user_id not in (order.buyer_id, order.seller_id):
        raise HTTPException(404, "Order not found")
    return order

@app.post("/orders/{order_id}/deliver", response_model=schemas.OrderRead)
async def deliver_order(
    order_id: UUID,
    req: schemas.DeliverRequest,
    lifecycle: OrderLifecycle = Depends(get_lifecycle)
):
    try:
        return await lifecycle.mark_delivered(order_id, req.seller_id, confirmed=req.confirm)
    except DeliveryNotConfirmed:
        raise HTTPException(400, "Delivery must be confirmed: it deletes the order chat")
    except OrderNotFound:
        raise HTTPException(404, "Order not found")
    except NotOrderSeller:
        raise HTTPException(403, "Only the seller can mark the order delivered")
    except StoreError as e:
        raise HTTPException(503, str(e))

@app.get("/users/{user_id}/contacts", response_model=List[schemas.UserRead])
async def list_contacts(
    user_id: UUID,
    messaging: MessagingEngine = Depends(get_messaging)
):
    try:
        return await messaging.contacts(user_id)
    except StoreError as e:
        raise HTTPException(503, str(e))


async def _serve_conversation(websocket: WebSocket, key, viewer_id: UUID):
    messaging: MessagingEngine = websocket.app.state.messaging
    await websocket.accept()
    try:
        conv = await messaging.open(key, viewer_id)
    except (NotAParticipant, OrderNotFound):
        await websocket.close(code=4403)
        return
    except (StoreError, SubscriptionError) as e:
        logger.error("[Chat] Could not open %s: %s", key.topic, e)
        await websocket.close(code=1011)
        return

    updates: asyncio.Queue = asyncio.Queue()
    conv.add_listener(lambda c: updates.put_nowait(list(c.messages)))

    async def pump():
        while True:
            messages = await updates.get()
            await websocket.send_json({"messages": jsonable_encoder(messages)})

    async with conv:
        await websocket.send_json({"messages": jsonable_encoder(conv.messages)})
        pump_task = asyncio.create_task(pump())
        try:
            while True:
                data = await websocket.receive_json()
                content = data.get("content", "") if isinstance(data, dict) else ""
                try:
                    await conv.send(str(content))
                except (EmptyMessage, OrderClosed, NotAParticipant, StoreError, SubscriptionError) as e:
                    await websocket.send_json({"error": str(e) or type(e).__name__})
        except WebSocketDisconnect:
            logger.info("[Chat] %s disconnected from %s", viewer_id, key.topic)
        finally:
            pump_task.cancel()

@app.websocket("/ws/orders/{order_id}")
async def order_chat(websocket: WebSocket, order_id: UUID, viewer_id: UUID = Query(...)):
    await _serve_conversation(websocket, OrderKey(order_id=order_id), viewer_id)

@app.websocket("/ws/direct/{peer_id}")
async def direct_chat(websocket: WebSocket, peer_id: UUID, viewer_id: UUID = Query(...)):
    await _serve_conversation(websocket, DirectKey.between(viewer_id, peer_id), viewer_id)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run("marketcore.main:app", host="0.0.0.0", port=8000)
