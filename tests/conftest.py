"""
Shared fixtures: a fresh SQLite database per test, the in-process change
feed, and a fake Pix provider behind httpx.MockTransport so the real
gateway client is exercised.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("FEED_BACKEND", "local")

import json
import logging
from decimal import Decimal
from itertools import count

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from marketcore.chat import MessagingEngine
from marketcore.db import Base, make_session_factory
from marketcore.gateway import PaymentGateway
from marketcore.lifecycle import OrderLifecycle
from marketcore.messaging import LocalChangeFeed
from marketcore.models import Product, User
from marketcore.saga import SettlementSaga
from marketcore.workers import publish_pending

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


class FakePixProvider:
    """Minimal stand-in for the Pix provider's HTTP API."""

    def __init__(self):
        self._ids = count(1)
        self.payments: dict[str, dict] = {}
        self.withdrawals: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.reject_payments = False
        self.failing_withdrawals = 0
        self.default_status = "COMPLETED"

    def set_statuses(self, payment_id: str, *statuses: str) -> None:
        """Status answers for successive polls; the last one repeats."""
        self.payments[payment_id]["statuses"] = list(statuses)

    def _ok(self, data: dict) -> httpx.Response:
        return httpx.Response(200, json={"success": True, "data": data, "error": None})

    def _fail(self, error: str, code: int = 400) -> httpx.Response:
        return httpx.Response(code, json={"success": False, "data": None, "error": error})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "POST" and path.endswith("/payments"):
            if self.reject_payments:
                return self._fail("invalid amount")
            body = json.loads(request.content)
            payment_id = f"pay_{next(self._ids)}"
            self.payments[payment_id] = {"amount": body["amount"], "description": body["description"],
                                         "statuses": [self.default_status]}
            return self._ok({"id": payment_id, "qrCodeImage": f"https://qr.test/{payment_id}.png",
                             "copyPasteCode": f"00020126{payment_id}", "status": "PENDING"})

        if request.method == "GET" and "/payments/" in path:
            payment_id = path.rsplit("/", 1)[-1]
            payment = self.payments.get(payment_id)
            if payment is None:
                return self._fail("payment not found", 404)
            statuses = payment["statuses"]
            status = statuses.pop(0) if len(statuses) > 1 else statuses[0]
            return self._ok({"id": payment_id, "status": status})

        if request.method == "POST" and path.endswith("/withdrawals"):
            if self.failing_withdrawals > 0:
                self.failing_withdrawals -= 1
                return self._fail("provider unavailable", 503)
            key = request.headers["Idempotency-Key"]
            if key not in self.withdrawals:
                body = json.loads(request.content)
                self.withdrawals[key] = dict(body, id=f"wd_{next(self._ids)}")
            return self._ok({"id": self.withdrawals[key]["id"]})

        return self._fail("not found", 404)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'market.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)

@pytest.fixture
def feed():
    return LocalChangeFeed()

@pytest.fixture
def pix():
    return FakePixProvider()

@pytest_asyncio.fixture
async def gateway(pix):
    gw = PaymentGateway(
        base_url="http://gateway.test/v1",
        api_key="test-key",
        transport=httpx.MockTransport(pix.handler),
    )
    yield gw
    await gw.aclose()

@pytest.fixture
def saga(gateway, session_factory):
    return SettlementSaga(
        gateway,
        session_factory,
        success_statuses=["COMPLETED", "ACTIVE"],
        payout_max_attempts=3,
        poll_initial_delay=0.01,
        poll_max_delay=0.02,
    )

@pytest.fixture
def messaging(feed, session_factory):
    return MessagingEngine(feed, session_factory)

@pytest.fixture
def lifecycle(messaging, session_factory):
    return OrderLifecycle(messaging, session_factory)

@pytest.fixture
def relay(feed, session_factory):
    async def _relay() -> int:
        return await publish_pending(feed, session_factory)
    return _relay


async def add_all(session_factory, *objs):
    async with session_factory() as session:
        session.add_all(objs)
        await session.commit()
    return objs

@pytest_asyncio.fixture
async def seller(session_factory):
    user = User(email="seller@example.com", name="Sandra Seller", role="premium")
    await add_all(session_factory, user)
    return user

@pytest_asyncio.fixture
async def buyer(session_factory):
    user = User(email="buyer@example.com", name="Bruno Buyer", role="buyer")
    await add_all(session_factory, user)
    return user

@pytest_asyncio.fixture
async def other_buyer(session_factory):
    user = User(email="other@example.com", name="Olga Other", role="buyer")
    await add_all(session_factory, user)
    return user

@pytest.fixture
def make_product(session_factory, seller):
    async def _make(quantity: int = 1, price: str = "50.00", title: str = "Vintage camera") -> Product:
        product = Product(
            seller_id=seller.id,
            title=title,
            description="Works fine",
            price=Decimal(price),
            quantity=quantity,
            city="Recife",
            pix_key="seller@example.com",
            pix_key_type="EMAIL",
        )
        await add_all(session_factory, product)
        return product
    return _make

@pytest.fixture
def buy(saga, pix):
    """Runs a whole purchase: intent, payment status, confirmation."""
    async def _buy(product, buyer, status: str = "COMPLETED"):
        intent = await saga.initiate(product.id, buyer.id)
        pix.set_statuses(intent.id, status)
        return await saga.confirm(intent, product.id, buyer.id)
    return _buy
