import hashlib
import hmac
import json
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("RUN_BACKGROUND_WORKERS", "0")
os.environ.setdefault("PAYMENT_WEBHOOK_SECRET", "whsec_test")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from order_service import schema
from order_service.clients import GatewayIntent, GatewayRefund, StockHold
from order_service.errors import InsufficientStock
from order_service.inventory import InventoryCoordinator
from order_service.models import Cart, CartItem
from order_service.orchestrator import CheckoutSettings, OrderSagaOrchestrator
from order_service.payments import PaymentCoordinator
from order_service.totals import ShippingRule

WEBHOOK_SECRET = "whsec_test"


# ── テストダブル ──────────────────────────────────


class FakeStockService:
    """在庫サービスのテストダブル。冪等キーごとに 1 つの予約を返す。"""

    def __init__(self, stock: dict[str, int]):
        self.stock = dict(stock)
        self.holds: dict[str, dict] = {}
        self.by_key: dict[str, StockHold] = {}
        self.reserve_calls: list[str] = []
        self.confirm_calls: list[list[str]] = []
        self.release_calls: list[list[str]] = []
        self.fail_with: Exception | None = None

    async def reserve(self, order_id, sku, quantity, timeout_minutes, idempotency_key):
        self.reserve_calls.append(idempotency_key)
        if self.fail_with is not None:
            raise self.fail_with
        if idempotency_key in self.by_key:
            return self.by_key[idempotency_key]
        if self.stock.get(sku, 0) < quantity:
            raise InsufficientStock([sku])
        self.stock[sku] -= quantity
        hold = StockHold(
            reservation_id=f"res-{len(self.holds) + 1}",
            sku=sku,
            quantity=quantity,
            expires_at=datetime.now(timezone.utc) + timedelta(minutes=timeout_minutes),
        )
        self.holds[hold.reservation_id] = {"sku": sku, "quantity": quantity, "status": "ACTIVE"}
        self.by_key[idempotency_key] = hold
        return hold

    async def confirm(self, reservation_ids):
        self.confirm_calls.append(list(reservation_ids))
        if self.fail_with is not None:
            raise self.fail_with
        for rid in reservation_ids:
            if self.holds[rid]["status"] == "ACTIVE":
                self.holds[rid]["status"] = "CONFIRMED"

    async def release(self, reservation_ids):
        self.release_calls.append(list(reservation_ids))
        if self.fail_with is not None:
            raise self.fail_with
        for rid in reservation_ids:
            hold = self.holds.get(rid)
            if hold and hold["status"] == "ACTIVE":
                hold["status"] = "RELEASED"
                self.stock[hold["sku"]] += hold["quantity"]

    def active_holds(self) -> list[str]:
        return [rid for rid, hold in self.holds.items() if hold["status"] == "ACTIVE"]


class FakeGateway:
    def __init__(self):
        self.intents: list[dict] = []
        self.refunds: list[dict] = []
        self.fail_with: Exception | None = None

    async def create_intent(self, amount, currency, metadata, idempotency_key):
        if self.fail_with is not None:
            raise self.fail_with
        self.intents.append(
            {"amount": amount, "currency": currency, "metadata": metadata, "key": idempotency_key}
        )
        n = len(self.intents)
        return GatewayIntent(id=f"pi_{n}", client_secret=f"pi_{n}_secret")

    async def refund(self, charge_id, amount, idempotency_key):
        self.refunds.append({"charge_id": charge_id, "amount": amount, "key": idempotency_key})
        return GatewayRefund(id=f"re_{len(self.refunds)}", status="pending")


class RecordingInvoices:
    def __init__(self):
        self.generated: list[dict] = []
        self.fail_with: Exception | None = None

    async def generate(self, order_snapshot):
        if self.fail_with is not None:
            raise self.fail_with
        self.generated.append(order_snapshot)
        return {"invoice_id": f"inv_{len(self.generated)}"}


class RecordingNotifier:
    def __init__(self):
        self.sent: list[tuple[str, dict]] = []

    async def notify(self, customer, event):
        self.sent.append((customer, event))


class RecordingBus:
    def __init__(self):
        self.published = []
        self.deferred: list[tuple[str, dict]] = []

    async def publish(self, event):
        self.published.append(event)
        return f"{len(self.published)}-0"

    async def defer(self, task, payload):
        self.deferred.append((task, payload))
        return f"{len(self.deferred)}-0"

    def event_types(self) -> list[str]:
        return [event.event_type for event in self.published]


# ── ヘルパー ──────────────────────────────────────


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def webhook(event_id: str, event_type: str, **data) -> tuple[bytes, str]:
    body = json.dumps({"id": event_id, "type": event_type, "data": data}).encode()
    return body, sign(body)


def make_cart(*lines, customer_id="cust-1", **kwargs) -> Cart:
    lines = lines or (("SKU-A", 2, "19.99"), ("SKU-B", 1, "25.50"))
    return Cart(
        items=[CartItem(sku=sku, quantity=qty, unit_price=Decimal(price)) for sku, qty, price in lines],
        customer_id=customer_id,
        **kwargs,
    )


# ── Fixtures ─────────────────────────────────────


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await schema.create_all(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def settings():
    return CheckoutSettings(
        tax_rate=Decimal("0.19"),
        shipping_rule=ShippingRule(
            flat_rate=Decimal("15.00"), free_shipping_threshold=Decimal("100.00")
        ),
        currency="EUR",
        reservation_timeout_minutes=30,
    )


class Env:
    """1 テスト分のコラボレーター一式"""

    def __init__(self, session_factory, settings, stock):
        self.session_factory = session_factory
        self.stock = FakeStockService(stock)
        self.gateway = FakeGateway()
        self.invoices = RecordingInvoices()
        self.bus = RecordingBus()
        self.inventory = InventoryCoordinator(self.stock, session_factory, 30)
        self.payments = PaymentCoordinator(
            session_factory,
            self.gateway,
            self.inventory,
            self.invoices,
            self.bus,
            WEBHOOK_SECRET,
            intent_ttl_minutes=15,
            max_attempts=3,
        )
        self.orchestrator = OrderSagaOrchestrator(
            session_factory, self.inventory, self.payments, self.bus, settings
        )

    async def checkout(self, cart: Cart | None = None):
        return await self.orchestrator.create_order_from_cart(cart or make_cart())

    async def pay(self, result, event_id: str = "evt_paid", charge_id: str = "ch_1"):
        body, signature = webhook(
            event_id,
            "payment_intent.succeeded",
            intent_id=result.intent.intent_id,
            charge_id=charge_id,
            amount=str(result.intent.amount),
            currency=result.intent.currency,
        )
        return await self.payments.handle_webhook_event(body, signature)


@pytest.fixture
def env(session_factory, settings):
    return Env(session_factory, settings, {"SKU-A": 10, "SKU-B": 10, "SKU-C": 0})
