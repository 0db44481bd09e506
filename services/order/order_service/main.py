"""
Order Service — FastAPI エントリーポイント

チェックアウト (Saga の起点)、注文照会・キャンセル、管理操作、
決済ゲートウェイからの Webhook を HTTP API として公開する。

バックグラウンドでは次の 3 つが動く (RUN_BACKGROUND_WORKERS=0 で無効化):
  - 通知コンシューマー      : order_events / payment_events → 通知送信
  - 後回しタスクコンシューマー: deferred_tasks → 在庫確定/解放、請求書生成
  - 期限切れスイーパー      : 放棄されたチェックアウトのキャンセル
"""

import asyncio
import json
import logging
import os
import socket
from contextlib import asynccontextmanager
from decimal import Decimal
from uuid import UUID

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from . import schema
from .bus import DEFERRED_TASKS, Consumer, EventBus
from .clients import InvoiceClient, NotificationClient, PaymentGatewayClient, StockServiceClient
from .errors import CircuitOpenError, OrderServiceError
from .events import ORDER_EVENTS, PAYMENT_EVENTS
from .inventory import InventoryCoordinator
from .models import Cart, CheckoutResult, Order, Refund, RefundRequest
from .orchestrator import CheckoutSettings, OrderSagaOrchestrator
from .payments import SIGNATURE_HEADER, PaymentCoordinator, WebhookOutcome
from .resilience import CircuitBreaker, Retry
from .state_machine import OrderStatus
from .totals import ShippingRule
from .workers import deferred_task_handlers, notification_handlers, run_sweeper

DATABASE_URL = os.environ["DATABASE_URL"]
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
STOCK_SERVICE_URL = os.environ.get("STOCK_SERVICE_URL", "http://localhost:8002")
PAYMENT_GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL", "http://localhost:8010")
PAYMENT_GATEWAY_API_KEY = os.environ.get("PAYMENT_GATEWAY_API_KEY", "")
PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "")
INVOICE_SERVICE_URL = os.environ.get("INVOICE_SERVICE_URL", "http://localhost:8011")
NOTIFICATION_SERVICE_URL = os.environ.get("NOTIFICATION_SERVICE_URL", "http://localhost:8012")

CURRENCY = os.environ.get("CURRENCY", "EUR")
TAX_RATE = Decimal(os.environ.get("TAX_RATE", "0.19"))
SHIPPING_FLAT_RATE = Decimal(os.environ.get("SHIPPING_FLAT_RATE", "4.99"))
SHIPPING_REGION_RATES = {
    region: Decimal(str(rate))
    for region, rate in json.loads(os.environ.get("SHIPPING_REGION_RATES", "{}")).items()
}
FREE_SHIPPING_THRESHOLD = os.environ.get("FREE_SHIPPING_THRESHOLD")

RESERVATION_TIMEOUT_MINUTES = int(os.environ.get("RESERVATION_TIMEOUT_MINUTES", "30"))
PAYMENT_INTENT_TTL_MINUTES = int(os.environ.get("PAYMENT_INTENT_TTL_MINUTES", "15"))
MAX_PAYMENT_ATTEMPTS = int(os.environ.get("MAX_PAYMENT_ATTEMPTS", "3"))
SWEEP_INTERVAL_SECONDS = float(os.environ.get("SWEEP_INTERVAL_SECONDS", "60"))
RUN_BACKGROUND_WORKERS = os.environ.get("RUN_BACKGROUND_WORKERS", "1") == "1"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, expire_on_commit=False)


def checkout_settings() -> CheckoutSettings:
    return CheckoutSettings(
        tax_rate=TAX_RATE,
        shipping_rule=ShippingRule(
            flat_rate=SHIPPING_FLAT_RATE,
            region_rates=SHIPPING_REGION_RATES,
            free_shipping_threshold=(
                Decimal(FREE_SHIPPING_THRESHOLD) if FREE_SHIPPING_THRESHOLD else None
            ),
        ),
        currency=CURRENCY,
        reservation_timeout_minutes=RESERVATION_TIMEOUT_MINUTES,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    await schema.create_all(engine)
    redis_pool = aioredis.from_url(REDIS_URL, decode_responses=True)
    bus = EventBus(redis_pool)

    retry = Retry()
    stock = StockServiceClient(
        STOCK_SERVICE_URL, retry=retry, breaker=CircuitBreaker("stock-service")
    )
    gateway = PaymentGatewayClient(
        PAYMENT_GATEWAY_URL,
        PAYMENT_GATEWAY_API_KEY,
        retry=retry,
        breaker=CircuitBreaker("payment-gateway"),
    )
    invoices = InvoiceClient(
        INVOICE_SERVICE_URL, retry=retry, breaker=CircuitBreaker("invoice-generator")
    )
    notifier = NotificationClient(NOTIFICATION_SERVICE_URL, retry=Retry(times=1))

    inventory = InventoryCoordinator(stock, async_session, RESERVATION_TIMEOUT_MINUTES)
    payments = PaymentCoordinator(
        async_session,
        gateway,
        inventory,
        invoices,
        bus,
        PAYMENT_WEBHOOK_SECRET,
        intent_ttl_minutes=PAYMENT_INTENT_TTL_MINUTES,
        max_attempts=MAX_PAYMENT_ATTEMPTS,
    )
    app.state.orchestrator = OrderSagaOrchestrator(
        async_session, inventory, payments, bus, checkout_settings()
    )

    shutdown_event = asyncio.Event()
    tasks: list[asyncio.Task] = []
    if RUN_BACKGROUND_WORKERS:
        name = socket.gethostname()
        notifications = Consumer(
            redis_pool,
            "notifications",
            name,
            [ORDER_EVENTS, PAYMENT_EVENTS],
            notification_handlers(notifier),
        )
        deferred = Consumer(
            redis_pool,
            "order-service",
            name,
            [DEFERRED_TASKS],
            deferred_task_handlers(inventory, invoices),
        )
        tasks = [
            asyncio.create_task(notifications.run(shutdown_event)),
            asyncio.create_task(deferred.run(shutdown_event)),
            asyncio.create_task(
                run_sweeper(app.state.orchestrator, SWEEP_INTERVAL_SECONDS, shutdown_event)
            ),
        ]
    yield
    shutdown_event.set()
    await asyncio.gather(*tasks, return_exceptions=True)
    for client in (stock, gateway, invoices, notifier):
        await client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


def get_orchestrator(request: Request) -> OrderSagaOrchestrator:
    return request.app.state.orchestrator


# ── 例外ハンドラ ──────────────────────────────────

@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    headers = None
    if isinstance(exc, CircuitOpenError):
        headers = {"Retry-After": str(int(exc.details["retry_after"]) + 1)}
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "error": "validation_error",
            "detail": "Invalid request",
            "errors": [
                {"loc": [str(part) for part in err["loc"]], "msg": err["msg"]}
                for err in exc.errors()
            ],
        },
    )


# ── Request Models ───────────────────────────────

class CancelRequest(BaseModel):
    reason: str = ""


class StatusRequest(BaseModel):
    status: OrderStatus


class NoteRequest(BaseModel):
    note: str


def _order_summary(order: Order) -> dict:
    return {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "status": order.status.value,
        "version": order.version,
    }


# ── 顧客向け ─────────────────────────────────────

@app.post("/orders", status_code=201, response_model=CheckoutResult)
async def create_order(
    cart: Cart, orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator)
):
    """チェックアウト: 在庫予約と決済インテント作成まで進める"""
    return await orchestrator.create_order_from_cart(cart)


@app.get("/orders/{order_id}")
async def get_order(
    order_id: UUID, orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator)
):
    return await orchestrator.get_order_status(order_id)


@app.get("/orders/{order_id}/events")
async def get_order_events(
    order_id: UUID, orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator)
):
    """監査証跡"""
    return await orchestrator.get_order_events(order_id)


@app.post("/orders/{order_id}/cancel")
async def cancel_order(
    order_id: UUID,
    req: CancelRequest | None = None,
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    order = await orchestrator.cancel_order(order_id, req.reason if req else "")
    return _order_summary(order)


@app.post("/orders/{order_id}/retry-payment", response_model=CheckoutResult)
async def retry_payment(
    order_id: UUID, orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator)
):
    return await orchestrator.retry_payment(order_id)


# ── 管理者向け ───────────────────────────────────

@app.post("/admin/orders/{order_id}/refunds", status_code=201, response_model=Refund)
async def admin_refund(
    order_id: UUID,
    req: RefundRequest,
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    return await orchestrator.admin_refund(order_id, req)


@app.post("/admin/orders/{order_id}/status")
async def advance_order(
    order_id: UUID,
    req: StatusRequest,
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    order = await orchestrator.advance_order(order_id, req.status)
    return _order_summary(order)


@app.put("/admin/orders/{order_id}/note")
async def set_admin_note(
    order_id: UUID,
    req: NoteRequest,
    orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator),
):
    order = await orchestrator.set_admin_note(order_id, req.note)
    return {**_order_summary(order), "admin_note": order.admin_note}


# ── 決済ゲートウェイ Webhook ─────────────────────

@app.post("/webhooks/payments", response_model=WebhookOutcome)
async def payment_webhook(
    request: Request, orchestrator: OrderSagaOrchestrator = Depends(get_orchestrator)
):
    """署名検証は生のボディに対して行うので、パース前のバイト列を渡す"""
    body = await request.body()
    return await orchestrator.payments.handle_webhook_event(
        body, request.headers.get(SIGNATURE_HEADER)
    )


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
