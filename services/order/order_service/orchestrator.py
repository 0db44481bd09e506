"""
Saga Orchestrator — 注文ライフサイクル Saga

Saga パターン（オーケストレーション型）:
  オーケストレーターが各ステップを順に実行し、途中で失敗したら
  それまでのステップの補償トランザクションを実行する。

  チェックアウトのフロー:
  ┌─────────────────────────────────────────────────────────────┐
  │  1. 合計金額を計算                                          │
  │  2. 注文を DRAFT で作成                                     │
  │  3. 在庫を予約                                              │
  │     └─ 失敗 → 注文をキャンセル (決済には進まない)           │
  │  4. 決済インテントを作成                                    │
  │     └─ 失敗 → 在庫予約を解放 → 注文をキャンセル (補償)      │
  │  5. インテントを返す                                        │
  │     → 確定は決済 Webhook 経由で非同期に行われる             │
  └─────────────────────────────────────────────────────────────┘

  在庫予約を決済より先に行う: 未確定の予約の解放は安全で安価だが、
  確定済み決済の取り消し (返金) は手数料・遅延・顧客への影響を伴う。
"""

import logging
import secrets
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import async_sessionmaker

from . import queries
from .bus import EventBus
from .errors import (
    BusinessRuleViolation,
    ExternalServiceError,
    PaymentFailed,
    StateConflict,
    ValidationError,
)
from .events import OrderCancelled, OrderCreated, OrderStatusChanged
from .inventory import InventoryCoordinator
from .models import (
    Cart,
    CheckoutResult,
    Order,
    OrderItem,
    Refund,
    RefundRequest,
)
from .payments import PaymentCoordinator
from .repository import unit_of_work
from .state_machine import OrderStatus, can_transition, transition
from .totals import ShippingRule, calculate_totals

logger = logging.getLogger(__name__)

FULFILMENT_STATUSES = frozenset(
    {OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED}
)


class CheckoutSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    tax_rate: Decimal
    shipping_rule: ShippingRule
    currency: str = "EUR"
    reservation_timeout_minutes: int = 30


def new_order_number(now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


class OrderSagaOrchestrator:
    """注文 Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        inventory: InventoryCoordinator,
        payments: PaymentCoordinator,
        bus: EventBus,
        settings: CheckoutSettings,
    ):
        self.session_factory = session_factory
        self.inventory = inventory
        self.payments = payments
        self.bus = bus
        self.settings = settings

    # ── チェックアウト ────────────────────────────

    async def create_order_from_cart(self, cart: Cart) -> CheckoutResult:
        """
        カートから注文を作り、在庫予約 → 決済インテント作成まで進める。

        在庫不足なら InsufficientStock (SKU 一覧付き)、外部障害なら
        ExternalServiceError を送出する。どちらの場合も注文は
        CANCELLED で残り、予約は残らない。
        """
        totals = calculate_totals(
            cart.items,
            self.settings.tax_rate,
            self.settings.shipping_rule,
            cart.discount,
            cart.region,
        )
        order = Order(
            order_number=new_order_number(),
            customer_id=cart.customer_id,
            guest_email=cart.guest_email,
            items=tuple(
                OrderItem(sku=item.sku, quantity=item.quantity, unit_price=item.unit_price)
                for item in cart.items
            ),
            currency=self.settings.currency,
            **totals.model_dump(),
        )

        # ── Step 1: 注文を作成 ──────────────────────
        async with unit_of_work(self.session_factory) as repo:
            await repo.add_order(order)
        await self.bus.publish(
            OrderCreated(
                order_id=order.id,
                customer=order.customer,
                order_number=order.order_number,
                total=order.total,
                currency=order.currency,
            )
        )
        logger.info("Order %s (%s) created, total %s", order.id, order.order_number, order.total)

        # ── Step 2, 3: 在庫予約 → 決済インテント ─────
        intent = await self._reserve_and_pay(order, attempt=1)

        return CheckoutResult(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status,
            totals=order.totals,
            intent=intent,
        )

    async def retry_payment(self, order_id: UUID) -> CheckoutResult:
        """一時的な決済失敗のあと、在庫を取り直して新しいインテントを作る。"""
        async with unit_of_work(self.session_factory) as repo:
            order = await repo.get_order(order_id)
            payments = await repo.list_payments(order_id)

        if order.status != OrderStatus.DRAFT:
            raise StateConflict(
                f"Only DRAFT orders can retry payment, order {order_id} is {order.status}",
                order_id=str(order_id),
                status=str(order.status),
            )
        last = payments[-1] if payments else None
        # 失敗後に遅れて入金された試行は返金済みなので、失敗として扱う
        if last is None or last.failure_reason is None:
            raise StateConflict(f"Order {order_id} has no failed payment to retry", order_id=str(order_id))
        if not last.retryable:
            raise PaymentFailed(last.failure_reason or "unknown", retryable=False)

        intent = await self._reserve_and_pay(order, attempt=order.retry_count + 1)
        return CheckoutResult(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status,
            totals=order.totals,
            intent=intent,
        )

    async def _reserve_and_pay(self, order: Order, attempt: int):
        saga_log: list[dict] = []

        saga_log.append({"step": "ReserveInventory", "status": "EXECUTING"})
        try:
            reservation = await self.inventory.reserve(
                order.id,
                order.items,
                self.settings.reservation_timeout_minutes,
                attempt=attempt,
            )
        except (BusinessRuleViolation, ExternalServiceError) as e:
            saga_log[-1].update(status="FAILED", error=e.message)
            await self._compensate(order, f"inventory reservation failed: {e.message}", saga_log)
            raise
        saga_log[-1]["status"] = "COMPLETED"

        try:
            async with unit_of_work(self.session_factory) as repo:
                order.reservation_ref = reservation.id
                order.updated_at = datetime.now(timezone.utc)
                await repo.save_order(
                    order,
                    "InventoryReserved",
                    {"holds": reservation.holds, "expires_at": reservation.expires_at.isoformat()},
                )
        except StateConflict:
            # 予約中に注文が他者に変更された (例: ユーザーのキャンセル)
            await self._release_or_defer(order.id)
            raise

        saga_log.append({"step": "CreatePaymentIntent", "status": "EXECUTING"})
        try:
            intent = await self.payments.create_intent(order)
        except ExternalServiceError as e:
            saga_log[-1].update(status="FAILED", error=e.message)
            saga_log.append({"step": "ReleaseInventory (COMPENSATING)", "status": "EXECUTING"})
            await self._release_or_defer(order.id)
            saga_log[-1]["status"] = "COMPLETED"
            await self._compensate(order, f"payment intent failed: {e.message}", saga_log)
            raise
        saga_log[-1]["status"] = "COMPLETED"

        logger.info("Checkout saga for order %s: %s", order.id, saga_log)
        return intent

    async def _compensate(self, order: Order, reason: str, saga_log: list[dict]) -> None:
        saga_log.append({"step": "CancelOrder (COMPENSATING)", "status": "EXECUTING"})
        cancelled = await self._cancel(order, reason, {"saga_log": saga_log})
        saga_log[-1]["status"] = "COMPLETED" if cancelled else "SKIPPED"
        logger.warning("Checkout saga for order %s compensated: %s", order.id, saga_log)

    async def _cancel(self, order: Order, reason: str, extra: dict | None = None) -> Order | None:
        """
        補償としてのキャンセル。

        バージョン競合で負けたら一度だけ再読み込みし、まだキャンセル可能なら
        やり直す。既にキャンセルできない状態なら何もしない。
        """
        data = {"reason": reason, **(extra or {})}
        for fresh in (False, True):
            try:
                async with unit_of_work(self.session_factory) as repo:
                    if fresh:
                        order = await repo.get_order(order.id)
                    if not can_transition(order.status, OrderStatus.CANCELLED):
                        logger.info(
                            "Order %s is %s, compensation cancel skipped", order.id, order.status
                        )
                        return None
                    transition(order, OrderStatus.CANCELLED)
                    await repo.save_order(order, "OrderCancelled", data)
                break
            except StateConflict:
                if fresh:
                    raise
        await self.bus.publish(
            OrderCancelled(order_id=order.id, customer=order.customer, reason=reason)
        )
        return order

    async def _release_or_defer(self, order_id: UUID) -> None:
        try:
            await self.inventory.release(order_id)
        except ExternalServiceError as e:
            logger.warning("Release for order %s deferred: %s", order_id, e.message)
            await self.bus.defer("inventory.release", {"order_id": str(order_id)})

    # ── 注文操作 ──────────────────────────────────

    async def get_order_status(self, order_id: UUID) -> dict:
        return await queries.get_order_status(self.session_factory, order_id)

    async def get_order_events(self, order_id: UUID) -> list[dict]:
        async with unit_of_work(self.session_factory) as repo:
            await repo.get_order(order_id)
            return await repo.load_events(order_id)

    async def cancel_order(self, order_id: UUID, reason: str = "") -> Order:
        """
        ユーザー操作のキャンセル。

        状態機械で検証し、バージョンチェック付きで書き込む。決済確定と
        競合して負けた場合は StateConflict を返す (黙って捨てない)。
        決済が確定済みなら全額を補償返金する。
        """
        reason = reason or "cancelled by customer"
        async with unit_of_work(self.session_factory) as repo:
            order = await repo.get_order(order_id)
            transition(order, OrderStatus.CANCELLED)
            await repo.save_order(order, "OrderCancelled", {"reason": reason})

        await self._release_or_defer(order.id)
        await self.payments.refund_captured(order.id, reason)
        await self.bus.publish(
            OrderCancelled(order_id=order.id, customer=order.customer, reason=reason)
        )
        logger.info("Order %s cancelled: %s", order.id, reason)
        return order

    async def advance_order(self, order_id: UUID, status: OrderStatus) -> Order:
        """出荷処理の進行 (PROCESSING / SHIPPED / DELIVERED)。"""
        status = OrderStatus(status)
        if status not in FULFILMENT_STATUSES:
            raise ValidationError(
                f"{status} is not a fulfilment status; use cancel or refund",
                field="status",
            )
        async with unit_of_work(self.session_factory) as repo:
            order = await repo.get_order(order_id)
            transition(order, status)
            await repo.save_order(order, "OrderStatusChanged")

        await self.bus.publish(
            OrderStatusChanged(order_id=order.id, customer=order.customer, status=status.value)
        )
        return order

    async def admin_refund(self, order_id: UUID, request: RefundRequest) -> Refund:
        return await self.payments.process_refund(order_id, request)

    async def set_admin_note(self, order_id: UUID, note: str) -> Order:
        async with unit_of_work(self.session_factory) as repo:
            order = await repo.get_order(order_id)
            order.admin_note = note
            order.updated_at = datetime.now(timezone.utc)
            await repo.save_order(order, "AdminNoteUpdated", {"note": note})
        return order

    # ── 放棄されたチェックアウトの期限切れ処理 ────

    async def expire_abandoned_checkouts(self, now: datetime | None = None) -> list[UUID]:
        """
        予約期限が切れた DRAFT 注文をキャンセルし、まだ ACTIVE の予約を解放する。

        再試行可能なエラーではなく補償アクション。Webhook が先に注文を
        確定していた場合 (競合で負けた場合) はスキップする。
        """
        expired = await self.inventory.expired_orders(now)
        cancelled: list[UUID] = []
        for order_id in expired:
            try:
                async with unit_of_work(self.session_factory) as repo:
                    order = await repo.get_order(order_id)
                    if order.status != OrderStatus.DRAFT:
                        continue
                    transition(order, OrderStatus.CANCELLED)
                    await repo.save_order(order, "OrderCancelled", {"reason": "reservation expired"})
            except StateConflict:
                logger.info("Order %s changed during expiry sweep, skipped", order_id)
                continue

            await self._release_or_defer(order_id)
            await self.bus.publish(
                OrderCancelled(order_id=order_id, customer=order.customer, reason="reservation expired")
            )
            cancelled.append(order_id)

        if cancelled:
            logger.info("Expired %d abandoned checkouts", len(cancelled))
        return cancelled
