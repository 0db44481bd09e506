"""
Order Service — 決済コーディネーター (Payment Coordinator)

  create_intent        : DRAFT の注文に対して決済インテントを作る
  handle_webhook_event : ゲートウェイからの署名付き Webhook を処理する
  process_refund       : 返金 (全額なら注文を REFUNDED に)

Webhook 処理の順序は固定:

  1. 署名検証 ── 失敗なら SecurityError。DB には一切触れない
  2. ペイロード検証
  3. 処理済みイベント集合で重複排除 (リプレイなら何もしない)
  4. 決済・注文の状態変更 (同一トランザクション)
  5. コミット後に副作用: 在庫確定/解放、請求書生成、イベント発行

副作用が外部障害で失敗した場合は deferred_tasks に回し、
コンシューマーループが後で再試行する (在庫確定・解放は冪等)。

順序が入れ替わって届いた入金 (失敗扱い後の成功、再決済後の古い試行の成功、
キャンセル後・予約失効後の成功) は注文を確定させず、その決済を全額返金する。
"""

import hashlib
import hmac
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Literal
from uuid import UUID

import pydantic
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .bus import EventBus
from .clients import InvoiceGenerator, PaymentGateway
from .errors import (
    BusinessRuleViolation,
    ExternalServiceError,
    InvalidTransition,
    SecurityError,
    StateConflict,
    ValidationError,
)
from .events import OrderCancelled, OrderConfirmed, OrderRefunded, PaymentCompleted, PaymentFailed
from .inventory import InventoryCoordinator
from .models import (
    Order,
    Payment,
    PaymentIntent,
    PaymentStatus,
    Refund,
    RefundRequest,
    RefundStatus,
    Reservation,
    ReservationStatus,
)
from .repository import unit_of_work
from .state_machine import OrderStatus, can_transition, transition
from .totals import quantize_money

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
REFUND_SUCCEEDED = "refund.succeeded"
REFUND_FAILED = "refund.failed"

# 再試行しても無駄な失敗 (不正の兆候)。それ以外の拒否は一時的とみなす
TERMINAL_FAILURE_CODES = frozenset(
    {
        "fraudulent",
        "stolen_card",
        "lost_card",
        "pickup_card",
        "merchant_blacklist",
        "security_violation",
    }
)

SIGNATURE_HEADER = "X-Gateway-Signature"


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature)


def is_retryable_failure(code: str | None) -> bool:
    return (code or "").lower() not in TERMINAL_FAILURE_CODES


def payment_key(order_id: UUID, attempt: int) -> str:
    return f"{order_id}:{attempt}"


HOLDS_LOST = "inventory reservation is no longer held"


def capture_conflict(
    order: Order,
    payment: Payment,
    previous: PaymentStatus,
    reservation: Reservation | None,
    now: datetime | None = None,
) -> str | None:
    """
    入金を注文の確定に使えない理由を返す。None なら確定してよい。

    確定できるのは、DRAFT 注文の現在の決済試行で、かつ在庫予約が
    有効期限内に ACTIVE で残っている場合だけ。HOLDS_LOST の場合に限り
    注文もキャンセルする (現在の試行だが在庫の裏付けがない)。
    """
    if order.status == OrderStatus.CANCELLED:
        return "order was cancelled"
    if order.status != OrderStatus.DRAFT:
        return f"order is already {order.status.value}"
    if previous == PaymentStatus.FAILED or order.payment_ref != payment.id:
        return "payment attempt was superseded"
    if (
        reservation is None
        or reservation.status != ReservationStatus.ACTIVE
        or reservation.is_expired(now)
    ):
        return HOLDS_LOST
    return None


class WebhookData(BaseModel):
    intent_id: str | None = None
    charge_id: str | None = None
    refund_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None


class WebhookEvent(BaseModel):
    id: str
    type: str
    data: WebhookData


class WebhookOutcome(BaseModel):
    event_id: str
    status: Literal["processed", "duplicate", "ignored"]
    order_id: UUID | None = None
    order_status: OrderStatus | None = None
    detail: str = ""


class PaymentCoordinator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: PaymentGateway,
        inventory: InventoryCoordinator,
        invoices: InvoiceGenerator,
        bus: EventBus,
        webhook_secret: str,
        *,
        intent_ttl_minutes: int = 15,
        max_attempts: int = 3,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.inventory = inventory
        self.invoices = invoices
        self.bus = bus
        self.webhook_secret = webhook_secret
        self.intent_ttl = timedelta(minutes=intent_ttl_minutes)
        self.max_attempts = max_attempts

    # ── 決済インテント ────────────────────────────

    async def create_intent(self, order: Order) -> PaymentIntent:
        """
        注文金額で決済インテントを作り、PENDING の Payment を記録する。

        order は呼び出し側が読み込んだもの。その version のまま
        payment_ref を書き込むので、並行して状態が変わっていれば
        StateConflict になる。
        """
        if order.status != OrderStatus.DRAFT:
            raise StateConflict(
                f"Payment intent requires a DRAFT order, order {order.id} is {order.status}",
                order_id=str(order.id),
                status=str(order.status),
            )

        attempt = order.retry_count + 1
        intent = await self.gateway.create_intent(
            order.total,
            order.currency,
            {
                "order_id": str(order.id),
                "order_number": order.order_number,
                "attempt": attempt,
            },
            idempotency_key=payment_key(order.id, attempt),
        )

        payment = Payment(
            order_id=order.id,
            amount=order.total,
            currency=order.currency,
            intent_id=intent.id,
            attempt=attempt,
        )
        async with unit_of_work(self.session_factory) as repo:
            await repo.add_payment(payment)
            order.payment_ref = payment.id
            await repo.save_order(
                order,
                "PaymentIntentCreated",
                {"payment_id": str(payment.id), "intent_id": intent.id, "attempt": attempt},
            )

        logger.info("Created payment intent %s for order %s (attempt %d)", intent.id, order.id, attempt)
        return PaymentIntent(
            payment_id=payment.id,
            order_id=order.id,
            intent_id=intent.id,
            client_secret=intent.client_secret,
            amount=payment.amount,
            currency=payment.currency,
            expires_at=datetime.now(timezone.utc) + self.intent_ttl,
        )

    # ── Webhook ──────────────────────────────────

    async def handle_webhook_event(self, body: bytes, signature: str | None) -> WebhookOutcome:
        if not verify_signature(self.webhook_secret, body, signature):
            logger.warning("Rejected payment webhook with invalid signature")
            raise SecurityError("Invalid webhook signature")

        try:
            event = WebhookEvent.model_validate_json(body)
        except pydantic.ValidationError as e:
            raise ValidationError(
                "Malformed webhook payload", errors=[err["msg"] for err in e.errors()]
            ) from e

        handler = {
            PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            PAYMENT_FAILED: self._on_payment_failed,
            REFUND_SUCCEEDED: self._on_refund_settled,
            REFUND_FAILED: self._on_refund_settled,
        }.get(event.type)
        if handler is None:
            return WebhookOutcome(event_id=event.id, status="ignored", detail=event.type)

        try:
            return await handler(event)
        except IntegrityError:
            # 同じイベントの並行配信。先に挿入した側が処理している
            logger.info("Webhook event %s is being processed concurrently", event.id)
            return WebhookOutcome(event_id=event.id, status="duplicate")

    async def _on_payment_succeeded(self, event: WebhookEvent) -> WebhookOutcome:
        data = event.data
        async with unit_of_work(self.session_factory) as repo:
            if await repo.is_event_processed(event.id):
                return WebhookOutcome(event_id=event.id, status="duplicate")
            await repo.mark_event_processed(event.id, event.type)

            payment = await self._payment_for(repo, data)
            if payment.status == PaymentStatus.COMPLETED:
                return WebhookOutcome(
                    event_id=event.id,
                    status="duplicate",
                    order_id=payment.order_id,
                    detail="payment already completed",
                )
            previous = payment.status

            payment.status = PaymentStatus.COMPLETED
            payment.charge_id = data.charge_id
            payment.completed_at = datetime.now(timezone.utc)
            await repo.update_payment(payment)

            order = await repo.get_order(payment.order_id)
            reservation = await repo.get_reservation(order.id)
            conflict = capture_conflict(order, payment, previous, reservation)
            if conflict == HOLDS_LOST:
                transition(order, OrderStatus.CANCELLED)
                await repo.save_order(order, "OrderCancelled", {"reason": f"payment captured but {conflict}"})
            elif conflict is None:
                transition(order, OrderStatus.CONFIRMED)
                await repo.save_order(order, "OrderConfirmed", {"payment_id": str(payment.id)})

        await self.bus.publish(
            PaymentCompleted(
                order_id=order.id,
                customer=order.customer,
                payment_id=payment.id,
                charge_id=payment.charge_id,
                amount=payment.amount,
                currency=payment.currency,
            )
        )

        if conflict is not None:
            # 入金は記録済み。この決済だけを全額返金し、注文は確定させない
            logger.warning(
                "Payment %s captured for order %s but %s, refunding", payment.id, order.id, conflict
            )
            if conflict == HOLDS_LOST:
                await self._run_or_defer(
                    "inventory.release",
                    {"order_id": str(order.id)},
                    lambda: self.inventory.release(order.id),
                )
                await self.bus.publish(
                    OrderCancelled(
                        order_id=order.id,
                        customer=order.customer,
                        reason=f"payment captured but {conflict}",
                    )
                )
            await self.refund_captured(
                order.id, f"payment captured but {conflict}", payment_id=payment.id
            )
            return WebhookOutcome(
                event_id=event.id,
                status="processed",
                order_id=order.id,
                order_status=order.status,
                detail=f"refunded: {conflict}",
            )

        await self._run_or_defer(
            "inventory.confirm",
            {"order_id": str(order.id)},
            lambda: self.inventory.confirm(order.id),
        )
        await self._run_or_defer(
            "invoice.generate",
            {"order_id": str(order.id), "order": order.snapshot()},
            lambda: self.invoices.generate(order.snapshot()),
        )
        await self.bus.publish(
            OrderConfirmed(
                order_id=order.id,
                customer=order.customer,
                order_number=order.order_number,
                total=order.total,
                currency=order.currency,
            )
        )
        logger.info("Order %s confirmed by payment %s", order.id, payment.id)
        return WebhookOutcome(
            event_id=event.id, status="processed", order_id=order.id, order_status=order.status
        )

    async def _on_payment_failed(self, event: WebhookEvent) -> WebhookOutcome:
        data = event.data
        reason = data.failure_message or data.failure_code or "unknown"
        retryable = is_retryable_failure(data.failure_code)
        cancelled = False

        async with unit_of_work(self.session_factory) as repo:
            if await repo.is_event_processed(event.id):
                return WebhookOutcome(event_id=event.id, status="duplicate")
            await repo.mark_event_processed(event.id, event.type)

            payment = await self._payment_for(repo, data)
            if payment.status != PaymentStatus.PENDING:
                return WebhookOutcome(
                    event_id=event.id,
                    status="duplicate",
                    order_id=payment.order_id,
                    detail=f"payment already {payment.status.value}",
                )

            payment.status = PaymentStatus.FAILED
            payment.failure_reason = reason
            payment.retryable = retryable
            await repo.update_payment(payment)

            order = await repo.get_order(payment.order_id)
            if order.status == OrderStatus.DRAFT:
                if retryable and order.retry_count + 1 < self.max_attempts:
                    order.retry_count += 1
                    order.updated_at = datetime.now(timezone.utc)
                    await repo.save_order(
                        order,
                        "PaymentRetryable",
                        {"reason": reason, "retry_count": order.retry_count},
                    )
                else:
                    transition(order, OrderStatus.CANCELLED)
                    await repo.save_order(order, "OrderCancelled", {"reason": f"payment failed: {reason}"})
                    cancelled = True

        await self._run_or_defer(
            "inventory.release",
            {"order_id": str(order.id)},
            lambda: self.inventory.release(order.id),
        )
        await self.bus.publish(
            PaymentFailed(
                order_id=order.id,
                customer=order.customer,
                payment_id=payment.id,
                reason=reason,
                retryable=retryable and not cancelled,
            )
        )
        if cancelled:
            await self.bus.publish(
                OrderCancelled(order_id=order.id, customer=order.customer, reason=f"payment failed: {reason}")
            )
        logger.info(
            "Payment %s for order %s failed (%s, retryable=%s)",
            payment.id, order.id, reason, retryable and not cancelled,
        )
        return WebhookOutcome(
            event_id=event.id, status="processed", order_id=order.id, order_status=order.status, detail=reason
        )

    async def _on_refund_settled(self, event: WebhookEvent) -> WebhookOutcome:
        status = RefundStatus.COMPLETED if event.type == REFUND_SUCCEEDED else RefundStatus.FAILED
        async with unit_of_work(self.session_factory) as repo:
            if await repo.is_event_processed(event.id):
                return WebhookOutcome(event_id=event.id, status="duplicate")
            await repo.mark_event_processed(event.id, event.type)

            refund = await repo.get_refund_by_gateway_id(event.data.refund_id or "")
            if refund is None:
                raise ValidationError(f"Unknown refund {event.data.refund_id}")
            await repo.set_refund_status(refund.id, status)

        if status == RefundStatus.FAILED:
            logger.error("Refund %s for order %s failed at the gateway", refund.id, refund.order_id)
        return WebhookOutcome(
            event_id=event.id, status="processed", order_id=refund.order_id, detail=status.value
        )

    async def _payment_for(self, repo, data: WebhookData) -> Payment:
        payment = await repo.get_payment_by_intent(data.intent_id or "")
        if payment is None:
            raise ValidationError(f"Unknown payment intent {data.intent_id}")
        return payment

    async def _run_or_defer(
        self,
        task: str,
        payload: dict,
        operation: Callable[[], Awaitable[object]],
    ) -> None:
        try:
            await operation()
        except ExternalServiceError as e:
            logger.warning("%s for order %s deferred: %s", task, payload["order_id"], e.message)
            await self.bus.defer(task, payload)

    # ── 返金 ──────────────────────────────────────

    async def process_refund(
        self,
        order_id: UUID,
        request: RefundRequest,
        *,
        payment_id: UUID | None = None,
        transition_order: bool = True,
    ) -> Refund:
        """
        確定済み決済から返金する。

        payment_id を省略すると最新の確定済み決済 (注文を確定させた決済) が対象。
        返金額は「決済額 − 返金済み額」以下でなければならない。
        全額返金になる場合は、REFUNDED への遷移が許可されていることを
        ゲートウェイ呼び出しの前に確認する。
        """
        amount = quantize_money(request.amount)
        if amount <= 0:
            raise ValidationError("Refund amount must be positive", field="amount")

        async with unit_of_work(self.session_factory) as repo:
            order = await repo.get_order(order_id)
            payment = await self._captured_payment(repo, order_id, payment_id)
            if payment is None:
                raise BusinessRuleViolation(
                    f"Order {order_id} has no captured payment", order_id=str(order_id)
                )
            refunded = await repo.refunded_amount(payment.id)
            refundable = payment.amount - refunded
            if amount > refundable:
                raise BusinessRuleViolation(
                    f"Refund of {amount} exceeds refundable amount {refundable}",
                    captured=str(payment.amount),
                    refundable=str(refundable),
                    requested=str(amount),
                )
            full = amount == refundable
            if full and transition_order and not can_transition(order.status, OrderStatus.REFUNDED):
                raise InvalidTransition(order.status, OrderStatus.REFUNDED)
            sequence = len(await repo.list_refunds(order_id)) + 1

        gateway_refund = await self.gateway.refund(
            payment.charge_id or payment.intent_id,
            amount,
            idempotency_key=f"{order_id}:refund:{sequence}",
        )

        refund = Refund(
            order_id=order_id,
            payment_id=payment.id,
            amount=amount,
            reason=request.reason,
            gateway_refund_id=gateway_refund.id,
        )
        try:
            async with unit_of_work(self.session_factory) as repo:
                await repo.add_refund(refund)
        except IntegrityError as e:
            # 並行した返金が同じ冪等キーを使い、ゲートウェイが同じ返金を返した
            raise StateConflict(
                f"Refund {gateway_refund.id} for order {order_id} was already recorded",
                order_id=str(order_id),
                gateway_refund_id=gateway_refund.id,
            ) from e

        if full and transition_order:
            async with unit_of_work(self.session_factory) as repo:
                order = await repo.get_order(order_id)
                transition(order, OrderStatus.REFUNDED)
                await repo.save_order(
                    order, "OrderRefunded", {"refund_id": str(refund.id), "amount": str(amount)}
                )

        await self.bus.publish(
            OrderRefunded(order_id=order_id, customer=order.customer, amount=amount, full=full)
        )
        logger.info("Refunded %s for order %s (full=%s)", amount, order_id, full)
        return refund

    async def refund_captured(
        self, order_id: UUID, reason: str, *, payment_id: UUID | None = None
    ) -> Refund | None:
        """補償返金: 決済の残額をすべて返す。注文の状態は変えない。"""
        async with unit_of_work(self.session_factory) as repo:
            payment = await self._captured_payment(repo, order_id, payment_id)
            if payment is None:
                return None
            refundable = payment.amount - await repo.refunded_amount(payment.id)
        if refundable <= 0:
            return None
        return await self.process_refund(
            order_id,
            RefundRequest(amount=refundable, reason=reason),
            payment_id=payment.id,
            transition_order=False,
        )

    async def _captured_payment(
        self, repo, order_id: UUID, payment_id: UUID | None
    ) -> Payment | None:
        if payment_id is None:
            return await repo.get_completed_payment(order_id)
        payment = await repo.get_payment(payment_id)
        if (
            payment is None
            or payment.order_id != order_id
            or payment.status != PaymentStatus.COMPLETED
        ):
            return None
        return payment
