"""
Order Service — リポジトリとユニットオブワーク

注文の書き込みはすべて楽観的ロック:

    UPDATE orders SET ..., version = :expected + 1
    WHERE id = :id AND version = :expected

更新行数が 0 なら他のアクター (チェックアウト / Webhook / キャンセル)
が先に書き込んでいる → StateConflict。負けた側は再取得して判断する。

unit_of_work() は状態変更と監査イベントの追記を 1 トランザクションで包み、
中のすべてのステップが成功したときだけコミットする。
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import event_store, schema
from .errors import OrderNotFound, StateConflict
from .models import (
    Order,
    OrderItem,
    Payment,
    PaymentStatus,
    Refund,
    RefundStatus,
    Reservation,
    ReservationStatus,
)
from .state_machine import OrderStatus
from .totals import quantize_money


def _aware(value: datetime | None) -> datetime | None:
    # SQLite は tzinfo を保持しない
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _money(value) -> Decimal:
    # SQLite は NUMERIC を float で返すことがある
    return quantize_money(value if isinstance(value, Decimal) else Decimal(str(value)))


def _uuid(value) -> UUID | None:
    return UUID(value) if value else None


def _order_from_row(row) -> Order:
    return Order(
        id=UUID(row.id),
        order_number=row.order_number,
        status=OrderStatus(row.status),
        customer_id=row.customer_id,
        guest_email=row.guest_email,
        items=tuple(OrderItem(**item) for item in row.items),
        subtotal=_money(row.subtotal),
        tax=_money(row.tax),
        shipping=_money(row.shipping),
        discount=_money(row.discount),
        total=_money(row.total),
        currency=row.currency,
        payment_ref=_uuid(row.payment_ref),
        reservation_ref=_uuid(row.reservation_ref),
        version=row.version,
        retry_count=row.retry_count,
        admin_note=row.admin_note,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _order_values(order: Order) -> dict:
    return {
        "status": order.status.value,
        "payment_ref": str(order.payment_ref) if order.payment_ref else None,
        "reservation_ref": str(order.reservation_ref) if order.reservation_ref else None,
        "retry_count": order.retry_count,
        "admin_note": order.admin_note,
        "updated_at": order.updated_at,
    }


def _payment_from_row(row) -> Payment:
    return Payment(
        id=UUID(row.id),
        order_id=UUID(row.order_id),
        amount=_money(row.amount),
        currency=row.currency,
        status=PaymentStatus(row.status),
        intent_id=row.intent_id,
        charge_id=row.charge_id,
        attempt=row.attempt,
        completed_at=_aware(row.completed_at),
        failure_reason=row.failure_reason,
        retryable=row.retryable,
        created_at=_aware(row.created_at),
    )


def _refund_from_row(row) -> Refund:
    return Refund(
        id=UUID(row.id),
        order_id=UUID(row.order_id),
        payment_id=UUID(row.payment_id),
        amount=_money(row.amount),
        reason=row.reason,
        status=RefundStatus(row.status),
        gateway_refund_id=row.gateway_refund_id,
        created_at=_aware(row.created_at),
    )


def _reservation_from_row(row) -> Reservation:
    return Reservation(
        id=UUID(row.id),
        order_id=UUID(row.order_id),
        holds=dict(row.holds),
        expires_at=_aware(row.expires_at),
        status=ReservationStatus(row.status),
        created_at=_aware(row.created_at),
    )


class OrderRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── 注文 ──────────────────────────────────────

    async def add_order(self, order: Order, event_type: str = "OrderCreated") -> Order:
        order.version = 1
        await self.session.execute(
            insert(schema.orders).values(
                id=str(order.id),
                order_number=order.order_number,
                customer_id=order.customer_id,
                guest_email=order.guest_email,
                items=[item.model_dump(mode="json") for item in order.items],
                subtotal=order.subtotal,
                tax=order.tax,
                shipping=order.shipping,
                discount=order.discount,
                total=order.total,
                currency=order.currency,
                version=order.version,
                created_at=order.created_at,
                **_order_values(order),
            )
        )
        await event_store.append_event(
            self.session, order.id, "Order", event_type, order.snapshot(), order.version
        )
        return order

    async def get_order(self, order_id: UUID) -> Order:
        result = await self.session.execute(
            select(schema.orders).where(schema.orders.c.id == str(order_id))
        )
        row = result.fetchone()
        if row is None:
            raise OrderNotFound(order_id)
        return _order_from_row(row)

    async def save_order(self, order: Order, event_type: str, event_data: dict | None = None) -> Order:
        """
        バージョンチェック付きで注文を保存し、監査イベントを追記する。

        読み込み時の version のまま他者が書き込んでいなければ成功し、
        order.version を +1 する。負けた場合は StateConflict。
        """
        expected = order.version
        result = await self.session.execute(
            update(schema.orders)
            .where(
                and_(
                    schema.orders.c.id == str(order.id),
                    schema.orders.c.version == expected,
                )
            )
            .values(version=expected + 1, **_order_values(order))
        )
        if result.rowcount != 1:
            raise StateConflict(
                f"Order {order.id} was modified concurrently (expected version {expected})",
                order_id=str(order.id),
                expected_version=expected,
            )
        order.version = expected + 1
        data = {"order_id": str(order.id), "status": order.status.value}
        data.update(event_data or {})
        await event_store.append_event(
            self.session, order.id, "Order", event_type, data, order.version
        )
        return order

    async def list_expired_drafts(self, now: datetime, limit: int = 100) -> list[UUID]:
        """
        予約期限切れのまま DRAFT に残っている注文 (放棄されたチェックアウト)。

        再試行可能な決済失敗で予約が RELEASED になり、そのまま
        再決済されなかった注文も含む。
        """
        result = await self.session.execute(
            select(schema.orders.c.id)
            .join(
                schema.reservations,
                schema.reservations.c.order_id == schema.orders.c.id,
            )
            .where(
                and_(
                    schema.orders.c.status == OrderStatus.DRAFT.value,
                    schema.reservations.c.status.in_(
                        [ReservationStatus.ACTIVE.value, ReservationStatus.RELEASED.value]
                    ),
                    schema.reservations.c.expires_at < now,
                )
            )
            .order_by(schema.reservations.c.expires_at)
            .limit(limit)
        )
        return [UUID(row.id) for row in result.fetchall()]

    async def load_events(self, order_id: UUID) -> list[dict]:
        return await event_store.load_events(self.session, order_id)

    # ── 決済 ──────────────────────────────────────

    async def add_payment(self, payment: Payment) -> Payment:
        await self.session.execute(
            insert(schema.payments).values(
                id=str(payment.id),
                order_id=str(payment.order_id),
                amount=payment.amount,
                currency=payment.currency,
                status=payment.status.value,
                intent_id=payment.intent_id,
                charge_id=payment.charge_id,
                attempt=payment.attempt,
                completed_at=payment.completed_at,
                failure_reason=payment.failure_reason,
                retryable=payment.retryable,
                created_at=payment.created_at,
            )
        )
        return payment

    async def update_payment(self, payment: Payment) -> Payment:
        await self.session.execute(
            update(schema.payments)
            .where(schema.payments.c.id == str(payment.id))
            .values(
                status=payment.status.value,
                charge_id=payment.charge_id,
                completed_at=payment.completed_at,
                failure_reason=payment.failure_reason,
                retryable=payment.retryable,
            )
        )
        return payment

    async def get_payment(self, payment_id: UUID) -> Payment | None:
        result = await self.session.execute(
            select(schema.payments).where(schema.payments.c.id == str(payment_id))
        )
        row = result.fetchone()
        return _payment_from_row(row) if row else None

    async def get_payment_by_intent(self, intent_id: str) -> Payment | None:
        result = await self.session.execute(
            select(schema.payments).where(schema.payments.c.intent_id == intent_id)
        )
        row = result.fetchone()
        return _payment_from_row(row) if row else None

    async def get_completed_payment(self, order_id: UUID) -> Payment | None:
        result = await self.session.execute(
            select(schema.payments)
            .where(
                and_(
                    schema.payments.c.order_id == str(order_id),
                    schema.payments.c.status == PaymentStatus.COMPLETED.value,
                )
            )
            .order_by(schema.payments.c.attempt.desc())
        )
        row = result.first()
        return _payment_from_row(row) if row else None

    async def list_payments(self, order_id: UUID) -> list[Payment]:
        result = await self.session.execute(
            select(schema.payments)
            .where(schema.payments.c.order_id == str(order_id))
            .order_by(schema.payments.c.attempt)
        )
        return [_payment_from_row(row) for row in result.fetchall()]

    # ── 返金 ──────────────────────────────────────

    async def add_refund(self, refund: Refund) -> Refund:
        await self.session.execute(
            insert(schema.refunds).values(
                id=str(refund.id),
                order_id=str(refund.order_id),
                payment_id=str(refund.payment_id),
                amount=refund.amount,
                reason=refund.reason,
                status=refund.status.value,
                gateway_refund_id=refund.gateway_refund_id,
                created_at=refund.created_at,
            )
        )
        return refund

    async def get_refund_by_gateway_id(self, gateway_refund_id: str) -> Refund | None:
        result = await self.session.execute(
            select(schema.refunds).where(schema.refunds.c.gateway_refund_id == gateway_refund_id)
        )
        row = result.fetchone()
        return _refund_from_row(row) if row else None

    async def set_refund_status(self, refund_id: UUID, status: RefundStatus) -> None:
        await self.session.execute(
            update(schema.refunds)
            .where(schema.refunds.c.id == str(refund_id))
            .values(status=status.value)
        )

    async def list_refunds(self, order_id: UUID) -> list[Refund]:
        result = await self.session.execute(
            select(schema.refunds)
            .where(schema.refunds.c.order_id == str(order_id))
            .order_by(schema.refunds.c.created_at)
        )
        return [_refund_from_row(row) for row in result.fetchall()]

    async def refunded_amount(self, payment_id: UUID) -> Decimal:
        """返金済み + 処理中の合計。失敗した返金は数えない。"""
        result = await self.session.execute(
            select(func.coalesce(func.sum(schema.refunds.c.amount), 0)).where(
                and_(
                    schema.refunds.c.payment_id == str(payment_id),
                    schema.refunds.c.status != RefundStatus.FAILED.value,
                )
            )
        )
        return _money(result.scalar_one())

    # ── 在庫予約 ──────────────────────────────────

    async def add_reservation(self, reservation: Reservation) -> Reservation:
        await self.session.execute(
            insert(schema.reservations).values(
                id=str(reservation.id),
                order_id=str(reservation.order_id),
                holds=reservation.holds,
                expires_at=reservation.expires_at,
                status=reservation.status.value,
                created_at=reservation.created_at,
            )
        )
        return reservation

    async def replace_reservation(self, reservation: Reservation) -> Reservation:
        """再決済時の再予約: 注文ごとに 1 行なので古い行を上書きする。"""
        result = await self.session.execute(
            update(schema.reservations)
            .where(schema.reservations.c.order_id == str(reservation.order_id))
            .values(
                id=str(reservation.id),
                holds=reservation.holds,
                expires_at=reservation.expires_at,
                status=reservation.status.value,
                created_at=reservation.created_at,
            )
        )
        if result.rowcount == 0:
            await self.add_reservation(reservation)
        return reservation

    async def get_reservation(self, order_id: UUID) -> Reservation | None:
        result = await self.session.execute(
            select(schema.reservations).where(schema.reservations.c.order_id == str(order_id))
        )
        row = result.fetchone()
        return _reservation_from_row(row) if row else None

    async def set_reservation_status(
        self,
        order_id: UUID,
        status: ReservationStatus,
        expected: ReservationStatus = ReservationStatus.ACTIVE,
    ) -> bool:
        """expected 状態からの遷移だけを行う。実際に変わったら True。"""
        result = await self.session.execute(
            update(schema.reservations)
            .where(
                and_(
                    schema.reservations.c.order_id == str(order_id),
                    schema.reservations.c.status == expected.value,
                )
            )
            .values(status=status.value)
        )
        return result.rowcount == 1

    # ── Webhook リプレイ防止 ──────────────────────

    async def is_event_processed(self, event_id: str) -> bool:
        result = await self.session.execute(
            select(schema.processed_webhook_events.c.event_id).where(
                schema.processed_webhook_events.c.event_id == event_id
            )
        )
        return result.first() is not None

    async def mark_event_processed(self, event_id: str, event_type: str) -> None:
        """
        処理済みイベント集合に追加する。

        主キー重複 (同じイベントの並行配信) は IntegrityError として
        呼び出し側に伝わり、トランザクションごとロールバックされる。
        """
        await self.session.execute(
            insert(schema.processed_webhook_events).values(
                event_id=event_id,
                event_type=event_type,
                processed_at=datetime.now(timezone.utc),
            )
        )


@asynccontextmanager
async def unit_of_work(session_factory: async_sessionmaker):
    """
    状態変更 + 監査証跡をまとめる明示的なトランザクション境界。

        async with unit_of_work(factory) as repo:
            order = await repo.get_order(order_id)
            transition(order, OrderStatus.CANCELLED)
            await repo.save_order(order, "OrderCancelled")

    ブロック内で例外が出たらロールバックして再送出する。
    """
    async with session_factory() as session:
        try:
            yield OrderRepository(session)
            await session.commit()
        except BaseException:
            await session.rollback()
            raise

