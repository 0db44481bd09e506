"""
Stock Service — コマンドハンドラ (Write 側)

在庫の予約 (Reserve)・確定 (Confirm)・解放 (Release)・期限切れ掃除・調整。

最後の 1 個を 2 つのリクエストが同時に取り合っても、勝つのは 1 つだけ:
在庫チェックと引き当てを 1 本の条件付き UPDATE で行う。

    UPDATE stock_levels SET reserved = reserved + :qty
    WHERE sku = :sku AND on_hand - reserved >= :qty

更新行数 0 なら在庫不足 (または SKU が存在しない)。

予約は冪等キーで重複排除するので、注文サービスの再試行で二重予約にならない。
確定・解放も状態 (ACTIVE → CONFIRMED / RELEASED) の条件付き更新で冪等。
"""

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store, schema

logger = logging.getLogger(__name__)

ACTIVE = "ACTIVE"
CONFIRMED = "CONFIRMED"
RELEASED = "RELEASED"
EXPIRED = "EXPIRED"

DEFAULT_TIMEOUT_MINUTES = 30


class StockError(Exception):
    status_code = 409

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class UnknownSku(StockError):
    status_code = 404


class InsufficientStock(StockError):
    pass


class ReservationNotActive(StockError):
    pass


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _reservation_dict(row) -> dict:
    return {
        "reservation_id": row.id,
        "order_id": row.order_id,
        "sku": row.sku,
        "quantity": row.quantity,
        "status": row.status,
        "expires_at": _aware(row.expires_at).isoformat(),
    }


async def _find_by_key(session: AsyncSession, idempotency_key: str):
    result = await session.execute(
        select(schema.stock_reservations).where(
            schema.stock_reservations.c.idempotency_key == idempotency_key
        )
    )
    return result.fetchone()


async def reserve(
    session: AsyncSession,
    order_id: UUID,
    sku: str,
    quantity: int,
    idempotency_key: str,
    timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES,
) -> tuple[dict, bool]:
    """
    在庫予約コマンド

    (予約, 新規作成したか) を返す。同じ冪等キーの再送なら既存の予約を返す。
    """
    existing = await _find_by_key(session, idempotency_key)
    if existing:
        return _reservation_dict(existing), False

    now = datetime.now(timezone.utc)
    result = await session.execute(
        update(schema.stock_levels)
        .where(
            and_(
                schema.stock_levels.c.sku == sku,
                schema.stock_levels.c.on_hand - schema.stock_levels.c.reserved >= quantity,
            )
        )
        .values(reserved=schema.stock_levels.c.reserved + quantity, updated_at=now)
    )
    if result.rowcount != 1:
        level = await session.execute(
            select(schema.stock_levels).where(schema.stock_levels.c.sku == sku)
        )
        row = level.fetchone()
        await session.rollback()
        if row is None:
            raise UnknownSku(f"Unknown SKU {sku}", sku=sku)
        raise InsufficientStock(
            f"Insufficient stock for {sku}: requested={quantity}, available={row.on_hand - row.reserved}",
            sku=sku,
            requested=quantity,
            available=row.on_hand - row.reserved,
        )

    reservation_id = str(uuid4())
    try:
        await session.execute(
            insert(schema.stock_reservations).values(
                id=reservation_id,
                idempotency_key=idempotency_key,
                order_id=str(order_id),
                sku=sku,
                quantity=quantity,
                status=ACTIVE,
                expires_at=now + timedelta(minutes=timeout_minutes),
                created_at=now,
            )
        )
        await event_store.append_movement(session, sku, "RESERVED", quantity, reservation_id)
        await session.commit()
    except IntegrityError:
        # 同じ冪等キーの並行リクエスト。先にコミットした側の予約を返す
        await session.rollback()
        existing = await _find_by_key(session, idempotency_key)
        if existing is None:
            raise
        return _reservation_dict(existing), False

    row = await _find_by_key(session, idempotency_key)
    logger.info("Reserved %d x %s for order %s (%s)", quantity, sku, order_id, reservation_id)
    return _reservation_dict(row), True


async def _load(session: AsyncSession, reservation_ids: list[str]) -> list:
    result = await session.execute(
        select(schema.stock_reservations).where(
            schema.stock_reservations.c.id.in_(list(reservation_ids))
        )
    )
    return result.fetchall()


async def _settle(session: AsyncSession, row, status: str, consume: bool) -> bool:
    """ACTIVE の予約を status にする。consume なら on_hand からも引く。"""
    result = await session.execute(
        update(schema.stock_reservations)
        .where(
            and_(
                schema.stock_reservations.c.id == row.id,
                schema.stock_reservations.c.status == ACTIVE,
            )
        )
        .values(status=status)
    )
    if result.rowcount != 1:
        return False

    levels = schema.stock_levels
    values = {"reserved": levels.c.reserved - row.quantity, "updated_at": datetime.now(timezone.utc)}
    if consume:
        values["on_hand"] = levels.c.on_hand - row.quantity
    await session.execute(update(levels).where(levels.c.sku == row.sku).values(**values))
    await event_store.append_movement(session, row.sku, status, row.quantity, row.id)
    return True


async def confirm(session: AsyncSession, reservation_ids: list[str]) -> dict:
    """
    予約確定コマンド (決済完了時)

    予約分を在庫から恒久的に引き落とす。確定済みの予約は何もしない。
    解放済み・期限切れの予約が含まれていたら全体を失敗させる。
    """
    rows = await _load(session, reservation_ids)
    found = {row.id for row in rows}
    missing = [rid for rid in reservation_ids if rid not in found]
    if missing:
        raise ReservationNotActive(f"Unknown reservations {missing}", reservation_ids=missing)
    inactive = [row.id for row in rows if row.status in (RELEASED, EXPIRED)]
    if inactive:
        raise ReservationNotActive(
            f"Reservations {inactive} are no longer active", reservation_ids=inactive
        )

    confirmed = 0
    for row in rows:
        if row.status == ACTIVE and await _settle(session, row, CONFIRMED, consume=True):
            confirmed += 1
    await session.commit()
    if confirmed:
        logger.info("Confirmed %d reservations", confirmed)
    return {"confirmed": confirmed}


async def release(session: AsyncSession, reservation_ids: list[str]) -> dict:
    """
    予約解放コマンド (Saga の補償トランザクション)

    ACTIVE な予約だけを戻す。未知の ID・解放済み・確定済みは無視する。
    """
    released = 0
    for row in await _load(session, reservation_ids):
        if row.status == ACTIVE and await _settle(session, row, RELEASED, consume=False):
            released += 1
    await session.commit()
    if released:
        logger.info("Released %d reservations", released)
    return {"released": released}


async def cleanup_expired(session: AsyncSession, now: datetime | None = None) -> int:
    """期限切れの ACTIVE 予約を EXPIRED にして在庫を戻す。"""
    now = now or datetime.now(timezone.utc)
    result = await session.execute(
        select(schema.stock_reservations).where(
            and_(
                schema.stock_reservations.c.status == ACTIVE,
                schema.stock_reservations.c.expires_at < now,
            )
        )
    )
    expired = 0
    for row in result.fetchall():
        if await _settle(session, row, EXPIRED, consume=False):
            expired += 1
    await session.commit()
    if expired:
        logger.info("Expired %d stale reservations", expired)
    return expired


async def adjust_stock(session: AsyncSession, sku: str, delta: int) -> dict:
    """
    在庫調整コマンド (入荷・棚卸し)

    未登録の SKU は delta >= 0 なら新規登録する。
    予約済み数を下回る調整は拒否する。
    """
    now = datetime.now(timezone.utc)
    levels = schema.stock_levels
    result = await session.execute(select(levels).where(levels.c.sku == sku))
    row = result.fetchone()

    if row is None:
        if delta < 0:
            raise UnknownSku(f"Unknown SKU {sku}", sku=sku)
        await session.execute(insert(levels).values(sku=sku, on_hand=delta, reserved=0, updated_at=now))
    else:
        result = await session.execute(
            update(levels)
            .where(and_(levels.c.sku == sku, levels.c.on_hand + delta >= levels.c.reserved))
            .values(on_hand=levels.c.on_hand + delta, updated_at=now)
        )
        if result.rowcount != 1:
            await session.rollback()
            raise InsufficientStock(
                f"Adjustment of {delta} for {sku} would drop stock below reserved quantity",
                sku=sku,
            )

    await event_store.append_movement(session, sku, "ADJUSTED", delta)
    await session.commit()
    result = await session.execute(select(levels).where(levels.c.sku == sku))
    row = result.fetchone()
    return {"sku": sku, "on_hand": row.on_hand, "reserved": row.reserved}
