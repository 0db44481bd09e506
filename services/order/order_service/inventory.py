"""
Order Service — 在庫予約コーディネーター (Inventory Reservation Coordinator)

在庫サービスに対して明細ごとに予約 (ソフトホールド) を取り、
決済完了で確定 (恒久的な引き落とし)、失敗・キャンセル・期限切れで解放する。

  reserve : 全部取れるか、何も取らないか。1 件でも失敗したら
            この呼び出しで取れた予約をすべて解放してから失敗を返す
  confirm : 冪等。Webhook の再配信で何度呼ばれても 2 回目以降は何もしない
  release : 冪等。解放済み・期限切れ・未予約でも安全に呼べる

冪等キーは (order_id, SKU) から作るので、再試行で二重予約にならない。
"""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Iterable
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.ext.asyncio import async_sessionmaker

from .clients import StockHold, StockService
from .errors import BusinessRuleViolation, ExternalServiceError, InsufficientStock
from .models import Reservation, ReservationStatus
from .repository import unit_of_work

logger = logging.getLogger(__name__)


def reservation_key(order_id: UUID, sku: str, attempt: int = 1) -> str:
    if attempt == 1:
        return f"{order_id}:{sku}"
    return f"{order_id}:{sku}:{attempt}"


def _quantities(items: Iterable) -> "OrderedDict[str, int]":
    # 同じ SKU の明細はまとめて 1 件の予約にする (冪等キーが SKU 単位のため)
    merged: OrderedDict[str, int] = OrderedDict()
    for item in items:
        merged[item.sku] = merged.get(item.sku, 0) + item.quantity
    return merged


class InventoryCoordinator:
    def __init__(
        self,
        stock: StockService,
        session_factory: async_sessionmaker,
        default_timeout_minutes: int = 30,
    ):
        self.stock = stock
        self.session_factory = session_factory
        self.default_timeout_minutes = default_timeout_minutes

    async def reserve(
        self,
        order_id: UUID,
        items: Iterable,
        timeout_minutes: int | None = None,
        *,
        attempt: int = 1,
    ) -> Reservation:
        """
        注文の全明細を予約する。

        在庫不足の SKU があれば InsufficientStock(skus) を、
        在庫サービス障害なら ExternalServiceError を送出する。
        どちらの場合も、この呼び出しで取れた予約は解放済み。
        """
        timeout = timeout_minutes or self.default_timeout_minutes
        quantities = _quantities(items)

        results = await asyncio.gather(
            *(
                self.stock.reserve(
                    order_id, sku, quantity, timeout, reservation_key(order_id, sku, attempt)
                )
                for sku, quantity in quantities.items()
            ),
            return_exceptions=True,
        )

        granted: list[StockHold] = [r for r in results if isinstance(r, StockHold)]
        failures = [
            (sku, r) for sku, r in zip(quantities, results) if isinstance(r, BaseException)
        ]

        if failures:
            await self._compensate(order_id, granted)
            out_of_stock = [sku for sku, e in failures if isinstance(e, InsufficientStock)]
            if out_of_stock:
                logger.info("Reservation for order %s failed: out of stock %s", order_id, out_of_stock)
                raise InsufficientStock(out_of_stock)
            raise failures[0][1]

        reservation = Reservation(
            order_id=order_id,
            holds={hold.sku: hold.reservation_id for hold in granted},
            expires_at=min(hold.expires_at for hold in granted),
        )
        async with unit_of_work(self.session_factory) as repo:
            await repo.replace_reservation(reservation)

        logger.info(
            "Reserved %d SKUs for order %s until %s",
            len(reservation.holds), order_id, reservation.expires_at.isoformat(),
        )
        return reservation

    async def _compensate(self, order_id: UUID, granted: list[StockHold]) -> None:
        if not granted:
            return
        ids = [hold.reservation_id for hold in granted]
        try:
            await self.stock.release(ids)
        except ExternalServiceError as e:
            # 解放できなくても予約は期限で自然に失効する
            logger.warning(
                "Could not release partial reservation %s for order %s: %s",
                ids, order_id, e.message,
            )

    async def confirm(self, order_id: UUID) -> bool:
        """予約を確定する。実際に確定したら True、既に確定済みなら False。"""
        reservation = await self.get(order_id)
        if reservation is None:
            logger.warning("No reservation to confirm for order %s", order_id)
            return False
        if reservation.status == ReservationStatus.CONFIRMED:
            return False
        if reservation.status == ReservationStatus.RELEASED:
            raise BusinessRuleViolation(
                f"Reservation for order {order_id} was already released",
                order_id=str(order_id),
            )

        await self.stock.confirm(list(reservation.holds.values()))
        async with unit_of_work(self.session_factory) as repo:
            changed = await repo.set_reservation_status(order_id, ReservationStatus.CONFIRMED)
        if changed:
            logger.info("Confirmed reservation for order %s", order_id)
        return changed

    async def release(self, order_id: UUID) -> bool:
        """予約を解放する。実際に解放したら True、解放するものがなければ False。"""
        reservation = await self.get(order_id)
        if reservation is None or reservation.status != ReservationStatus.ACTIVE:
            return False

        await self.stock.release(list(reservation.holds.values()))
        async with unit_of_work(self.session_factory) as repo:
            changed = await repo.set_reservation_status(order_id, ReservationStatus.RELEASED)
        if changed:
            logger.info("Released reservation for order %s", order_id)
        return changed

    async def get(self, order_id: UUID) -> Reservation | None:
        async with unit_of_work(self.session_factory) as repo:
            return await repo.get_reservation(order_id)

    async def expired_orders(self, now: datetime | None = None, limit: int = 100) -> list[UUID]:
        """予約が期限切れのまま DRAFT に残っている注文 ID。"""
        async with unit_of_work(self.session_factory) as repo:
            return await repo.list_expired_drafts(now or datetime.now(timezone.utc), limit)
