"""
Stock Service — 在庫移動の監査証跡

予約・確定・解放・期限切れ・調整のたびに 1 行追記する。
在庫数の更新と同じトランザクションで書く。
"""

from datetime import datetime, timezone

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from . import schema


async def append_movement(
    session: AsyncSession,
    sku: str,
    movement_type: str,
    quantity: int,
    reservation_id: str | None = None,
) -> None:
    await session.execute(
        insert(schema.stock_movements).values(
            sku=sku,
            movement_type=movement_type,
            quantity=quantity,
            reservation_id=reservation_id,
            created_at=datetime.now(timezone.utc),
        )
    )


async def load_movements(session: AsyncSession, sku: str) -> list[dict]:
    result = await session.execute(
        select(schema.stock_movements)
        .where(schema.stock_movements.c.sku == sku)
        .order_by(schema.stock_movements.c.id)
    )
    return [
        {
            "movement_type": row.movement_type,
            "quantity": row.quantity,
            "reservation_id": row.reservation_id,
            "created_at": row.created_at.isoformat() if row.created_at else None,
        }
        for row in result.fetchall()
    ]
