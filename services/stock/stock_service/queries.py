"""
Stock Service — クエリハンドラ (Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import schema


async def get_stock(session: AsyncSession, sku: str) -> dict | None:
    result = await session.execute(
        select(schema.stock_levels).where(schema.stock_levels.c.sku == sku)
    )
    row = result.fetchone()
    if not row:
        return None
    return {
        "sku": row.sku,
        "on_hand": row.on_hand,
        "reserved": row.reserved,
        "available": row.on_hand - row.reserved,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }


async def list_reservations(session: AsyncSession, order_id: str) -> list[dict]:
    result = await session.execute(
        select(schema.stock_reservations)
        .where(schema.stock_reservations.c.order_id == order_id)
        .order_by(schema.stock_reservations.c.created_at)
    )
    return [
        {
            "reservation_id": row.id,
            "sku": row.sku,
            "quantity": row.quantity,
            "status": row.status,
            "expires_at": row.expires_at.isoformat(),
        }
        for row in result.fetchall()
    ]
