"""
Stock Service — テーブル定義

  stock_levels       : SKU ごとの在庫数 (on_hand) と予約済み数 (reserved)
  stock_reservations : 期限付きの予約 (ソフトホールド)。冪等キーは UNIQUE
  stock_movements    : 在庫の増減の監査証跡
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

stock_levels = Table(
    "stock_levels",
    metadata,
    Column("sku", String(64), primary_key=True),
    Column("on_hand", Integer, nullable=False, default=0),
    Column("reserved", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("reserved >= 0 AND reserved <= on_hand", name="ck_stock_reserved"),
)

stock_reservations = Table(
    "stock_reservations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("idempotency_key", String(128), nullable=False, unique=True),
    Column("order_id", String(36), nullable=False, index=True),
    Column("sku", String(64), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("expires_at", DateTime(timezone=True), nullable=False, index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

stock_movements = Table(
    "stock_movements",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("sku", String(64), nullable=False, index=True),
    Column("movement_type", String(16), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("reservation_id", String(36)),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


async def create_all(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
