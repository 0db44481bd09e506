"""
Order Service — テーブル定義

注文 (バージョン列付き)・決済・返金・在庫予約・処理済み Webhook・
監査用イベントストア。本番は PostgreSQL、テストは SQLite。
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

MONEY = Numeric(12, 2)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_number", String(32), nullable=False, unique=True),
    Column("status", String(16), nullable=False, index=True),
    Column("customer_id", String(64)),
    Column("guest_email", String(255)),
    Column("items", JSON, nullable=False),
    Column("subtotal", MONEY, nullable=False),
    Column("tax", MONEY, nullable=False),
    Column("shipping", MONEY, nullable=False),
    Column("discount", MONEY, nullable=False),
    Column("total", MONEY, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("payment_ref", String(36)),
    Column("reservation_ref", String(36)),
    Column("version", Integer, nullable=False),
    Column("retry_count", Integer, nullable=False, default=0),
    Column("admin_note", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

payments = Table(
    "payments",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), nullable=False, index=True),
    Column("amount", MONEY, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("status", String(16), nullable=False),
    Column("intent_id", String(128), nullable=False, unique=True),
    Column("charge_id", String(128)),
    Column("attempt", Integer, nullable=False),
    Column("completed_at", DateTime(timezone=True)),
    Column("failure_reason", Text),
    Column("retryable", Boolean),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

refunds = Table(
    "refunds",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), nullable=False, index=True),
    Column("payment_id", String(36), nullable=False),
    Column("amount", MONEY, nullable=False),
    Column("reason", Text, nullable=False, default=""),
    Column("status", String(16), nullable=False),
    Column("gateway_refund_id", String(128), unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

reservations = Table(
    "order_reservations",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(36), nullable=False, unique=True),
    Column("holds", JSON, nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False, index=True),
    Column("status", String(16), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

processed_webhook_events = Table(
    "processed_webhook_events",
    metadata,
    Column("event_id", String(128), primary_key=True),
    Column("event_type", String(64), nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=False),
)

event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", String(36), nullable=False, index=True),
    Column("aggregate_type", String(32), nullable=False),
    Column("event_type", String(64), nullable=False),
    Column("event_data", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("aggregate_id", "version", "event_type", name="uq_event_version"),
)


async def create_all(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
