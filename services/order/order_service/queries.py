"""
Order Service — クエリハンドラ (Read 側)

注文の現在状態・決済・返金・在庫予約をまとめた読み取り用の dict を返す。
書き込み側 (repository) を経由せず、SQL で直接読む。
"""

import json
from decimal import Decimal
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import OrderNotFound
from .state_machine import OrderStatus, allowed_targets


def _iso(value) -> str | None:
    if value is None:
        return None
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


def _money(value) -> str:
    return str(Decimal(str(value)).quantize(Decimal("0.01")))


async def get_order_status(session_factory: async_sessionmaker, order_id: UUID) -> dict:
    async with session_factory() as session:
        order = await _get_order(session, order_id)
        if order is None:
            raise OrderNotFound(order_id)
        order["payments"] = await _list_payments(session, order_id)
        order["refunds"] = await _list_refunds(session, order_id)
        order["reservation"] = await _get_reservation(session, order_id)
        return order


async def _get_order(session: AsyncSession, order_id: UUID) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM orders WHERE id = :id"),
        {"id": str(order_id)},
    )
    row = result.fetchone()
    if not row:
        return None
    status = OrderStatus(row.status)
    return {
        "id": row.id,
        "order_number": row.order_number,
        "status": status.value,
        "allowed_transitions": sorted(s.value for s in allowed_targets(status)),
        "customer_id": row.customer_id,
        "guest_email": row.guest_email,
        "items": json.loads(row.items) if isinstance(row.items, str) else row.items,
        "subtotal": _money(row.subtotal),
        "tax": _money(row.tax),
        "shipping": _money(row.shipping),
        "discount": _money(row.discount),
        "total": _money(row.total),
        "currency": row.currency,
        "payment_ref": row.payment_ref,
        "reservation_ref": row.reservation_ref,
        "version": row.version,
        "retry_count": row.retry_count,
        "admin_note": row.admin_note,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


async def _list_payments(session: AsyncSession, order_id: UUID) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM payments WHERE order_id = :id ORDER BY attempt"),
        {"id": str(order_id)},
    )
    return [
        {
            "id": row.id,
            "status": row.status,
            "amount": _money(row.amount),
            "currency": row.currency,
            "intent_id": row.intent_id,
            "attempt": row.attempt,
            "failure_reason": row.failure_reason,
            "retryable": None if row.retryable is None else bool(row.retryable),
            "completed_at": _iso(row.completed_at),
        }
        for row in result.fetchall()
    ]


async def _list_refunds(session: AsyncSession, order_id: UUID) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM refunds WHERE order_id = :id ORDER BY created_at"),
        {"id": str(order_id)},
    )
    return [
        {
            "id": row.id,
            "amount": _money(row.amount),
            "reason": row.reason,
            "status": row.status,
            "created_at": _iso(row.created_at),
        }
        for row in result.fetchall()
    ]


async def _get_reservation(session: AsyncSession, order_id: UUID) -> dict | None:
    result = await session.execute(
        text("SELECT status, expires_at FROM order_reservations WHERE order_id = :id"),
        {"id": str(order_id)},
    )
    row = result.fetchone()
    if not row:
        return None
    return {"status": row.status, "expires_at": _iso(row.expires_at)}
