"""
Order Service — イベントストア (監査証跡)

注文の状態変更ごとに 1 件イベントを追記する。
状態変更と同じユニットオブワーク (同一トランザクション) で書くので、
状態だけ変わって監査証跡が残らない、ということは起きない。

注文の現在状態は orders テーブルが持つ (Event Sourcing はしない)。
version は変更後の注文バージョンで、(aggregate_id, version, event_type)
の UNIQUE 制約が二重追記を防ぐ。
"""

import json
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession


async def append_event(
    session: AsyncSession,
    aggregate_id: UUID,
    aggregate_type: str,
    event_type: str,
    event_data: dict,
    version: int,
) -> None:
    await session.execute(
        text("""
            INSERT INTO event_store
                (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
            VALUES
                (:agg_id, :agg_type, :evt_type, :evt_data, :version, :now)
        """).bindparams(bindparam("now", type_=DateTime(timezone=True))),
        {
            "agg_id": str(aggregate_id),
            "agg_type": aggregate_type,
            "evt_type": event_type,
            "evt_data": json.dumps(event_data, default=str),
            "version": version,
            "now": datetime.now(timezone.utc),
        },
    )


def _created_at(value) -> str | None:
    if value is None:
        return None
    return value.isoformat() if isinstance(value, datetime) else str(value)


async def load_events(
    session: AsyncSession,
    aggregate_id: UUID,
) -> list[dict]:
    """指定した注文の監査イベントを発生順に返す。"""
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version, created_at
            FROM event_store
            WHERE aggregate_id = :agg_id
            ORDER BY version ASC, id ASC
        """),
        {"agg_id": str(aggregate_id)},
    )
    return [
        {
            "event_type": row.event_type,
            "event_data": json.loads(row.event_data)
            if isinstance(row.event_data, str)
            else row.event_data,
            "version": row.version,
            "created_at": _created_at(row.created_at),
        }
        for row in result.fetchall()
    ]
