"""
Order Service — バックグラウンドワーカー

  run_sweeper         : 予約期限切れの DRAFT 注文を定期的にキャンセルする
  notification_handlers : order_events / payment_events を購読し、
                          顧客への通知を送る (fire-and-forget)
  deferred_task_handlers: 外部障害で後回しにした副作用を再実行する。
                          失敗したら ACK されず、コンシューマーが再配信する

どちらのハンドラ群も bus.Consumer に event_type → ハンドラとして渡す。
"""

import asyncio
import logging
from uuid import UUID

from .bus import Handler
from .clients import InvoiceGenerator, NotificationSender
from .inventory import InventoryCoordinator
from .orchestrator import OrderSagaOrchestrator

logger = logging.getLogger(__name__)

NOTIFIED_EVENTS = (
    "OrderConfirmed",
    "OrderCancelled",
    "OrderStatusChanged",
    "OrderRefunded",
    "PaymentFailed",
)


async def run_sweeper(
    orchestrator: OrderSagaOrchestrator,
    interval_seconds: float,
    shutdown_event: asyncio.Event,
) -> None:
    """shutdown_event がセットされるまで interval_seconds ごとに掃除する。"""
    logger.info("Expiry sweeper started (every %ss)", interval_seconds)
    while not shutdown_event.is_set():
        try:
            await orchestrator.expire_abandoned_checkouts()
        except Exception:
            logger.exception("Expiry sweep failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass


def notification_handlers(notifier: NotificationSender) -> dict[str, Handler]:
    def handler_for(event_type: str) -> Handler:
        async def handle(data: dict) -> None:
            await notifier.notify(data["customer"], {"type": event_type, **data})

        return handle

    return {event_type: handler_for(event_type) for event_type in NOTIFIED_EVENTS}


def deferred_task_handlers(
    inventory: InventoryCoordinator,
    invoices: InvoiceGenerator,
) -> dict[str, Handler]:
    async def confirm_inventory(data: dict) -> None:
        await inventory.confirm(UUID(data["order_id"]))

    async def release_inventory(data: dict) -> None:
        await inventory.release(UUID(data["order_id"]))

    async def generate_invoice(data: dict) -> None:
        await invoices.generate(data["order"])
        logger.info("Deferred invoice generated for order %s", data["order_id"])

    return {
        "inventory.confirm": confirm_inventory,
        "inventory.release": release_inventory,
        "invoice.generate": generate_invoice,
    }
