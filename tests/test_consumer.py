import asyncio
import json
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from redis.exceptions import ResponseError

from order_service.bus import DEAD_LETTER, DEFERRED_TASKS, Consumer, EventBus
from order_service.errors import ExternalServiceError
from order_service.events import PAYMENT_EVENTS, OrderCancelled, PaymentCompleted
from order_service.workers import deferred_task_handlers, notification_handlers, run_sweeper

from conftest import RecordingInvoices, RecordingNotifier


def make_redis(times_delivered=1):
    redis = AsyncMock()
    redis.xautoclaim.return_value = ["0-0", [], []]
    redis.xreadgroup.return_value = []
    redis.xpending_range.return_value = [{"times_delivered": times_delivered}]
    return redis


class TestEventBus:
    @pytest.mark.asyncio
    async def test_publish_appends_to_event_stream(self):
        redis = make_redis()
        redis.xadd.return_value = "1-0"
        bus = EventBus(redis, maxlen=1000)
        event = PaymentCompleted(
            order_id=uuid4(), customer="cust-1", payment_id=uuid4(),
            charge_id="ch_1", amount="10.00", currency="EUR",
        )

        assert await bus.publish(event) == "1-0"

        stream, fields = redis.xadd.call_args.args
        assert stream == PAYMENT_EVENTS
        assert fields["event_type"] == "PaymentCompleted"
        assert json.loads(fields["data"])["charge_id"] == "ch_1"
        assert redis.xadd.call_args.kwargs == {"maxlen": 1000, "approximate": True}

    @pytest.mark.asyncio
    async def test_defer(self):
        redis = make_redis()
        await EventBus(redis).defer("inventory.release", {"order_id": "o-1"})
        stream, fields = redis.xadd.call_args.args
        assert stream == DEFERRED_TASKS
        assert fields == {"event_type": "inventory.release", "data": '{"order_id": "o-1"}'}


class TestConsumer:
    def make_consumer(self, redis, handlers, **kwargs):
        return Consumer(redis, "group", "worker-1", ["order_events"], handlers, **kwargs)

    @pytest.mark.asyncio
    async def test_successful_handler_acks(self):
        redis = make_redis()
        handler = AsyncMock()
        consumer = self.make_consumer(redis, {"OrderConfirmed": handler})

        acked = await consumer.handle("order_events", "1-0", {"event_type": "OrderConfirmed", "data": '{"a": 1}'})

        assert acked
        handler.assert_awaited_once_with({"a": 1})
        redis.xack.assert_awaited_once_with("order_events", "group", "1-0")

    @pytest.mark.asyncio
    async def test_unknown_event_type_is_acked(self):
        redis = make_redis()
        consumer = self.make_consumer(redis, {})
        assert await consumer.handle("order_events", "1-0", {"event_type": "Other", "data": "{}"})
        redis.xack.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_handler_leaves_message_pending(self):
        redis = make_redis(times_delivered=2)
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        consumer = self.make_consumer(redis, {"OrderConfirmed": handler}, max_deliveries=5)

        acked = await consumer.handle("order_events", "1-0", {"event_type": "OrderConfirmed", "data": "{}"})

        assert not acked
        redis.xack.assert_not_awaited()
        redis.xadd.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exhausted_message_goes_to_dead_letter(self):
        redis = make_redis(times_delivered=5)
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        consumer = self.make_consumer(redis, {"OrderConfirmed": handler}, max_deliveries=5)

        acked = await consumer.handle("order_events", "7-0", {"event_type": "OrderConfirmed", "data": "{}"})

        assert acked
        stream, fields = redis.xadd.call_args.args
        assert stream == DEAD_LETTER
        assert fields["message_id"] == "7-0"
        assert "boom" in fields["error"]
        redis.xack.assert_awaited_once_with("order_events", "group", "7-0")

    @pytest.mark.asyncio
    async def test_poll_once_handles_claimed_and_new_messages(self):
        redis = make_redis()
        redis.xautoclaim.return_value = ["0-0", [("1-0", {"event_type": "A", "data": "{}"})], []]
        redis.xreadgroup.return_value = [["order_events", [("2-0", {"event_type": "A", "data": "{}"})]]]
        handler = AsyncMock()
        consumer = self.make_consumer(redis, {"A": handler})

        assert await consumer.poll_once() == 2
        assert handler.await_count == 2
        assert redis.xack.await_count == 2

    @pytest.mark.asyncio
    async def test_ensure_groups_ignores_existing_group(self):
        redis = make_redis()
        redis.xgroup_create.side_effect = ResponseError("BUSYGROUP Consumer Group name already exists")
        await self.make_consumer(redis, {}).ensure_groups()
        redis.xgroup_create.assert_awaited_once_with("order_events", "group", id="0", mkstream=True)

    @pytest.mark.asyncio
    async def test_run_stops_on_shutdown(self):
        redis = make_redis()
        shutdown = asyncio.Event()
        consumer = self.make_consumer(redis, {})

        async def stop_after_first_poll(*args, **kwargs):
            shutdown.set()
            return []

        redis.xreadgroup.side_effect = stop_after_first_poll
        await asyncio.wait_for(consumer.run(shutdown), timeout=2)
        redis.xreadgroup.assert_awaited()


class TestWorkerHandlers:
    @pytest.mark.asyncio
    async def test_notifications_are_sent_to_customer(self):
        notifier = RecordingNotifier()
        handlers = notification_handlers(notifier)
        event = OrderCancelled(order_id=uuid4(), customer="a@example.com", reason="expired")

        await handlers["OrderCancelled"](json.loads(event.model_dump_json()))

        customer, payload = notifier.sent[0]
        assert customer == "a@example.com"
        assert payload["type"] == "OrderCancelled"
        assert payload["reason"] == "expired"
        assert "OrderCreated" not in handlers

    @pytest.mark.asyncio
    async def test_deferred_invoice(self):
        invoices = RecordingInvoices()
        handlers = deferred_task_handlers(AsyncMock(), invoices)
        await handlers["invoice.generate"]({"order_id": "o-1", "order": {"id": "o-1"}})
        assert invoices.generated == [{"id": "o-1"}]

    @pytest.mark.asyncio
    async def test_deferred_inventory_failure_propagates(self):
        inventory = AsyncMock()
        inventory.confirm.side_effect = ExternalServiceError("stock-service", "HTTP 503")
        handlers = deferred_task_handlers(inventory, RecordingInvoices())
        order_id = uuid4()

        with pytest.raises(ExternalServiceError):
            await handlers["inventory.confirm"]({"order_id": str(order_id)})
        inventory.confirm.assert_awaited_once_with(order_id)

    @pytest.mark.asyncio
    async def test_sweeper_runs_until_shutdown(self):
        shutdown = asyncio.Event()
        orchestrator = AsyncMock()

        async def sweep():
            shutdown.set()
            return []

        orchestrator.expire_abandoned_checkouts.side_effect = sweep
        await asyncio.wait_for(run_sweeper(orchestrator, 60, shutdown), timeout=2)
        orchestrator.expire_abandoned_checkouts.assert_awaited_once()
