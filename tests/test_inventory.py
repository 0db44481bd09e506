import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import httpx
import pytest

from order_service.clients import StockServiceClient
from order_service.errors import BusinessRuleViolation, ExternalServiceError, InsufficientStock
from order_service.inventory import InventoryCoordinator, reservation_key
from order_service.models import OrderItem, ReservationStatus
from order_service.resilience import Retry

from conftest import FakeStockService


def line(sku, qty, price="10.00"):
    return OrderItem(sku=sku, quantity=qty, unit_price=Decimal(price))


@pytest.fixture
def stock():
    return FakeStockService({"SKU-1": 5, "SKU-2": 5, "SKU-3": 0})


@pytest.fixture
def inventory(stock, session_factory):
    return InventoryCoordinator(stock, session_factory, 30)


class TestReserve:
    @pytest.mark.asyncio
    async def test_reserves_every_line(self, inventory, stock):
        order_id = uuid4()
        reservation = await inventory.reserve(order_id, [line("SKU-1", 2), line("SKU-2", 1)])
        assert set(reservation.holds) == {"SKU-1", "SKU-2"}
        assert reservation.status == ReservationStatus.ACTIVE
        assert stock.stock["SKU-1"] == 3
        stored = await inventory.get(order_id)
        assert stored.holds == reservation.holds

    @pytest.mark.asyncio
    async def test_partial_failure_releases_granted_holds(self, inventory, stock):
        order_id = uuid4()
        with pytest.raises(InsufficientStock) as exc:
            await inventory.reserve(
                order_id, [line("SKU-1", 1), line("SKU-2", 1), line("SKU-3", 1)]
            )
        assert exc.value.skus == ["SKU-3"]
        assert stock.active_holds() == []
        assert stock.stock == {"SKU-1": 5, "SKU-2": 5, "SKU-3": 0}
        assert await inventory.get(order_id) is None

    @pytest.mark.asyncio
    async def test_duplicate_skus_are_merged(self, inventory, stock):
        reservation = await inventory.reserve(uuid4(), [line("SKU-1", 1), line("SKU-1", 2)])
        assert len(reservation.holds) == 1
        assert stock.stock["SKU-1"] == 2

    @pytest.mark.asyncio
    async def test_retry_with_same_key_does_not_double_reserve(self, inventory, stock):
        order_id = uuid4()
        await inventory.reserve(order_id, [line("SKU-1", 2)])
        await inventory.reserve(order_id, [line("SKU-1", 2)])
        assert stock.stock["SKU-1"] == 3
        assert stock.reserve_calls == [reservation_key(order_id, "SKU-1")] * 2

    @pytest.mark.asyncio
    async def test_external_failure_propagates(self, inventory, stock):
        stock.fail_with = ExternalServiceError("stock-service", "HTTP 503")
        with pytest.raises(ExternalServiceError):
            await inventory.reserve(uuid4(), [line("SKU-1", 1)])

    def test_reservation_key(self):
        order_id = uuid4()
        assert reservation_key(order_id, "A") == f"{order_id}:A"
        assert reservation_key(order_id, "A", 2) == f"{order_id}:A:2"


class TestConfirmRelease:
    @pytest.mark.asyncio
    async def test_confirm_is_idempotent(self, inventory, stock):
        order_id = uuid4()
        await inventory.reserve(order_id, [line("SKU-1", 1)])
        assert await inventory.confirm(order_id) is True
        assert await inventory.confirm(order_id) is False
        assert len(stock.confirm_calls) == 1
        assert (await inventory.get(order_id)).status == ReservationStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, inventory, stock):
        order_id = uuid4()
        await inventory.reserve(order_id, [line("SKU-1", 1)])
        assert await inventory.release(order_id) is True
        assert await inventory.release(order_id) is False
        assert stock.stock["SKU-1"] == 5
        assert len(stock.release_calls) == 1

    @pytest.mark.asyncio
    async def test_release_without_reservation_is_safe(self, inventory):
        assert await inventory.release(uuid4()) is False

    @pytest.mark.asyncio
    async def test_confirm_after_release_is_rejected(self, inventory):
        order_id = uuid4()
        await inventory.reserve(order_id, [line("SKU-1", 1)])
        await inventory.release(order_id)
        with pytest.raises(BusinessRuleViolation):
            await inventory.confirm(order_id)


class TestStockServiceClient:
    def make_client(self, handler):
        return StockServiceClient(
            "http://stock",
            retry=Retry(times=3, backoff_initial=0, jitter=False),
            transport=httpx.MockTransport(handler),
        )

    @pytest.mark.asyncio
    async def test_reserve_sends_idempotency_key(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            body = json.loads(request.content)
            return httpx.Response(
                201,
                json={
                    "reservation_id": "r-1",
                    "sku": body["sku"],
                    "quantity": body["quantity"],
                    "expires_at": (datetime.now(timezone.utc) + timedelta(minutes=30)).isoformat(),
                },
            )

        client = self.make_client(handler)
        hold = await client.reserve(uuid4(), "SKU-1", 2, 30, "key-1")
        assert hold.reservation_id == "r-1"
        assert seen[0].headers["Idempotency-Key"] == "key-1"
        assert seen[0].url.path == "/commands/reservations"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_conflict_maps_to_insufficient_stock(self):
        client = self.make_client(lambda request: httpx.Response(409, json={"detail": "no"}))
        with pytest.raises(InsufficientStock) as exc:
            await client.reserve(uuid4(), "SKU-9", 1, 30, "key")
        assert exc.value.skus == ["SKU-9"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_errors_are_retried_with_the_same_key(self):
        keys = []

        def handler(request: httpx.Request) -> httpx.Response:
            keys.append(request.headers["Idempotency-Key"])
            if len(keys) < 3:
                return httpx.Response(503)
            return httpx.Response(
                201,
                json={
                    "reservation_id": "r-1",
                    "sku": "SKU-1",
                    "quantity": 1,
                    "expires_at": datetime.now(timezone.utc).isoformat(),
                },
            )

        client = self.make_client(handler)
        await client.reserve(uuid4(), "SKU-1", 1, 30, "key-7")
        assert keys == ["key-7"] * 3
        await client.aclose()

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        client = self.make_client(handler)
        with pytest.raises(ExternalServiceError) as exc:
            await client.release(["r-1"])
        assert exc.value.transient
        assert len(calls) == 3
        await client.aclose()
