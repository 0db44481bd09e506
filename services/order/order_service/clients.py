"""
Order Service — 外部サービスクライアント

在庫サービス・決済ゲートウェイ・請求書生成・通知送信への HTTP 呼び出し。
オーケストレーターにはコンストラクタ経由で渡すので、テストでは
同じメソッドを持つテストダブルに差し替えられる。

HTTP エラーの対応:
  タイムアウト / 接続失敗 / 5xx / 429 → ExternalServiceError (transient, 再試行)
  その他の 4xx                         → 各クライアントが業務エラーに変換
"""

import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Protocol, TypeVar
from uuid import UUID

import httpx
from pydantic import BaseModel

from .errors import ExternalServiceError, InsufficientStock
from .resilience import CircuitBreaker, Retry, call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StockHold(BaseModel):
    reservation_id: str
    sku: str
    quantity: int
    expires_at: datetime


class GatewayIntent(BaseModel):
    id: str
    client_secret: str


class GatewayRefund(BaseModel):
    id: str
    status: str


# ── コラボレーターのインターフェース ─────────────


class StockService(Protocol):
    async def reserve(
        self, order_id: UUID, sku: str, quantity: int, timeout_minutes: int, idempotency_key: str
    ) -> StockHold: ...

    async def confirm(self, reservation_ids: list[str]) -> None: ...

    async def release(self, reservation_ids: list[str]) -> None: ...


class PaymentGateway(Protocol):
    async def create_intent(
        self, amount: Decimal, currency: str, metadata: dict, idempotency_key: str
    ) -> GatewayIntent: ...

    async def refund(self, charge_id: str, amount: Decimal, idempotency_key: str) -> GatewayRefund: ...


class InvoiceGenerator(Protocol):
    async def generate(self, order_snapshot: dict) -> dict: ...


class NotificationSender(Protocol):
    async def notify(self, customer: str, event: dict) -> None: ...


# ── HTTP 実装 ────────────────────────────────────


class ServiceClient:
    service = "service"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        retry: Retry | None = None,
        breaker: CircuitBreaker | None = None,
        headers: dict | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.retry = retry or Retry()
        self.breaker = breaker or CircuitBreaker(self.service)
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        parse: Callable[[httpx.Response], T],
        *,
        json: dict | None = None,
        idempotency_key: str | None = None,
    ) -> T:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None

        async def attempt() -> T:
            try:
                resp = await self._client.request(method, path, json=json, headers=headers)
            except httpx.TimeoutException as e:
                raise ExternalServiceError(self.service, f"timed out: {e!r}") from e
            except httpx.TransportError as e:
                raise ExternalServiceError(self.service, f"unreachable: {e!r}") from e
            if resp.status_code >= 500 or resp.status_code == 429:
                raise ExternalServiceError(self.service, f"HTTP {resp.status_code}")
            return parse(resp)

        return await call_with_retry(attempt, retry=self.retry, breaker=self.breaker)

    def _unexpected(self, resp: httpx.Response) -> ExternalServiceError:
        return ExternalServiceError(
            self.service,
            f"unexpected HTTP {resp.status_code}: {resp.text[:200]}",
            transient=False,
        )


class StockServiceClient(ServiceClient):
    service = "stock-service"

    async def reserve(
        self,
        order_id: UUID,
        sku: str,
        quantity: int,
        timeout_minutes: int,
        idempotency_key: str,
    ) -> StockHold:
        def parse(resp: httpx.Response) -> StockHold:
            if resp.status_code in (200, 201):
                return StockHold(**resp.json())
            if resp.status_code in (404, 409):
                raise InsufficientStock([sku])
            raise self._unexpected(resp)

        return await self._request(
            "POST",
            "/commands/reservations",
            parse,
            json={
                "order_id": str(order_id),
                "sku": sku,
                "quantity": quantity,
                "timeout_minutes": timeout_minutes,
            },
            idempotency_key=idempotency_key,
        )

    async def confirm(self, reservation_ids: list[str]) -> None:
        await self._request(
            "POST",
            "/commands/reservations/confirm",
            self._expect_ok,
            json={"reservation_ids": list(reservation_ids)},
        )

    async def release(self, reservation_ids: list[str]) -> None:
        await self._request(
            "POST",
            "/commands/reservations/release",
            self._expect_ok,
            json={"reservation_ids": list(reservation_ids)},
        )

    def _expect_ok(self, resp: httpx.Response) -> None:
        if resp.status_code != 200:
            raise self._unexpected(resp)


class PaymentGatewayClient(ServiceClient):
    service = "payment-gateway"

    def __init__(self, base_url: str, api_key: str, **kwargs):
        super().__init__(base_url, headers={"Authorization": f"Bearer {api_key}"}, **kwargs)

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict,
        idempotency_key: str,
    ) -> GatewayIntent:
        def parse(resp: httpx.Response) -> GatewayIntent:
            if resp.status_code in (200, 201):
                return GatewayIntent(**resp.json())
            raise self._unexpected(resp)

        return await self._request(
            "POST",
            "/v1/payment_intents",
            parse,
            json={"amount": str(amount), "currency": currency, "metadata": metadata},
            idempotency_key=idempotency_key,
        )

    async def refund(self, charge_id: str, amount: Decimal, idempotency_key: str) -> GatewayRefund:
        def parse(resp: httpx.Response) -> GatewayRefund:
            if resp.status_code in (200, 201):
                return GatewayRefund(**resp.json())
            raise self._unexpected(resp)

        return await self._request(
            "POST",
            "/v1/refunds",
            parse,
            json={"charge_id": charge_id, "amount": str(amount)},
            idempotency_key=idempotency_key,
        )


class InvoiceClient(ServiceClient):
    service = "invoice-generator"

    async def generate(self, order_snapshot: dict) -> dict:
        def parse(resp: httpx.Response) -> dict:
            if resp.status_code in (200, 201, 202):
                return resp.json()
            raise self._unexpected(resp)

        return await self._request(
            "POST",
            "/invoices",
            parse,
            json=order_snapshot,
            idempotency_key=f"invoice:{order_snapshot['id']}",
        )


class NotificationClient(ServiceClient):
    """通知は fire-and-forget。失敗はログに残すだけで呼び出し元には伝えない。"""

    service = "notification-sender"

    async def notify(self, customer: str, event: dict) -> None:
        def parse(resp: httpx.Response) -> None:
            if resp.status_code >= 400:
                raise self._unexpected(resp)

        try:
            await self._request(
                "POST",
                "/notifications",
                parse,
                json={"customer": customer, "event": event},
            )
        except ExternalServiceError as e:
            logger.warning("Notification to %s dropped: %s", customer, e.message)
