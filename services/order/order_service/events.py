"""
Order Service — ドメインイベント定義

ドメインで発生した事実を過去形で命名し、不変として扱う。
イベントバス (Redis Streams) に発行され、下流のコンシューマー
(通知など) が購読する。

  order_events   : OrderCreated / OrderConfirmed / OrderCancelled /
                   OrderStatusChanged / OrderRefunded
  payment_events : PaymentCompleted / PaymentFailed
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

ORDER_EVENTS = "order_events"
PAYMENT_EVENTS = "payment_events"


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    stream: ClassVar[str] = ORDER_EVENTS

    order_id: UUID
    customer: str
    timestamp: datetime = Field(default_factory=_now)

    @property
    def event_type(self) -> str:
        return type(self).__name__


class OrderCreated(DomainEvent):
    """注文が DRAFT で作成された"""
    order_number: str
    total: Decimal
    currency: str


class OrderConfirmed(DomainEvent):
    """決済完了により注文が確定された"""
    order_number: str
    total: Decimal
    currency: str


class OrderCancelled(DomainEvent):
    """注文がキャンセルされた (ユーザー操作・補償・期限切れ)"""
    reason: str


class OrderStatusChanged(DomainEvent):
    """出荷処理の進行 (PROCESSING / SHIPPED / DELIVERED)"""
    status: str


class OrderRefunded(DomainEvent):
    """返金が発行された (full=True なら注文は REFUNDED)"""
    amount: Decimal
    full: bool


class PaymentCompleted(DomainEvent):
    stream: ClassVar[str] = PAYMENT_EVENTS

    payment_id: UUID
    charge_id: str | None
    amount: Decimal
    currency: str


class PaymentFailed(DomainEvent):
    stream: ClassVar[str] = PAYMENT_EVENTS

    payment_id: UUID
    reason: str
    retryable: bool
