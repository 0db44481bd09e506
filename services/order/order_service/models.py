"""
Order Service — ドメインモデル

注文・明細・決済・返金・在庫予約。
金額はすべて Decimal (小数点以下 2 桁)。float は使わない。

明細 (OrderItem) は frozen: 注文作成時点の単価を固定し、
以後カタログ価格が変わっても注文には影響しない。
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .state_machine import OrderStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    sku: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0, decimal_places=2)


class Totals(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal


class Order(BaseModel):
    """
    注文集約。

    status の変更は state_machine.transition() だけが行う。
    version は楽観的ロック用で、リポジトリが保存のたびに +1 する。
    """

    id: UUID = Field(default_factory=uuid4)
    order_number: str
    status: OrderStatus = OrderStatus.DRAFT
    customer_id: str | None = None
    guest_email: str | None = None
    items: tuple[OrderItem, ...]
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal
    currency: str = "EUR"
    payment_ref: UUID | None = None
    reservation_ref: UUID | None = None
    version: int = 0
    retry_count: int = 0
    admin_note: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_customer(self) -> "Order":
        if (self.customer_id is None) == (self.guest_email is None):
            raise ValueError("exactly one of customer_id or guest_email is required")
        return self

    @property
    def customer(self) -> str:
        return self.customer_id or self.guest_email

    @property
    def totals(self) -> Totals:
        return Totals(
            subtotal=self.subtotal,
            tax=self.tax,
            shipping=self.shipping,
            discount=self.discount,
            total=self.total,
        )

    def snapshot(self) -> dict:
        """請求書生成・通知に渡す JSON 互換のスナップショット。"""
        return self.model_dump(mode="json")


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Payment(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    order_id: UUID
    amount: Decimal
    currency: str
    status: PaymentStatus = PaymentStatus.PENDING
    intent_id: str
    charge_id: str | None = None
    attempt: int = 1
    completed_at: datetime | None = None
    failure_reason: str | None = None
    retryable: bool | None = None
    created_at: datetime = Field(default_factory=utcnow)


class RefundStatus(str, Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class Refund(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    order_id: UUID
    payment_id: UUID
    amount: Decimal
    reason: str = ""
    status: RefundStatus = RefundStatus.PROCESSING
    gateway_refund_id: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


class ReservationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CONFIRMED = "CONFIRMED"
    RELEASED = "RELEASED"


class Reservation(BaseModel):
    """注文単位の在庫予約: SKU → 在庫サービス側の予約 ID。"""

    id: UUID = Field(default_factory=uuid4)
    order_id: UUID
    holds: dict[str, str]
    expires_at: datetime
    status: ReservationStatus = ReservationStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class PaymentIntent(BaseModel):
    """クライアントに返す決済インテント。expires_at 以降は使えない。"""

    payment_id: UUID
    order_id: UUID
    intent_id: str
    client_secret: str
    amount: Decimal
    currency: str
    expires_at: datetime


class RefundRequest(BaseModel):
    amount: Decimal = Field(gt=0, decimal_places=2)
    reason: str = ""


class CartItem(BaseModel):
    sku: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(ge=0, decimal_places=2)


class Cart(BaseModel):
    """チェックアウト対象のカート (検証済み前提だが境界で再検証する)。"""

    items: list[CartItem] = Field(min_length=1)
    customer_id: str | None = None
    guest_email: str | None = None
    region: str | None = None
    discount: Decimal = Field(default=Decimal("0.00"), ge=0, decimal_places=2)

    @model_validator(mode="after")
    def _check_customer(self) -> "Cart":
        if (self.customer_id is None) == (self.guest_email is None):
            raise ValueError("exactly one of customer_id or guest_email is required")
        return self


class CheckoutResult(BaseModel):
    order_id: UUID
    order_number: str
    status: OrderStatus
    totals: Totals
    intent: PaymentIntent
