"""
Order Service — 注文状態機械 (Order State Machine)

  DRAFT → CONFIRMED → PROCESSING → SHIPPED → DELIVERED
    │         │            │           │          │
    └─────────┴────────────┴→ CANCELLED └──────────┴→ REFUNDED

遷移表はモジュール読み込み時に一度だけ構築する不変のルックアップ表。
transition() は status と updated_at だけを変更し、副作用
(在庫確定・返金・通知) は呼ばない。副作用はオーケストレーターが
遷移成功後に明示的に起動する。
"""

from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType

from .errors import InvalidTransition


class OrderStatus(str, Enum):
    DRAFT = "DRAFT"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"

    def __str__(self) -> str:
        return self.value


TRANSITIONS = MappingProxyType(
    {
        OrderStatus.DRAFT: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
        OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
        OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
        OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.REFUNDED}),
        OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
        OrderStatus.CANCELLED: frozenset(),
        OrderStatus.REFUNDED: frozenset(),
    }
)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in TRANSITIONS[OrderStatus(current)]


def allowed_targets(current: OrderStatus) -> frozenset[OrderStatus]:
    return TRANSITIONS[OrderStatus(current)]


def is_terminal(status: OrderStatus) -> bool:
    return not TRANSITIONS[OrderStatus(status)]


def transition(order, target: OrderStatus, now: datetime | None = None):
    """
    注文の状態を target に遷移させる。

    許可されない遷移なら InvalidTransition を送出し、注文は変更しない。
    永続化 (バージョンチェック付き) は呼び出し側の責務。
    """
    target = OrderStatus(target)
    if not can_transition(order.status, target):
        raise InvalidTransition(order.status, target)
    order.status = target
    order.updated_at = now or datetime.now(timezone.utc)
    return order
