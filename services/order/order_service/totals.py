"""
Order Service — 合計金額計算 (Total Calculator)

I/O を持たない純粋関数。

  line     = quantity × unit_price           (丸めない)
  subtotal = round(Σ line, 2)                (合計確定時に一度だけ丸める)
  tax      = round(subtotal × tax_rate, 2)
  shipping = 地域別の定額 / 送料無料しきい値以上なら 0
  total    = round(subtotal + tax + shipping − discount, 2)

丸めはすべて ROUND_HALF_UP。float は受け付けない
(セント単位で正確な結果を保証できないため)。
"""

from collections.abc import Iterable, Mapping
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError
from .models import Totals

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value, field: str = "amount") -> Decimal:
    if isinstance(value, float):
        raise ValidationError(f"{field} must not be a float", field=field)
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be numeric", field=field)
    try:
        result = value if isinstance(value, Decimal) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field} is not a number: {value!r}", field=field) from None
    if not result.is_finite():
        raise ValidationError(f"{field} must be finite", field=field)
    return result


def quantize_money(value) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class ShippingRule(BaseModel):
    """送料ルール表: 地域別定額 + デフォルト定額 + 送料無料しきい値。"""

    model_config = ConfigDict(frozen=True)

    flat_rate: Decimal = Decimal("0.00")
    region_rates: Mapping[str, Decimal] = Field(default_factory=dict)
    free_shipping_threshold: Decimal | None = None

    def shipping_for(self, subtotal: Decimal, region: str | None = None) -> Decimal:
        if self.free_shipping_threshold is not None and subtotal >= self.free_shipping_threshold:
            return ZERO
        rate = self.region_rates.get(region, self.flat_rate) if region else self.flat_rate
        return quantize_money(rate)


def line_total(item) -> Decimal:
    if item.quantity <= 0:
        raise ValidationError(f"quantity must be positive for {item.sku}", sku=item.sku)
    return item.quantity * to_decimal(item.unit_price, "unit_price")


def calculate_totals(
    items: Iterable,
    tax_rate,
    shipping_rule: ShippingRule,
    discount=ZERO,
    region: str | None = None,
) -> Totals:
    items = list(items)
    if not items:
        raise ValidationError("cart has no items")

    rate = to_decimal(tax_rate, "tax_rate")
    if rate < 0:
        raise ValidationError("tax_rate must not be negative", field="tax_rate")
    discount = quantize_money(to_decimal(discount, "discount"))
    if discount < 0:
        raise ValidationError("discount must not be negative", field="discount")

    subtotal = sum((line_total(item) for item in items), Decimal(0))
    subtotal = subtotal.quantize(CENT, rounding=ROUND_HALF_UP)
    tax = (subtotal * rate).quantize(CENT, rounding=ROUND_HALF_UP)
    shipping = shipping_rule.shipping_for(subtotal, region)

    gross = subtotal + tax + shipping
    if discount > gross:
        raise ValidationError(
            f"discount {discount} exceeds order amount {gross}", field="discount"
        )
    total = (gross - discount).quantize(CENT, rounding=ROUND_HALF_UP)

    return Totals(
        subtotal=subtotal,
        tax=tax,
        shipping=shipping,
        discount=discount,
        total=total,
    )
