from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

from .errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
DISCOUNT_TYPES = {"fixed", "percent"}

logger = logging.getLogger(__name__)


def to_money(value: Any) -> Decimal:
    """Convert ``value`` to a 2dp Decimal; ``None`` and ``""`` count as zero."""
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValidationError(f"invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"invalid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _quantity(value: Any) -> int:
    try:
        quantity = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("quantity must be an integer") from exc
    if quantity < 0:
        raise ValidationError("quantity must not be negative")
    return quantity


@dataclass(frozen=True, slots=True)
class BundlePrice:
    subtotal: Decimal
    discount: Decimal
    unit_price: Decimal

    def to_dict(self) -> dict[str, str]:
        return {"subtotal": str(self.subtotal), "discount": str(self.discount), "unit_price": str(self.unit_price)}


@dataclass(frozen=True, slots=True)
class OrderTotals:
    product: Decimal
    addons: Decimal
    bundles: Decimal
    total: Decimal

    def to_dict(self) -> dict[str, str]:
        return {
            "product": str(self.product),
            "addons": str(self.addons),
            "bundles": str(self.bundles),
            "total": str(self.total),
        }


def addon_line_total(price: Any, quantity: Any) -> Decimal:
    return to_money(to_money(price) * _quantity(quantity))


def bundle_subtotal(items: Iterable[dict[str, Any]]) -> Decimal:
    """Sum of ``price * quantity`` over a bundle's addon items."""
    total = ZERO
    for item in items:
        total += addon_line_total(item.get("price"), item.get("quantity", 1))
    return to_money(total)


def validate_discount(discount_type: str | None, discount_value: Any) -> tuple[str, Decimal]:
    kind = discount_type or "fixed"
    if kind not in DISCOUNT_TYPES:
        raise ValidationError(f"unsupported discount_type: {kind}")
    value = to_money(discount_value)
    if value < 0:
        raise ValidationError("discount_value must not be negative", details={"discount_value": str(value)})
    if kind == "percent" and value > 100:
        raise ValidationError("a percent discount_value must not exceed 100")
    return kind, value


def _configured_discount(subtotal: Decimal, discount_type: str | None, discount_value: Any) -> Decimal:
    kind, value = validate_discount(discount_type, discount_value)
    if kind == "percent":
        return to_money(subtotal * value / Decimal(100))
    return value


def bundle_discount(subtotal: Any, discount_type: str | None, discount_value: Any) -> Decimal:
    subtotal_amount = to_money(subtotal)
    value = _configured_discount(subtotal_amount, discount_type, discount_value)
    return min(value, subtotal_amount) if subtotal_amount > 0 else ZERO


def bundle_unit_price(subtotal: Any, discount: Any) -> Decimal:
    subtotal_amount = to_money(subtotal)
    discount_amount = to_money(discount)
    unit_price = subtotal_amount - discount_amount
    if unit_price < 0:
        logger.warning(
            "bundle_discount_clamped",
            extra={"subtotal": str(subtotal_amount), "discount": str(discount_amount)},
        )
        return ZERO
    return to_money(unit_price)


def price_bundle(bundle: dict[str, Any]) -> BundlePrice:
    """Price a bundle dict with ``items`` (price/quantity) and its discount settings.

    The reported discount is the configured one, so a misconfigured bundle whose
    discount exceeds its subtotal still shows the raw figure while the unit price
    floors at zero.
    """
    subtotal = bundle_subtotal(bundle.get("items") or [])
    discount = _configured_discount(subtotal, bundle.get("discount_type"), bundle.get("discount_value"))
    return BundlePrice(subtotal=subtotal, discount=discount, unit_price=bundle_unit_price(subtotal, discount))


def order_total(
    product_price: Any,
    addon_lines: Iterable[dict[str, Any]] = (),
    bundle_lines: Iterable[dict[str, Any]] = (),
) -> OrderTotals:
    product = to_money(product_price)
    addons = to_money(sum((addon_line_total(line["price"], line.get("quantity", 1)) for line in addon_lines), ZERO))
    bundles = to_money(
        sum((addon_line_total(line["unit_price"], line.get("quantity", 1)) for line in bundle_lines), ZERO)
    )
    return OrderTotals(product=product, addons=addons, bundles=bundles, total=to_money(product + addons + bundles))


def _percentage(value: Any, name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    try:
        rate = Decimal(str(value if value not in (None, "") else 0).strip())
    except InvalidOperation as exc:
        raise ValidationError(f"{name} must be a number", details={name: value}) from exc
    if not rate.is_finite() or rate < 0 or rate > 100:
        raise ValidationError(f"{name} must be between 0 and 100", details={name: str(value)})
    return rate


def _months(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("months must be a positive integer")
    try:
        months = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError("months must be a positive integer") from exc
    if months <= 0:
        raise ValidationError("months must be a positive integer")
    return months


def validate_finance_terms(apr_settings: dict[str, Any]) -> dict[str, Any]:
    """Check stored finance terms so checkout never meets an unusable APR."""
    terms = dict(apr_settings)
    if "apr" in terms:
        terms["apr"] = float(_percentage(terms["apr"], "apr"))
    if "deposit_percentage" in terms:
        terms["deposit_percentage"] = float(_percentage(terms["deposit_percentage"], "deposit_percentage"))
    if "months" in terms:
        if not isinstance(terms["months"], list) or not terms["months"]:
            raise ValidationError("months must be a non-empty list of terms")
        terms["months"] = [_months(item) for item in terms["months"]]
    return terms


def monthly_payment(total: Any, months: Any, apr: Any, deposit_percentage: Any = 0) -> Decimal:
    """Amortised monthly instalment for ``total`` after deposit, at ``apr`` percent."""
    term = _months(months)
    principal = to_money(total)
    deposit_rate = _percentage(deposit_percentage, "deposit_percentage")
    financed = principal - to_money(principal * deposit_rate / Decimal(100))
    if financed <= 0:
        return ZERO

    rate = _percentage(apr, "apr") / Decimal(100) / Decimal(12)
    if rate == 0:
        return to_money(financed / term)
    growth = (Decimal(1) + rate) ** term
    return to_money(financed * rate * growth / (growth - Decimal(1)))
