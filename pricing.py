"""
Pricing engine

Pure computations that turn a cart snapshot into a PriceBreakdown. The same
functions back the live cart preview and the authoritative re-quote done at
checkout, so the two can never drift apart. Nothing in here writes to the
store: discount usage, stock and loyalty balances are only touched by
``checkout.finalize_order``.

Collaborators are duck-typed:

- a catalog exposes ``get_product(product_id) -> dict | None``
- a discount registry exposes ``get_discount(code) -> dict | None``
- a loyalty ledger exposes ``get_loyalty_points(user_id) -> int``
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple, Union

import config
from errors import CatalogLookupError, DiscountInvalidError, InsufficientPointsError
from schemas import DiscountCode, LineItem, PriceBreakdown, Product, ProductVariant

logger = logging.getLogger("storefront.pricing")

_CODE_RE = re.compile(r"^[A-Z0-9]{5}$")


@dataclass(frozen=True)
class PricingPolicy:
    tax_rate_percent: int = config.TAX_RATE_PERCENT
    shipping_flat: int = config.SHIPPING_FLAT
    free_shipping_threshold: int = config.FREE_SHIPPING_THRESHOLD
    loyalty_point_value: int = config.LOYALTY_POINT_VALUE


DEFAULT_POLICY = PricingPolicy()


# Where a unit price came from. Resolution never falls back to zero.
@dataclass(frozen=True)
class VariantPrice:
    value: int
    sku: str


@dataclass(frozen=True)
class BasePrice:
    value: int


PriceSource = Union[VariantPrice, BasePrice]


@dataclass(frozen=True)
class PricedLine:
    item: LineItem
    product: Product
    variant: Optional[ProductVariant]
    source: PriceSource

    @property
    def unit_price(self) -> int:
        return self.source.value

    @property
    def line_total(self) -> int:
        return self.source.value * self.item.quantity

    @property
    def available_stock(self) -> int:
        return self.variant.stock if self.variant is not None else self.product.stock

    @property
    def variant_name(self) -> str:
        return self.variant.name if self.variant is not None else "Default"


@dataclass
class Quote:
    lines: List[PricedLine]
    breakdown: PriceBreakdown
    discount: Optional[DiscountCode] = None
    points_consumed: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def discount_code(self) -> Optional[str]:
        return self.discount.code if self.discount else None


def _percent_of(amount: int, percent: int) -> int:
    # round half up, amounts are non-negative
    return (amount * percent + 50) // 100


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def resolve_line(item: LineItem, catalog) -> PricedLine:
    doc = catalog.get_product(item.product_id)
    if not doc:
        raise CatalogLookupError(f"Product {item.product_id} not found", {"product_id": item.product_id})
    product = doc if isinstance(doc, Product) else Product(**doc)
    if not product.active:
        raise CatalogLookupError(f"Product {product.title} is not available", {"product_id": item.product_id})

    if item.variant_sku:
        variant = product.find_variant(item.variant_sku)
        if variant is None or not variant.active:
            raise CatalogLookupError(
                f"Variant {item.variant_sku} of {product.title} is not available",
                {"product_id": item.product_id, "variant_sku": item.variant_sku},
            )
        return PricedLine(item=item, product=product, variant=variant, source=VariantPrice(variant.price, variant.sku))

    return PricedLine(item=item, product=product, variant=None, source=BasePrice(product.base_price))


def resolve_lines(line_items: Iterable[LineItem], catalog) -> List[PricedLine]:
    return [resolve_line(item, catalog) for item in line_items]


def compute_subtotal(line_items: Iterable[LineItem], catalog) -> int:
    return sum(line.line_total for line in resolve_lines(line_items, catalog))


def lookup_discount(code: str, registry) -> DiscountCode:
    canonical = normalize_code(code)
    if not _CODE_RE.match(canonical):
        raise DiscountInvalidError("Discount code must be exactly 5 letters or digits", {"code": canonical})
    doc = registry.get_discount(canonical)
    if not doc:
        raise DiscountInvalidError(f"Discount code {canonical} does not exist", {"code": canonical})
    return DiscountCode(**doc)


def discount_amount_for(discount: DiscountCode, subtotal: int) -> int:
    """Validate ``discount`` against ``subtotal`` and return the amount it takes off."""
    if not discount.active:
        raise DiscountInvalidError(f"Discount code {discount.code} is not active", {"code": discount.code})
    if discount.used_count >= discount.max_uses:
        raise DiscountInvalidError(f"Discount code {discount.code} has reached its maximum uses", {"code": discount.code})
    if subtotal < discount.min_order_amount:
        raise DiscountInvalidError(
            f"Minimum order amount of {discount.min_order_amount} required for {discount.code}",
            {"code": discount.code, "min_order_amount": discount.min_order_amount},
        )

    if discount.discount_type == "percentage":
        amount = _percent_of(subtotal, discount.value)
    else:
        amount = discount.value
    if discount.max_discount_amount is not None:
        amount = min(amount, discount.max_discount_amount)
    return min(amount, subtotal)


def apply_discount(subtotal: int, code: str, registry) -> int:
    return discount_amount_for(lookup_discount(code, registry), subtotal)


def apply_loyalty_points(amount: int, points_requested: int, balance: int,
                         policy: PricingPolicy = DEFAULT_POLICY) -> Tuple[int, int]:
    """Return ``(loyalty_deduction, points_consumed)`` for redeeming against ``amount``."""
    if points_requested < 0:
        raise InsufficientPointsError("Loyalty points requested cannot be negative")
    if points_requested > balance:
        raise InsufficientPointsError(
            f"Requested {points_requested} loyalty points but only {balance} available",
            {"requested": points_requested, "balance": balance},
        )
    max_redeemable = amount // policy.loyalty_point_value
    consumed = min(points_requested, balance, max_redeemable)
    return consumed * policy.loyalty_point_value, consumed


def compute_shipping(subtotal: int, policy: PricingPolicy = DEFAULT_POLICY) -> int:
    return 0 if subtotal > policy.free_shipping_threshold else policy.shipping_flat


def compute_tax(subtotal: int, policy: PricingPolicy = DEFAULT_POLICY) -> int:
    # levied on the gross subtotal, before discount and loyalty deductions
    return _percent_of(subtotal, policy.tax_rate_percent)


def compute_total(subtotal: int, discount_amount: int, loyalty_deduction: int, shipping: int, tax: int) -> int:
    return max(0, subtotal + shipping + tax - discount_amount - loyalty_deduction)


def quote(store, line_items: Iterable[LineItem], discount_code: Optional[str] = None,
          points_requested: int = 0, user_id: Optional[str] = None,
          policy: PricingPolicy = DEFAULT_POLICY) -> Quote:
    """Price a cart snapshot. ``store`` serves as catalog, discount registry and loyalty ledger."""
    lines = resolve_lines(line_items, store)
    subtotal = sum(line.line_total for line in lines)

    discount = None
    discount_amount = 0
    if discount_code:
        discount = lookup_discount(discount_code, store)
        discount_amount = discount_amount_for(discount, subtotal)

    loyalty_deduction, points_consumed = 0, 0
    if points_requested:
        if not user_id:
            raise InsufficientPointsError("Sign in to redeem loyalty points")
        balance = store.get_loyalty_points(user_id)
        loyalty_deduction, points_consumed = apply_loyalty_points(subtotal, points_requested, balance, policy)

    shipping = compute_shipping(subtotal, policy)
    tax = compute_tax(subtotal, policy)
    breakdown = PriceBreakdown(
        subtotal=subtotal,
        discount_amount=discount_amount,
        loyalty_deduction=loyalty_deduction,
        shipping=shipping,
        tax=tax,
        total=compute_total(subtotal, discount_amount, loyalty_deduction, shipping, tax),
    )
    logger.debug("Quoted %d lines: %s", len(lines), breakdown.model_dump())
    return Quote(lines=lines, breakdown=breakdown, discount=discount, points_consumed=points_consumed)
