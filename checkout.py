"""
Checkout: the authoritative path from a cart to an order.

``finalize_order`` re-quotes the cart against the live catalog, rejects stale
prices, then commits the cart, stock, discount usage, loyalty spend and the
order document as one unit. Every shared counter is changed with a conditional
update ("only if stock >= quantity", "only if used_count < max_uses", ...);
when any step fails the steps already applied are undone in reverse order and
no order is written.
"""
import logging
import random
import string
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from errors import (
    CommitError,
    DiscountInvalidError,
    InsufficientPointsError,
    InvalidCartError,
    PriceChangedError,
    StockInsufficientError,
    StorefrontError,
)
from pricing import DEFAULT_POLICY, PricedLine, PricingPolicy, Quote, quote
from schemas import PAYMENT_METHODS, Address, Cart, Order, OrderItem, StatusEntry

logger = logging.getLogger("storefront.checkout")

PAYMENT_METHOD_ALIASES = {"credit": "credit_card", "card": "credit_card", "bank": "bank_transfer"}


@dataclass
class CheckoutResult:
    order_id: str
    order: Order
    quote: Quote


def generate_order_number() -> str:
    timestamp = str(int(time.time() * 1000))[-8:]
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=5))
    return f"ORD-{timestamp}-{suffix}"


def normalize_payment_method(label: str) -> str:
    method = PAYMENT_METHOD_ALIASES.get((label or "").strip().lower(), (label or "").strip().lower())
    if method not in PAYMENT_METHODS:
        raise InvalidCartError(f"Unsupported payment method {label!r}", {"allowed": list(PAYMENT_METHODS)})
    return method


def _stale_lines(lines: List[PricedLine]) -> List[Dict[str, Any]]:
    stale = []
    for line in lines:
        quoted = getattr(line.item, "unit_price", None)
        if quoted is not None and quoted != line.unit_price:
            stale.append({
                "product_id": line.item.product_id,
                "variant_sku": line.item.variant_sku,
                "quoted": quoted,
                "current": line.unit_price,
            })
    return stale


def _demand(lines: List[PricedLine]) -> "OrderedDict[Tuple[str, Optional[str]], Tuple[int, PricedLine]]":
    # one entry per stock counter, in cart order
    demand: "OrderedDict[Tuple[str, Optional[str]], Tuple[int, PricedLine]]" = OrderedDict()
    for line in lines:
        key = (line.item.product_id, line.item.variant_sku or None)
        quantity, _ = demand.get(key, (0, line))
        demand[key] = (quantity + line.item.quantity, line)
    return demand


def _rollback(undo: List[Tuple[str, Callable[[], None]]], order_number: str) -> None:
    for label, step in reversed(undo):
        try:
            step()
        except Exception:
            logger.exception("Rollback step %s failed for %s", label, order_number)
    if undo:
        logger.info("Rolled back %d step(s) for %s", len(undo), order_number)


def finalize_order(store, cart: Cart, shipping_address: Address, payment_method: str = "cod",
                   email: Optional[str] = None, expected_total: Optional[int] = None,
                   customer_notes: Optional[str] = None, currency: str = "VND",
                   policy: PricingPolicy = DEFAULT_POLICY) -> CheckoutResult:
    if not cart.items:
        raise InvalidCartError("Cart is empty")
    method = normalize_payment_method(payment_method)

    q = quote(store, cart.items, cart.discount_code, cart.loyalty_points_requested, cart.user_id, policy)

    stale = _stale_lines(q.lines)
    if stale:
        raise PriceChangedError("Prices changed since the cart was last viewed", {"lines": stale})
    if expected_total is not None and expected_total != q.breakdown.total:
        raise PriceChangedError(
            f"Order total is now {q.breakdown.total}, previewed {expected_total}",
            {"previewed_total": expected_total, "total": q.breakdown.total},
        )

    demand = _demand(q.lines)
    for (product_id, sku), (quantity, line) in demand.items():
        if quantity > line.available_stock:
            raise StockInsufficientError(
                f"Only {line.available_stock} units of {line.product.title} available in stock",
                {"product_id": product_id, "variant_sku": sku, "available": line.available_stock},
            )

    now = datetime.now(timezone.utc)
    order_number = generate_order_number()
    order = Order(
        order_number=order_number,
        user_id=cart.user_id,
        email=email,
        items=[
            OrderItem(
                product_id=line.item.product_id,
                title=line.product.title,
                variant_sku=line.item.variant_sku,
                variant_name=line.variant_name,
                quantity=line.item.quantity,
                unit_price=line.unit_price,
                line_total=line.line_total,
            )
            for line in q.lines
        ],
        breakdown=q.breakdown,
        currency=currency,
        discount_code=q.discount_code,
        loyalty_points_used=q.points_consumed,
        shipping_address=shipping_address,
        payment_method=method,
        status="pending",
        status_history=[StatusEntry(status="pending", timestamp=now, note="Order created")],
        customer_notes=customer_notes,
    )

    undo: List[Tuple[str, Callable[[], None]]] = []
    try:
        # a cart yields at most one order
        if not store.delete_cart(user_id=cart.user_id, session_id=cart.session_id):
            raise InvalidCartError("Cart was already checked out or no longer exists")
        undo.append(("cart", lambda: store.save_cart(cart.model_dump())))

        for (product_id, sku), (quantity, line) in demand.items():
            if not store.reserve_stock(product_id, sku, quantity):
                raise StockInsufficientError(
                    f"{line.product.title} sold out while checking out",
                    {"product_id": product_id, "variant_sku": sku},
                )
            undo.append(("stock", lambda p=product_id, s=sku, n=quantity: store.release_stock(p, s, n)))

        if q.discount is not None:
            usage = {
                "user_id": cart.user_id,
                "order_number": order_number,
                "discount_amount": q.breakdown.discount_amount,
                "used_at": now,
            }
            if not store.claim_discount(q.discount.code, usage):
                raise DiscountInvalidError(
                    f"Discount code {q.discount.code} has reached its maximum uses", {"code": q.discount.code}
                )
            undo.append(("discount", lambda c=q.discount.code: store.release_discount(c, order_number)))

        if q.points_consumed:
            if not store.spend_points(cart.user_id, q.points_consumed):
                raise InsufficientPointsError("Loyalty balance changed while checking out")
            undo.append(("points", lambda: store.add_points(cart.user_id, q.points_consumed)))

        order_id = store.create_order(order)
    except StorefrontError as exc:
        logger.warning("Checkout %s rejected: %s", order_number, exc.message)
        _rollback(undo, order_number)
        raise
    except Exception as exc:
        logger.exception("Checkout %s failed during commit", order_number)
        _rollback(undo, order_number)
        raise CommitError("Order could not be placed, nothing was applied. Please try again.") from exc

    logger.info("Order %s placed (%s) total=%d", order_number, order_id, q.breakdown.total)
    return CheckoutResult(order_id=order_id, order=order, quote=q)
