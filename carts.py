"""
Carts

A cart belongs to exactly one owner: a signed-in user or a guest session token.
Callers load a cart, hand it to an operation here and get the saved cart back;
nothing is kept in ambient state between requests.
"""
import logging
from typing import Optional

import config
from errors import (
    CatalogLookupError,
    DiscountInvalidError,
    InsufficientPointsError,
    InvalidCartError,
    StockInsufficientError,
)
from pricing import (
    DEFAULT_POLICY,
    PricingPolicy,
    Quote,
    compute_subtotal,
    discount_amount_for,
    lookup_discount,
    quote,
    resolve_line,
)
from schemas import Cart, CartItem, LineItem

logger = logging.getLogger("storefront.carts")


def load_cart(store, user_id: Optional[str] = None, session_id: Optional[str] = None) -> Cart:
    if not user_id and not session_id:
        raise InvalidCartError("A signed-in user or a guest session id is required")
    doc = store.find_cart(user_id=user_id, session_id=None if user_id else session_id)
    if doc:
        return Cart(**doc)
    if user_id:
        return Cart(user_id=user_id)
    return Cart(session_id=session_id)


def save_cart(store, cart: Cart) -> Cart:
    store.save_cart(cart.model_dump())
    return cart


def find_item(cart: Cart, product_id: str, variant_sku: Optional[str]) -> Optional[CartItem]:
    for item in cart.items:
        if item.product_id == product_id and (item.variant_sku or None) == (variant_sku or None):
            return item
    return None


def _check_quantity(store, product_id: str, variant_sku: Optional[str], quantity: int) -> int:
    """Validate a line at ``quantity`` and return its current unit price."""
    if quantity > config.MAX_LINE_QUANTITY:
        raise InvalidCartError(f"Quantity cannot exceed {config.MAX_LINE_QUANTITY}")
    line = resolve_line(LineItem(product_id=product_id, variant_sku=variant_sku, quantity=quantity), store)
    if quantity > line.available_stock:
        raise StockInsufficientError(
            f"Only {line.available_stock} units available in stock",
            {"product_id": product_id, "variant_sku": variant_sku, "available": line.available_stock},
        )
    return line.unit_price


def add_item(store, cart: Cart, product_id: str, variant_sku: Optional[str] = None, quantity: int = 1) -> Cart:
    if quantity < 1:
        raise InvalidCartError("Quantity must be at least 1")
    existing = find_item(cart, product_id, variant_sku)
    new_quantity = quantity + (existing.quantity if existing else 0)
    unit_price = _check_quantity(store, product_id, variant_sku, new_quantity)
    if existing:
        existing.quantity = new_quantity
        existing.unit_price = unit_price
    else:
        cart.items.append(CartItem(product_id=product_id, variant_sku=variant_sku,
                                   quantity=new_quantity, unit_price=unit_price))
    return save_cart(store, cart)


def update_item(store, cart: Cart, product_id: str, variant_sku: Optional[str], quantity: int) -> Cart:
    item = find_item(cart, product_id, variant_sku)
    if item is None:
        raise InvalidCartError("Item not found in cart")
    if quantity <= 0:
        return remove_item(store, cart, product_id, variant_sku)
    item.unit_price = _check_quantity(store, product_id, variant_sku, quantity)
    item.quantity = quantity
    return save_cart(store, cart)


def remove_item(store, cart: Cart, product_id: str, variant_sku: Optional[str] = None) -> Cart:
    cart.items = [
        i for i in cart.items
        if not (i.product_id == product_id and (i.variant_sku or None) == (variant_sku or None))
    ]
    return save_cart(store, cart)


def clear(store, cart: Cart) -> Cart:
    cart.items = []
    cart.discount_code = None
    cart.loyalty_points_requested = 0
    return save_cart(store, cart)


def apply_discount_code(store, cart: Cart, code: str) -> Cart:
    if not cart.items:
        raise InvalidCartError("Add items to the cart before applying a discount code")
    discount = lookup_discount(code, store)
    discount_amount_for(discount, compute_subtotal(cart.items, store))
    cart.discount_code = discount.code
    return save_cart(store, cart)


def remove_discount_code(store, cart: Cart) -> Cart:
    cart.discount_code = None
    return save_cart(store, cart)


def use_loyalty_points(store, cart: Cart, points: int) -> Cart:
    if not cart.user_id:
        raise InsufficientPointsError("Sign in to redeem loyalty points")
    if points < 1:
        raise InvalidCartError("Valid loyalty points amount is required")
    balance = store.get_loyalty_points(cart.user_id)
    if points > balance:
        raise InsufficientPointsError(f"Insufficient loyalty points: {balance} available",
                                      {"requested": points, "balance": balance})
    cart.loyalty_points_requested = points
    return save_cart(store, cart)


def remove_loyalty_points(store, cart: Cart) -> Cart:
    cart.loyalty_points_requested = 0
    return save_cart(store, cart)


def merge_guest_cart(store, session_id: Optional[str], user_id: str) -> Cart:
    """Fold a guest cart into the user's cart and discard the guest cart."""
    user_cart = load_cart(store, user_id=user_id)
    if not session_id:
        return user_cart
    guest_doc = store.find_cart(session_id=session_id)
    if not guest_doc:
        return user_cart

    guest = Cart(**guest_doc)
    for item in guest.items:
        existing = find_item(user_cart, item.product_id, item.variant_sku)
        if existing:
            existing.quantity = min(config.MAX_LINE_QUANTITY, existing.quantity + item.quantity)
        else:
            user_cart.items.append(item.model_copy())
    if guest.discount_code and not user_cart.discount_code:
        user_cart.discount_code = guest.discount_code

    save_cart(store, user_cart)
    store.delete_cart(session_id=session_id)
    logger.info("Merged %d guest item(s) into cart of user %s", len(guest.items), user_id)
    return user_cart


def view(store, cart: Cart, policy: PricingPolicy = DEFAULT_POLICY) -> Quote:
    """Live quote for a cart.

    Unavailable items are dropped and recorded unit prices refreshed. A discount
    code or points selection that no longer applies stays on the cart but is left
    out of the quote, with a warning.
    """
    warnings = []
    kept = []
    for item in cart.items:
        try:
            line = resolve_line(item, store)
        except CatalogLookupError as exc:
            warnings.append(exc.message)
            continue
        item.unit_price = line.unit_price
        kept.append(item)
    cart.items = kept

    code = cart.discount_code
    if code:
        try:
            discount_amount_for(lookup_discount(code, store), compute_subtotal(kept, store))
        except DiscountInvalidError as exc:
            warnings.append(exc.message)
            code = None

    points = cart.loyalty_points_requested
    if points:
        balance = store.get_loyalty_points(cart.user_id) if cart.user_id else 0
        if points > balance:
            warnings.append(f"Insufficient loyalty points: {balance} available")
            points = 0

    result = quote(store, kept, code, points, cart.user_id, policy)
    result.warnings.extend(warnings)
    save_cart(store, cart)
    return result
