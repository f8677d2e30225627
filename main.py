import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any, Tuple

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from passlib.context import CryptContext
import jwt

import carts
import config
import order_status
from checkout import finalize_order
from database import get_store
from errors import DiscountInvalidError, StorefrontError
from pricing import Quote, apply_discount, normalize_code, quote
from schemas import Address, DiscountCode, LineItem, Product, ProductVariant, User

# Logging
logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("storefront")

# Security
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

app = FastAPI(title=f"{config.STORE_NAME} API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in config.ALLOWED_ORIGINS] if config.ALLOWED_ORIGINS else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Utilities
class TokenData(BaseModel):
    user_id: str
    email: EmailStr
    role: str


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_token(user_doc: Dict[str, Any]) -> str:
    payload = {
        "sub": str(user_doc.get("id")),
        "email": user_doc.get("email"),
        "role": user_doc.get("role", "customer"),
        "exp": datetime.now(timezone.utc) + timedelta(minutes=config.JWT_EXP_MIN),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> TokenData:
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
        return TokenData(user_id=payload["sub"], email=payload["email"], role=payload.get("role", "customer"))
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except (jwt.InvalidTokenError, KeyError):
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user(authorization: Optional[str] = Header(default=None),
                     store=Depends(get_store)) -> Optional[Dict[str, Any]]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    token_data = decode_token(token)
    user = store.get_user(token_data.user_id)
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_user(user: Optional[Dict[str, Any]] = Depends(get_current_user)) -> Dict[str, Any]:
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_role(user: Dict[str, Any], roles: List[str]):
    if user.get("role") not in roles:
        raise HTTPException(status_code=403, detail="Forbidden")


def get_owner(user: Optional[Dict[str, Any]] = Depends(get_current_user),
              x_session_id: Optional[str] = Header(default=None)) -> Tuple[Optional[str], Optional[str]]:
    """(user_id, session_id) of the cart owner; a signed-in user wins over a guest token."""
    if user:
        return user["id"], None
    if not x_session_id:
        raise HTTPException(status_code=400, detail="Sign in or send an X-Session-Id header")
    return None, x_session_id


def user_to_client(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "name": user["name"],
        "email": user["email"],
        "role": user.get("role", "customer"),
        "loyalty_points": user.get("loyalty_points", 0),
    }


def quote_to_client(q: Quote) -> Dict[str, Any]:
    return {
        **q.breakdown.model_dump(),
        "discount_code": q.discount_code,
        "loyalty_points_used": q.points_consumed,
        "item_count": sum(line.item.quantity for line in q.lines),
        "lines": [
            {
                "product_id": line.item.product_id,
                "variant_sku": line.item.variant_sku,
                "title": line.product.title,
                "variant_name": line.variant_name,
                "quantity": line.item.quantity,
                "unit_price": line.unit_price,
                "price_source": "variant" if line.variant is not None else "base",
                "line_total": line.line_total,
            }
            for line in q.lines
        ],
    }


def cart_response(store, cart) -> Dict[str, Any]:
    q = carts.view(store, cart)
    return {"cart": cart.model_dump(), "summary": quote_to_client(q), "warnings": q.warnings}


# Error handlers
@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error: %s", exc)
    return JSONResponse(status_code=500, content={"error": {"kind": "internal", "message": "Internal server error"}})


# Health and config
@app.get("/")
def root():
    return {
        "name": config.STORE_NAME,
        "status": "ok",
        "currency": config.PRIMARY_CURRENCY,
        "taxRatePercent": config.TAX_RATE_PERCENT,
        "shipping": {"flat": config.SHIPPING_FLAT, "freeAbove": config.FREE_SHIPPING_THRESHOLD},
        "loyaltyPointValue": config.LOYALTY_POINT_VALUE,
    }


# Auth
class RegisterDTO(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    session_id: Optional[str] = None


class LoginDTO(BaseModel):
    email: EmailStr
    password: str
    session_id: Optional[str] = None


@app.post("/auth/register")
def register(data: RegisterDTO, store=Depends(get_store)):
    if store.find_user_by_email(data.email):
        raise HTTPException(status_code=400, detail="Email already in use")
    user = User(name=data.name, email=data.email, password_hash=hash_password(data.password), role="customer")
    user_id = store.create_user(user)
    doc = store.get_user(user_id)
    carts.merge_guest_cart(store, data.session_id, user_id)
    return {"token": create_token(doc), "user": user_to_client(doc)}


@app.post("/auth/login")
def login(data: LoginDTO, store=Depends(get_store)):
    user = store.find_user_by_email(data.email)
    if not user or not verify_password(data.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    carts.merge_guest_cart(store, data.session_id, user["id"])
    return {"token": create_token(user), "user": user_to_client(user)}


@app.get("/auth/me")
def me(user: Dict[str, Any] = Depends(require_user)):
    return user_to_client(user)


# Products
class ProductDTO(BaseModel):
    title: str
    slug: str
    description: Optional[str] = None
    category: Optional[str] = None
    base_price: int = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    variants: List[ProductVariant] = []
    active: bool = True


@app.get("/products")
def list_products(limit: int = 24, page: int = 1, store=Depends(get_store)):
    limit = max(1, min(limit, 100))
    items = store.list_products(limit=limit, skip=(max(page, 1) - 1) * limit)
    return {"items": items, "page": page, "limit": limit}


@app.get("/products/{product_id}")
def get_product(product_id: str, store=Depends(get_store)):
    p = store.get_product(product_id)
    if not p or not p.get("active", True):
        raise HTTPException(status_code=404, detail="Product not found")
    return p


def _check_variant_skus(data: ProductDTO):
    skus = [v.sku for v in data.variants]
    if len(skus) != len(set(skus)):
        raise HTTPException(status_code=400, detail="Variant SKUs must be unique")


@app.post("/admin/products")
def create_product(data: ProductDTO, user: Dict[str, Any] = Depends(require_user), store=Depends(get_store)):
    require_role(user, ["admin"])
    _check_variant_skus(data)
    prod_id = store.create_product(Product(**data.model_dump()))
    return {"id": prod_id}


@app.put("/admin/products/{product_id}")
def update_product(product_id: str, data: ProductDTO, user: Dict[str, Any] = Depends(require_user),
                   store=Depends(get_store)):
    require_role(user, ["admin"])
    _check_variant_skus(data)
    if not store.update_product(product_id, data.model_dump()):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"id": product_id, "updated": True}


@app.put("/admin/products/{product_id}/toggle-status")
def toggle_product_status(product_id: str, user: Dict[str, Any] = Depends(require_user), store=Depends(get_store)):
    require_role(user, ["admin"])
    p = store.get_product(product_id)
    if not p:
        raise HTTPException(status_code=404, detail="Product not found")
    active = not p.get("active", True)
    store.update_product(product_id, {"active": active})
    logger.info("Product %s %s by %s", product_id, "activated" if active else "deactivated", user["email"])
    return {"id": product_id, "active": active}


@app.delete("/admin/products/{product_id}")
def delete_product(product_id: str, user: Dict[str, Any] = Depends(require_user), store=Depends(get_store)):
    require_role(user, ["admin"])
    if not store.delete_product(product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"id": product_id, "deleted": True}


# Pricing preview
class PreviewDTO(BaseModel):
    line_items: List[LineItem]
    discount_code: Optional[str] = None
    loyalty_points_requested: int = Field(0, ge=0)


@app.post("/pricing/preview")
def pricing_preview(data: PreviewDTO, user: Optional[Dict[str, Any]] = Depends(get_current_user),
                    store=Depends(get_store)):
    q = quote(store, data.line_items, data.discount_code, data.loyalty_points_requested,
              user["id"] if user else None)
    return quote_to_client(q)


# Cart
class CartItemDTO(BaseModel):
    product_id: str
    variant_sku: Optional[str] = None
    quantity: int = Field(1, ge=1, le=99)


class CartItemUpdateDTO(BaseModel):
    product_id: str
    variant_sku: Optional[str] = None
    quantity: int = Field(..., ge=0, le=99)


class CartItemKeyDTO(BaseModel):
    product_id: str
    variant_sku: Optional[str] = None


class DiscountApplyDTO(BaseModel):
    code: str


class LoyaltyDTO(BaseModel):
    points: int = Field(..., ge=1)


@app.get("/cart")
def cart_get(owner=Depends(get_owner), store=Depends(get_store)):
    return cart_response(store, carts.load_cart(store, *owner))


@app.post("/cart/items")
def cart_add(data: CartItemDTO, owner=Depends(get_owner), store=Depends(get_store)):
    cart = carts.load_cart(store, *owner)
    carts.add_item(store, cart, data.product_id, data.variant_sku, data.quantity)
    return cart_response(store, cart)


@app.put("/cart/items")
def cart_update(data: CartItemUpdateDTO, owner=Depends(get_owner), store=Depends(get_store)):
    cart = carts.load_cart(store, *owner)
    carts.update_item(store, cart, data.product_id, data.variant_sku, data.quantity)
    return cart_response(store, cart)


@app.delete("/cart/items")
def cart_remove(data: CartItemKeyDTO, owner=Depends(get_owner), store=Depends(get_store)):
    cart = carts.load_cart(store, *owner)
    carts.remove_item(store, cart, data.product_id, data.variant_sku)
    return cart_response(store, cart)


@app.delete("/cart")
def cart_clear(owner=Depends(get_owner), store=Depends(get_store)):
    cart = carts.load_cart(store, *owner)
    carts.clear(store, cart)
    return cart_response(store, cart)


@app.post("/cart/discount")
def cart_apply_discount(data: DiscountApplyDTO, owner=Depends(get_owner), store=Depends(get_store)):
    cart = carts.load_cart(store, *owner)
    carts.apply_discount_code(store, cart, data.code)
    return cart_response(store, cart)


@app.delete("/cart/discount")
def cart_remove_discount(owner=Depends(get_owner), store=Depends(get_store)):
    cart = carts.load_cart(store, *owner)
    carts.remove_discount_code(store, cart)
    return cart_response(store, cart)


@app.post("/cart/loyalty")
def cart_use_loyalty(data: LoyaltyDTO, owner=Depends(get_owner), store=Depends(get_store)):
    cart = carts.load_cart(store, *owner)
    carts.use_loyalty_points(store, cart, data.points)
    return cart_response(store, cart)


@app.delete("/cart/loyalty")
def cart_remove_loyalty(owner=Depends(get_owner), store=Depends(get_store)):
    cart = carts.load_cart(store, *owner)
    carts.remove_loyalty_points(store, cart)
    return cart_response(store, cart)


# Discount codes
class DiscountValidateDTO(BaseModel):
    code: str
    subtotal: int = Field(..., ge=0)


class DiscountCodeDTO(BaseModel):
    code: str
    description: str = Field(..., max_length=200)
    discount_type: str = "percentage"
    value: int = Field(..., ge=0)
    max_uses: int = Field(..., ge=1, le=10)
    min_order_amount: int = Field(0, ge=0)
    max_discount_amount: Optional[int] = Field(None, ge=0)
    active: bool = True
    public: bool = True


class DiscountUpdateDTO(BaseModel):
    description: Optional[str] = Field(None, max_length=200)
    discount_type: Optional[str] = None
    value: Optional[int] = Field(None, ge=0)
    max_uses: Optional[int] = Field(None, ge=1, le=10)
    min_order_amount: Optional[int] = Field(None, ge=0)
    max_discount_amount: Optional[int] = Field(None, ge=0)
    active: Optional[bool] = None
    public: Optional[bool] = None


def discount_to_client(doc: Dict[str, Any], with_usage: bool = False) -> Dict[str, Any]:
    out = {
        "code": doc["code"],
        "description": doc.get("description", ""),
        "discount_type": doc["discount_type"],
        "value": doc["value"],
        "min_order_amount": doc.get("min_order_amount", 0),
        "max_discount_amount": doc.get("max_discount_amount"),
    }
    if with_usage:
        history = doc.get("usage_history", [])
        out.update(
            id=doc.get("id"),
            active=doc.get("active", True),
            public=doc.get("public", True),
            max_uses=doc["max_uses"],
            used_count=doc["used_count"],
            remaining_uses=doc["max_uses"] - doc["used_count"],
            total_discount_given=sum(u.get("discount_amount", 0) for u in history),
            usage_history=history,
        )
    return out


@app.post("/discounts/validate")
def validate_discount(data: DiscountValidateDTO, store=Depends(get_store)):
    amount = apply_discount(data.subtotal, data.code, store)
    return {"code": data.code.strip().upper(), "valid": True, "discount_amount": amount}


@app.get("/discounts/public")
def public_discounts(store=Depends(get_store)):
    return [discount_to_client(d) for d in store.list_discounts(public_only=True)]


@app.post("/admin/discounts")
def create_discount(data: DiscountCodeDTO, user: Dict[str, Any] = Depends(require_user), store=Depends(get_store)):
    require_role(user, ["admin"])
    try:
        discount = DiscountCode(**data.model_dump())
    except ValueError as exc:
        raise DiscountInvalidError(str(exc))
    if store.get_discount(discount.code):
        raise DiscountInvalidError(f"Discount code {discount.code} already exists")
    discount_id = store.create_discount(discount)
    logger.info("Discount %s created by %s", discount.code, user["email"])
    return {"id": discount_id, "code": discount.code}


@app.get("/admin/discounts")
def list_discounts(user: Dict[str, Any] = Depends(require_user), store=Depends(get_store)):
    require_role(user, ["admin"])
    return [discount_to_client(d, with_usage=True) for d in store.list_discounts()]


@app.put("/admin/discounts/{code}")
def update_discount(code: str, data: DiscountUpdateDTO, user: Dict[str, Any] = Depends(require_user),
                    store=Depends(get_store)):
    require_role(user, ["admin"])
    current = store.get_discount(normalize_code(code))
    if not current:
        raise HTTPException(status_code=404, detail="Discount code not found")
    changes = data.model_dump(exclude_unset=True)
    try:
        DiscountCode(**{**current, **changes})
    except ValueError as exc:
        raise DiscountInvalidError(str(exc))
    store.update_discount(current["code"], changes)
    logger.info("Discount %s updated by %s: %s", current["code"], user["email"], sorted(changes))
    return discount_to_client(store.get_discount(current["code"]), with_usage=True)


@app.delete("/admin/discounts/{code}")
def delete_discount(code: str, user: Dict[str, Any] = Depends(require_user), store=Depends(get_store)):
    require_role(user, ["admin"])
    canonical = normalize_code(code)
    if not store.delete_discount(canonical):
        raise HTTPException(status_code=404, detail="Discount code not found")
    logger.info("Discount %s deleted by %s", canonical, user["email"])
    return {"code": canonical, "deleted": True}


# Checkout
class CheckoutDTO(BaseModel):
    shipping_address: Address
    payment_method: str = "cod"
    email: Optional[EmailStr] = None
    expected_total: Optional[int] = Field(None, ge=0)
    customer_notes: Optional[str] = Field(None, max_length=500)


@app.post("/checkout")
def checkout(data: CheckoutDTO, owner=Depends(get_owner), user: Optional[Dict[str, Any]] = Depends(get_current_user),
             store=Depends(get_store)):
    email = user["email"] if user else data.email
    if not email:
        raise HTTPException(status_code=400, detail="Email is required for guest checkout")
    cart = carts.load_cart(store, *owner)
    result = finalize_order(
        store, cart, data.shipping_address,
        payment_method=data.payment_method,
        email=email,
        expected_total=data.expected_total,
        customer_notes=data.customer_notes,
        currency=config.PRIMARY_CURRENCY,
    )
    return {
        "order_id": result.order_id,
        "order_number": result.order.order_number,
        "total": result.order.breakdown.total,
        "breakdown": result.order.breakdown.model_dump(),
    }


# Orders
class OrderStatusDTO(BaseModel):
    status: str
    note: Optional[str] = Field(None, max_length=500)


CUSTOMER_STATUSES = ("cancelled", "returned")


def _load_order_for(user: Dict[str, Any], order_id: str, store) -> Dict[str, Any]:
    o = store.get_order(order_id)
    if not o:
        raise HTTPException(status_code=404, detail="Not found")
    if user.get("role") != "admin" and o.get("user_id") != user["id"]:
        raise HTTPException(status_code=403, detail="Forbidden")
    return o


@app.get("/orders")
def list_orders(user: Dict[str, Any] = Depends(require_user), store=Depends(get_store)):
    if user.get("role") == "admin":
        return store.list_orders()
    return store.list_orders(user_id=user["id"])


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: Dict[str, Any] = Depends(require_user), store=Depends(get_store)):
    o = _load_order_for(user, order_id, store)
    o["allowed_transitions"] = order_status.allowed_transitions(o["status"], o.get("delivered_at"))
    return o


@app.post("/orders/{order_id}/status")
def update_order_status(order_id: str, data: OrderStatusDTO, user: Dict[str, Any] = Depends(require_user),
                        store=Depends(get_store)):
    _load_order_for(user, order_id, store)
    if user.get("role") != "admin" and data.status not in CUSTOMER_STATUSES:
        raise HTTPException(status_code=403, detail="Only cancellations and returns can be requested")
    return order_status.transition(store, order_id, data.status, note=data.note, updated_by=user["id"])


# Sample seed endpoint (dev only)
@app.post("/dev/seed")
def seed(store=Depends(get_store)):
    if not store.find_user_by_email("admin@storefront.dev"):
        admin = User(name="Admin", email="admin@storefront.dev", password_hash=hash_password("admin123"), role="admin")
        store.create_user(admin)
    if not store.list_products(limit=1, only_active=False):
        store.create_product(Product(
            title="UltraBook 14",
            slug="ultrabook-14",
            description="14 inch ultralight laptop",
            category="laptops",
            base_price=18990000,
            variants=[
                ProductVariant(sku="UB14-16-512", name="16GB / 512GB", options={"ram": "16GB", "storage": "512GB"},
                               price=18990000, stock=20),
                ProductVariant(sku="UB14-32-1T", name="32GB / 1TB", options={"ram": "32GB", "storage": "1TB"},
                               price=23990000, stock=10),
            ],
        ))
        store.create_product(Product(
            title="Mechanical Keyboard", slug="mechanical-keyboard", category="keyboards",
            base_price=800000, stock=100,
        ))
    if not store.get_discount("SAVE5"):
        store.create_discount(DiscountCode(code="SAVE5", description="50,000 off any order",
                                           discount_type="fixed", value=50000, max_uses=10))
    return {"ok": True}


if __name__ == "__main__":
    import os
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
