"""
Storefront Database Schemas

Each Pydantic model below represents one MongoDB collection. The collection name is the lowercase
class name. Example: class User -> collection "user". DiscountCode is stored in "discount".

These schemas are used for validation before inserting/updating documents. Every amount is an
integer in minor currency units.
"""
from datetime import datetime
from typing import List, Optional, Dict
from pydantic import BaseModel, Field, EmailStr, field_validator, model_validator

ORDER_STATUSES = ("pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "returned")
PAYMENT_METHODS = ("credit_card", "debit_card", "paypal", "bank_transfer", "cod")
DISCOUNT_CODE_PATTERN = r"^[A-Z0-9]{5}$"


class Address(BaseModel):
    full_name: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "Vietnam"
    phone: Optional[str] = None


class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    role: str = Field("customer", description="customer | admin")
    is_active: bool = True
    loyalty_points: int = Field(0, ge=0)


class ProductVariant(BaseModel):
    sku: str
    name: str = "Default"
    options: Dict[str, str] = Field(default_factory=dict, description="e.g., {'ram':'16GB','storage':'512GB'}")
    price: int = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    active: bool = True


class Product(BaseModel):
    id: Optional[str] = None
    title: str
    slug: str
    description: Optional[str] = None
    category: Optional[str] = None
    base_price: int = Field(..., ge=0)
    stock: int = Field(0, ge=0, description="stock when sold without a variant")
    variants: List[ProductVariant] = []
    active: bool = True

    def find_variant(self, sku: str) -> Optional[ProductVariant]:
        for variant in self.variants:
            if variant.sku == sku:
                return variant
        return None


class DiscountUsage(BaseModel):
    user_id: Optional[str] = None
    order_number: str
    discount_amount: int = Field(..., ge=0)
    used_at: datetime


class DiscountCode(BaseModel):
    code: str = Field(..., pattern=DISCOUNT_CODE_PATTERN)
    description: str = Field("", max_length=200)
    discount_type: str = Field("percentage", description="percentage | fixed")
    value: int = Field(..., ge=0)
    max_uses: int = Field(..., ge=1, le=10)
    used_count: int = Field(0, ge=0)
    min_order_amount: int = Field(0, ge=0)
    max_discount_amount: Optional[int] = Field(None, ge=0)
    active: bool = True
    public: bool = True
    usage_history: List[DiscountUsage] = []

    @field_validator("code", mode="before")
    @classmethod
    def _uppercase(cls, v):
        return v.strip().upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def _check_limits(self):
        if self.discount_type not in ("percentage", "fixed"):
            raise ValueError("discount_type must be percentage or fixed")
        if self.discount_type == "percentage" and self.value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        if self.used_count > self.max_uses:
            raise ValueError("used_count cannot exceed max_uses")
        return self


class LineItem(BaseModel):
    product_id: str
    variant_sku: Optional[str] = None
    quantity: int = Field(1, ge=1, le=99)


class CartItem(LineItem):
    unit_price: Optional[int] = Field(None, ge=0, description="last price quoted to the client")


class Cart(BaseModel):
    user_id: Optional[str] = None
    session_id: Optional[str] = None  # for guests
    items: List[CartItem] = []
    discount_code: Optional[str] = None
    loyalty_points_requested: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _one_owner(self):
        if bool(self.user_id) == bool(self.session_id):
            raise ValueError("a cart belongs to exactly one of user_id or session_id")
        return self


class PriceBreakdown(BaseModel):
    subtotal: int = Field(0, ge=0)
    discount_amount: int = Field(0, ge=0)
    loyalty_deduction: int = Field(0, ge=0)
    shipping: int = Field(0, ge=0)
    tax: int = Field(0, ge=0)
    total: int = Field(0, ge=0)


class OrderItem(BaseModel):
    product_id: str
    title: str
    variant_sku: Optional[str] = None
    variant_name: str = "Default"
    quantity: int = Field(..., ge=1)
    unit_price: int = Field(..., ge=0)
    line_total: int = Field(..., ge=0)


class StatusEntry(BaseModel):
    status: str
    timestamp: datetime
    note: Optional[str] = None
    updated_by: Optional[str] = None


class Order(BaseModel):
    order_number: str
    user_id: Optional[str] = None
    email: Optional[EmailStr] = None
    items: List[OrderItem]
    breakdown: PriceBreakdown
    currency: str = "VND"
    discount_code: Optional[str] = None
    loyalty_points_used: int = Field(0, ge=0)
    loyalty_points_earned: int = Field(0, ge=0)
    shipping_address: Address
    payment_method: str = "cod"
    status: str = Field("pending", description="|".join(ORDER_STATUSES))
    status_history: List[StatusEntry] = []
    delivered_at: Optional[datetime] = None
    customer_notes: Optional[str] = Field(None, max_length=500)

    @model_validator(mode="after")
    def _has_owner(self):
        if not self.user_id and not self.email:
            raise ValueError("an order needs a user_id or a guest email")
        return self
