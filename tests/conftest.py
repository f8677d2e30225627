"""Shared pytest fixtures: a seeded in-memory store and an API client bound to it."""

import pytest
from fastapi.testclient import TestClient

from database import get_store
from memory_store import MemoryStore
from pricing import PricingPolicy
from schemas import Address, Cart, CartItem, DiscountCode, Product, ProductVariant, User


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def policy():
    return PricingPolicy(tax_rate_percent=10, shipping_flat=50000,
                         free_shipping_threshold=1000000, loyalty_point_value=1000)


@pytest.fixture
def catalog(store):
    """Product ids keyed by short name."""
    laptop = store.create_product(Product(
        title="UltraBook 14",
        slug="ultrabook-14",
        base_price=750000,
        stock=3,
        variants=[
            ProductVariant(sku="UB-16", name="16GB", price=800000, stock=5),
            ProductVariant(sku="UB-32", name="32GB", price=1200000, stock=1),
            ProductVariant(sku="UB-OLD", name="8GB", price=600000, stock=3, active=False),
        ],
    ))
    keyboard = store.create_product(Product(title="Keyboard", slug="keyboard", base_price=300000, stock=10))
    retired = store.create_product(Product(title="Old Mouse", slug="old-mouse", base_price=100000, stock=4,
                                           active=False))
    return {"laptop": laptop, "keyboard": keyboard, "retired": retired}


@pytest.fixture
def discounts(store):
    store.create_discount(DiscountCode(code="SAVE5", description="fixed 50k", discount_type="fixed",
                                       value=50000, max_uses=10))
    store.create_discount(DiscountCode(code="PCT20", description="20% capped", discount_type="percentage",
                                       value=20, max_uses=10, max_discount_amount=100000))
    store.create_discount(DiscountCode(code="ONCE1", description="single use", discount_type="fixed",
                                       value=10000, max_uses=1))
    store.create_discount(DiscountCode(code="OFF00", description="inactive", discount_type="fixed",
                                       value=10000, max_uses=5, active=False))
    store.create_discount(DiscountCode(code="BIG10", description="big orders", discount_type="percentage",
                                       value=10, max_uses=5, min_order_amount=2000000))
    store.create_discount(DiscountCode(code="USEDU", description="exhausted", discount_type="fixed",
                                       value=10000, max_uses=2, used_count=2))
    return store


@pytest.fixture
def customer(store):
    return store.create_user(User(name="Lan", email="lan@mail.com", password_hash="x", loyalty_points=500))


@pytest.fixture
def address():
    return Address(full_name="Lan Nguyen", street="1 Le Loi", city="HCMC", state="HCM", zip_code="700000")


@pytest.fixture
def make_cart(store):
    def _make(items, user_id=None, session_id=None, discount_code=None, points=0):
        if not user_id and not session_id:
            session_id = "guest-session"
        cart = Cart(user_id=user_id, session_id=session_id, discount_code=discount_code,
                    loyalty_points_requested=points,
                    items=[CartItem(**i) for i in items])
        store.save_cart(cart.model_dump())
        return cart
    return _make


@pytest.fixture
def client(store):
    from main import app
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()
