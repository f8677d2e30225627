"""Tests for the pricing engine."""

import pytest

from errors import CatalogLookupError, DiscountInvalidError, InsufficientPointsError
from pricing import (
    BasePrice,
    VariantPrice,
    apply_discount,
    apply_loyalty_points,
    compute_shipping,
    compute_subtotal,
    compute_tax,
    compute_total,
    quote,
    resolve_line,
)
from schemas import LineItem, User


class TestPriceResolution:
    def test_variant_price_wins_over_base_price(self, store, catalog):
        line = resolve_line(LineItem(product_id=catalog["laptop"], variant_sku="UB-16", quantity=2), store)
        assert line.source == VariantPrice(800000, "UB-16")
        assert line.line_total == 1600000

    def test_base_price_without_variant(self, store, catalog):
        line = resolve_line(LineItem(product_id=catalog["keyboard"], quantity=1), store)
        assert line.source == BasePrice(300000)
        assert line.available_stock == 10

    @pytest.mark.parametrize("product,sku", [
        ("missing", None),
        ("retired", None),
        ("laptop", "NOPE"),
        ("laptop", "UB-OLD"),
    ])
    def test_unresolvable_lines_fail(self, store, catalog, product, sku):
        product_id = catalog.get(product, "0" * 24)
        with pytest.raises(CatalogLookupError):
            resolve_line(LineItem(product_id=product_id, variant_sku=sku, quantity=1), store)

    def test_subtotal_is_repeatable_and_read_only(self, store, catalog):
        items = [
            LineItem(product_id=catalog["laptop"], variant_sku="UB-16", quantity=1),
            LineItem(product_id=catalog["keyboard"], quantity=3),
        ]
        before = store.get_product(catalog["laptop"])
        assert compute_subtotal(items, store) == 1700000
        assert compute_subtotal(items, store) == 1700000
        assert store.get_product(catalog["laptop"])["variants"] == before["variants"]


class TestDiscounts:
    def test_fixed(self, discounts):
        assert apply_discount(800000, "SAVE5", discounts) == 50000

    def test_fixed_never_exceeds_subtotal(self, discounts):
        assert apply_discount(30000, "SAVE5", discounts) == 30000

    def test_percentage_clamped_to_max_discount(self, discounts):
        assert apply_discount(300000, "PCT20", discounts) == 60000
        assert apply_discount(2000000, "PCT20", discounts) == 100000

    def test_code_is_case_insensitive(self, discounts):
        assert apply_discount(800000, " save5 ", discounts) == 50000

    @pytest.mark.parametrize("code,subtotal", [
        ("SAVE", 800000),
        ("SAVE-5", 800000),
        ("NOPE1", 800000),
        ("OFF00", 800000),
        ("USEDU", 800000),
        ("BIG10", 1999999),
    ])
    def test_invalid_codes(self, discounts, code, subtotal):
        with pytest.raises(DiscountInvalidError):
            apply_discount(subtotal, code, discounts)

    def test_minimum_order_amount_is_inclusive(self, discounts):
        assert apply_discount(2000000, "BIG10", discounts) == 200000


class TestLoyalty:
    def test_redemption_capped_by_subtotal(self, policy):
        assert apply_loyalty_points(300000, 500, 500, policy) == (300000, 300)

    def test_partial_points_below_cap(self, policy):
        assert apply_loyalty_points(300000, 120, 500, policy) == (120000, 120)

    def test_fractional_point_value_is_not_redeemable(self, policy):
        assert apply_loyalty_points(1999, 5, 5, policy) == (1000, 1)

    def test_more_than_balance(self, policy):
        with pytest.raises(InsufficientPointsError):
            apply_loyalty_points(300000, 501, 500, policy)


class TestShippingTaxTotal:
    def test_free_shipping_threshold_is_strict(self, policy):
        assert compute_shipping(1000000, policy) == 50000
        assert compute_shipping(1000001, policy) == 0
        assert compute_shipping(0, policy) == 50000

    def test_tax_on_gross_subtotal(self, policy):
        assert compute_tax(800000, policy) == 80000
        assert compute_tax(15, policy) == 2
        assert compute_tax(14, policy) == 1

    def test_total_floors_at_zero(self):
        assert compute_total(1000, 1000, 5000, 0, 0) == 0

    def test_total_identity(self):
        for subtotal in (0, 1, 999, 300000, 1000000, 1000001, 25000000):
            for discount in (0, subtotal // 3, subtotal):
                loyalty = (subtotal - discount) // 2
                shipping = compute_shipping(subtotal)
                tax = compute_tax(subtotal)
                total = compute_total(subtotal, discount, loyalty, shipping, tax)
                assert total == subtotal + shipping + tax - discount - loyalty
                assert total >= 0


class TestQuote:
    def test_single_laptop_with_fixed_code(self, store, catalog, discounts, policy):
        items = [LineItem(product_id=catalog["laptop"], variant_sku="UB-16", quantity=1)]
        q = quote(store, items, discount_code="SAVE5", policy=policy)
        assert q.breakdown.model_dump() == {
            "subtotal": 800000,
            "discount_amount": 50000,
            "loyalty_deduction": 0,
            "shipping": 50000,
            "tax": 80000,
            "total": 880000,
        }
        assert q.discount_code == "SAVE5"

    def test_loyalty_capped_by_gross_subtotal(self, store, catalog, discounts, customer, policy):
        items = [LineItem(product_id=catalog["keyboard"], quantity=1)]
        q = quote(store, items, discount_code="SAVE5", points_requested=500, user_id=customer, policy=policy)
        assert q.points_consumed == 300
        assert q.breakdown.loyalty_deduction == 300000
        assert q.breakdown.total == 300000 + 50000 + 30000 - 50000 - 300000

    def test_points_not_reduced_by_discount(self, store, catalog, discounts, policy):
        big_spender = store.create_user(User(name="Hoa", email="hoa@mail.com", password_hash="x",
                                             loyalty_points=800))
        items = [LineItem(product_id=catalog["laptop"], variant_sku="UB-16", quantity=1)]
        q = quote(store, items, discount_code="SAVE5", points_requested=800, user_id=big_spender, policy=policy)
        assert q.points_consumed == 800
        assert q.breakdown.loyalty_deduction == 800000
        assert q.breakdown.total == 80000

    def test_guest_cannot_redeem_points(self, store, catalog, policy):
        items = [LineItem(product_id=catalog["keyboard"], quantity=1)]
        with pytest.raises(InsufficientPointsError):
            quote(store, items, points_requested=10, policy=policy)

    def test_preview_does_not_touch_shared_counters(self, store, catalog, discounts, customer, policy):
        items = [LineItem(product_id=catalog["laptop"], variant_sku="UB-32", quantity=1)]
        quote(store, items, discount_code="ONCE1", points_requested=100, user_id=customer, policy=policy)
        quote(store, items, discount_code="ONCE1", points_requested=100, user_id=customer, policy=policy)
        assert store.get_discount("ONCE1")["used_count"] == 0
        assert store.get_loyalty_points(customer) == 500
        assert store.get_product(catalog["laptop"])["variants"][1]["stock"] == 1
