"""Tests for the order status state machine."""

from datetime import datetime, timedelta, timezone

import pytest

import config
import order_status
from checkout import finalize_order
from errors import InvalidStatusTransitionError, OrderNotFoundError
from order_status import allowed_transitions, check_transition, points_earned, transition

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def placed_order(store, catalog, customer, address, make_cart):
    cart = make_cart([{"product_id": catalog["laptop"], "variant_sku": "UB-16", "quantity": 2}],
                     user_id=customer, points=100)
    return finalize_order(store, cart, address, email="lan@mail.com").order_id


class TestCheckTransition:
    @pytest.mark.parametrize("current,target", [
        ("pending", "confirmed"),
        ("confirmed", "processing"),
        ("processing", "shipped"),
        ("shipped", "delivered"),
        ("pending", "shipped"),
        ("pending", "cancelled"),
        ("confirmed", "cancelled"),
    ])
    def test_allowed(self, current, target):
        check_transition(current, target, now=NOW)

    @pytest.mark.parametrize("current,target", [
        ("confirmed", "pending"),
        ("delivered", "shipped"),
        ("pending", "pending"),
        ("processing", "cancelled"),
        ("shipped", "cancelled"),
        ("cancelled", "confirmed"),
        ("returned", "delivered"),
        ("shipped", "returned"),
        ("pending", "lost"),
    ])
    def test_rejected(self, current, target):
        with pytest.raises(InvalidStatusTransitionError):
            check_transition(current, target, now=NOW)

    def test_return_window(self):
        check_transition("delivered", "returned", delivered_at=NOW - timedelta(days=7), now=NOW)
        with pytest.raises(InvalidStatusTransitionError):
            check_transition("delivered", "returned", delivered_at=NOW - timedelta(days=7, seconds=1), now=NOW)

    def test_naive_delivery_timestamp_is_utc(self):
        naive = (NOW - timedelta(days=1)).replace(tzinfo=None)
        check_transition("delivered", "returned", delivered_at=naive, now=NOW)

    def test_allowed_transitions(self):
        assert allowed_transitions("confirmed", now=NOW) == ["processing", "shipped", "delivered", "cancelled"]
        assert allowed_transitions("cancelled", now=NOW) == []


class TestTransition:
    def test_appends_history(self, store, placed_order):
        transition(store, placed_order, "confirmed", note="payment received", updated_by="admin", now=NOW)
        order = transition(store, placed_order, "processing", now=NOW + timedelta(hours=1))
        history = order["status_history"]
        assert [h["status"] for h in history] == ["pending", "confirmed", "processing"]
        assert history[1]["note"] == "payment received"
        assert history[1]["updated_by"] == "admin"
        assert history[2]["note"] == "Status changed to processing"

    def test_rejected_transition_leaves_history_alone(self, store, placed_order):
        with pytest.raises(InvalidStatusTransitionError):
            transition(store, placed_order, "returned", now=NOW)
        order = store.get_order(placed_order)
        assert order["status"] == "pending"
        assert len(order["status_history"]) == 1

    def test_cancel_restores_stock_and_points(self, store, catalog, customer, placed_order):
        assert store.get_loyalty_points(customer) == 400
        transition(store, placed_order, "cancelled", now=NOW)
        variants = {v["sku"]: v["stock"] for v in store.get_product(catalog["laptop"])["variants"]}
        assert variants["UB-16"] == 5
        assert store.get_loyalty_points(customer) == 500

    def test_delivery_without_accrual_policy(self, store, customer, placed_order, monkeypatch):
        monkeypatch.setattr(config, "LOYALTY_EARN_DIVISOR", None)
        order = transition(store, placed_order, "delivered", now=NOW)
        assert order["delivered_at"] == NOW
        assert order["loyalty_points_earned"] == 0
        assert store.get_loyalty_points(customer) == 400

    def test_delivery_with_accrual_policy(self, store, customer, placed_order):
        order = transition(store, placed_order, "delivered", now=NOW, earn_divisor=10000)
        expected = order["breakdown"]["total"] // 10000
        assert expected > 0
        assert order["loyalty_points_earned"] == expected
        assert store.get_loyalty_points(customer) == 400 + expected

    def test_return_after_delivery(self, store, placed_order):
        transition(store, placed_order, "delivered", now=NOW, earn_divisor=0)
        order = transition(store, placed_order, "returned", now=NOW + timedelta(days=3))
        assert order["status"] == "returned"
        with pytest.raises(InvalidStatusTransitionError):
            transition(store, placed_order, "delivered", now=NOW + timedelta(days=4))

    def test_concurrent_update_is_rejected(self, store, placed_order, monkeypatch):
        monkeypatch.setattr(store, "transition_order", lambda *args, **kwargs: False)
        with pytest.raises(InvalidStatusTransitionError):
            transition(store, placed_order, "confirmed", now=NOW)

    def test_unknown_order(self, store):
        with pytest.raises(OrderNotFoundError):
            transition(store, "missing", "confirmed")


def test_points_earned_needs_a_policy(monkeypatch):
    monkeypatch.setattr(order_status.config, "LOYALTY_EARN_DIVISOR", None)
    assert points_earned(5000000) == 0
    assert points_earned(5000000, divisor=10000) == 500
