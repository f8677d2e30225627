"""
Order status state machine.

    pending -> confirmed -> processing -> shipped -> delivered   (forward only)
    pending | confirmed -> cancelled
    delivered -> returned   (within the return window)

Every accepted transition appends an entry to ``status_history``; entries are
never edited or removed. The write is a compare-and-set on the current status,
so two admins racing on the same order cannot both move it.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import config
from errors import InvalidStatusTransitionError, OrderNotFoundError
from schemas import ORDER_STATUSES, StatusEntry

logger = logging.getLogger("storefront.orders")

FORWARD_FLOW = ("pending", "confirmed", "processing", "shipped", "delivered")
CANCELLABLE = ("pending", "confirmed")


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo hands back naive UTC datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def can_return(delivered_at: Optional[datetime], now: datetime,
               window_days: int = config.RETURN_WINDOW_DAYS) -> bool:
    delivered_at = _aware(delivered_at)
    return delivered_at is not None and now - delivered_at <= timedelta(days=window_days)


def check_transition(current: str, target: str, delivered_at: Optional[datetime] = None,
                     now: Optional[datetime] = None, window_days: int = config.RETURN_WINDOW_DAYS) -> None:
    if target not in ORDER_STATUSES:
        raise InvalidStatusTransitionError(f"Unknown order status {target!r}")
    now = now or datetime.now(timezone.utc)

    if target == "cancelled":
        if current in CANCELLABLE:
            return
        raise InvalidStatusTransitionError(f"Order can no longer be cancelled once {current}")
    if target == "returned":
        if current != "delivered":
            raise InvalidStatusTransitionError("Only delivered orders can be returned")
        if not can_return(delivered_at, now, window_days):
            raise InvalidStatusTransitionError(f"Return window of {window_days} days has passed")
        return
    if current in FORWARD_FLOW and target in FORWARD_FLOW:
        if FORWARD_FLOW.index(target) > FORWARD_FLOW.index(current):
            return
    raise InvalidStatusTransitionError(f"Cannot change order status from {current} to {target}")


def allowed_transitions(current: str, delivered_at: Optional[datetime] = None,
                        now: Optional[datetime] = None) -> List[str]:
    allowed = []
    for target in ORDER_STATUSES:
        try:
            check_transition(current, target, delivered_at, now)
        except InvalidStatusTransitionError:
            continue
        allowed.append(target)
    return allowed


def points_earned(total: int, divisor: Optional[int] = None) -> int:
    """Loyalty accrual for a delivered order. No policy configured means no points."""
    if divisor is None:
        divisor = config.LOYALTY_EARN_DIVISOR
    if not divisor:
        return 0
    return total // divisor


def transition(store, order_id: str, target: str, note: Optional[str] = None,
               updated_by: Optional[str] = None, now: Optional[datetime] = None,
               earn_divisor: Optional[int] = None) -> Dict[str, Any]:
    order = store.get_order(order_id)
    if not order:
        raise OrderNotFoundError(f"Order {order_id} not found")
    now = now or datetime.now(timezone.utc)
    current = order["status"]
    check_transition(current, target, order.get("delivered_at"), now)

    entry = StatusEntry(status=target, timestamp=now, note=note or f"Status changed to {target}",
                        updated_by=updated_by).model_dump()
    extra: Dict[str, Any] = {}
    earned = 0
    if target == "delivered":
        extra["delivered_at"] = now
        if order.get("user_id"):
            earned = points_earned(order["breakdown"]["total"], earn_divisor)
            extra["loyalty_points_earned"] = earned

    if not store.transition_order(order_id, current, target, entry, extra):
        raise InvalidStatusTransitionError(f"Order {order['order_number']} was updated concurrently, reload and retry")

    if target == "cancelled":
        for item in order["items"]:
            store.release_stock(item["product_id"], item.get("variant_sku"), item["quantity"])
        if order.get("user_id") and order.get("loyalty_points_used"):
            store.add_points(order["user_id"], order["loyalty_points_used"])
    elif earned:
        store.add_points(order["user_id"], earned)

    logger.info("Order %s: %s -> %s", order["order_number"], current, target)
    return store.get_order(order_id)
