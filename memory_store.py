"""In-process store with the same surface as ``database.MongoStore``.

Conditional updates run under one lock so they are atomic with respect to each
other. Documents are deep-copied on the way in and out.
"""
import copy
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from errors import DiscountInvalidError


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    def __init__(self):
        self._lock = threading.RLock()
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {
            "product": {}, "discount": {}, "user": {}, "cart": {}, "order": {},
        }

    def _insert(self, collection: str, data) -> str:
        payload = data.model_dump() if isinstance(data, BaseModel) else copy.deepcopy(dict(data))
        payload.pop("id", None)
        now = _now()
        payload.update(created_at=now, updated_at=now)
        doc_id = uuid.uuid4().hex
        with self._lock:
            self._collections[collection][doc_id] = payload
        return doc_id

    def _get(self, collection: str, doc_id: Optional[str]) -> Optional[Dict[str, Any]]:
        with self._lock:
            doc = self._collections[collection].get(doc_id or "")
            if doc is None:
                return None
            return dict(copy.deepcopy(doc), id=doc_id)

    def _find(self, collection: str, **match) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                dict(copy.deepcopy(doc), id=doc_id)
                for doc_id, doc in self._collections[collection].items()
                if all(doc.get(k) == v for k, v in match.items())
            ]

    @staticmethod
    def _newest_first(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return sorted(docs, key=lambda d: d["created_at"], reverse=True)

    # Catalog
    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        return self._get("product", product_id)

    def list_products(self, limit: int = 24, skip: int = 0, only_active: bool = True) -> List[Dict[str, Any]]:
        docs = self._find("product", active=True) if only_active else self._find("product")
        return self._newest_first(docs)[skip:skip + limit]

    def create_product(self, data) -> str:
        return self._insert("product", data)

    def update_product(self, product_id: str, fields: Dict[str, Any]) -> bool:
        with self._lock:
            doc = self._collections["product"].get(product_id)
            if doc is None:
                return False
            doc.update(copy.deepcopy(fields))
            doc["updated_at"] = _now()
            return True

    def delete_product(self, product_id: str) -> bool:
        with self._lock:
            return self._collections["product"].pop(product_id, None) is not None

    def _stock_holder(self, product_id: str, variant_sku: Optional[str]) -> Optional[Dict[str, Any]]:
        product = self._collections["product"].get(product_id)
        if product is None:
            return None
        if not variant_sku:
            return product
        for variant in product.get("variants", []):
            if variant.get("sku") == variant_sku:
                return variant
        return None

    def reserve_stock(self, product_id: str, variant_sku: Optional[str], quantity: int) -> bool:
        with self._lock:
            holder = self._stock_holder(product_id, variant_sku)
            if holder is None or holder.get("stock", 0) < quantity:
                return False
            holder["stock"] -= quantity
            return True

    def release_stock(self, product_id: str, variant_sku: Optional[str], quantity: int) -> None:
        with self._lock:
            holder = self._stock_holder(product_id, variant_sku)
            if holder is not None:
                holder["stock"] = holder.get("stock", 0) + quantity

    # Discount registry
    def _discount_id(self, code: str) -> Optional[str]:
        for doc_id, doc in self._collections["discount"].items():
            if doc.get("code") == code:
                return doc_id
        return None

    def get_discount(self, code: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._get("discount", self._discount_id(code))

    def list_discounts(self, public_only: bool = False) -> List[Dict[str, Any]]:
        docs = self._find("discount")
        if public_only:
            docs = [d for d in docs if d["public"] and d["active"] and d["used_count"] < d["max_uses"]]
        return self._newest_first(docs)

    def create_discount(self, data) -> str:
        payload = data.model_dump() if isinstance(data, BaseModel) else dict(data)
        with self._lock:
            if self._discount_id(payload["code"]) is not None:
                raise DiscountInvalidError("Discount code already exists")
            return self._insert("discount", payload)

    def update_discount(self, code: str, fields: Dict[str, Any]) -> bool:
        with self._lock:
            doc = self._collections["discount"].get(self._discount_id(code) or "")
            if doc is None:
                return False
            doc.update(copy.deepcopy(fields))
            doc["updated_at"] = _now()
            return True

    def delete_discount(self, code: str) -> bool:
        with self._lock:
            doc_id = self._discount_id(code)
            return doc_id is not None and self._collections["discount"].pop(doc_id, None) is not None

    def claim_discount(self, code: str, usage: Dict[str, Any]) -> bool:
        with self._lock:
            doc = self._collections["discount"].get(self._discount_id(code) or "")
            if doc is None or not doc.get("active") or doc["used_count"] >= doc["max_uses"]:
                return False
            doc["used_count"] += 1
            doc.setdefault("usage_history", []).append(copy.deepcopy(usage))
            doc["updated_at"] = _now()
            return True

    def release_discount(self, code: str, order_number: str) -> None:
        with self._lock:
            doc = self._collections["discount"].get(self._discount_id(code) or "")
            if doc is None:
                return
            history = doc.get("usage_history", [])
            kept = [u for u in history if u.get("order_number") != order_number]
            if len(kept) != len(history):
                doc["usage_history"] = kept
                doc["used_count"] -= 1

    # Users and loyalty
    def create_user(self, data) -> str:
        return self._insert("user", data)

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        return self._get("user", user_id)

    def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        found = self._find("user", email=email)
        return found[0] if found else None

    def get_loyalty_points(self, user_id: str) -> int:
        user = self.get_user(user_id)
        return int(user.get("loyalty_points", 0)) if user else 0

    def spend_points(self, user_id: str, points: int) -> bool:
        with self._lock:
            user = self._collections["user"].get(user_id)
            if user is None or user.get("loyalty_points", 0) < points:
                return False
            user["loyalty_points"] -= points
            return True

    def add_points(self, user_id: str, points: int) -> None:
        with self._lock:
            user = self._collections["user"].get(user_id)
            if user is not None:
                user["loyalty_points"] = user.get("loyalty_points", 0) + points

    # Carts, keyed by owner
    @staticmethod
    def _cart_key(user_id: Optional[str], session_id: Optional[str]) -> str:
        return f"user:{user_id}" if user_id else f"session:{session_id}"

    def find_cart(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return self._get("cart", self._cart_key(user_id, session_id))

    def save_cart(self, cart: Dict[str, Any]) -> None:
        doc = copy.deepcopy({k: v for k, v in cart.items() if k != "id"})
        key = self._cart_key(doc.get("user_id"), doc.get("session_id"))
        now = _now()
        with self._lock:
            existing = self._collections["cart"].get(key)
            doc["created_at"] = existing["created_at"] if existing else now
            doc["updated_at"] = now
            self._collections["cart"][key] = doc

    def delete_cart(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> bool:
        with self._lock:
            return self._collections["cart"].pop(self._cart_key(user_id, session_id), None) is not None

    # Orders
    def create_order(self, data) -> str:
        return self._insert("order", data)

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        return self._get("order", order_id)

    def list_orders(self, user_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        docs = self._find("order", user_id=user_id) if user_id else self._find("order")
        return self._newest_first(docs)[:limit]

    def transition_order(self, order_id: str, from_status: str, to_status: str,
                         entry: Dict[str, Any], extra: Optional[Dict[str, Any]] = None) -> bool:
        with self._lock:
            doc = self._collections["order"].get(order_id)
            if doc is None or doc.get("status") != from_status:
                return False
            doc.update(copy.deepcopy(extra or {}))
            doc["status"] = to_status
            doc["updated_at"] = _now()
            doc.setdefault("status_history", []).append(copy.deepcopy(entry))
            return True
