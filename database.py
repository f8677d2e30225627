"""
Persistence for the storefront.

``MongoStore`` keeps every collection in MongoDB. Shared counters (variant stock,
discount usage, loyalty balances, order status) are only ever changed through
single-document conditional updates so two concurrent checkouts cannot both pass
a cap. ``MemoryStore`` (memory_store.py) offers the same methods in-process.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from errors import DiscountInvalidError

logger = logging.getLogger("storefront.database")

_client: Optional[MongoClient] = None
_db: Optional[Database] = None


def get_db() -> Database:
    global _client, _db
    if _db is None:
        _client = MongoClient(config.DATABASE_URL)
        _db = _client[config.DATABASE_NAME]
    return _db


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_client(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    doc["id"] = str(doc.pop("_id"))
    return doc


def _oid(value: Optional[str]) -> Optional[ObjectId]:
    if not value or not ObjectId.is_valid(value):
        return None
    return ObjectId(value)


def create_document(db: Database, collection_name: str, data: BaseModel | Dict[str, Any]) -> str:
    payload = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    payload.pop("id", None)
    now = _now()
    payload.update(created_at=now, updated_at=now)
    result = db[collection_name].insert_one(payload)
    return str(result.inserted_id)


def get_documents(db: Database, collection_name: str, filter_dict: Dict[str, Any] | None = None,
                  limit: int = 100, skip: int = 0, sort: Optional[str] = None) -> List[Dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort, -1)
    cursor = cursor.skip(skip).limit(limit)
    return [_to_client(d) for d in cursor]


class MongoStore:
    def __init__(self, db: Database):
        self.db = db

    def ensure_indexes(self) -> None:
        self.db["discount"].create_index([("code", ASCENDING)], unique=True)
        self.db["user"].create_index([("email", ASCENDING)], unique=True)
        self.db["product"].create_index([("variants.sku", ASCENDING)])
        self.db["order"].create_index([("order_number", ASCENDING)], unique=True)
        self.db["order"].create_index([("user_id", ASCENDING)])
        self.db["cart"].create_index([("user_id", ASCENDING)], sparse=True)
        self.db["cart"].create_index([("session_id", ASCENDING)], sparse=True)

    # Catalog
    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        oid = _oid(product_id)
        if oid is None:
            return None
        return _to_client(self.db["product"].find_one({"_id": oid}))

    def list_products(self, limit: int = 24, skip: int = 0, only_active: bool = True) -> List[Dict[str, Any]]:
        query = {"active": True} if only_active else {}
        return get_documents(self.db, "product", query, limit=limit, skip=skip, sort="created_at")

    def create_product(self, data: BaseModel | Dict[str, Any]) -> str:
        return create_document(self.db, "product", data)

    def update_product(self, product_id: str, fields: Dict[str, Any]) -> bool:
        result = self.db["product"].update_one({"_id": _oid(product_id)},
                                               {"$set": dict(fields, updated_at=_now())})
        return result.matched_count == 1

    def delete_product(self, product_id: str) -> bool:
        return self.db["product"].delete_one({"_id": _oid(product_id)}).deleted_count == 1

    def reserve_stock(self, product_id: str, variant_sku: Optional[str], quantity: int) -> bool:
        oid = _oid(product_id)
        if oid is None:
            return False
        if variant_sku:
            query = {"_id": oid, "variants": {"$elemMatch": {"sku": variant_sku, "stock": {"$gte": quantity}}}}
            update = {"$inc": {"variants.$.stock": -quantity}}
        else:
            query = {"_id": oid, "stock": {"$gte": quantity}}
            update = {"$inc": {"stock": -quantity}}
        return self.db["product"].update_one(query, update).modified_count == 1

    def release_stock(self, product_id: str, variant_sku: Optional[str], quantity: int) -> None:
        oid = _oid(product_id)
        if variant_sku:
            self.db["product"].update_one({"_id": oid, "variants.sku": variant_sku},
                                          {"$inc": {"variants.$.stock": quantity}})
        else:
            self.db["product"].update_one({"_id": oid}, {"$inc": {"stock": quantity}})

    # Discount registry
    def get_discount(self, code: str) -> Optional[Dict[str, Any]]:
        return _to_client(self.db["discount"].find_one({"code": code}))

    def list_discounts(self, public_only: bool = False) -> List[Dict[str, Any]]:
        query = {"public": True, "active": True} if public_only else {}
        docs = get_documents(self.db, "discount", query, limit=500, sort="created_at")
        if public_only:
            docs = [d for d in docs if d["used_count"] < d["max_uses"]]
        return docs

    def create_discount(self, data: BaseModel | Dict[str, Any]) -> str:
        try:
            return create_document(self.db, "discount", data)
        except DuplicateKeyError:
            raise DiscountInvalidError("Discount code already exists")

    def update_discount(self, code: str, fields: Dict[str, Any]) -> bool:
        result = self.db["discount"].update_one({"code": code}, {"$set": dict(fields, updated_at=_now())})
        return result.matched_count == 1

    def delete_discount(self, code: str) -> bool:
        return self.db["discount"].delete_one({"code": code}).deleted_count == 1

    def claim_discount(self, code: str, usage: Dict[str, Any]) -> bool:
        doc = self.db["discount"].find_one({"code": code}, {"max_uses": 1})
        if doc is None:
            return False
        # a limit changed since the read fails the claim
        result = self.db["discount"].update_one(
            {"code": code, "active": True, "max_uses": doc["max_uses"], "used_count": {"$lt": doc["max_uses"]}},
            {"$inc": {"used_count": 1}, "$push": {"usage_history": usage}, "$set": {"updated_at": _now()}},
        )
        return result.modified_count == 1

    def release_discount(self, code: str, order_number: str) -> None:
        self.db["discount"].update_one(
            {"code": code, "usage_history.order_number": order_number},
            {"$inc": {"used_count": -1}, "$pull": {"usage_history": {"order_number": order_number}}},
        )

    # Users and loyalty
    def create_user(self, data: BaseModel | Dict[str, Any]) -> str:
        return create_document(self.db, "user", data)

    def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        oid = _oid(user_id)
        if oid is None:
            return None
        return _to_client(self.db["user"].find_one({"_id": oid}))

    def find_user_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return _to_client(self.db["user"].find_one({"email": email}))

    def get_loyalty_points(self, user_id: str) -> int:
        user = self.get_user(user_id)
        return int(user.get("loyalty_points", 0)) if user else 0

    def spend_points(self, user_id: str, points: int) -> bool:
        result = self.db["user"].update_one({"_id": _oid(user_id), "loyalty_points": {"$gte": points}},
                                            {"$inc": {"loyalty_points": -points}})
        return result.modified_count == 1

    def add_points(self, user_id: str, points: int) -> None:
        self.db["user"].update_one({"_id": _oid(user_id)}, {"$inc": {"loyalty_points": points}})

    # Carts
    @staticmethod
    def _cart_filter(user_id: Optional[str], session_id: Optional[str]) -> Dict[str, Any]:
        return {"user_id": user_id} if user_id else {"session_id": session_id}

    def find_cart(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        return _to_client(self.db["cart"].find_one(self._cart_filter(user_id, session_id)))

    def save_cart(self, cart: Dict[str, Any]) -> None:
        doc = {k: v for k, v in cart.items() if k not in ("id", "_id", "created_at")}
        doc["updated_at"] = _now()
        self.db["cart"].update_one(
            self._cart_filter(doc.get("user_id"), doc.get("session_id")),
            {"$set": doc, "$setOnInsert": {"created_at": doc["updated_at"]}},
            upsert=True,
        )

    def delete_cart(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> bool:
        return self.db["cart"].delete_one(self._cart_filter(user_id, session_id)).deleted_count == 1

    # Orders
    def create_order(self, data: BaseModel | Dict[str, Any]) -> str:
        return create_document(self.db, "order", data)

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        oid = _oid(order_id)
        if oid is None:
            return None
        return _to_client(self.db["order"].find_one({"_id": oid}))

    def list_orders(self, user_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query = {"user_id": user_id} if user_id else {}
        return get_documents(self.db, "order", query, limit=limit, sort="created_at")

    def transition_order(self, order_id: str, from_status: str, to_status: str,
                         entry: Dict[str, Any], extra: Optional[Dict[str, Any]] = None) -> bool:
        fields = dict(extra or {})
        fields.update(status=to_status, updated_at=_now())
        result = self.db["order"].update_one(
            {"_id": _oid(order_id), "status": from_status},
            {"$set": fields, "$push": {"status_history": entry}},
        )
        return result.modified_count == 1


_store = None


def get_store():
    """FastAPI dependency returning the process-wide store."""
    global _store
    if _store is None:
        if config.STORE_BACKEND == "memory":
            from memory_store import MemoryStore
            _store = MemoryStore()
        else:
            _store = MongoStore(get_db())
            _store.ensure_indexes()
        logger.info("Using %s store", config.STORE_BACKEND)
    return _store
