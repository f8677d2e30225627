"""
Storefront domain errors

Every error a shopper can trigger carries a machine-readable ``kind`` and a
human message. The API layer renders them as ``{"error": {"kind", "message"}}``
with ``status_code``; none of them is fatal to the process.
"""
from typing import Any, Dict, Optional


class StorefrontError(Exception):
    kind = "storefront_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class CatalogLookupError(StorefrontError):
    """Unknown or inactive product or variant."""

    kind = "catalog_lookup"
    status_code = 404


class StockInsufficientError(StorefrontError):
    kind = "stock_insufficient"
    status_code = 409


class DiscountInvalidError(StorefrontError):
    """Unknown, inactive, exhausted or below its minimum order amount."""

    kind = "discount_invalid"
    status_code = 400


class InsufficientPointsError(StorefrontError):
    kind = "insufficient_points"
    status_code = 400


class PriceChangedError(StorefrontError):
    """A quoted price no longer matches the catalog."""

    kind = "price_changed"
    status_code = 409


class InvalidStatusTransitionError(StorefrontError):
    kind = "invalid_status_transition"
    status_code = 409


class InvalidCartError(StorefrontError):
    kind = "invalid_cart"
    status_code = 400


class CommitError(StorefrontError):
    """Unexpected failure while committing an order. Nothing was applied."""

    kind = "commit_failed"
    status_code = 500


class OrderNotFoundError(StorefrontError):
    kind = "order_not_found"
    status_code = 404
