import os
from typing import Optional

# Persistence
DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "storefront")
STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo")  # mongo | memory

# Security
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret_change_me")
JWT_EXP_MIN = int(os.getenv("JWT_EXP_MIN", "60"))

# Store
STORE_NAME = os.getenv("STORE_NAME", "Storefront")
PRIMARY_CURRENCY = os.getenv("PRIMARY_CURRENCY", "VND")
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Pricing, all amounts in minor currency units
TAX_RATE_PERCENT = int(os.getenv("TAX_RATE_PERCENT", "10"))
SHIPPING_FLAT = int(os.getenv("SHIPPING_FLAT", "50000"))
FREE_SHIPPING_THRESHOLD = int(os.getenv("FREE_SHIPPING_THRESHOLD", "1000000"))
LOYALTY_POINT_VALUE = int(os.getenv("LOYALTY_POINT_VALUE", "1000"))
MAX_LINE_QUANTITY = int(os.getenv("MAX_LINE_QUANTITY", "99"))

# Orders
RETURN_WINDOW_DAYS = int(os.getenv("RETURN_WINDOW_DAYS", "7"))


def _optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return int(raw)


# Points earned per delivered order = total // divisor. Unset disables accrual.
LOYALTY_EARN_DIVISOR = _optional_int("LOYALTY_EARN_DIVISOR")
