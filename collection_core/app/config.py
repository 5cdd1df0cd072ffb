"""
Runtime configuration read from the environment.

Every setting has a development default so the service starts without a
`.env` file; production deployments override them through env vars.
"""

import os
from decimal import Decimal, InvalidOperation


def get_tax_rate() -> Decimal:
    """Tax rate applied to auto-generated purchase orders (e.g. 0.05 = 5%)."""
    raw = os.getenv("WCN_TAX_RATE", "0.05")
    try:
        rate = Decimal(raw)
    except InvalidOperation:
        raise RuntimeError(f"WCN_TAX_RATE must be a decimal number, got {raw!r}")
    if rate < 0:
        raise RuntimeError("WCN_TAX_RATE cannot be negative")
    return rate


def get_cors_origins():
    """Get CORS origins from environment or use defaults for development"""
    origins_env = os.getenv("CORS_ORIGINS", "")
    if origins_env:
        return [o.strip() for o in origins_env.split(",") if o.strip()]
    return [
        "http://127.0.0.1:3000",
        "http://localhost:3000",
        "http://127.0.0.1:8080",
        "http://localhost:8080",
    ]


ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

RECTIFICATION_REASON_MIN_LENGTH = int(os.getenv("RECTIFICATION_REASON_MIN_LENGTH", "5"))
DEFAULT_RECEIPT_LOCATION = os.getenv("DEFAULT_RECEIPT_LOCATION", "Collection Warehouse")
DEFAULT_WASTE_TYPE = os.getenv("DEFAULT_WASTE_TYPE", "other")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "json")
