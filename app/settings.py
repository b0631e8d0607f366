import os


def _int_env(name: str, default: int) -> int:
    """Non-negative int from the environment, falling back on missing/garbage."""
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return max(0, int(raw))
    except ValueError:
        return default


db_url = os.environ.get("DB_URL", "sqlite://:memory:")
services_ms_url = os.environ.get("SERVICES_MS_URL", "http://localhost:8001")
payments_ms_url = os.environ.get("PAYMENTS_MS_URL", "http://localhost:8003")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "nzd").lower()

# Basis points: 1000 = 10%
PLATFORM_FEE_BPS = _int_env("PLATFORM_FEE_BPS", 1000)
GST_BPS = _int_env("GST_BPS", 1500)

CUSTOMER_SERVICE_FEE_BPS = _int_env("CUSTOMER_SERVICE_FEE_BPS", 500)
CUSTOMER_SERVICE_FEE_FLAT_CENTS = _int_env("CUSTOMER_SERVICE_FEE_FLAT_CENTS", 0)
CUSTOMER_SERVICE_FEE_MIN_CENTS = _int_env("CUSTOMER_SERVICE_FEE_MIN_CENTS", 100)
CUSTOMER_SERVICE_FEE_MAX_CENTS = _int_env("CUSTOMER_SERVICE_FEE_MAX_CENTS", 1500)
LEGACY_SERVICE_FEE_BPS = _int_env("LEGACY_SERVICE_FEE_BPS", 0)
