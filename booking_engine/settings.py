import os

db_url = os.environ.get("DB_URL", "sqlite://:memory:")
listings_ms_url = os.environ.get("LISTINGS_MS_URL", "http://localhost:8001")
payments_ms_url = os.environ.get("PAYMENTS_MS_URL", "http://localhost:8003")
notifications_ms_url = os.environ.get(
    "NOTIFICATIONS_MS_URL", "http://localhost:8004"
)
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

# Decimal fractions of the subtotal, e.g. "0.12". No defaults: both must be set.
GUEST_SERVICE_FEE_RATE = os.environ.get("GUEST_SERVICE_FEE_RATE")
HOST_SERVICE_FEE_RATE = os.environ.get("HOST_SERVICE_FEE_RATE")

PENDING_REQUEST_TTL_HOURS = int(os.environ.get("PENDING_REQUEST_TTL_HOURS", "24"))
PAYMENT_MAX_ATTEMPTS = int(os.environ.get("PAYMENT_MAX_ATTEMPTS", "3"))
PAYMENT_BACKOFF_SECONDS = float(os.environ.get("PAYMENT_BACKOFF_SECONDS", "0.5"))
LISTING_CACHE_TTL = int(os.environ.get("LISTING_CACHE_TTL", "60"))
GENERATE_SCHEMAS = os.environ.get("GENERATE_SCHEMAS", "false").lower() == "true"
