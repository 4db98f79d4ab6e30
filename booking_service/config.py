import os

BOOKING_DB = os.getenv("BOOKING_DB")

REDIS_URL = os.getenv("REDIS_URL")  # optional; enables the shared cache and cross-instance locks
RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events

CACHE_TTL_SECONDS = int(os.getenv("BOOKING_CACHE_TTL") or "300")
LOCK_TIMEOUT_SECONDS = float(os.getenv("BOOKING_LOCK_TIMEOUT") or "10")

SQL_ECHO = (os.getenv("SQL_ECHO") or "").lower() in {"1", "true", "yes"}
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()

SERVICE_NAME = "booking-service"
