import os

DATABASE_URL = os.getenv("RESERVATION_DATABASE_URL") or "sqlite+aiosqlite:///./reservations.db"
DB_ISOLATION_LEVEL = os.getenv("DB_ISOLATION_LEVEL") or "SERIALIZABLE"

RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events
REDIS_URL = os.getenv("REDIS_URL") or "redis://localhost:6379/0"

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM") or "HS256"

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET environment variable is not set")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
APP_BASE_URL = (os.getenv("APP_BASE_URL") or "http://localhost:8000").rstrip("/")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY") or "usd"
PAYMENT_SESSION_HOURS = int(os.getenv("PAYMENT_SESSION_HOURS") or "23")

# whole-transaction attempts when the ledger race is lost
LEDGER_MAX_ATTEMPTS = int(os.getenv("LEDGER_MAX_ATTEMPTS") or "3")

BOOKING_SWEEP_SECONDS = float(os.getenv("BOOKING_SWEEP_SECONDS") or "86400")
PAYMENT_SWEEP_SECONDS = float(os.getenv("PAYMENT_SWEEP_SECONDS") or "60")

PROCESSOR_FAILURE_THRESHOLD = int(os.getenv("PROCESSOR_FAILURE_THRESHOLD") or "5")
PROCESSOR_RESET_SECONDS = int(os.getenv("PROCESSOR_RESET_SECONDS") or "30")

LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"

# listings are paged; size is clamped to MAX_PAGE_SIZE
DEFAULT_PAGE_SIZE = int(os.getenv("DEFAULT_PAGE_SIZE") or "20")
MAX_PAGE_SIZE = int(os.getenv("MAX_PAGE_SIZE") or "100")
