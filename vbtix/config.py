import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

# postgres pool sizing; the DB gate defaults to the pool size (10 on sqlite)
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
DB_GATE_LIMIT = (int(os.environ["DB_GATE_LIMIT"])
                 if os.environ.get("DB_GATE_LIMIT") else None)

RESERVATION_TTL_MINUTES = int(os.getenv("RESERVATION_TTL_MINUTES", "10"))
RESERVATION_MAX_TTL_MINUTES = int(os.getenv("RESERVATION_MAX_TTL_MINUTES", "30"))
RESERVATION_MAX_QUANTITY = int(os.getenv("RESERVATION_MAX_QUANTITY", "10"))

# unpaid orders older than this are expired by the sweep
ORDER_TTL_HOURS = int(os.getenv("ORDER_TTL_HOURS", "24"))

# 0 disables the periodic sweep task
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))

CALLBACK_GATE_BACKEND = os.getenv("CALLBACK_GATE_BACKEND", "sql").lower()
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")

XENDIT_WEBHOOK_TOKEN = os.environ.get("XENDIT_WEBHOOK_TOKEN", "")
MIDTRANS_SERVER_KEY = os.environ.get("MIDTRANS_SERVER_KEY", "")

DELIVERY_URL = os.environ.get("DELIVERY_URL", "")

ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "dev-admin-token")
APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:8000")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

DEFAULT_CURRENCY = "idr"
