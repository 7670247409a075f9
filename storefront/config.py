"""
Storefront — runtime configuration.

Everything is read from the environment (a local .env is loaded first).
Modules read these as ``config.NAME`` at call time so tests can monkeypatch them.
"""

import os
from dotenv import load_dotenv

load_dotenv()

# ── Database ──────────────────────────────────────────────────────────────────
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./storefront.db")

# Render (and Heroku) hand out 'postgres://' URLs; SQLAlchemy 2.x wants 'postgresql://'.
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

# ── Razorpay ──────────────────────────────────────────────────────────────────
RAZORPAY_KEY_ID         = os.getenv("RAZORPAY_KEY_ID", "")
RAZORPAY_KEY_SECRET     = os.getenv("RAZORPAY_KEY_SECRET", "")
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))

SUPPORTED_CURRENCY = "INR"

# ── Auth (JWT) ────────────────────────────────────────────────────────────────
SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))

# ── Locking ───────────────────────────────────────────────────────────────────
REDIS_URL = os.getenv("REDIS_URL", "")
LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "30"))

# ── Rate limits (SlowAPI syntax) ─────────────────────────────────────────────
VERIFY_RATE_LIMIT = os.getenv("VERIFY_RATE_LIMIT", "20/minute")
CREATE_ORDER_RATE_LIMIT = os.getenv("CREATE_ORDER_RATE_LIMIT", "10/minute")

# ── Outbound order notifications ──────────────────────────────────────────────
ORDER_NOTIFY_URL = os.getenv("ORDER_NOTIFY_URL", "")
NOTIFY_SIGNING_SECRET = os.getenv("NOTIFY_SIGNING_SECRET", "")

# ── Misc ──────────────────────────────────────────────────────────────────────
FRONTEND_URL = os.getenv("FRONTEND_URL", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
