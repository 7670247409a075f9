"""
Storefront — payments API entry point.

Run with:  uvicorn storefront.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from . import config
from .database import SessionLocal, init_db
from .errors import ReconciliationError
from .gateway.razorpay_service import build_gateway
from .ratelimit import limiter
from .auth.router import router as auth_router
from .orders.router import router as orders_router
from .payments.router import router as payments_router
from .admin.router import router as admin_router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.gateway = build_gateway()
    if not app.state.gateway.is_configured():
        logger.warning("Razorpay keys are not set; checkout endpoints will return 503")
    if not config.RAZORPAY_WEBHOOK_SECRET:
        logger.warning("RAZORPAY_WEBHOOK_SECRET is not set; webhooks will be rejected")
    yield


# ─── App ──────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Storefront Payments API",
    description="Orders, Razorpay checkout and payment reconciliation.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Attach Limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


# ─── CORS ─────────────────────────────────────────────────────────────────────

_allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000"
]
if config.FRONTEND_URL:
    _allowed_origins.append(config.FRONTEND_URL)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ─── Routers ──────────────────────────────────────────────────────────────────

app.include_router(auth_router)           # /auth
app.include_router(orders_router)         # /orders
app.include_router(payments_router)       # /payments (+ Razorpay webhook)
app.include_router(admin_router)          # /admin


@app.get("/health", tags=["health"])
def health_check():
    db_status = "ok"
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("Health check: database unreachable: %s", exc)
        db_status = "error"
    finally:
        db.close()

    gateway = getattr(app.state, "gateway", None)
    return {
        "status": "ok",
        "version": "1.0.0",
        "service": "Storefront Payments",
        "db": db_status,
        "gateway": "configured" if gateway and gateway.is_configured() else "not_configured",
    }
