"""
UPI Payment Reconciliation — FastAPI Application Entry Point

Aggregates all routers, configures middleware, builds the service graph and
starts the PhonePe polling worker on startup.
"""
import logging
import time
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from payrecon.config import get_settings
from payrecon.container import build_services
from payrecon.database import SessionLocal, init_db
from payrecon.logging_config import configure_logging
from payrecon.routes import payments_router, orders_router, webhooks_router, admin_router
from payrecon.schemas.schemas import HealthResponse

settings = get_settings()
logger = logging.getLogger(__name__)

# ─── Application Instance ───────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "Payment reconciliation core for UPI checkouts. Converges client verify calls, "
        "provider webhooks and background polling onto one monotonic payment state, "
        "with idempotent creation and an append-only payment event log."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

# ─── Startup / Shutdown ──────────────────────────────────────────────
BOOT_TIME = time.time()


@app.on_event("startup")
def on_startup():
    """Initialize logging and database tables, wire services, resume polling."""
    log_file = configure_logging(settings)
    init_db()

    services = build_services(settings, SessionLocal)
    app.state.services = services

    providers = services.adapters.enabled_providers()
    boot_msg = (
        f"\n{'='*60}\n"
        f"  {settings.APP_NAME} v{settings.APP_VERSION}\n"
        f"  TIME: {datetime.now().isoformat()}\n"
        f"  PROVIDERS: {', '.join(providers) if providers else '[!] none configured'}\n"
        f"  ENVIRONMENT: {settings.PAYMENT_ENVIRONMENT}\n"
        f"  DATABASE: {settings.DATABASE_URL}\n"
        f"  POLLING: {'enabled' if settings.POLLING_ENABLED else 'disabled'}\n"
        f"  LOG FILE: {log_file}\n"
        f"  DEBUG: {settings.DEBUG}\n"
        f"{'='*60}"
    )
    logger.info(boot_msg)

    if settings.POLLING_ENABLED:
        services.polling_worker.start()


@app.on_event("shutdown")
def on_shutdown():
    services = getattr(app.state, "services", None)
    if services is not None:
        services.polling_worker.stop()


# ─── Middleware ──────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every API and webhook request with timing."""
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 1)

    if request.url.path.startswith(("/api", "/webhooks")):
        logger.info("%s %s -> %s (%sms)", request.method, request.url.path, response.status_code, duration)

    return response


# ─── API Routers ─────────────────────────────────────────────────────
app.include_router(payments_router)
app.include_router(orders_router)
app.include_router(webhooks_router)
app.include_router(admin_router)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health():
    """Health check including database connectivity and provider/polling state."""
    db_ok = False
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        logger.exception("health check database query failed")

    services = getattr(app.state, "services", None)
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        service=settings.APP_NAME,
        version=settings.APP_VERSION,
        docs="/docs",
        uptime_seconds=round(time.time() - BOOT_TIME, 1),
        providers=services.adapters.enabled_providers() if services else [],
        polling=bool(services and services.polling_worker.running),
    )
