"""FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from ava.core.config import settings
from ava.db.session import engine

logger = logging.getLogger(__name__)

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,  # Lead phones never leave the process
    )
    logging.info("Sentry initialized for error tracking")


# ============================================================================
# Lifespan (optional in-process reconciliation loop)
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    stop = asyncio.Event()
    task = None
    if settings.RUN_RECONCILER_IN_APP:
        from ava.core.deps import get_calendar_connector, get_reconciliation_loop

        loop = get_reconciliation_loop(get_calendar_connector())
        task = asyncio.create_task(loop.run_forever(stop))
        logger.info("In-process reconciliation loop started")
    try:
        yield
    finally:
        stop.set()
        if task is not None:
            await task


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Ava Scheduling API",
    description="Showing scheduler with Outlook calendar sync",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)

# ============================================================================
# Routers
# ============================================================================

from ava.routers import availability, bookings, outlook, properties
from ava.routers import settings as settings_router

app.include_router(properties.router, prefix="/api/properties", tags=["properties"])
app.include_router(bookings.router, prefix="/api/bookings", tags=["bookings"])
app.include_router(availability.router, prefix="/api/availability", tags=["availability"])
app.include_router(settings_router.router, prefix="/api/settings", tags=["settings"])

# Outlook OAuth + sync (sync endpoints protected by INTERNAL_SECRET / clientState)
app.include_router(outlook.router)
app.include_router(outlook.sync_router)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
