"""Billing Core: FastAPI entry point.

Webhook ingestion, usage gating and cost tracking for the product's paid
features.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.api import auth, billing, ops, usage, webhooks, work
from billing_core.config import ProviderConfig, settings
from billing_core.database import get_db, init_db
from billing_core.dependencies import get_counter_store
from billing_core.middleware.rate_limiter import RateLimitMiddleware
from billing_core.services.counter_store import CounterStore, create_counter_store
from billing_core.services.provider_client import BillingProviderClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    logger.info("Starting %s v%s", settings.app_name, settings.version)
    # Missing provider configuration is fatal here, not on the first webhook
    config = ProviderConfig.from_settings(settings)
    app.state.provider_config = config
    app.state.provider_client = BillingProviderClient(config)
    app.state.counter_store = create_counter_store(settings.redis_url)
    await init_db()
    logger.info("Database initialized (provider test mode: %s)", config.test_mode)
    yield
    logger.info("Shutting down")
    await app.state.provider_client.aclose()
    await app.state.counter_store.close()


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Subscription ledger, usage metering and cost circuit breaker",
    lifespan=lifespan,
)

# Rate limiting
app.add_middleware(RateLimitMiddleware)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(auth.router, prefix="/api/v1/auth", tags=["auth"])
app.include_router(billing.router, prefix="/api/v1/billing", tags=["billing"])
app.include_router(usage.router, prefix="/api/v1/usage", tags=["usage"])
app.include_router(work.router, prefix="/api/v1/work", tags=["work"])
app.include_router(ops.router, prefix="/api/v1/ops", tags=["ops"])


@app.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_db),
    store: CounterStore = Depends(get_counter_store),
):
    try:
        await db.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        logger.error("Health check: database unreachable: %s", e)
        database = "unreachable"
    counters = "ok" if await store.ping() else "unreachable"
    return {
        "status": "ok" if database == "ok" and counters == "ok" else "degraded",
        "version": settings.version,
        "database": database,
        "counter_store": counters,
        "counter_backend": store.name,
    }
