"""
ProLocal Billing - Main FastAPI Application.

Serves the plan catalog, subscription checkout / cancellation, the billing
provider webhook and the quota-gated listing endpoints.

Run with:
    uvicorn prolocal.main:app --reload
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.datastructures import State
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from prolocal.api.v1.listings import router as listings_router
from prolocal.api.v1.subscriptions import router as subscriptions_router
from prolocal.config import Settings, get_settings
from prolocal.constants import API_TITLE, API_VERSION
from prolocal.errors import EntitlementError
from prolocal.logging_config import setup_logging
from prolocal.middleware import RequestContextMiddleware
from prolocal.services.billing_provider import BillingProvider
from prolocal.services.billing_reconciler import BillingReconciler
from prolocal.services.checkout_service import CheckoutService
from prolocal.services.directories import (
    InMemoryListingDirectory,
    InMemoryUserDirectory,
    ListingDirectory,
    SupabaseListingDirectory,
    SupabaseUserDirectory,
    UserDirectory,
)
from prolocal.services.entitlement_store import (
    EntitlementRepository,
    EntitlementStore,
    InMemoryEntitlementRepository,
    SupabaseEntitlementRepository,
    UserLockRegistry,
)
from prolocal.services.quota_enforcer import QuotaEnforcer
from prolocal.services.stripe_service import StripeService

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# Configure logging
setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


def configure_services(
    state: State,
    config: Settings,
    *,
    repository: EntitlementRepository,
    users: UserDirectory,
    listings: ListingDirectory,
    provider: BillingProvider | None,
    now_provider=None,
) -> None:
    """Build the entitlement components and store them on ``app.state``.

    Without a billing provider, checkout, cancellation and the webhook answer
    503 while plan reads and listing quotas keep working.
    """
    store = EntitlementStore(repository, users, listings, UserLockRegistry())
    if now_provider is not None:
        store.now_provider = now_provider
    enforcer = QuotaEnforcer(store)

    state.entitlement_store = store
    state.quota_enforcer = enforcer
    state.checkout_service = None
    state.billing_reconciler = None

    if provider is not None:
        state.checkout_service = CheckoutService(
            store,
            provider,
            config.stripe,
            success_url=config.checkout_success_url,
            cancel_url=config.checkout_cancel_url,
        )
        state.billing_reconciler = BillingReconciler(store, enforcer, provider)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    # Initialize Supabase async client
    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Auth endpoints will return 503")

    _app.state.supabase = supabase_client

    tables = settings.supabase_tables
    if supabase_client is not None:
        repository = SupabaseEntitlementRepository(
            supabase_client, tables.entitlements_table, tables.webhook_events_table
        )
        users = SupabaseUserDirectory(supabase_client, tables.users_table)
        listings = SupabaseListingDirectory(supabase_client, tables.listings_table)
    else:
        logger.warning("entitlements_in_memory", detail="State is lost on restart")
        repository = InMemoryEntitlementRepository()
        users = InMemoryUserDirectory()
        listings = InMemoryListingDirectory()

    provider: StripeService | None = None
    if settings.stripe.secret_key:
        provider = StripeService(settings.stripe)
        logger.info("stripe_configured", currency=settings.stripe.currency)
    else:
        logger.warning("stripe_not_configured", detail="Checkout and webhooks will return 503")

    if not settings.stripe.webhook_secret:
        logger.warning("stripe_webhook_secret_missing", detail="Webhooks will be rejected")

    configure_services(
        _app.state,
        settings,
        repository=repository,
        users=users,
        listings=listings,
        provider=provider,
    )
    logger.info("services_initialized")

    yield

    logger.info("api_shutdown")


# Create FastAPI app
app = FastAPI(
    title=API_TITLE,
    description=(
        "Subscription plans, billing webhooks and plan quotas for ProLocal "
        "service listings."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EntitlementError)
async def entitlement_error_handler(_request: Request, exc: EntitlementError) -> JSONResponse:
    """Render domain errors as ``{"error", "detail", ...}`` with their status code."""
    if exc.status_code >= 500:
        logger.error("request_failed", error=exc.code, detail=exc.message)
    else:
        logger.info("request_rejected", error=exc.code, status_code=exc.status_code)
    return JSONResponse(status_code=exc.status_code, content=exc.payload)


# Include routers
app.include_router(subscriptions_router, prefix="/api/v1")
app.include_router(listings_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "ProLocal subscription and plan quota API",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
