import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load .env before settings are read (skipped under pytest)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from loujo.api import health, subscription, webhooks
from loujo.core.config import Settings, settings as default_settings, validate_config
from loujo.core.database import Database, create_database
from loujo.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from loujo.core.logging import configure_logging
from loujo.core.middleware.request_id import RequestIdMiddleware
from loujo.features.billing.events import PlanKind
from loujo.features.billing.gocardless_provider import GoCardlessApi, GoCardlessProvider
from loujo.features.billing.projector import ClaimsWriter, EntitlementProjector
from loujo.features.billing.reconciler import QuotaPolicy, SubscriptionReconciler
from loujo.features.billing.service import WebhookPipeline
from loujo.features.billing.store import SubscriptionStore
from loujo.features.billing.stripe_provider import StripeApi, StripeProvider, StripeSubscriptionLookup
from loujo.features.identity.clerk import ClerkIdentityProvider


logger = logging.getLogger("loujo")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting loujo subscription service...")
    try:
        yield
    finally:
        logger.info("Stopping loujo subscription service...")
        for closer in app.state.closers:
            closer()


def _stripe_api(cfg: Settings) -> Optional[StripeApi]:
    if not cfg.STRIPE_SECRET_KEY:
        return None
    return StripeApi(cfg.STRIPE_SECRET_KEY)


def _gocardless_api(cfg: Settings) -> Optional[GoCardlessApi]:
    if not cfg.GOCARDLESS_ACCESS_TOKEN:
        return None
    return GoCardlessApi(
        cfg.GOCARDLESS_ACCESS_TOKEN,
        cfg.GOCARDLESS_ENVIRONMENT,
        timeout=cfg.HTTP_TIMEOUT_SECONDS,
    )


def create_app(
    cfg: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    identity=None,
    stripe_api: Optional[StripeSubscriptionLookup] = None,
    gocardless_api: Optional[GoCardlessApi] = None,
) -> FastAPI:
    """
    Build the application and its collaborators.

    Every external client can be injected; anything not passed is built
    from settings.
    """
    cfg = cfg or default_settings
    configure_logging(cfg.ENV)
    validate_config(settings_obj=cfg)

    closers = []
    if database is None:
        database = create_database(cfg.DATABASE_URL)
        closers.append(database.dispose)
    if identity is None:
        identity = ClerkIdentityProvider(
            cfg.CLERK_SECRET_KEY,
            api_base=cfg.CLERK_API_BASE,
            issuer=cfg.CLERK_ISSUER,
            jwks_url=cfg.CLERK_JWKS_URL,
            timeout=cfg.HTTP_TIMEOUT_SECONDS,
        )
        closers.append(identity.close)
    if stripe_api is None:
        stripe_api = _stripe_api(cfg)
    if gocardless_api is None:
        gocardless_api = _gocardless_api(cfg)
        if gocardless_api is not None:
            closers.append(gocardless_api.close)

    store = SubscriptionStore(database)
    claims_writer: ClaimsWriter = identity
    reconciler = SubscriptionReconciler(
        store,
        max_attempts=cfg.RECONCILE_MAX_ATTEMPTS,
        quotas=QuotaPolicy(school=cfg.SCHOOL_MONTHLY_QUOTA, parent=cfg.PARENT_MONTHLY_QUOTA),
    )
    projector = EntitlementProjector(claims_writer, store)
    providers = {
        "stripe": StripeProvider(
            cfg.STRIPE_WEBHOOK_SECRET,
            stripe_api,
            price_plans={
                cfg.STRIPE_PRICE_SCHOOL: PlanKind.SCHOOL,
                cfg.STRIPE_PRICE_PARENT: PlanKind.PARENT,
            },
            tolerance_seconds=cfg.STRIPE_SIGNATURE_TOLERANCE_SECONDS,
        ),
        "gocardless": GoCardlessProvider(cfg.GOCARDLESS_WEBHOOK_SECRET, gocardless_api),
    }

    app = FastAPI(title="Loujo - Subscriptions", lifespan=lifespan)
    app.state.settings = cfg
    app.state.database = database
    app.state.identity = identity
    app.state.store = store
    app.state.pipeline = WebhookPipeline(providers, reconciler, projector)
    app.state.closers = closers

    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(webhooks.router)
    app.include_router(subscription.router)
    app.include_router(health.router)
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("loujo.main:create_app", factory=True, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
