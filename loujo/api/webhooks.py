"""
Payment provider webhook routes.

- POST /api/webhooks/stripe
- POST /api/webhooks/gocardless

Both read the raw body (signature verification needs the exact bytes) and
hand it to the WebhookPipeline. Status codes tell the provider whether to
redeliver:
    200: processed, duplicate, ignored or poison (logged, never retried)
    400: signature or payload invalid
    502: provider API lookup failed (retry)
    503: provider disabled, reconciliation conflict, or no user linked to
         the subscription yet (retry)
"""
from typing import Any, Dict

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from loujo.core.errors import ServiceUnavailableError
from loujo.features.billing.events import Provider
from loujo.features.billing.service import WebhookPipeline


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def _handle(request: Request, provider: Provider) -> Dict[str, Any]:
    pipeline: WebhookPipeline = request.app.state.pipeline
    configured = pipeline.provider(provider.value)
    if configured is None or not getattr(configured, "webhook_secret", None):
        raise ServiceUnavailableError(
            f"{provider.value} webhooks are not configured",
            code="provider_disabled",
        )

    body = await request.body()
    headers = dict(request.headers)
    outcomes = await run_in_threadpool(pipeline.handle, provider.value, body, headers)
    return {"received": True, "outcomes": [outcome.as_dict() for outcome in outcomes]}


@router.post("/stripe")
async def stripe_webhook(request: Request):
    """Handle Stripe events (one event per delivery)."""
    return await _handle(request, Provider.STRIPE)


@router.post("/gocardless")
async def gocardless_webhook(request: Request):
    """Handle GoCardless deliveries (batched events)."""
    return await _handle(request, Provider.GOCARDLESS)
