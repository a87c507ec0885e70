"""
Stripe webhook provider.

Verifies deliveries with the Stripe SDK's signature check and maps the
handful of Stripe event types the subscription lifecycle acts on into
normalized events. Checkouts always fetch the subscription (plan fallback
and any already-paid period); invoices fetch it only when they omit the
period end.
"""
import json
from datetime import datetime, timezone
from typing import Dict, Any, List, Mapping, Optional, Protocol

import stripe

from loujo.features.billing.events import (
    CheckoutCompleted,
    Ignored,
    NormalizedEvent,
    PlanKind,
    Provider,
    SubscriptionCancelled,
    SubscriptionFailed,
    SubscriptionRenewed,
    parse_plan_kind,
)
from loujo.features.billing.provider import (
    InvalidSignature,
    MalformedEvent,
    ProviderError,
    header_value,
)


RENEWAL_EVENT_TYPES = ("invoice.payment_succeeded", "invoice.paid")
PAID_STATUSES = ("active", "trialing")


class StripeSubscriptionLookup(Protocol):
    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Return {id, customer, status, current_period_end, price_id, metadata}."""
        ...


def _get(obj: Any, key: str) -> Any:
    """Key access that works for plain dicts and StripeObjects alike."""
    if obj is None:
        return None
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return None


def _from_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class StripeApi:
    """Subscription lookups against the Stripe API (injected client)."""

    def __init__(self, secret_key: Optional[str] = None, client: Optional[stripe.StripeClient] = None):
        if client is None:
            if not secret_key:
                raise ProviderError("STRIPE_SECRET_KEY not configured")
            client = stripe.StripeClient(secret_key)
        self._client = client

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            subscription = self._client.subscriptions.retrieve(subscription_id)
        except stripe.StripeError as e:
            raise ProviderError(f"Stripe subscription lookup failed: {e}")

        items = _get(_get(subscription, "items"), "data") or []
        first_item = items[0] if items else None
        # Newer API versions report the period on the subscription item
        period_end = _get(subscription, "current_period_end") or _get(first_item, "current_period_end")
        metadata = _get(subscription, "metadata") or {}
        return {
            "id": _get(subscription, "id"),
            "customer": _get(subscription, "customer"),
            "status": _get(subscription, "status"),
            "current_period_end": period_end,
            "price_id": _get(_get(first_item, "price"), "id"),
            "metadata": dict(metadata),
        }


class StripeProvider:
    """Stripe implementation of the PaymentProvider protocol."""

    name = Provider.STRIPE

    def __init__(
        self,
        webhook_secret: Optional[str],
        api: Optional[StripeSubscriptionLookup] = None,
        *,
        price_plans: Optional[Dict[str, PlanKind]] = None,
        tolerance_seconds: int = 300,
    ):
        self.webhook_secret = webhook_secret
        self.api = api
        self.price_plans = {k: v for k, v in (price_plans or {}).items() if k}
        self.tolerance_seconds = tolerance_seconds

    def verify(self, body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """Verify Stripe webhook signature, then parse the body."""
        if not self.webhook_secret:
            raise InvalidSignature("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = header_value(headers, "stripe-signature")
        if not sig_header:
            raise InvalidSignature("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.webhook_secret, self.tolerance_seconds
            )
        except UnicodeDecodeError:
            raise InvalidSignature("Invalid payload encoding")
        except stripe.SignatureVerificationError:
            raise InvalidSignature("Invalid signature")

        try:
            event = json.loads(payload)
        except ValueError:
            raise InvalidSignature("Invalid payload")
        if not isinstance(event, dict):
            raise InvalidSignature("Invalid payload")
        return event

    def split(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [payload]

    def normalize(self, raw_event: Dict[str, Any]) -> NormalizedEvent:
        event_type = raw_event.get("type") or "unknown"
        event_id = raw_event.get("id")
        data = (raw_event.get("data") or {}).get("object") or {}

        if event_type == "checkout.session.completed":
            return self._checkout_completed(event_id, event_type, data)
        if event_type in RENEWAL_EVENT_TYPES:
            return self._invoice_paid(event_id, event_type, data)
        if event_type == "invoice.payment_failed":
            subscription_id = self._invoice_subscription_id(data)
            if not subscription_id:
                raise MalformedEvent(f"{event_type} without subscription id")
            return SubscriptionFailed(
                provider=self.name,
                event_id=event_id,
                event_type=event_type,
                subscription_id=subscription_id,
                customer_id=data.get("customer"),
            )
        if event_type == "customer.subscription.deleted":
            subscription_id = data.get("id")
            if not subscription_id:
                raise MalformedEvent(f"{event_type} without subscription id")
            return SubscriptionCancelled(
                provider=self.name,
                event_id=event_id,
                event_type=event_type,
                subscription_id=subscription_id,
                customer_id=data.get("customer"),
            )

        return Ignored(provider=self.name, event_id=event_id, event_type=event_type)

    def _checkout_completed(self, event_id: Optional[str], event_type: str, data: Dict[str, Any]) -> NormalizedEvent:
        mode = data.get("mode")
        if mode and mode != "subscription":
            return Ignored(provider=self.name, event_id=event_id, event_type=event_type)

        metadata = data.get("metadata") or {}
        user_id = metadata.get("userId") or data.get("client_reference_id")
        subscription_id = data.get("subscription")
        plan_kind = parse_plan_kind(metadata.get("planType"))

        if not user_id or not subscription_id:
            raise MalformedEvent(f"{event_type} missing userId or subscription")

        # The first invoice is often paid (and delivered) before the session
        # completes; the subscription carries the period it paid for.
        subscription = self._retrieve(subscription_id) if self.api is not None else {}
        if plan_kind is None:
            plan_kind = self._plan_from_subscription(subscription)
        if plan_kind is None:
            raise MalformedEvent(f"{event_type} missing planType")

        period_end = None
        if subscription.get("status") in PAID_STATUSES:
            period_end = _from_timestamp(subscription.get("current_period_end"))

        return CheckoutCompleted(
            provider=self.name,
            event_id=event_id,
            event_type=event_type,
            user_id=user_id,
            plan_kind=plan_kind,
            subscription_id=subscription_id,
            customer_id=data.get("customer") or subscription.get("customer"),
            school_name=metadata.get("schoolName"),
            period_end=period_end,
        )

    def _invoice_paid(self, event_id: Optional[str], event_type: str, data: Dict[str, Any]) -> NormalizedEvent:
        subscription_id = self._invoice_subscription_id(data)
        if not subscription_id:
            # One-off invoices have no subscription and do not renew anything
            return Ignored(provider=self.name, event_id=event_id, event_type=event_type)

        customer_id = data.get("customer")
        lines = (data.get("lines") or {}).get("data") or []
        period_end = _from_timestamp(_get(_get(lines[0], "period"), "end")) if lines else None

        if period_end is None:
            subscription = self._retrieve(subscription_id)
            if customer_id and subscription.get("customer") and subscription["customer"] != customer_id:
                raise MalformedEvent(f"{event_type} customer does not match subscription")
            period_end = _from_timestamp(subscription.get("current_period_end"))
        if period_end is None:
            raise MalformedEvent(f"{event_type} without period end")

        return SubscriptionRenewed(
            provider=self.name,
            event_id=event_id,
            event_type=event_type,
            subscription_id=subscription_id,
            period_end=period_end,
            customer_id=customer_id,
        )

    @staticmethod
    def _invoice_subscription_id(data: Dict[str, Any]) -> Optional[str]:
        subscription_id = data.get("subscription")
        if not subscription_id:
            details = _get(_get(data.get("parent"), "subscription_details"), "subscription")
            subscription_id = details
        if not subscription_id:
            lines = (data.get("lines") or {}).get("data") or []
            if lines:
                subscription_id = _get(lines[0], "subscription")
        if isinstance(subscription_id, dict):
            subscription_id = subscription_id.get("id")
        return subscription_id

    def _plan_from_subscription(self, subscription: Dict[str, Any]) -> Optional[PlanKind]:
        plan_kind = parse_plan_kind((subscription.get("metadata") or {}).get("planType"))
        if plan_kind is None:
            plan_kind = self.price_plans.get(subscription.get("price_id"))
        return plan_kind

    def _retrieve(self, subscription_id: str) -> Dict[str, Any]:
        if self.api is None:
            raise ProviderError("Stripe API not configured for enrichment")
        return self.api.retrieve_subscription(subscription_id)
