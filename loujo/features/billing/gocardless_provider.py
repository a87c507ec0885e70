"""
GoCardless (direct debit) webhook provider.

GoCardless signs the raw body with HMAC-SHA256 (hex) in the
Webhook-Signature header and batches several events per delivery. Events
often carry only resource links, so subscription and payment resources are
fetched from the REST API when correlating fields are missing.
"""
import calendar
import hashlib
import hmac
import json
from datetime import datetime, timezone
from typing import Dict, Any, List, Mapping, Optional

import httpx

from loujo.features.billing.events import (
    CheckoutCompleted,
    Ignored,
    NormalizedEvent,
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


GOCARDLESS_BASE_URLS = {
    "live": "https://api.gocardless.com",
    "sandbox": "https://api-sandbox.gocardless.com",
}
GOCARDLESS_API_VERSION = "2015-07-06"

CANCELLED_EVENT_TYPES = ("subscriptions.cancelled", "subscriptions.finished")


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class GoCardlessApi:
    """Minimal read-only GoCardless REST client (subscriptions, payments)."""

    def __init__(
        self,
        access_token: Optional[str],
        environment: str = "sandbox",
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        if not access_token:
            raise ProviderError("GOCARDLESS_ACCESS_TOKEN not configured")
        self.base_url = GOCARDLESS_BASE_URLS.get(environment, GOCARDLESS_BASE_URLS["sandbox"])
        self._client = client or httpx.Client(timeout=timeout)
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "GoCardless-Version": GOCARDLESS_API_VERSION,
            "Accept": "application/json",
        }

    def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._get(f"/subscriptions/{subscription_id}", "subscriptions")

    def get_payment(self, payment_id: str) -> Dict[str, Any]:
        return self._get(f"/payments/{payment_id}", "payments")

    def _get(self, path: str, envelope: str) -> Dict[str, Any]:
        try:
            response = self._client.get(f"{self.base_url}{path}", headers=self._headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"GoCardless request failed: {e}")
        if response.status_code >= 300:
            raise ProviderError(f"GoCardless lookup failed: {response.status_code} {path}")
        try:
            body = response.json()
        except ValueError:
            raise ProviderError(f"GoCardless returned a non-JSON body for {path}")
        if not isinstance(body, dict):
            raise ProviderError(f"GoCardless returned an unexpected body for {path}")
        return body.get(envelope) or {}

    def close(self) -> None:
        self._client.close()


class GoCardlessProvider:
    """GoCardless implementation of the PaymentProvider protocol."""

    name = Provider.GOCARDLESS

    def __init__(self, webhook_secret: Optional[str], api: Optional[GoCardlessApi] = None):
        self.webhook_secret = webhook_secret
        self.api = api

    def verify(self, body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise InvalidSignature("GOCARDLESS_WEBHOOK_SECRET not configured")

        provided = header_value(headers, "webhook-signature")
        if not provided:
            raise InvalidSignature("Missing Webhook-Signature header")

        expected = hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(provided.strip(), expected):
            raise InvalidSignature("Invalid signature")

        try:
            payload = json.loads(body)
        except ValueError:
            raise InvalidSignature("Invalid payload")
        if not isinstance(payload, dict) or not isinstance(payload.get("events"), list):
            raise InvalidSignature("Invalid payload")
        return payload

    def split(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [event for event in payload.get("events", []) if isinstance(event, dict)]

    def normalize(self, raw_event: Dict[str, Any]) -> NormalizedEvent:
        event_type = f"{raw_event.get('resource_type')}.{raw_event.get('action')}"
        event_id = raw_event.get("id")
        links = raw_event.get("links") or {}
        metadata = {**(raw_event.get("metadata") or {}), **(raw_event.get("resource_metadata") or {})}

        if event_type == "subscriptions.created":
            return self._subscription_created(event_id, event_type, links, metadata)
        if event_type == "payments.confirmed":
            return self._payment_confirmed(event_id, event_type, raw_event, links, metadata)
        if event_type == "payments.failed":
            subscription_id = self._payment_subscription_id(links)
            if not subscription_id:
                return Ignored(provider=self.name, event_id=event_id, event_type=event_type)
            return SubscriptionFailed(
                provider=self.name,
                event_id=event_id,
                event_type=event_type,
                subscription_id=subscription_id,
                customer_id=links.get("customer"),
            )
        if event_type in CANCELLED_EVENT_TYPES:
            subscription_id = links.get("subscription")
            if not subscription_id:
                raise MalformedEvent(f"{event_type} without subscription link")
            return SubscriptionCancelled(
                provider=self.name,
                event_id=event_id,
                event_type=event_type,
                subscription_id=subscription_id,
                customer_id=links.get("customer"),
            )

        return Ignored(provider=self.name, event_id=event_id, event_type=event_type)

    def _subscription_created(self, event_id, event_type, links, metadata) -> NormalizedEvent:
        subscription_id = links.get("subscription")
        if not subscription_id:
            raise MalformedEvent(f"{event_type} without subscription link")

        user_id = metadata.get("userId")
        plan_kind = parse_plan_kind(metadata.get("userType"))
        if (not user_id or plan_kind is None) and self.api is not None:
            resource_metadata = self.api.get_subscription(subscription_id).get("metadata") or {}
            user_id = user_id or resource_metadata.get("userId")
            plan_kind = plan_kind or parse_plan_kind(resource_metadata.get("userType"))

        if not user_id or plan_kind is None:
            raise MalformedEvent(f"{event_type} missing userId or userType")

        return CheckoutCompleted(
            provider=self.name,
            event_id=event_id,
            event_type=event_type,
            user_id=user_id,
            plan_kind=plan_kind,
            subscription_id=subscription_id,
            customer_id=links.get("customer"),
            school_name=metadata.get("schoolName"),
        )

    def _payment_confirmed(self, event_id, event_type, raw_event, links, metadata) -> NormalizedEvent:
        subscription_id = links.get("subscription")
        charged_at = None
        if not subscription_id:
            payment_id = links.get("payment")
            if not payment_id:
                raise MalformedEvent(f"{event_type} without payment link")
            if self.api is None:
                raise ProviderError("GoCardless API not configured for enrichment")
            payment = self.api.get_payment(payment_id)
            subscription_id = (payment.get("links") or {}).get("subscription")
            charged_at = _parse_datetime(payment.get("charge_date"))
            if not subscription_id:
                # One-off payment, not part of a subscription
                return Ignored(provider=self.name, event_id=event_id, event_type=event_type)

        started = charged_at or _parse_datetime(raw_event.get("created_at"))
        if started is None:
            raise MalformedEvent(f"{event_type} without created_at")
        interval = (metadata.get("plan") or metadata.get("userPlan") or "monthly").lower()
        period_end = _add_months(started, 12 if interval == "yearly" else 1)

        return SubscriptionRenewed(
            provider=self.name,
            event_id=event_id,
            event_type=event_type,
            subscription_id=subscription_id,
            period_end=period_end,
            customer_id=links.get("customer"),
        )

    def _payment_subscription_id(self, links: Dict[str, Any]) -> Optional[str]:
        subscription_id = links.get("subscription")
        if subscription_id or not links.get("payment") or self.api is None:
            return subscription_id
        payment = self.api.get_payment(links["payment"])
        return (payment.get("links") or {}).get("subscription")
