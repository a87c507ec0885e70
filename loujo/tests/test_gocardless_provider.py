"""GoCardless webhook verification, batching and normalization."""
from datetime import datetime, timezone

import httpx
import pytest

from loujo.features.billing.events import (
    CheckoutCompleted,
    Ignored,
    PlanKind,
    SubscriptionCancelled,
    SubscriptionFailed,
    SubscriptionRenewed,
)
from loujo.features.billing.gocardless_provider import GoCardlessApi, GoCardlessProvider, _add_months
from loujo.features.billing.provider import InvalidSignature, MalformedEvent, ProviderError


SECRET = "gc_test_secret"


def _api(resources, requests=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        path = request.url.path
        if path not in resources:
            return httpx.Response(404, json={"error": {"message": "not found"}})
        return httpx.Response(200, json=resources[path])

    client = httpx.Client(transport=httpx.MockTransport(handler))
    return GoCardlessApi("gc_access", "sandbox", client=client)


def _event(resource_type, action, links, event_id="EV1", **extra):
    return {
        "id": event_id,
        "created_at": "2026-01-15T10:00:00.000Z",
        "resource_type": resource_type,
        "action": action,
        "links": links,
        **extra,
    }


# Verification

def test_verify_accepts_valid_signature_and_splits_batch(sign_gocardless):
    provider = GoCardlessProvider(SECRET)
    body, headers = sign_gocardless({"events": [
        _event("payments", "confirmed", {"subscription": "SB1"}),
        _event("subscriptions", "cancelled", {"subscription": "SB1"}, event_id="EV2"),
    ]})
    payload = provider.verify(body, headers)
    assert [e["id"] for e in provider.split(payload)] == ["EV1", "EV2"]


def test_verify_rejects_bad_signature(sign_gocardless):
    provider = GoCardlessProvider(SECRET)
    body, _ = sign_gocardless({"events": []})
    with pytest.raises(InvalidSignature):
        provider.verify(body, {"Webhook-Signature": "0" * 64})


def test_verify_rejects_missing_signature(sign_gocardless):
    provider = GoCardlessProvider(SECRET)
    body, _ = sign_gocardless({"events": []})
    with pytest.raises(InvalidSignature):
        provider.verify(body, {})


def test_verify_rejects_payload_without_events(sign_gocardless):
    provider = GoCardlessProvider(SECRET)
    body, headers = sign_gocardless({"something": "else"})
    with pytest.raises(InvalidSignature):
        provider.verify(body, headers)


# Normalization

def test_subscription_created_from_metadata():
    provider = GoCardlessProvider(SECRET)
    event = provider.normalize(_event(
        "subscriptions", "created",
        {"subscription": "SB1", "customer": "CU1"},
        resource_metadata={"userId": "u1", "userType": "parent"},
    ))
    assert isinstance(event, CheckoutCompleted)
    assert event.user_id == "u1"
    assert event.plan_kind == PlanKind.PARENT
    assert event.customer_id == "CU1"
    assert event.idempotency_key == "gocardless:EV1"


def test_subscription_created_enriched_from_api():
    requests = []
    api = _api({"/subscriptions/SB1": {"subscriptions": {
        "id": "SB1",
        "metadata": {"userId": "u1", "userType": "school_admin"},
    }}}, requests)
    provider = GoCardlessProvider(SECRET, api)
    event = provider.normalize(_event("subscriptions", "created", {"subscription": "SB1"}))
    assert event.plan_kind == PlanKind.SCHOOL
    assert event.user_id == "u1"
    assert requests[0].headers["GoCardless-Version"] == "2015-07-06"
    assert requests[0].headers["Authorization"] == "Bearer gc_access"


def test_subscription_created_without_user_is_malformed():
    provider = GoCardlessProvider(SECRET)
    with pytest.raises(MalformedEvent):
        provider.normalize(_event("subscriptions", "created", {"subscription": "SB1"}))


def test_payment_confirmed_period_is_one_month_after_creation():
    provider = GoCardlessProvider(SECRET)
    event = provider.normalize(_event("payments", "confirmed", {"subscription": "SB1", "payment": "PM1"}))
    assert isinstance(event, SubscriptionRenewed)
    assert event.period_end == datetime(2026, 2, 15, 10, 0, tzinfo=timezone.utc)


def test_payment_confirmed_yearly_plan():
    provider = GoCardlessProvider(SECRET)
    event = provider.normalize(_event(
        "payments", "confirmed", {"subscription": "SB1"}, metadata={"plan": "yearly"},
    ))
    assert event.period_end == datetime(2027, 1, 15, 10, 0, tzinfo=timezone.utc)


def test_payment_confirmed_resolves_subscription_via_payment():
    api = _api({"/payments/PM1": {"payments": {
        "id": "PM1",
        "charge_date": "2026-03-31",
        "links": {"subscription": "SB1"},
    }}})
    provider = GoCardlessProvider(SECRET, api)
    event = provider.normalize(_event("payments", "confirmed", {"payment": "PM1"}))
    assert event.subscription_id == "SB1"
    assert event.period_end == datetime(2026, 4, 30, tzinfo=timezone.utc)


def test_one_off_payment_is_ignored():
    api = _api({"/payments/PM2": {"payments": {"id": "PM2", "links": {}}}})
    provider = GoCardlessProvider(SECRET, api)
    assert isinstance(provider.normalize(_event("payments", "confirmed", {"payment": "PM2"})), Ignored)


def test_api_failure_is_provider_error():
    provider = GoCardlessProvider(SECRET, _api({}))
    with pytest.raises(ProviderError):
        provider.normalize(_event("payments", "confirmed", {"payment": "PM404"}))


def test_non_json_api_response_is_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>maintenance</html>")

    api = GoCardlessApi("gc_access", "sandbox", client=httpx.Client(transport=httpx.MockTransport(handler)))
    provider = GoCardlessProvider(SECRET, api)
    with pytest.raises(ProviderError):
        provider.normalize(_event("payments", "confirmed", {"payment": "PM1"}))


def test_payment_failed_and_cancellations():
    provider = GoCardlessProvider(SECRET)
    failed = provider.normalize(_event("payments", "failed", {"subscription": "SB1"}))
    assert isinstance(failed, SubscriptionFailed)

    for action in ("cancelled", "finished"):
        event = provider.normalize(_event("subscriptions", action, {"subscription": "SB1"}))
        assert isinstance(event, SubscriptionCancelled)
        assert event.subscription_id == "SB1"


def test_paid_out_and_other_events_are_ignored():
    provider = GoCardlessProvider(SECRET)
    assert isinstance(provider.normalize(_event("payments", "paid_out", {"subscription": "SB1"})), Ignored)
    assert isinstance(provider.normalize(_event("mandates", "active", {"mandate": "MD1"})), Ignored)


def test_add_months_clamps_to_month_end():
    assert _add_months(datetime(2026, 1, 31), 1) == datetime(2026, 2, 28)
    assert _add_months(datetime(2026, 11, 30), 3) == datetime(2027, 2, 28)
