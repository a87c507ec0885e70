"""Generation quota consumption and the subscription status routes."""
from datetime import datetime, timezone

import pytest

from loujo.core.errors import NotFoundError, NotSubscribedError, QuotaExceededError, ServiceUnavailableError
from loujo.features.billing.events import CheckoutCompleted, PlanKind, Provider, SubscriptionRenewed
from loujo.features.billing.quota import consume_generation
from loujo.features.billing.store import SubscriptionStore


T1 = datetime(2026, 2, 1, tzinfo=timezone.utc)


def _activate(reconciler, user_id="u1", plan=PlanKind.PARENT):
    reconciler.apply(CheckoutCompleted(
        provider=Provider.STRIPE,
        event_id=f"evt_checkout_{user_id}",
        event_type="checkout.session.completed",
        user_id=user_id,
        plan_kind=plan,
        subscription_id=f"sub_{user_id}",
    ))
    reconciler.apply(SubscriptionRenewed(
        provider=Provider.STRIPE,
        event_id=f"evt_paid_{user_id}",
        event_type="invoice.paid",
        subscription_id=f"sub_{user_id}",
        period_end=T1,
    ))


def test_consume_counts_against_quota(store, reconciler):
    store.create_user("u1")
    _activate(reconciler)

    record = consume_generation(store, "u1")
    assert record.generations_this_month == 1
    assert store.get_user("u1").generations_this_month == 1


def test_consume_stops_at_quota(store, reconciler):
    store.create_user("u1")
    _activate(reconciler)
    for _ in range(25):
        consume_generation(store, "u1")

    with pytest.raises(QuotaExceededError):
        consume_generation(store, "u1")
    assert store.get_user("u1").generations_this_month == 25


def test_consume_requires_active_plan(store, reconciler):
    store.create_user("u1")
    with pytest.raises(NotSubscribedError):
        consume_generation(store, "u1")
    with pytest.raises(NotFoundError):
        consume_generation(store, "nobody")


def test_consume_conflicts_are_bounded(db, reconciler):
    class StaleStore(SubscriptionStore):
        def conditional_update(self, session, user_id, expected_version, changes):
            return False

    SubscriptionStore(db).create_user("u1")
    _activate(reconciler)
    sleeps = []
    with pytest.raises(ServiceUnavailableError):
        consume_generation(StaleStore(db), "u1", max_attempts=3, sleep=sleeps.append)
    # No backoff after the final attempt
    assert sleeps == [0.01, 0.02]


# Routes

def test_status_requires_bearer_token(client):
    resp = client.get("/api/subscription/status")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_status_route(client, store, reconciler):
    store.create_user("u1")
    _activate(reconciler)
    resp = client.get("/api/subscription/status", headers={"Authorization": "Bearer token-u1"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["role"] == "parent"
    assert body["subscription_status"] == "active"
    assert body["remaining"] == 25
    assert body["current_period_end"].startswith("2026-02-01")


def test_generation_route_enforces_plan_and_quota(client, store, reconciler):
    store.create_user("u1")
    headers = {"Authorization": "Bearer token-u1"}

    resp = client.post("/api/subscription/generations", headers=headers)
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "not_subscribed"

    _activate(reconciler)
    resp = client.post("/api/subscription/generations", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["generations_this_month"] == 1

    for _ in range(24):
        client.post("/api/subscription/generations", headers=headers)
    resp = client.post("/api/subscription/generations", headers=headers)
    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "quota_exceeded"
