# loujo/conftest.py
import hashlib
import hmac
import json
import time
from typing import Any, Dict, List, Optional

import pytest

from loujo.core.config import Settings
from loujo.core.database import create_database
from loujo.core.errors import AuthenticationError
from loujo.core.metrics import METRICS
from loujo.features.billing.projector import EntitlementProjector
from loujo.features.billing.provider import ProviderError
from loujo.features.billing.reconciler import SubscriptionReconciler
from loujo.features.billing.store import SubscriptionStore


STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
GOCARDLESS_WEBHOOK_SECRET = "gc_test_secret"


class FakeIdentity:
    """In-memory identity provider: records claims pushes, maps 'token-<uid>' to uid."""

    def __init__(self):
        self.claims: Dict[str, Dict[str, Any]] = {}
        self.calls: List[str] = []
        self.fail = False

    def set_custom_claims(self, user_id: str, claims: Dict[str, Any]) -> None:
        self.calls.append(user_id)
        if self.fail:
            raise RuntimeError("identity provider unavailable")
        self.claims[user_id] = dict(claims)

    def verify_token(self, token: str) -> Dict[str, Any]:
        if not token.startswith("token-"):
            raise AuthenticationError("Invalid token")
        return {"sub": token[len("token-"):]}


class FakeStripeApi:
    def __init__(self):
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.lookups: List[str] = []

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self.lookups.append(subscription_id)
        if subscription_id not in self.subscriptions:
            raise ProviderError(f"No such subscription: {subscription_id}")
        return self.subscriptions[subscription_id]


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def db(tmp_path):
    database = create_database(f"sqlite:///{tmp_path / 'loujo.db'}")
    yield database
    database.dispose()


@pytest.fixture
def store(db):
    return SubscriptionStore(db)


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def stripe_api():
    return FakeStripeApi()


@pytest.fixture
def reconciler(store):
    return SubscriptionReconciler(store, max_attempts=3, sleep=lambda _: None)


@pytest.fixture
def projector(identity, store):
    return EntitlementProjector(identity, store)


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        _env_file=None,
        ENV="test",
        CONFIG_STRICT=False,
        DATABASE_URL=f"sqlite:///{tmp_path / 'loujo.db'}",
        CLERK_SECRET_KEY="sk_test",
        STRIPE_SECRET_KEY="sk_test_stripe",
        STRIPE_WEBHOOK_SECRET=STRIPE_WEBHOOK_SECRET,
        GOCARDLESS_ACCESS_TOKEN="gc_access",
        GOCARDLESS_WEBHOOK_SECRET=GOCARDLESS_WEBHOOK_SECRET,
    )


@pytest.fixture
def app(test_settings, db, identity, stripe_api):
    from loujo.main import create_app

    application = create_app(test_settings, database=db, identity=identity, stripe_api=stripe_api)
    # No outbound retries or sleeps in tests
    application.state.pipeline.reconciler._sleep = lambda _: None
    return application


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def sign_stripe():
    def _sign(payload: Any, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: Optional[int] = None):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        ts = int(time.time()) if timestamp is None else timestamp
        signed = f"{ts}.{body.decode()}".encode()
        signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return body, {"stripe-signature": f"t={ts},v1={signature}"}

    return _sign


@pytest.fixture
def sign_gocardless():
    def _sign(payload: Any, secret: str = GOCARDLESS_WEBHOOK_SECRET):
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return body, {"Webhook-Signature": signature}

    return _sign
