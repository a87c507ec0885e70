"""Tests for the Clerk identity provider (no network)."""
import json
import time

import httpx
import jwt
import pytest

from loujo.core.errors import AuthenticationError
from loujo.features.identity.clerk import ClerkIdentityProvider, IdentityProviderError


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_set_custom_claims_patches_public_metadata():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "u1"})

    clerk = ClerkIdentityProvider("sk_test", client=_client(handler))
    clerk.set_custom_claims("u1", {"role": "school_admin", "schoolId": "sch_1"})

    request = seen[0]
    assert request.method == "PATCH"
    assert str(request.url) == "https://api.clerk.com/v1/users/u1/metadata"
    assert request.headers["Authorization"] == "Bearer sk_test"
    assert json.loads(request.content) == {"public_metadata": {"role": "school_admin", "schoolId": "sch_1"}}


def test_set_custom_claims_raises_on_error_status():
    clerk = ClerkIdentityProvider("sk_test", client=_client(lambda r: httpx.Response(500, text="down")))
    with pytest.raises(IdentityProviderError):
        clerk.set_custom_claims("u1", {"role": "parent"})


def test_set_custom_claims_requires_secret():
    clerk = ClerkIdentityProvider(None, client=_client(lambda r: httpx.Response(200)))
    with pytest.raises(IdentityProviderError):
        clerk.set_custom_claims("u1", {"role": "parent"})


def test_verify_token_hs256():
    clerk = ClerkIdentityProvider("sk_test", client=_client(lambda r: httpx.Response(200)))
    token = jwt.encode({"sub": "u1", "exp": int(time.time()) + 60}, "sk_test", algorithm="HS256")
    assert clerk.verify_token(token)["sub"] == "u1"


def test_verify_token_rejects_expired_and_forged():
    clerk = ClerkIdentityProvider("sk_test", client=_client(lambda r: httpx.Response(200)))
    expired = jwt.encode({"sub": "u1", "exp": int(time.time()) - 60}, "sk_test", algorithm="HS256")
    forged = jwt.encode({"sub": "u1", "exp": int(time.time()) + 60}, "other", algorithm="HS256")
    for token in (expired, forged, "not-a-jwt"):
        with pytest.raises(AuthenticationError):
            clerk.verify_token(token)


def test_verify_token_rs256_without_jwks_config():
    clerk = ClerkIdentityProvider(None, client=_client(lambda r: httpx.Response(200)))
    token = jwt.encode({"sub": "u1"}, "x", algorithm="HS256")
    with pytest.raises(AuthenticationError):
        clerk.verify_token(token)
