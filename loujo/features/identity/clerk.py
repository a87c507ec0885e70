"""
Clerk identity provider.

Handles:
- JWT verification for API callers (HS256 with the secret key in
  development/testing, RS256 against the JWKS in production)
- Custom claims writes (role, schoolId) via the Clerk Backend API's
  public_metadata

Testing:
- Pass an httpx.Client with a MockTransport; no network is touched.
"""
import json
import logging
from typing import Any, Dict, Optional

import httpx
import jwt
from jwt.algorithms import RSAAlgorithm

from loujo.core.errors import AuthenticationError


logger = logging.getLogger("loujo")


class IdentityProviderError(Exception):
    """Clerk Backend API call failed."""


class ClerkIdentityProvider:
    def __init__(
        self,
        secret_key: Optional[str],
        *,
        api_base: str = "https://api.clerk.com/v1",
        client: Optional[httpx.Client] = None,
        issuer: Optional[str] = None,
        jwks_url: Optional[str] = None,
        timeout: float = 10.0,
    ):
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.issuer = issuer
        self.jwks_url = jwks_url
        self._client = client or httpx.Client(timeout=timeout)
        self._jwks: Optional[Dict[str, Any]] = None

    # Claims

    def set_custom_claims(self, user_id: str, claims: Dict[str, Any]) -> None:
        """Replace the user's public_metadata claims (role, schoolId)."""
        if not self.secret_key:
            raise IdentityProviderError("CLERK_SECRET_KEY is not configured")

        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        url = f"{self.api_base}/users/{user_id}/metadata"
        try:
            response = self._client.patch(url, headers=headers, json={"public_metadata": claims})
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"Clerk request failed: {e}") from e
        if response.status_code >= 300:
            raise IdentityProviderError(f"Clerk claims update failed: {response.status_code} {response.text}")

    # Tokens

    def verify_token(self, token: str) -> Dict[str, Any]:
        """
        Verify a session JWT and return its claims.

        Raises:
            AuthenticationError: Token invalid, expired or unverifiable
        """
        try:
            if self.secret_key and not (self.issuer or self.jwks_url):
                return jwt.decode(
                    token,
                    self.secret_key,
                    algorithms=["HS256"],
                    options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
                )
            return self._verify_rs256(token)
        except jwt.PyJWTError as e:
            raise AuthenticationError(f"Invalid token: {e}") from e

    def _verify_rs256(self, token: str) -> Dict[str, Any]:
        if not self.issuer and not self.jwks_url:
            raise jwt.PyJWTError("CLERK_ISSUER or CLERK_JWKS_URL must be configured for RS256 verification")

        kid = jwt.get_unverified_header(token).get("kid")
        if not kid:
            raise jwt.PyJWTError("Token missing 'kid' in header")

        matching_key = None
        for key in self._get_jwks().get("keys", []):
            if key.get("kid") == kid:
                matching_key = key
                break
        if not matching_key:
            raise jwt.PyJWTError(f"Key ID '{kid}' not found in JWKS")

        public_key = RSAAlgorithm.from_jwk(json.dumps(matching_key))
        return jwt.decode(
            token,
            public_key,
            algorithms=["RS256"],
            issuer=self.issuer,
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
        )

    def _get_jwks(self) -> Dict[str, Any]:
        if self._jwks is None:
            url = self.jwks_url or f"{self.issuer.rstrip('/')}/.well-known/jwks.json"
            try:
                response = self._client.get(url)
                response.raise_for_status()
            except httpx.HTTPError as e:
                raise jwt.PyJWTError(f"JWKS fetch failed: {e}") from e
            self._jwks = response.json()
        return self._jwks

    def close(self) -> None:
        self._client.close()
