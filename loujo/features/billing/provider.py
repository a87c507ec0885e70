"""
Payment provider protocol.

Defines the interface every webhook source implements: verify the raw
delivery, then normalize each contained provider event into the closed
set in events.py. Business logic only ever sees normalized events.
"""
from typing import Protocol, Dict, Any, List, Mapping

from loujo.core.errors import AppError
from loujo.features.billing.events import NormalizedEvent, Provider


class PaymentProvider(Protocol):
    """
    Protocol for payment providers.

    Implementations must handle:
    - Webhook signature verification (before any JSON parsing)
    - Splitting a delivery into provider events
    - Normalization (with optional enrichment via the provider API)
    """

    name: Provider

    def verify(self, body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """
        Verify the webhook signature and parse the body.

        Raises:
            InvalidSignature: If the header is missing or does not match
        """
        ...

    def split(self, payload: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Return the provider events carried by one verified delivery."""
        ...

    def normalize(self, raw_event: Dict[str, Any]) -> NormalizedEvent:
        """
        Map one provider event into a normalized event.

        Raises:
            MalformedEvent: Actionable type missing correlating fields
            ProviderError: Enrichment call to the provider API failed
        """
        ...


class InvalidSignature(AppError):
    """Webhook authenticity could not be established."""
    code = "invalid_signature"
    status_code = 400


class MalformedEvent(AppError):
    """Verified event that can never be processed (poison message)."""
    code = "malformed_event"
    status_code = 200


class ProviderError(AppError):
    """Provider API call failed while enriching an event."""
    code = "provider_error"
    status_code = 502


def header_value(headers: Mapping[str, str], name: str):
    """Case-insensitive header lookup over a plain mapping."""
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None
