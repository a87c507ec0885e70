"""
Webhook pipeline orchestrator.

Coordinates, per delivery:
1. Verify signature (reject the whole delivery on failure)
2. Split into provider events
3. Normalize each event
4. Reconcile against the user's subscription record
5. Project entitlements to the identity provider

Per-event poison conditions (malformed events, unexpected transitions,
failed claims pushes) are logged and acknowledged so the provider does not
redeliver forever. Transient conditions (reconciliation conflicts, provider
API failures, events for a subscription no checkout has linked yet)
propagate so the endpoint answers with a retryable status.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from loujo.core.logging import log_event
from loujo.core.metrics import webhook_events_total
from loujo.features.billing.events import Ignored, NormalizedEvent
from loujo.features.billing.projector import EntitlementProjector, ProjectionFailure
from loujo.features.billing.provider import MalformedEvent, PaymentProvider
from loujo.features.billing.reconciler import (
    Outcome,
    ReconcileResult,
    SubscriptionReconciler,
    UnexpectedTransition,
    UnknownSubscriber,
)


@dataclass(frozen=True)
class EventOutcome:
    """Result of processing one provider event within a delivery."""
    event_id: Optional[str]
    event_type: str
    outcome: Outcome
    user_id: Optional[str] = None
    projected: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "outcome": self.outcome.value,
            "user_id": self.user_id,
            "projected": self.projected,
        }


class WebhookPipeline:
    """Verify -> normalize -> reconcile -> project for one provider delivery."""

    def __init__(
        self,
        providers: Mapping[str, PaymentProvider],
        reconciler: SubscriptionReconciler,
        projector: EntitlementProjector,
    ):
        self.providers = dict(providers)
        self.reconciler = reconciler
        self.projector = projector

    def provider(self, name: str) -> Optional[PaymentProvider]:
        return self.providers.get(name)

    def handle(self, provider_name: str, body: bytes, headers: Mapping[str, str]) -> List[EventOutcome]:
        """
        Process one webhook delivery.

        Raises:
            KeyError: Unknown provider name
            InvalidSignature: Delivery failed verification (nothing applied)
            ReconciliationConflict: Optimistic write retries exhausted
            UnknownSubscriber: No user linked to the event yet
            ProviderError: Enrichment lookup failed
        """
        provider = self.providers[provider_name]
        payload = provider.verify(body, headers)

        outcomes = []
        for raw_event in provider.split(payload):
            outcome = self._handle_event(provider, raw_event)
            webhook_events_total.inc({"provider": provider_name, "outcome": outcome.outcome.value})
            outcomes.append(outcome)
        return outcomes

    def _handle_event(self, provider: PaymentProvider, raw_event: Dict[str, Any]) -> EventOutcome:
        provider_name = provider.name.value
        try:
            event = provider.normalize(raw_event)
        except MalformedEvent as e:
            log_event(
                "error",
                "webhook.malformed_event",
                provider=provider_name,
                event_id=raw_event.get("id"),
                outcome=Outcome.MALFORMED.value,
                error_code=e.code,
                extra={"reason": e.message},
            )
            return EventOutcome(raw_event.get("id"), "unknown", Outcome.MALFORMED)

        if isinstance(event, Ignored):
            log_event(
                "info",
                "webhook.ignored",
                provider=provider_name,
                event_type=event.event_type,
                event_id=event.event_id,
                outcome=Outcome.IGNORED.value,
            )
            return EventOutcome(event.event_id, event.event_type, Outcome.IGNORED)

        try:
            result = self.reconciler.apply(event)
        except UnexpectedTransition as e:
            self._log_rejected(event, Outcome.UNEXPECTED_TRANSITION, e.code, e.message)
            return EventOutcome(event.event_id, event.event_type, Outcome.UNEXPECTED_TRANSITION)
        except UnknownSubscriber as e:
            # Not ledgered; the provider redelivers once the checkout has landed
            self._log_rejected(event, Outcome.UNKNOWN_SUBSCRIBER, e.code, e.message, level="warning")
            webhook_events_total.inc({"provider": provider_name, "outcome": Outcome.UNKNOWN_SUBSCRIBER.value})
            raise

        log_event(
            "info",
            "webhook.reconciled",
            user_id=result.user_id,
            provider=provider_name,
            event_type=event.event_type,
            event_id=event.event_id,
            subscription_id=event.subscription_id,
            outcome=result.outcome.value,
        )

        projected = self._project(result)
        return EventOutcome(event.event_id, event.event_type, result.outcome, result.user_id, projected)

    def _project(self, result: ReconcileResult) -> bool:
        """
        Push claims after a state change, or on redelivery when the last
        push for this user failed.
        """
        if not result.user_id:
            return False
        if not result.changed and not self._claims_pending(result.user_id):
            return False

        record = result.record
        if record is None or not result.changed:
            record = self.reconciler.store.get_user(result.user_id)
        if record is None:
            return False

        try:
            self.projector.project(record)
        except ProjectionFailure:
            # State is committed; the sweep job or the next delivery retries
            return False
        return True

    def _claims_pending(self, user_id: str) -> bool:
        status = self.reconciler.store.claims_sync_status(user_id)
        return bool(status and status.get("last_error"))

    @staticmethod
    def _log_rejected(event: NormalizedEvent, outcome: Outcome, code: str, message: str, level: str = "error") -> None:
        log_event(
            level,
            "webhook.rejected_event",
            provider=event.provider.value,
            event_type=event.event_type,
            event_id=event.event_id,
            subscription_id=getattr(event, "subscription_id", None),
            outcome=outcome.value,
            error_code=code,
            extra={"reason": message},
        )
