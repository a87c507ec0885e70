"""
Subscription reconciler.

Applies normalized provider events to a user's subscription record.

- `decide` is the pure transition table: (record, event) -> Decision, or
  UnexpectedTransition when the event is not valid from the current state.
- `SubscriptionReconciler.apply` wraps it in an optimistic read-check-write
  loop against the user document, persists the event's idempotency key in
  the same transaction, and creates the school for school plans before
  linking it.

Cancelled is terminal for a subscription id: late events for an ended
subscription are absorbed without mutation.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError

from loujo.core.errors import AppError
from loujo.core.metrics import reconcile_conflicts_total
from loujo.features.billing.events import (
    ActionableEvent,
    CheckoutCompleted,
    PlanKind,
    SubscriptionCancelled,
    SubscriptionFailed,
    SubscriptionRenewed,
    SubscriptionStatus,
)
from loujo.features.billing.projector import derive_entitlements
from loujo.features.billing.store import SubscriptionRecord, SubscriptionStore, utc_now


logger = logging.getLogger("loujo")

DEFAULT_SCHOOL_NAME = "Unnamed school"

LIVE_STATUSES = (
    SubscriptionStatus.PENDING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAYMENT_FAILED,
)


class Outcome(str, Enum):
    APPLIED = "applied"
    NOOP = "noop"
    TERMINAL = "terminal"
    DUPLICATE = "duplicate"
    UNEXPECTED_TRANSITION = "unexpected_transition"
    UNKNOWN_SUBSCRIBER = "unknown_subscriber"
    IGNORED = "ignored"
    MALFORMED = "malformed"


class UnexpectedTransition(AppError):
    """Event does not match any transition from the current state."""
    code = "unexpected_transition"
    status_code = 200


class UnknownSubscriber(AppError):
    """
    No user document correlates with the event yet.

    Renewals often arrive before the checkout that links the subscription,
    so nothing is committed and the provider is asked to redeliver.
    """
    code = "unknown_subscriber"
    status_code = 503


class ReconciliationConflict(AppError):
    """Optimistic write kept losing to concurrent writers."""
    code = "reconciliation_conflict"
    status_code = 503


class _VersionConflict(Exception):
    pass


@dataclass(frozen=True)
class QuotaPolicy:
    school: int = 100
    parent: int = 25

    def for_plan(self, plan_kind: PlanKind) -> int:
        if plan_kind == PlanKind.SCHOOL:
            return self.school
        if plan_kind == PlanKind.PARENT:
            return self.parent
        return 0


@dataclass(frozen=True)
class Decision:
    outcome: Outcome
    changes: Dict[str, Any] = field(default_factory=dict)
    needs_school: bool = False


@dataclass(frozen=True)
class ReconcileResult:
    outcome: Outcome
    user_id: Optional[str]
    record: Optional[SubscriptionRecord] = None

    @property
    def changed(self) -> bool:
        return self.outcome == Outcome.APPLIED


def _entitled(record: SubscriptionRecord, changes: Dict[str, Any], *, needs_school: bool = False) -> Decision:
    after = record.with_changes(changes)
    merged = {**changes, **derive_entitlements(after)}
    return Decision(Outcome.APPLIED, merged, needs_school=needs_school)


def _customer_change(record: SubscriptionRecord, customer_id: Optional[str]) -> Dict[str, Any]:
    """provider_customer_id is set once and never overwritten."""
    if not customer_id:
        return {}
    if record.provider_customer_id is None:
        return {"provider_customer_id": customer_id}
    if record.provider_customer_id != customer_id:
        logger.warning(
            "reconcile.customer_mismatch",
            extra={"user_id": record.user_id, "error_code": "customer_mismatch"},
        )
    return {}


def _paid_period(period_end: datetime, now: datetime) -> Dict[str, Any]:
    return {
        "subscription_status": SubscriptionStatus.ACTIVE,
        "current_period_end": period_end,
        "generations_this_month": 0,
        "last_quota_reset": now,
    }


def _is_ended(record: SubscriptionRecord, subscription_id: str) -> bool:
    return (
        record.ended_subscription_id == subscription_id
        and record.subscription_id != subscription_id
    )


def _require_current(record: SubscriptionRecord, event: ActionableEvent) -> None:
    if record.subscription_id != event.subscription_id:
        raise UnexpectedTransition(
            f"{event.event_type} for {event.subscription_id} does not match "
            f"current subscription {record.subscription_id}"
        )


def decide(
    record: SubscriptionRecord,
    event: ActionableEvent,
    *,
    now: datetime,
    quotas: QuotaPolicy = QuotaPolicy(),
) -> Decision:
    """Apply the transition table to one record. Pure; never touches storage."""
    status = record.subscription_status

    if isinstance(event, CheckoutCompleted):
        if _is_ended(record, event.subscription_id):
            return Decision(Outcome.TERMINAL)
        if record.subscription_id == event.subscription_id:
            if status == SubscriptionStatus.PENDING:
                if event.period_end is None:
                    return Decision(Outcome.NOOP)
                return _entitled(record, _paid_period(event.period_end, now))
            raise UnexpectedTransition(f"checkout for {event.subscription_id} while {status.value}")
        if status not in (SubscriptionStatus.NONE, SubscriptionStatus.CANCELLED):
            raise UnexpectedTransition(
                f"checkout for {event.subscription_id} while {record.subscription_id} is {status.value}"
            )
        changes: Dict[str, Any] = {
            "plan_kind": event.plan_kind,
            "provider": event.provider.value,
            "subscription_id": event.subscription_id,
            "subscription_status": SubscriptionStatus.PENDING,
            "current_period_end": None,
            "monthly_quota": quotas.for_plan(event.plan_kind),
        }
        if event.period_end is not None:
            changes.update(_paid_period(event.period_end, now))
        changes.update(_customer_change(record, event.customer_id))
        needs_school = event.plan_kind == PlanKind.SCHOOL and not record.school_id
        return _entitled(record, changes, needs_school=needs_school)

    if isinstance(event, SubscriptionRenewed):
        if _is_ended(record, event.subscription_id):
            return Decision(Outcome.TERMINAL)
        _require_current(record, event)
        if status not in LIVE_STATUSES:
            raise UnexpectedTransition(f"renewal while {status.value}")
        current_end = record.current_period_end
        if current_end is None or event.period_end > current_end:
            return _entitled(record, _paid_period(event.period_end, now))
        if status != SubscriptionStatus.ACTIVE and event.period_end == current_end:
            # Retried payment for the period already recorded: reactivate only
            return _entitled(record, {"subscription_status": SubscriptionStatus.ACTIVE})
        return Decision(Outcome.NOOP)

    if isinstance(event, SubscriptionFailed):
        if _is_ended(record, event.subscription_id):
            return Decision(Outcome.TERMINAL)
        _require_current(record, event)
        if status in (SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE):
            return _entitled(record, {"subscription_status": SubscriptionStatus.PAYMENT_FAILED})
        if status == SubscriptionStatus.PAYMENT_FAILED:
            return Decision(Outcome.NOOP)
        raise UnexpectedTransition(f"payment failure while {status.value}")

    if isinstance(event, SubscriptionCancelled):
        if _is_ended(record, event.subscription_id):
            return Decision(Outcome.TERMINAL)
        _require_current(record, event)
        if status in LIVE_STATUSES:
            return _entitled(record, {
                "subscription_status": SubscriptionStatus.CANCELLED,
                "subscription_id": None,
                "current_period_end": None,
                "ended_subscription_id": event.subscription_id,
            })
        raise UnexpectedTransition(f"cancellation while {status.value}")

    raise TypeError(f"Unhandled event type: {type(event).__name__}")


class SubscriptionReconciler:
    """Idempotent, concurrency-safe application of events to user records."""

    def __init__(
        self,
        store: SubscriptionStore,
        *,
        max_attempts: int = 3,
        quotas: QuotaPolicy = QuotaPolicy(),
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.max_attempts = max(1, max_attempts)
        self.quotas = quotas
        self._clock = clock
        self._sleep = sleep

    def apply(self, event: ActionableEvent) -> ReconcileResult:
        key = event.idempotency_key
        if self.store.has_event(key):
            return ReconcileResult(Outcome.DUPLICATE, self.store.event_user_id(key))

        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._attempt(event, key)
            except (_VersionConflict, IntegrityError):
                if self.store.has_event(key):
                    return ReconcileResult(Outcome.DUPLICATE, self.store.event_user_id(key))
                reconcile_conflicts_total.inc()
                logger.warning(
                    "reconcile.conflict",
                    extra={
                        "subscription_id": event.subscription_id,
                        "event_type": event.event_type,
                        "error_code": "version_conflict",
                    },
                )
                if attempt < self.max_attempts:
                    self._sleep(0.01 * attempt)

        raise ReconciliationConflict(
            f"Could not apply {event.event_type} for {event.subscription_id} "
            f"after {self.max_attempts} attempts"
        )

    def _attempt(self, event: ActionableEvent, key: str) -> ReconcileResult:
        unexpected: Optional[UnexpectedTransition] = None
        with self.store.db.session() as session:
            user_id = self._resolve_user(session, event)
            record = self.store.get_user(user_id, session) if user_id else None
            if record is None:
                raise UnknownSubscriber(
                    f"No user for {event.event_type} ({event.subscription_id})"
                )

            try:
                self._check_ownership(session, record, event)
                decision = decide(record, event, now=self._clock(), quotas=self.quotas)
            except UnexpectedTransition as e:
                unexpected = e
                decision = Decision(Outcome.UNEXPECTED_TRANSITION)

            changes = dict(decision.changes)
            if decision.needs_school:
                # Created in its own transaction before the link is written; a
                # failed link leaves it reusable on the next delivery.
                changes["school_id"] = self.store.ensure_school(
                    record.user_id, self._school_name(record, event)
                )

            if changes:
                if not self.store.conditional_update(session, record.user_id, record.version, changes):
                    raise _VersionConflict()

            self.store.record_event(
                session,
                event_key=key,
                provider=event.provider.value,
                provider_event_id=event.event_id,
                event_type=event.event_type,
                subscription_id=event.subscription_id,
                user_id=record.user_id,
                outcome=decision.outcome.value,
            )

        if unexpected is not None:
            raise unexpected

        after = record
        if changes:
            after = record.with_changes({**changes, "version": record.version + 1})
        return ReconcileResult(decision.outcome, record.user_id, after)

    def _resolve_user(self, session, event: ActionableEvent) -> Optional[str]:
        if isinstance(event, CheckoutCompleted):
            return event.user_id
        user_id = self.store.find_user_id_by_subscription(session, event.subscription_id)
        if user_id is None and event.customer_id:
            user_id = self.store.find_user_id_by_customer(session, event.customer_id)
        return user_id

    def _check_ownership(self, session, record: SubscriptionRecord, event: ActionableEvent) -> None:
        if not isinstance(event, CheckoutCompleted):
            return
        owner = self.store.subscription_owner(session, event.subscription_id)
        if owner is not None and owner != record.user_id:
            raise UnexpectedTransition(
                f"subscription {event.subscription_id} already belongs to another user"
            )

    @staticmethod
    def _school_name(record: SubscriptionRecord, event: ActionableEvent) -> str:
        name = getattr(event, "school_name", None) or record.school_name
        return name or DEFAULT_SCHOOL_NAME
