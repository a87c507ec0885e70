"""
Normalized subscription events.

Provider webhooks (Stripe, GoCardless) are mapped into this closed set of
frozen dataclasses before reaching the reconciler. `NormalizedEvent` is the
union the reconciler matches on exhaustively.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class Role(str, Enum):
    UNSET = "unset"
    STUDENT = "student"
    TEACHER = "teacher"
    PARENT = "parent"
    SCHOOL_ADMIN = "school_admin"
    ADMIN = "admin"


class PlanKind(str, Enum):
    NONE = "none"
    SCHOOL = "school"
    PARENT = "parent"


class SubscriptionStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"


class Provider(str, Enum):
    STRIPE = "stripe"
    GOCARDLESS = "gocardless"


def parse_plan_kind(value: Optional[str]) -> Optional[PlanKind]:
    """Map a provider metadata plan/user type onto a PlanKind (None if unknown)."""
    if not value:
        return None
    normalized = value.strip().lower()
    if normalized in ("school", "school_admin"):
        return PlanKind.SCHOOL
    if normalized == "parent":
        return PlanKind.PARENT
    return None


@dataclass(frozen=True)
class _BaseEvent:
    provider: Provider
    event_id: Optional[str]
    event_type: str

    @property
    def idempotency_key(self) -> str:
        if self.event_id:
            return f"{self.provider.value}:{self.event_id}"
        period_end = getattr(self, "period_end", None)
        parts = [
            getattr(self, "subscription_id", "") or "",
            self.event_type,
            period_end.isoformat() if period_end else "",
        ]
        digest = hashlib.sha256("|".join(parts).encode()).hexdigest()[:32]
        return f"{self.provider.value}:derived:{digest}"


@dataclass(frozen=True)
class CheckoutCompleted(_BaseEvent):
    user_id: str
    plan_kind: PlanKind
    subscription_id: str
    customer_id: Optional[str] = None
    school_name: Optional[str] = None
    # Set when the provider reports the first period as already paid
    period_end: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionRenewed(_BaseEvent):
    subscription_id: str
    period_end: datetime
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionFailed(_BaseEvent):
    subscription_id: str
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionCancelled(_BaseEvent):
    subscription_id: str
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class Ignored(_BaseEvent):
    """Provider event type the system does not act on."""


NormalizedEvent = Union[
    CheckoutCompleted,
    SubscriptionRenewed,
    SubscriptionFailed,
    SubscriptionCancelled,
    Ignored,
]

ActionableEvent = Union[
    CheckoutCompleted,
    SubscriptionRenewed,
    SubscriptionFailed,
    SubscriptionCancelled,
]
