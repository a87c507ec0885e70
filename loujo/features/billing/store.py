"""
Subscription document store.

Thin SQLAlchemy Core layer over the users / schools / subscription_events
tables. User documents are only ever written through `conditional_update`,
which succeeds only when the caller's observed version is still current.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from loujo.core.database import (
    Database,
    claims_sync,
    schools,
    subscription_events,
    users,
)
from loujo.features.billing.events import PlanKind, Role, SubscriptionStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on round-trip; treat naive values as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class SubscriptionRecord:
    """Snapshot of the subscription fields of one user document."""
    user_id: str
    role: Role
    school_id: Optional[str]
    school_name: Optional[str]
    plan_kind: PlanKind
    provider: Optional[str]
    subscription_id: Optional[str]
    ended_subscription_id: Optional[str]
    subscription_status: SubscriptionStatus
    current_period_end: Optional[datetime]
    monthly_quota: int
    generations_this_month: int
    last_quota_reset: Optional[datetime]
    provider_customer_id: Optional[str]
    is_school_admin_subscribed: bool
    is_parent_subscribed: bool
    version: int

    @classmethod
    def from_row(cls, row) -> "SubscriptionRecord":
        m = row._mapping
        return cls(
            user_id=m["user_id"],
            role=Role(m["role"]),
            school_id=m["school_id"],
            school_name=m["school_name"],
            plan_kind=PlanKind(m["plan_kind"]),
            provider=m["provider"],
            subscription_id=m["subscription_id"],
            ended_subscription_id=m["ended_subscription_id"],
            subscription_status=SubscriptionStatus(m["subscription_status"]),
            current_period_end=as_utc(m["current_period_end"]),
            monthly_quota=int(m["monthly_quota"] or 0),
            generations_this_month=int(m["generations_this_month"] or 0),
            last_quota_reset=as_utc(m["last_quota_reset"]),
            provider_customer_id=m["provider_customer_id"],
            is_school_admin_subscribed=bool(m["is_school_admin_subscribed"]),
            is_parent_subscribed=bool(m["is_parent_subscribed"]),
            version=int(m["version"] or 0),
        )

    def with_changes(self, changes: Dict[str, Any]) -> "SubscriptionRecord":
        names = {f.name for f in fields(self)}
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data.update({k: v for k, v in changes.items() if k in names})
        return SubscriptionRecord(**data)


def _column_value(value: Any) -> Any:
    if isinstance(value, (Role, PlanKind, SubscriptionStatus)):
        return value.value
    return value


class SubscriptionStore:
    """Reads and conditional writes of user subscription documents."""

    def __init__(self, db: Database):
        self.db = db

    # Users

    def create_user(
        self,
        user_id: str,
        *,
        email: Optional[str] = None,
        role: Role = Role.UNSET,
        school_name: Optional[str] = None,
    ) -> SubscriptionRecord:
        """Create the user document at signup (role unset, no plan)."""
        now = utc_now()
        with self.db.session() as session:
            session.execute(
                insert(users).values(
                    user_id=user_id,
                    email=email,
                    role=role.value,
                    school_name=school_name,
                    created_at=now,
                    updated_at=now,
                )
            )
        return self.get_user(user_id)

    def get_user(self, user_id: str, session: Optional[Session] = None) -> Optional[SubscriptionRecord]:
        if session is None:
            with self.db.session() as own:
                return self.get_user(user_id, own)
        row = session.execute(select(users).where(users.c.user_id == user_id)).first()
        return SubscriptionRecord.from_row(row) if row else None

    def find_user_id_by_subscription(self, session: Session, subscription_id: str) -> Optional[str]:
        """Resolve a provider subscription id (current, else ended) to a uid."""
        rows = session.execute(
            select(users.c.user_id, users.c.subscription_id).where(
                or_(
                    users.c.subscription_id == subscription_id,
                    users.c.ended_subscription_id == subscription_id,
                )
            )
        ).fetchall()
        for row in rows:
            if row.subscription_id == subscription_id:
                return row.user_id
        return rows[0].user_id if rows else None

    def find_user_id_by_customer(self, session: Session, customer_id: str) -> Optional[str]:
        row = session.execute(
            select(users.c.user_id).where(users.c.provider_customer_id == customer_id)
        ).first()
        return row.user_id if row else None

    def subscription_owner(self, session: Session, subscription_id: str) -> Optional[str]:
        row = session.execute(
            select(users.c.user_id).where(users.c.subscription_id == subscription_id)
        ).first()
        return row.user_id if row else None

    def conditional_update(
        self,
        session: Session,
        user_id: str,
        expected_version: int,
        changes: Dict[str, Any],
    ) -> bool:
        """
        Apply `changes` only if the document is still at `expected_version`.

        Returns False when another writer got there first. Unique-index
        violations (subscription id claimed concurrently) surface as
        IntegrityError to the caller.
        """
        values = {k: _column_value(v) for k, v in changes.items()}
        values["version"] = expected_version + 1
        values["updated_at"] = utc_now()
        result = session.execute(
            update(users)
            .where(users.c.user_id == user_id)
            .where(users.c.version == expected_version)
            .values(**values)
        )
        return result.rowcount == 1

    def list_user_ids(self, session: Session, *, only_with_plan: bool = False) -> List[str]:
        query = select(users.c.user_id).order_by(users.c.user_id)
        if only_with_plan:
            query = query.where(users.c.plan_kind != PlanKind.NONE.value)
        return [row.user_id for row in session.execute(query).fetchall()]

    # Schools

    def find_school_for_admin(self, user_id: str) -> Optional[str]:
        with self.db.session() as session:
            row = session.execute(
                select(schools.c.school_id).where(schools.c.primary_admin_uid == user_id)
            ).fetchone()
            return row.school_id if row else None

    def ensure_school(self, user_id: str, name: str) -> str:
        """
        Return the school owned by `user_id`, creating it if none exists.

        The UNIQUE primary_admin_uid index makes concurrent or retried
        creation converge on a single row.
        """
        existing = self.find_school_for_admin(user_id)
        if existing:
            return existing

        school_id = uuid.uuid4().hex
        try:
            with self.db.session() as session:
                session.execute(
                    insert(schools).values(
                        school_id=school_id,
                        name=name,
                        primary_admin_uid=user_id,
                        created_at=utc_now(),
                    )
                )
        except IntegrityError:
            existing = self.find_school_for_admin(user_id)
            if existing:
                return existing
            raise
        return school_id

    def count_schools_for_admin(self, user_id: str) -> int:
        with self.db.session() as session:
            return len(
                session.execute(
                    select(schools.c.school_id).where(schools.c.primary_admin_uid == user_id)
                ).fetchall()
            )

    # Idempotency ledger

    def has_event(self, event_key: str) -> bool:
        with self.db.session() as session:
            row = session.execute(
                select(subscription_events.c.id).where(subscription_events.c.event_key == event_key)
            ).fetchone()
            return row is not None

    def record_event(
        self,
        session: Session,
        *,
        event_key: str,
        provider: str,
        provider_event_id: Optional[str],
        event_type: str,
        subscription_id: Optional[str],
        user_id: Optional[str],
        outcome: str,
    ) -> None:
        """Insert the ledger row; a duplicate key raises IntegrityError."""
        session.execute(
            insert(subscription_events).values(
                event_key=event_key,
                provider=provider,
                provider_event_id=provider_event_id,
                event_type=event_type,
                subscription_id=subscription_id,
                user_id=user_id,
                outcome=outcome,
                received_at=utc_now(),
            )
        )

    def event_user_id(self, event_key: str) -> Optional[str]:
        with self.db.session() as session:
            row = session.execute(
                select(subscription_events.c.user_id).where(subscription_events.c.event_key == event_key)
            ).fetchone()
            return row.user_id if row else None

    def list_events(self, *, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.db.session() as session:
            query = select(subscription_events).order_by(subscription_events.c.id)
            if user_id:
                query = query.where(subscription_events.c.user_id == user_id)
            return [dict(row._mapping) for row in session.execute(query).fetchall()]

    # Claims sync bookkeeping

    def mark_claims_sync(self, user_id: str, *, error: Optional[str]) -> None:
        now = utc_now()
        values = {
            "last_error": error,
            "last_error_at": now if error else None,
            "updated_at": now,
        }
        if error is None:
            values["last_sync_at"] = now
        with self.db.session() as session:
            result = session.execute(
                update(claims_sync).where(claims_sync.c.user_id == user_id).values(**values)
            )
            if result.rowcount == 0:
                session.execute(insert(claims_sync).values(user_id=user_id, **values))

    def claims_sync_status(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self.db.session() as session:
            row = session.execute(
                select(claims_sync).where(claims_sync.c.user_id == user_id)
            ).fetchone()
            return dict(row._mapping) if row else None

    def users_with_failed_claims(self) -> Iterable[str]:
        with self.db.session() as session:
            rows = session.execute(
                select(claims_sync.c.user_id)
                .where(claims_sync.c.last_error.is_not(None))
                .order_by(claims_sync.c.user_id)
            ).fetchall()
            return [row.user_id for row in rows]
