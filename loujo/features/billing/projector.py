"""
Entitlement projection.

Derives role, UI-guard flags and identity-provider claims from a
reconciled subscription record. The denormalized flags are written by the
reconciler inside its conditional update; this module's projector only
pushes claims to the identity provider, which is eventually consistent and
safe to retry on its own.
"""
import logging
from typing import Any, Dict, Protocol

from loujo.core.errors import AppError
from loujo.core.metrics import claims_sync_failures_total
from loujo.features.billing.events import PlanKind, Role, SubscriptionStatus
from loujo.features.billing.store import SubscriptionRecord, SubscriptionStore


logger = logging.getLogger("loujo")


class ProjectionFailure(AppError):
    """Claims push failed; the committed subscription state stands."""
    code = "projection_failed"
    status_code = 200


class ClaimsWriter(Protocol):
    def set_custom_claims(self, user_id: str, claims: Dict[str, Any]) -> None:
        ...


def derive_entitlements(record: SubscriptionRecord) -> Dict[str, Any]:
    """Return role and flag fields implied by the record's plan state."""
    role = record.role
    if role != Role.ADMIN:
        if record.plan_kind == PlanKind.SCHOOL and record.subscription_status != SubscriptionStatus.NONE:
            role = Role.SCHOOL_ADMIN
        elif record.plan_kind == PlanKind.PARENT and record.subscription_status != SubscriptionStatus.NONE:
            role = Role.PARENT

    active = record.subscription_status == SubscriptionStatus.ACTIVE
    return {
        "role": role,
        "is_school_admin_subscribed": active and record.plan_kind == PlanKind.SCHOOL,
        "is_parent_subscribed": active and record.plan_kind == PlanKind.PARENT,
    }


def claims_for(record: SubscriptionRecord) -> Dict[str, Any]:
    claims: Dict[str, Any] = {"role": record.role.value}
    if record.school_id:
        claims["schoolId"] = record.school_id
    return claims


class EntitlementProjector:
    """Pushes claims for a post-transition record to the identity provider."""

    def __init__(self, identity: ClaimsWriter, store: SubscriptionStore):
        self.identity = identity
        self.store = store

    def project(self, record: SubscriptionRecord) -> Dict[str, Any]:
        claims = claims_for(record)
        try:
            self.identity.set_custom_claims(record.user_id, claims)
        except Exception as e:
            claims_sync_failures_total.inc()
            self.store.mark_claims_sync(record.user_id, error=str(e))
            logger.warning(
                "claims.sync_failed",
                extra={"user_id": record.user_id, "error_code": "projection_failed"},
            )
            raise ProjectionFailure(f"Claims push failed for {record.user_id}: {e}") from e

        self.store.mark_claims_sync(record.user_id, error=None)
        logger.info("claims.synced", extra={"user_id": record.user_id})
        return claims
