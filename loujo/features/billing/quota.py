"""
Monthly generation quota.

Consumption goes through the same versioned conditional write as the
reconciler, so a renewal's quota reset and a concurrent consumption can
never overwrite each other.
"""
import logging
import time
from typing import Any, Callable, Dict

from loujo.core.errors import NotFoundError, NotSubscribedError, QuotaExceededError, ServiceUnavailableError
from loujo.features.billing.events import SubscriptionStatus
from loujo.features.billing.store import SubscriptionRecord, SubscriptionStore


logger = logging.getLogger("loujo")


def quota_summary(record: SubscriptionRecord) -> Dict[str, Any]:
    remaining = max(0, record.monthly_quota - record.generations_this_month)
    return {
        "plan_kind": record.plan_kind.value,
        "subscription_status": record.subscription_status.value,
        "monthly_quota": record.monthly_quota,
        "generations_this_month": record.generations_this_month,
        "remaining": remaining,
        "current_period_end": record.current_period_end.isoformat() if record.current_period_end else None,
    }


def consume_generation(
    store: SubscriptionStore,
    user_id: str,
    *,
    max_attempts: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> SubscriptionRecord:
    """
    Count one generation against the user's monthly quota.

    Raises:
        NotFoundError: No user document
        NotSubscribedError: Plan is not active (403)
        QuotaExceededError: Monthly quota used up (429)
        ServiceUnavailableError: Lost every optimistic write attempt
    """
    for attempt in range(1, max(1, max_attempts) + 1):
        with store.db.session() as session:
            record = store.get_user(user_id, session)
            if record is None:
                raise NotFoundError(f"User {user_id} not found")
            if record.subscription_status != SubscriptionStatus.ACTIVE:
                raise NotSubscribedError("Subscription is not active")
            if record.generations_this_month >= record.monthly_quota:
                raise QuotaExceededError("Monthly generation quota exceeded")

            used = record.generations_this_month + 1
            if store.conditional_update(session, user_id, record.version, {"generations_this_month": used}):
                return record.with_changes({"generations_this_month": used, "version": record.version + 1})

        logger.warning("quota.conflict", extra={"user_id": user_id, "error_code": "version_conflict"})
        if attempt < max_attempts:
            sleep(0.01 * attempt)

    raise ServiceUnavailableError("Could not record generation, please retry")
