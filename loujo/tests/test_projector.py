"""Entitlement projection and claims push isolation."""
from unittest.mock import Mock

import pytest

from loujo.core.metrics import claims_sync_failures_total
from loujo.features.billing.events import PlanKind, Role, SubscriptionStatus
from loujo.features.billing.projector import EntitlementProjector, ProjectionFailure, claims_for, derive_entitlements


def test_derive_entitlements_by_plan_and_status(store):
    record = store.create_user("u1")
    assert derive_entitlements(record) == {
        "role": Role.UNSET,
        "is_school_admin_subscribed": False,
        "is_parent_subscribed": False,
    }

    active_school = record.with_changes({"plan_kind": PlanKind.SCHOOL, "subscription_status": SubscriptionStatus.ACTIVE})
    assert derive_entitlements(active_school) == {
        "role": Role.SCHOOL_ADMIN,
        "is_school_admin_subscribed": True,
        "is_parent_subscribed": False,
    }

    failing_parent = record.with_changes({"plan_kind": PlanKind.PARENT, "subscription_status": SubscriptionStatus.PAYMENT_FAILED})
    assert derive_entitlements(failing_parent)["role"] == Role.PARENT
    assert derive_entitlements(failing_parent)["is_parent_subscribed"] is False


def test_claims_include_school_id_when_linked(store):
    record = store.create_user("u1").with_changes({"role": Role.SCHOOL_ADMIN, "school_id": "sch_1"})
    assert claims_for(record) == {"role": "school_admin", "schoolId": "sch_1"}
    assert claims_for(record.with_changes({"school_id": None})) == {"role": "school_admin"}


def test_project_pushes_claims_and_records_sync(store, identity, projector):
    record = store.create_user("u1").with_changes({"role": Role.PARENT})
    assert projector.project(record) == {"role": "parent"}
    assert identity.claims["u1"] == {"role": "parent"}

    status = store.claims_sync_status("u1")
    assert status["last_error"] is None
    assert status["last_sync_at"] is not None


def test_project_failure_is_recorded_and_raised(store, identity, projector):
    record = store.create_user("u1")
    identity.fail = True

    with pytest.raises(ProjectionFailure):
        projector.project(record)

    assert claims_sync_failures_total.value() == 1
    assert "unavailable" in store.claims_sync_status("u1")["last_error"]
    assert list(store.users_with_failed_claims()) == ["u1"]
    # The subscription record itself is untouched
    assert store.get_user("u1") == record

    identity.fail = False
    projector.project(record)
    assert list(store.users_with_failed_claims()) == []


def test_project_calls_injected_writer(store):
    writer = Mock()
    record = store.create_user("u1")
    EntitlementProjector(writer, store).project(record)
    writer.set_custom_claims.assert_called_once_with("u1", {"role": "unset"})
