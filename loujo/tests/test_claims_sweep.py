"""Tests for the claims sweep worker."""
from loujo.features.billing.events import PlanKind, Role
from loujo.features.billing.projector import ProjectionFailure
from loujo.workers import sync_claims


def _fail_once(projector, store, user_id):
    record = store.get_user(user_id)
    projector.identity.fail = True
    try:
        projector.project(record)
    except ProjectionFailure:
        pass
    projector.identity.fail = False


def test_sweep_dry_run_does_not_call_identity(store, identity, projector):
    store.create_user("u1")
    _fail_once(projector, store, "u1")
    calls_before = len(identity.calls)

    result = sync_claims.run_claims_sweep(store, projector, dry_run=True, per_minute=0)

    assert result == {"synced": 1, "failed": 0, "skipped": 0, "dry_run": True}
    assert len(identity.calls) == calls_before
    assert list(store.users_with_failed_claims()) == ["u1"]


def test_sweep_repushes_failed_claims(store, identity, projector):
    store.create_user("u1")
    store.create_user("u2")
    _fail_once(projector, store, "u1")

    result = sync_claims.run_claims_sweep(store, projector, dry_run=False, per_minute=0)

    assert result["synced"] == 1
    assert identity.claims == {"u1": {"role": "unset"}}
    assert list(store.users_with_failed_claims()) == []


def test_sweep_counts_failures(store, identity, projector):
    store.create_user("u1")
    _fail_once(projector, store, "u1")
    identity.fail = True

    result = sync_claims.run_claims_sweep(store, projector, dry_run=False, per_minute=0)

    assert result["failed"] == 1
    assert result["synced"] == 0


def test_sweep_all_targets_users_with_a_plan(store, identity, projector):
    store.create_user("u1")
    store.create_user("u2")
    with store.db.session() as session:
        record = store.get_user("u2", session)
        store.conditional_update(session, "u2", record.version, {"plan_kind": PlanKind.PARENT, "role": Role.PARENT})

    sleeps = []
    result = sync_claims.run_claims_sweep(
        store, projector, include_all=True, dry_run=False, per_minute=120, sleep=sleeps.append
    )

    assert result["synced"] == 1
    assert identity.claims == {"u2": {"role": "parent"}}
    assert sleeps == [0.5]


def test_sweep_single_unknown_user_is_skipped(store, projector):
    result = sync_claims.run_claims_sweep(store, projector, user_id="ghost", dry_run=False, per_minute=0)
    assert result["skipped"] == 1


def test_main_runs_dry_sweep(test_settings, store, capsys):
    store.create_user("u1")
    store.mark_claims_sync("u1", error="boom")

    assert sync_claims.main(["--dry-run"], cfg=test_settings) == 0
    assert "'synced': 1" in capsys.readouterr().out
