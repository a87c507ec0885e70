"""
Claims sweep worker.

Re-pushes identity-provider claims for users whose last push failed (or for
every subscribed user with --all). Dry-run by default; claims are always
derived from the committed subscription record, never from event data.
"""
from __future__ import annotations

import argparse
import os
import time
from typing import Dict, List, Optional

from loujo.core.config import Settings, settings as default_settings
from loujo.core.database import Database
from loujo.core.logging import configure_logging, log_event
from loujo.features.billing.projector import EntitlementProjector, ProjectionFailure, claims_for
from loujo.features.billing.store import SubscriptionStore
from loujo.features.identity.clerk import ClerkIdentityProvider


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _target_user_ids(store: SubscriptionStore, user_id: Optional[str], include_all: bool) -> List[str]:
    if user_id:
        return [user_id]
    if include_all:
        with store.db.session() as session:
            return store.list_user_ids(session, only_with_plan=True)
    return list(store.users_with_failed_claims())


def run_claims_sweep(
    store: SubscriptionStore,
    projector: EntitlementProjector,
    *,
    user_id: Optional[str] = None,
    include_all: bool = False,
    dry_run: bool = True,
    per_minute: int = 60,
    sleep=time.sleep,
) -> Dict:
    results = {"synced": 0, "failed": 0, "skipped": 0, "dry_run": dry_run}
    delay = 0 if per_minute <= 0 else max(0.0, 60.0 / float(per_minute))

    for uid in _target_user_ids(store, user_id, include_all):
        record = store.get_user(uid)
        if record is None:
            results["skipped"] += 1
            continue
        if dry_run:
            log_event("info", "claims.sweep.dry_run", user_id=uid, extra={"claims": claims_for(record)})
            results["synced"] += 1
            continue
        try:
            projector.project(record)
            results["synced"] += 1
        except ProjectionFailure:
            results["failed"] += 1
        if delay:
            sleep(delay)

    return results


def main(argv: Optional[List[str]] = None, cfg: Optional[Settings] = None) -> int:
    cfg = cfg or default_settings
    parser = argparse.ArgumentParser(description="Re-push identity claims from subscription records.")
    parser.add_argument("--user-id", dest="user_id", help="Optional user ID to sync.")
    parser.add_argument("--all", dest="include_all", action="store_true", help="Sync every user with a plan.")
    parser.add_argument("--dry-run", dest="dry_run", action="store_true", help="Run without calling Clerk.")
    parser.add_argument("--live", dest="dry_run", action="store_false", help="Perform live Clerk updates.")
    parser.add_argument("--per-minute", dest="per_minute", type=int, default=int(os.getenv("LOUJO_CLAIMS_SYNC_PER_MINUTE", "60")))
    parser.set_defaults(dry_run=_parse_bool(os.getenv("LOUJO_CLAIMS_SYNC_DRY_RUN", "1"), True))
    args = parser.parse_args(argv)

    configure_logging(cfg.ENV)
    db = Database(cfg.DATABASE_URL)
    identity = ClerkIdentityProvider(
        cfg.CLERK_SECRET_KEY,
        api_base=cfg.CLERK_API_BASE,
        timeout=cfg.HTTP_TIMEOUT_SECONDS,
    )
    store = SubscriptionStore(db)
    try:
        result = run_claims_sweep(
            store,
            EntitlementProjector(identity, store),
            user_id=args.user_id,
            include_all=args.include_all,
            dry_run=args.dry_run,
            per_minute=args.per_minute,
        )
    finally:
        identity.close()
        db.dispose()
    print(result)
    return 1 if result["failed"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
