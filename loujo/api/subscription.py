"""
Subscription routes for signed-in users.

- GET  /api/subscription/status: plan, status and quota usage
- POST /api/subscription/generations: count one generation against the quota
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from loujo.core.errors import AuthenticationError, NotFoundError
from loujo.features.billing.quota import consume_generation, quota_summary


router = APIRouter(prefix="/api/subscription", tags=["subscription"])


class SubscriptionStatusResponse(BaseModel):
    user_id: str
    role: str
    school_id: Optional[str] = None
    plan_kind: str
    subscription_status: str
    monthly_quota: int
    generations_this_month: int
    remaining: int
    current_period_end: Optional[str] = None  # ISO8601


def current_user_id(request: Request, authorization: Optional[str] = Header(None)) -> str:
    """Resolve the caller's uid from a Bearer session token."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationError("Missing bearer token")
    claims = request.app.state.identity.verify_token(authorization[7:].strip())
    user_id = claims.get("sub")
    if not user_id:
        raise AuthenticationError("Token missing subject")
    request.state.user_id = user_id
    return user_id


def _status_payload(record) -> dict:
    return {
        "user_id": record.user_id,
        "role": record.role.value,
        "school_id": record.school_id,
        **quota_summary(record),
    }


@router.get("/status", response_model=SubscriptionStatusResponse)
async def get_status(request: Request, user_id: str = Depends(current_user_id)):
    store = request.app.state.store
    record = await run_in_threadpool(store.get_user, user_id)
    if record is None:
        raise NotFoundError(f"User {user_id} not found")
    return _status_payload(record)


@router.post("/generations", response_model=SubscriptionStatusResponse)
async def record_generation(request: Request, user_id: str = Depends(current_user_id)):
    """
    Errors:
        403: Plan not active
        429: Monthly quota used up
    """
    store = request.app.state.store
    max_attempts = request.app.state.settings.RECONCILE_MAX_ATTEMPTS
    record = await run_in_threadpool(consume_generation, store, user_id, max_attempts=max_attempts)
    return _status_payload(record)
