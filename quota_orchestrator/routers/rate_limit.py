from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from typing import Annotated, Dict, Optional

from quota_orchestrator.auth import deps, models
from quota_orchestrator.ratelimit.health import UsageCache
from quota_orchestrator.ratelimit.metrics import get_metrics_summary
from quota_orchestrator.ratelimit.quota import QuotaTracker, get_quota_tracker
from quota_orchestrator.schemas.quota import PolicyResponse, QuotaCheckRequest, UsageResponse

router = APIRouter()


def resolve_subject(user_id: Optional[str], current_user: models.User) -> str:
    """Callers may only act on their own quota."""
    if user_id and user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot access another user's quota",
        )
    return current_user.id


@router.post("/check")
def check_quota(
    request: QuotaCheckRequest,
    current_user: Annotated[models.User, Depends(deps.get_current_active_user)],
    tracker: QuotaTracker = Depends(get_quota_tracker),
):
    """Admit and charge one call, or deny it with 429 and the reset time"""
    subject = resolve_subject(request.user_id, current_user)
    decision = tracker.check_and_consume(subject, request.api_name, request.operation)

    if not decision.allowed:
        retry_after = None
        if decision.reset_time is not None:
            retry_after = max(0, int((decision.reset_time - tracker.clock()).total_seconds()))
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=decision.to_dict(),
            headers={"Retry-After": str(retry_after)} if retry_after is not None else None,
        )

    return decision.to_dict()


@router.get("/policies", response_model=Dict[str, PolicyResponse])
def list_policies(tracker: QuotaTracker = Depends(get_quota_tracker)):
    return tracker.policies()


@router.get("/usage/{api_name}", response_model=UsageResponse)
def get_usage(
    api_name: str,
    current_user: Annotated[models.User, Depends(deps.get_current_active_user)],
    user_id: Optional[str] = Query(None),
    tracker: QuotaTracker = Depends(get_quota_tracker),
):
    """Current counts for a service, with health and a suggested batch size"""
    subject = resolve_subject(user_id, current_user)
    service = api_name.lower()

    cache = UsageCache(clock=tracker.clock)
    snapshot = cache.refresh(tracker, subject, service)

    return {
        "api_name": service,
        "user_id": subject,
        "usage": snapshot.to_dict(),
        "limits": cache.limits[service].to_dict(),
        "health": cache.health(service).value,
        "batch_size": cache.batch_size(service),
    }


@router.get("/metrics")
def get_metrics():
    return get_metrics_summary()
