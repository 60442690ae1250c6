from fastapi import APIRouter, Depends
from typing import Annotated

from quota_orchestrator.auth import deps, models
from quota_orchestrator.reliability.recovery import SessionRecoveryManager, get_recovery_manager
from quota_orchestrator.schemas.quota import (
    CancelSessionRequest,
    CancelSessionResponse,
    CleanupSessionsResponse,
    RecoverSessionResponse,
)

router = APIRouter()


@router.post("/cancel", response_model=CancelSessionResponse)
def cancel_mining_session(
    request: CancelSessionRequest,
    current_user: Annotated[models.User, Depends(deps.get_current_active_user)],
    manager: SessionRecoveryManager = Depends(get_recovery_manager),
):
    """Cancel one of the caller's running mining sessions"""
    return manager.cancel_session(request.session_id, current_user.id)


@router.post("/cleanup", response_model=CleanupSessionsResponse)
def cleanup_mining_sessions(
    current_user: Annotated[models.User, Depends(deps.get_current_active_user)],
    manager: SessionRecoveryManager = Depends(get_recovery_manager),
):
    """Delete the caller's sessions older than the retention window"""
    deleted = manager.cleanup_stale_sessions(current_user.id)
    return {
        "success": True,
        "message": f"Cleaned up {deleted} old mining sessions",
        "deletedCount": deleted,
    }


@router.post("/{session_id}/recover", response_model=RecoverSessionResponse)
def recover_mining_session(
    session_id: str,
    current_user: Annotated[models.User, Depends(deps.get_current_active_user)],
    manager: SessionRecoveryManager = Depends(get_recovery_manager),
):
    return {
        "success": manager.recover_session(session_id, current_user.id),
        "sessionId": session_id,
    }
