from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional


class QuotaCheckRequest(BaseModel):
    """Admission check for one prospective call"""
    api_name: str = Field(..., min_length=1, description="External service name, e.g. apollo")
    user_id: Optional[str] = Field(
        None,
        description="Quota subject; must be the authenticated user when given",
    )
    operation: str = Field("unspecified", description="Label of the calling operation")


class PolicyResponse(BaseModel):
    daily: int
    hourly: int
    per_minute: int


class UsageResponse(BaseModel):
    """Current usage of one service for one subject"""
    api_name: str
    user_id: str
    usage: Dict[str, Any]
    limits: PolicyResponse
    health: str
    batch_size: int


class CancelSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., min_length=1, alias="sessionId")


class CancelSessionResponse(BaseModel):
    success: bool
    message: str
    sessionId: str


class CleanupSessionsResponse(BaseModel):
    success: bool
    message: str
    deletedCount: int


class RecoverSessionResponse(BaseModel):
    success: bool
    sessionId: str
