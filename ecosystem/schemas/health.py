from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ecosystem.models.enums import HealthStatus


class ComponentResult(BaseModel):
    name: str
    passed: bool
    message: str
    duration_ms: float = Field(..., ge=0)
    details: Optional[dict[str, Any]] = None


class HealthReport(BaseModel):
    overall: HealthStatus
    quick: bool = False
    passed: int
    total: int
    components: list[ComponentResult]
    recommendations: list[str]
    timestamp: datetime


class PipelineUserResult(BaseModel):
    user_id: str
    matches_generated: int
    success: bool
    error: Optional[str] = None


class PipelineRunResponse(BaseModel):
    users_processed: int
    matches_generated: int
    results: list[PipelineUserResult]
