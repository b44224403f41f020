from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


Action = Literal["create", "improve", "delete", "verify", "enrich"]
WorkStatus = Literal["pending", "processing", "completed", "failed"]


class WorkCreateIn(BaseModel):
    item_type: str = Field("question", min_length=1, max_length=64)
    item_id: str = Field(..., min_length=1, max_length=128)
    action: Action
    priority: int = Field(5, ge=1, le=10, description="1 highest .. 10 lowest")
    reason: Optional[str] = Field(None, max_length=2000)
    created_by: Optional[str] = Field(None, max_length=128)


class WorkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    item_type: str
    item_id: str
    action: Action
    priority: int
    status: WorkStatus
    reason: Optional[str] = None
    created_by: Optional[str] = None
    assigned_to: Optional[str] = None
    created_at: str
    claimed_at: Optional[str] = None
    processed_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    attempts_left: int
    parent_id: Optional[int] = None


class QueueStatsOut(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    by_action: Dict[str, int]
    by_type: Dict[str, int]
