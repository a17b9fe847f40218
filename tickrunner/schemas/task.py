from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TaskCreate(BaseModel):
    type: str
    cron_expression: str = "* * * * *"
    site_id: int = 0
    enabled: bool = True
    priority: int = 0
    params: Dict[str, Any] = Field(default_factory=dict)
    next_execution: Optional[datetime] = None


class TaskUpdate(BaseModel):
    type: Optional[str] = None
    cron_expression: Optional[str] = None
    site_id: Optional[int] = None
    enabled: Optional[bool] = None
    priority: Optional[int] = None
    params: Optional[Dict[str, Any]] = None
    next_execution: Optional[datetime] = None


class TaskOut(BaseModel):
    id: int
    site_id: int
    type: str
    cron_expression: str
    enabled: bool
    priority: int
    last_exit_code: int
    status: str
    last_execution: Optional[datetime]
    last_run_end: Optional[datetime]
    next_execution: Optional[datetime]
    times_executed: int
    times_failed: int
    locked: bool
    params: Dict[str, Any]
    storage: Dict[str, Any]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]


class TickOut(BaseModel):
    ok: bool
    paused: bool = False
    stuck_cleared: int = 0
    executed: int = 0
    failed: int = 0
    resumed: int = 0
    task_ids: List[int] = Field(default_factory=list)
