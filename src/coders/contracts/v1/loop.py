from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import now_ms


LoopStatus = Literal["running", "paused", "completed", "stopped"]
LoopOutcome = Literal["completed", "stopped", "paused", "failed"]


class LoopState(BaseModel):
    """Scheduler progress, persisted after every task transition."""

    loop_id: str
    todolist_path: str = ""
    cwd: str = ""
    current_task_index: int = 0
    total_tasks: int = 0
    current_tool: str = ""
    status: LoopStatus = "running"
    parent_session_id: Optional[str] = None
    current_session_id: Optional[str] = None
    completed_count: int = 0
    updated_at: int = Field(default_factory=now_ms)

    model_config = ConfigDict(extra="ignore")


class LoopNotification(BaseModel):
    loop_id: str
    timestamp: int = Field(default_factory=now_ms)
    task_count: int = 0
    status: LoopOutcome = "completed"
    message: str = ""

    model_config = ConfigDict(extra="ignore")
