from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import now_ms


SessionStatus = Literal["running", "exited", "killed", "failed"]


class SpawnRequest(BaseModel):
    """Input of `CreateSession`: what to run, where, and under which parent."""

    tool: str = ""
    task: str = ""
    cwd: str = ""
    model: str = ""
    parent_session_id: Optional[str] = None
    # Reserved names (orchestrator) bypass `<prefix>-<tool>-<slug>` generation.
    name: Optional[str] = None
    heartbeat: Optional[bool] = None
    restart_on_crash: Optional[bool] = None
    max_restarts: Optional[int] = None
    extra_args: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class SessionInfo(BaseModel):
    """Snapshot of a supervised session, safe to hand to callers."""

    v: int = 1
    id: str
    name: str
    tool: str
    task: str = ""
    cwd: str = ""
    model: str = ""
    created_at: int = Field(default_factory=now_ms)
    exited_at: Optional[int] = None
    exit_code: Optional[int] = None
    parent_session_id: Optional[str] = None
    pid: int = 0
    status: SessionStatus = "running"
    restart_count: int = 0
    is_orchestrator: bool = False

    model_config = ConfigDict(extra="ignore")

    @property
    def running(self) -> bool:
        return self.status == "running"
