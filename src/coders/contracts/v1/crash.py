from __future__ import annotations

from typing import List

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import now_ms


class SessionState(BaseModel):
    """What is needed to relaunch a session after an unexpected exit."""

    session_id: str
    session_name: str = ""
    tool: str
    task: str = ""
    cwd: str = ""
    model: str = ""
    parent_session_id: str = ""
    extra_args: List[str] = Field(default_factory=list)
    heartbeat_enabled: bool = True
    restart_on_crash: bool = True
    restart_count: int = 0
    max_restarts: int = 3
    created_at: int = Field(default_factory=now_ms)
    last_restart_at: int = 0

    model_config = ConfigDict(extra="ignore")


class CrashEvent(BaseModel):
    session_id: str
    timestamp: int = Field(default_factory=now_ms)
    reason: str = ""
    will_restart: bool = False
    exit_code: int = -1

    model_config = ConfigDict(extra="ignore")
