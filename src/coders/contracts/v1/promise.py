from __future__ import annotations

from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...util.time import now_ms


PromiseStatus = Literal["completed", "blocked", "needs-review"]
PROMISE_STATUSES = ("completed", "blocked", "needs-review")


class Promise(BaseModel):
    """Completion signal published by a session's own work."""

    session_id: str
    timestamp: int = Field(default_factory=now_ms)
    status: PromiseStatus = "completed"
    summary: str = ""
    files_changed: List[str] = Field(default_factory=list)
    blockers: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    @field_validator("session_id")
    @classmethod
    def _session_id_required(cls, v: str) -> str:
        s = str(v or "").strip()
        if not s:
            raise ValueError("session_id is required")
        return s
