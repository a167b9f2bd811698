from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class DaemonRequest(BaseModel):
    v: int = 1
    op: str
    args: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class DaemonError(BaseModel):
    # session_not_found | spawn_failed | store_unavailable | invalid_request | unknown_op | internal_error
    # daemon_unavailable (client side only)
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class DaemonResponse(BaseModel):
    v: int = 1
    ok: bool
    result: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[DaemonError] = None

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def success(cls, result: Optional[Dict[str, Any]] = None) -> "DaemonResponse":
        return cls(ok=True, result=dict(result or {}))

    @classmethod
    def failure(cls, code: str, message: str, *, details: Optional[Dict[str, Any]] = None) -> "DaemonResponse":
        return cls(ok=False, error=DaemonError(code=code, message=message, details=dict(details or {})))
