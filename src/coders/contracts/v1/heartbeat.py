from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ...util.time import now_ms


HeartbeatStatus = Literal["healthy", "stale", "dead"]
HealthStatus = Literal["healthy", "stale", "dead", "stuck", "unresponsive"]
OutputSignal = Literal["changing", "static", "stuck", "unresponsive", "unknown"]


class UsageStats(BaseModel):
    cost: str = ""
    tokens: int = 0
    api_calls: int = 0
    session_limit_pct: float = 0.0
    weekly_limit_pct: float = 0.0

    model_config = ConfigDict(extra="ignore")

    def is_empty(self) -> bool:
        return not (self.cost or self.tokens or self.api_calls or self.session_limit_pct or self.weekly_limit_pct)


class HeartbeatRecord(BaseModel):
    """Liveness record written periodically by the process it describes."""

    pane_id: str = ""
    session_id: str
    timestamp: int = Field(default_factory=now_ms)
    status: str = "running"
    task: str = ""
    parent_session_id: Optional[str] = None
    usage: Optional[UsageStats] = None

    model_config = ConfigDict(extra="ignore")


class HealthCheckResult(BaseModel):
    session_id: str
    timestamp: int = Field(default_factory=now_ms)
    # Resolved classification; filled by the consumer's precedence policy.
    status: Optional[HealthStatus] = None
    heartbeat_status: HeartbeatStatus = "dead"
    output_signal: OutputSignal = "unknown"
    heartbeat_age_ms: Optional[int] = None
    heartbeat_seen: bool = False
    heartbeat_expected: bool = True
    output_hash: str = ""
    output_stale_for_ms: int = 0
    process_running: bool = False
    terminal_alive: bool = False
    message: str = ""

    model_config = ConfigDict(extra="ignore")


class HealthSummary(BaseModel):
    timestamp: int = Field(default_factory=now_ms)
    total_sessions: int = 0
    healthy: int = 0
    stale: int = 0
    dead: int = 0
    stuck: int = 0
    unresponsive: int = 0
    sessions: List[HealthCheckResult] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")
