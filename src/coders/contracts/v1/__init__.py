from __future__ import annotations

from .crash import CrashEvent, SessionState
from .heartbeat import (
    HealthCheckResult,
    HealthStatus,
    HealthSummary,
    HeartbeatRecord,
    HeartbeatStatus,
    OutputSignal,
    UsageStats,
)
from .ipc import DaemonError, DaemonRequest, DaemonResponse
from .loop import LoopNotification, LoopOutcome, LoopState, LoopStatus
from .promise import PROMISE_STATUSES, Promise, PromiseStatus
from .session import SessionInfo, SessionStatus, SpawnRequest

__all__ = [
    "CrashEvent",
    "DaemonError",
    "DaemonRequest",
    "DaemonResponse",
    "HealthCheckResult",
    "HealthStatus",
    "HealthSummary",
    "HeartbeatRecord",
    "HeartbeatStatus",
    "LoopNotification",
    "LoopOutcome",
    "LoopState",
    "LoopStatus",
    "OutputSignal",
    "PROMISE_STATUSES",
    "Promise",
    "PromiseStatus",
    "SessionInfo",
    "SessionState",
    "SessionStatus",
    "SpawnRequest",
    "UsageStats",
]
