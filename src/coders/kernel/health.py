"""Health evaluation for supervised sessions.

Two independent signals are computed per session:

- heartbeat: age of the last HeartbeatRecord (healthy / stale / dead)
- output: whether a hash of the live terminal tail keeps changing
  (changing / static / stuck / unresponsive)

`HealthEvaluator.evaluate` reports both without fusing them; `resolve_status`
is the precedence policy used by the monitor, the CLI and the dashboard.
"""
from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Set

from ..contracts.v1 import HealthCheckResult, HealthStatus, HealthSummary, OutputSignal
from ..errors import StoreUnavailableError
from ..util.time import format_duration
from .heartbeat import classify_heartbeat, heartbeat_age_seconds, read_heartbeat
from .store import HEALTH_PREFIX, HEALTH_SUMMARY_KEY, HEALTH_SUMMARY_TTL, HEALTH_TTL, KeyValueStore


logger = logging.getLogger("coders.health")

OUTPUT_SAMPLE_LINES = 50


def output_hash(lines: Iterable[str]) -> str:
    text = "\n".join(lines)
    return hashlib.md5(text.encode("utf-8", errors="replace")).hexdigest()


@dataclass
class _Sample:
    hash: str
    sampled_at: float
    changed_at: float


class OutputSampler:
    """Tracks how long each session's output tail has stayed unchanged."""

    def __init__(
        self,
        *,
        min_interval: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._lock = threading.Lock()
        self._samples: Dict[str, _Sample] = {}

    def sample(self, session_id: str, read_tail: Callable[[], List[str]]) -> _Sample:
        now = self._clock()
        with self._lock:
            prev = self._samples.get(session_id)
            if prev is not None and now - prev.sampled_at < self.min_interval:
                return _Sample(prev.hash, prev.sampled_at, prev.changed_at)
        h = output_hash(read_tail())
        with self._lock:
            prev = self._samples.get(session_id)
            if prev is None or prev.hash != h:
                cur = _Sample(h, now, now)
            else:
                cur = _Sample(h, now, prev.changed_at)
            self._samples[session_id] = cur
            return _Sample(cur.hash, cur.sampled_at, cur.changed_at)

    def unchanged_for(self, sample: _Sample) -> float:
        return max(0.0, self._clock() - sample.changed_at)

    def forget(self, session_id: str) -> None:
        with self._lock:
            self._samples.pop(session_id, None)

    def retain(self, session_ids: Set[str]) -> None:
        with self._lock:
            for sid in [k for k in self._samples if k not in session_ids]:
                del self._samples[sid]


class HealthEvaluator:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        sampler: Optional[OutputSampler] = None,
        stale_threshold: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.sampler = sampler or OutputSampler()
        self.stale_threshold = float(stale_threshold)
        self._clock = clock
        self._lock = threading.Lock()
        self._heartbeat_seen: Set[str] = set()

    def evaluate(
        self,
        session_id: str,
        *,
        terminal_alive: bool,
        process_running: bool,
        read_tail: Optional[Callable[[], List[str]]] = None,
        heartbeat_expected: bool = True,
    ) -> HealthCheckResult:
        now = self._clock()
        rec = read_heartbeat(self._store, session_id)
        age = heartbeat_age_seconds(rec, now=now)
        with self._lock:
            if rec is not None:
                self._heartbeat_seen.add(session_id)
            seen = session_id in self._heartbeat_seen

        signal: OutputSignal = "unknown"
        digest = ""
        stale_for = 0.0
        if terminal_alive and read_tail is not None:
            s = self.sampler.sample(session_id, read_tail)
            digest = s.hash
            stale_for = self.sampler.unchanged_for(s)
            if stale_for <= 0:
                signal = "changing"
            elif stale_for < self.stale_threshold:
                signal = "static"
            elif heartbeat_expected and not seen:
                signal = "unresponsive"
            else:
                signal = "stuck"

        return HealthCheckResult(
            session_id=session_id,
            timestamp=int(now * 1000),
            heartbeat_status=classify_heartbeat(age),
            output_signal=signal,
            heartbeat_age_ms=None if age is None else int(age * 1000),
            heartbeat_seen=seen,
            heartbeat_expected=heartbeat_expected,
            output_hash=digest,
            output_stale_for_ms=int(stale_for * 1000),
            process_running=process_running,
            terminal_alive=terminal_alive,
        )

    def forget(self, session_id: str) -> None:
        with self._lock:
            self._heartbeat_seen.discard(session_id)
        self.sampler.forget(session_id)

    def retain(self, session_ids: Iterable[str]) -> None:
        """Drop tracking state for every session not in `session_ids`."""
        keep = set(session_ids)
        with self._lock:
            self._heartbeat_seen &= keep
        self.sampler.retain(keep)


def resolve_status(
    result: HealthCheckResult,
    *,
    has_promise: bool = False,
    is_orchestrator: bool = False,
) -> HealthCheckResult:
    """Apply precedence to the raw signals and fill `status`/`message`.

    A published promise means the work is done, whatever the process does.
    A dead heartbeat always outranks a merely stuck terminal.
    """
    r = result.model_copy()
    status: HealthStatus
    if has_promise:
        status, msg = "healthy", "Session completed with promise"
    elif not r.terminal_alive:
        status, msg = "dead", "Terminal session is gone"
    elif not r.process_running:
        status, msg = "unresponsive", "Terminal exists but its process is not running"
    elif is_orchestrator and not r.heartbeat_seen:
        status, msg = "healthy", "Orchestrator running"
    elif r.output_signal == "unresponsive":
        status, msg = "unresponsive", "No heartbeat received and output is static"
    elif r.heartbeat_expected and r.heartbeat_status == "dead":
        status, msg = "dead", "No heartbeat"
        if r.heartbeat_age_ms is not None:
            msg = f"No heartbeat for {format_duration(r.heartbeat_age_ms / 1000.0)}"
    elif r.heartbeat_expected and r.heartbeat_status == "stale":
        age = (r.heartbeat_age_ms or 0) / 1000.0
        status, msg = "stale", f"Heartbeat stale ({format_duration(age)} old)"
    elif r.output_signal == "stuck":
        status, msg = "stuck", f"Output unchanged for {format_duration(r.output_stale_for_ms / 1000.0)}"
    else:
        status, msg = "healthy", "Active"
    r.status = status
    r.message = msg
    return r


def summarize(results: Iterable[HealthCheckResult], *, now_ms: Optional[int] = None) -> HealthSummary:
    items = list(results)
    summary = HealthSummary(total_sessions=len(items), sessions=items)
    if now_ms is not None:
        summary.timestamp = int(now_ms)
    for r in items:
        if r.status == "healthy":
            summary.healthy += 1
        elif r.status == "stale":
            summary.stale += 1
        elif r.status == "dead":
            summary.dead += 1
        elif r.status == "stuck":
            summary.stuck += 1
        elif r.status == "unresponsive":
            summary.unresponsive += 1
    return summary


def store_results(store: KeyValueStore, summary: HealthSummary) -> None:
    """Persist per-session results and the summary; an unreachable store is logged, not raised."""
    try:
        for r in summary.sessions:
            store.set(HEALTH_PREFIX + r.session_id, r.model_dump(), ttl=HEALTH_TTL)
        store.set(HEALTH_SUMMARY_KEY, summary.model_dump(), ttl=HEALTH_SUMMARY_TTL)
    except StoreUnavailableError as e:
        logger.warning("health results not stored: %s", e)


def read_summary(store: KeyValueStore) -> Optional[HealthSummary]:
    try:
        doc = store.get(HEALTH_SUMMARY_KEY)
    except StoreUnavailableError:
        return None
    if doc is None:
        return None
    return HealthSummary.model_validate(doc)
