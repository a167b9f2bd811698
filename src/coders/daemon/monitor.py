from __future__ import annotations

import logging
import threading
from typing import Optional

from ..contracts.v1 import HealthSummary
from ..errors import SessionNotFoundError
from ..kernel.health import OUTPUT_SAMPLE_LINES, HealthEvaluator, OutputSampler, resolve_status, store_results, summarize
from ..kernel.registry import SessionRegistry


logger = logging.getLogger("coders.monitor")


class HealthMonitor:
    """Periodically classifies every tracked session and stores the results."""

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        interval: float = 30.0,
        evaluator: Optional[HealthEvaluator] = None,
    ) -> None:
        self.registry = registry
        self.interval = max(0.5, float(interval))
        s = registry.settings
        self.evaluator = evaluator or HealthEvaluator(
            registry.store,
            sampler=OutputSampler(min_interval=s.output_sample_interval),
            stale_threshold=s.output_stale_threshold,
        )
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def check_once(self) -> HealthSummary:
        results = []
        for info in self.registry.list_sessions():
            sid = info.id
            try:
                raw = self.evaluator.evaluate(
                    sid,
                    terminal_alive=info.status == "running",
                    process_running=self.registry.process_running(sid),
                    read_tail=lambda sid=sid: self.registry.get_output(sid, OUTPUT_SAMPLE_LINES),
                    heartbeat_expected=self.registry.heartbeat_enabled(sid),
                )
            except SessionNotFoundError:
                # Killed while we were iterating.
                self.evaluator.forget(sid)
                continue
            has_promise = self.registry.promises.get_promise(sid) is not None
            results.append(resolve_status(raw, has_promise=has_promise, is_orchestrator=info.is_orchestrator))
        # Sessions replaced or closed since the last pass.
        self.evaluator.retain(info.id for info in self.registry.list_sessions())
        summary = summarize(results)
        store_results(self.registry.store, summary)
        return summary

    def run(self) -> None:
        while not self._stop.is_set():
            try:
                summary = self.check_once()
                logger.debug(
                    "health: %d total, %d healthy, %d stale, %d dead, %d stuck, %d unresponsive",
                    summary.total_sessions,
                    summary.healthy,
                    summary.stale,
                    summary.dead,
                    summary.stuck,
                    summary.unresponsive,
                )
            except Exception:
                logger.exception("health check failed")
            self._stop.wait(self.interval)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name="coders-health", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None
