"""Loop scheduler: works through a todolist one session at a time.

For every unchecked `[ ] task` line the scheduler spawns a session, waits for
that session's promise, ticks the line, and moves on. Progress is persisted
as LoopState after every transition so an interrupted run can be relaunched
against the same file (ticked tasks are skipped on re-parse).
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from pydantic import ValidationError

from ..contracts.v1 import LoopNotification, LoopOutcome, LoopState, Promise, SpawnRequest
from ..errors import CodersError, LoopAbortedError, StoreUnavailableError
from ..kernel.classifier import RegexCapacityClassifier, TranscriptClassifier
from ..kernel.promises import PromiseStore
from ..kernel.registry import SessionRegistry
from ..kernel.store import LOOP_NOTIFY_PREFIX, LOOP_NOTIFY_TTL, LOOP_STATE_PREFIX, LOOP_STATE_TTL, KeyValueStore
from ..kernel.todolist import mark_complete, read_tasks
from ..util.time import now_ms


logger = logging.getLogger("coders.loop")

TASK_SUFFIX = " When complete, commit your changes, then publish a completion promise."
CAPACITY_SCAN_LINES = 100


class Spawner(Protocol):
    def spawn_task(self, *, tool: str, task: str, cwd: str, parent_session_id: Optional[str], model: str) -> str:
        """Start a session for `task` and return its id. Raises CodersError on failure."""
        ...

    def recent_output(self, session_id: str, lines: int = CAPACITY_SCAN_LINES) -> str: ...


class RegistrySpawner:
    """Spawns loop tasks through an in-process SessionRegistry."""

    def __init__(self, registry: SessionRegistry) -> None:
        self.registry = registry

    def spawn_task(self, *, tool: str, task: str, cwd: str, parent_session_id: Optional[str], model: str) -> str:
        info = self.registry.create_session(
            SpawnRequest(tool=tool, task=task, cwd=cwd, parent_session_id=parent_session_id, model=model)
        )
        return info.id

    def recent_output(self, session_id: str, lines: int = CAPACITY_SCAN_LINES) -> str:
        try:
            return self.registry.output_text(session_id, lines)
        except CodersError:
            return ""


def new_loop_id() -> str:
    return f"loop-{int(time.time())}-{uuid.uuid4().hex[:4]}"


def save_loop_state(store: KeyValueStore, state: LoopState) -> None:
    state.updated_at = now_ms()
    try:
        store.set(LOOP_STATE_PREFIX + state.loop_id, state.model_dump(), ttl=LOOP_STATE_TTL)
    except StoreUnavailableError as e:
        logger.warning("loop state not saved: %s", e, extra={"loop_id": state.loop_id})


def load_loop_state(store: KeyValueStore, loop_id: str) -> Optional[LoopState]:
    try:
        doc = store.get(LOOP_STATE_PREFIX + loop_id)
    except StoreUnavailableError:
        return None
    if doc is None:
        return None
    try:
        return LoopState.model_validate(doc)
    except ValidationError:
        return None


def list_loop_states(store: KeyValueStore) -> List[LoopState]:
    out: List[LoopState] = []
    try:
        keys = store.keys(LOOP_STATE_PREFIX)
    except StoreUnavailableError:
        return out
    for key in keys:
        st = load_loop_state(store, key[len(LOOP_STATE_PREFIX):])
        if st is not None:
            out.append(st)
    out.sort(key=lambda s: s.updated_at, reverse=True)
    return out


def notification_message(status: str, count: int) -> str:
    if status == "completed":
        return f"Loop completed successfully with {count} tasks"
    if status == "paused":
        return f"Loop paused after processing {count} tasks"
    if status == "failed":
        return f"Loop failed after processing {count} tasks"
    return f"Loop finished with status '{status}' after {count} tasks"


def notify(store: KeyValueStore, loop_id: str, status: LoopOutcome, count: int) -> LoopNotification:
    n = LoopNotification(loop_id=loop_id, task_count=count, status=status, message=notification_message(status, count))
    try:
        store.set(LOOP_NOTIFY_PREFIX + loop_id, n.model_dump(), ttl=LOOP_NOTIFY_TTL)
    except StoreUnavailableError as e:
        logger.warning("loop notification not stored: %s", e, extra={"loop_id": loop_id})
    logger.info(n.message, extra={"loop_id": loop_id})
    return n


def read_notification(store: KeyValueStore, loop_id: str) -> Optional[LoopNotification]:
    try:
        doc = store.get(LOOP_NOTIFY_PREFIX + loop_id)
    except StoreUnavailableError:
        return None
    return LoopNotification.model_validate(doc) if doc is not None else None


class LoopScheduler:
    def __init__(
        self,
        *,
        todolist: Path,
        cwd: str,
        spawner: Spawner,
        promises: PromiseStore,
        store: KeyValueStore,
        tool: str,
        fallback_tool: str = "codex",
        loop_id: Optional[str] = None,
        classifier: Optional[TranscriptClassifier] = None,
        stop_on_blocked: bool = False,
        poll_interval: float = 5.0,
        task_gap: float = 2.0,
        task_timeout: Optional[float] = None,
        parent_session_id: Optional[str] = None,
        model: str = "",
    ) -> None:
        self.todolist = Path(todolist)
        self.cwd = cwd
        self.spawner = spawner
        self.promises = promises
        self.store = store
        self.fallback_tool = fallback_tool
        self.classifier = classifier or RegexCapacityClassifier()
        self.stop_on_blocked = stop_on_blocked
        self.poll_interval = max(0.01, float(poll_interval))
        self.task_gap = max(0.0, float(task_gap))
        self.task_timeout = task_timeout
        self.model = model
        self._cancel = threading.Event()
        self.state = LoopState(
            loop_id=loop_id or new_loop_id(),
            todolist_path=str(self.todolist),
            cwd=cwd,
            current_tool=tool,
            parent_session_id=parent_session_id or None,
        )
        self.spawned: List[str] = []
        self.promises_seen: Dict[str, Promise] = {}

    @property
    def loop_id(self) -> str:
        return self.state.loop_id

    def cancel(self) -> None:
        """Ask a running loop to stop at its next suspension point; it ends `paused`."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _persist(self, **changes: object) -> None:
        for k, v in changes.items():
            setattr(self.state, k, v)
        save_loop_state(self.store, self.state)

    def _finish(self, status: str, outcome: LoopOutcome) -> LoopState:
        self._persist(status=status, current_session_id=None)
        notify(self.store, self.loop_id, outcome, self.state.completed_count)
        return self.state.model_copy()

    def wait_for_promise(self, session_id: str) -> Optional[Promise]:
        """Poll until `session_id` publishes a promise.

        Returns None when the loop is cancelled; raises LoopAbortedError on timeout.
        """
        deadline = None if self.task_timeout is None else time.monotonic() + float(self.task_timeout)
        while True:
            p = self.promises.get_promise(session_id)
            if p is not None:
                return p
            wait = self.poll_interval
            if deadline is not None:
                left = deadline - time.monotonic()
                if left <= 0:
                    raise LoopAbortedError(f"timed out waiting for a promise from {session_id}")
                wait = min(wait, left)
            if self._cancel.wait(wait):
                return None

    def run(self) -> LoopState:
        tasks = read_tasks(self.todolist)
        self._persist(total_tasks=len(tasks), current_task_index=0, status="running")
        logger.info("loop started with %d task(s)", len(tasks), extra={"loop_id": self.loop_id, "tool": self.state.current_tool})

        for i, task in enumerate(tasks):
            if self.cancelled:
                return self._finish("paused", "paused")
            self._persist(current_task_index=i, status="running")

            try:
                sid = self.spawner.spawn_task(
                    tool=self.state.current_tool,
                    task=task.rstrip(".") + "." + TASK_SUFFIX,
                    cwd=self.cwd,
                    parent_session_id=self.state.parent_session_id,
                    model=self.model,
                )
            except CodersError as e:
                logger.error("spawn failed for task %d: %s", i + 1, e, extra={"loop_id": self.loop_id})
                self._finish("paused", "failed")
                raise LoopAbortedError(f"task {i + 1} could not be spawned: {e}") from e
            self.spawned.append(sid)
            self._persist(current_session_id=sid)
            logger.info("task %d/%d spawned: %s", i + 1, len(tasks), task, extra={"loop_id": self.loop_id, "session_id": sid})

            try:
                promise = self.wait_for_promise(sid)
            except LoopAbortedError:
                self._finish("paused", "failed")
                raise
            if promise is None:
                return self._finish("paused", "paused")
            self.promises_seen[sid] = promise

            if promise.status == "blocked":
                logger.warning("task blocked: %s", promise.summary, extra={"loop_id": self.loop_id, "session_id": sid})
                if self.stop_on_blocked:
                    return self._finish("stopped", "stopped")
                logger.info("continuing past blocked task", extra={"loop_id": self.loop_id, "session_id": sid})

            try:
                if not mark_complete(self.todolist, task):
                    logger.warning("task line not found when ticking: %s", task, extra={"loop_id": self.loop_id})
            except OSError as e:
                logger.warning("todolist not updated: %s", e, extra={"loop_id": self.loop_id})
            self.state.completed_count += 1

            self._maybe_switch_tool(sid)
            if self.task_gap and i + 1 < len(tasks) and self._cancel.wait(self.task_gap):
                return self._finish("paused", "paused")

        self.state.current_task_index = len(tasks)
        return self._finish("completed", "completed")

    def _maybe_switch_tool(self, session_id: str) -> None:
        current = self.state.current_tool
        if not self.fallback_tool or current == self.fallback_tool:
            return
        signal = self.classifier.classify(self.spawner.recent_output(session_id, CAPACITY_SCAN_LINES))
        if signal.exhausted:
            logger.warning(
                "usage limit warning from %s (%r); switching to %s for remaining tasks",
                current,
                signal.matched,
                self.fallback_tool,
                extra={"loop_id": self.loop_id},
            )
            self._persist(current_tool=self.fallback_tool)


class BackgroundLoops:
    """Loop schedulers running on daemon threads, keyed by loop id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runs: Dict[str, LoopScheduler] = {}
        self._threads: Dict[str, threading.Thread] = {}

    def start(self, scheduler: LoopScheduler) -> str:
        loop_id = scheduler.loop_id
        t = threading.Thread(target=self._run, args=(scheduler,), name=f"coders-loop:{loop_id}", daemon=True)
        with self._lock:
            self._runs[loop_id] = scheduler
            self._threads[loop_id] = t
        t.start()
        return loop_id

    def _run(self, scheduler: LoopScheduler) -> None:
        try:
            scheduler.run()
        except LoopAbortedError as e:
            logger.error("loop aborted: %s", e, extra={"loop_id": scheduler.loop_id})
        except Exception:
            logger.exception("loop crashed", extra={"loop_id": scheduler.loop_id})
        finally:
            with self._lock:
                self._runs.pop(scheduler.loop_id, None)
                self._threads.pop(scheduler.loop_id, None)

    def get(self, loop_id: str) -> Optional[LoopScheduler]:
        with self._lock:
            return self._runs.get(loop_id)

    def active(self) -> List[str]:
        with self._lock:
            return sorted(self._runs.keys())

    def cancel(self, loop_id: str) -> bool:
        s = self.get(loop_id)
        if s is None:
            return False
        s.cancel()
        return True

    def cancel_all(self, timeout: float = 2.0) -> None:
        with self._lock:
            runs = list(self._runs.values())
            threads = list(self._threads.values())
        for s in runs:
            s.cancel()
        for t in threads:
            t.join(timeout=timeout)
