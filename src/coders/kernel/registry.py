"""Session registry: the catalog of supervised sessions owned by one process.

The registry wraps a PtySupervisor with per-session OutputBuffers and the
records callers see (SessionInfo). All mutation happens under one lock and
every read returns a copy.

Sessions spawned with restart-on-crash are relaunched under the same id when
their process exits without an explicit kill and without a published
promise, up to `max_restarts` times.
"""
from __future__ import annotations

import logging
import os
import shlex
import shutil
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..contracts.v1 import CrashEvent, SessionInfo, SessionState, SpawnRequest
from ..errors import SessionNotFoundError, SpawnError, StoreUnavailableError
from ..paths import coders_home
from ..runners.pty import PtySession, PtySupervisor
from ..util.time import now_ms
from .crash import CrashLog
from .naming import (
    ORCHESTRATOR_NAME,
    PARENT_SESSION_ID_ENV,
    SESSION_ID_ENV,
    is_orchestrator,
    new_session_id,
    session_name,
)
from .output_buffer import OutputBuffer
from .process_tree import ProcessTree
from .promises import PromiseStore
from .prompts import ORCHESTRATOR_PROMPT, restart_prompt, task_prompt
from .settings import Settings
from .store import KeyValueStore


logger = logging.getLogger("coders.registry")


@dataclass
class _Entry:
    info: SessionInfo
    buffer: OutputBuffer
    request: SpawnRequest
    heartbeat: bool
    restart_on_crash: bool
    max_restarts: int
    pty: Optional[PtySession] = None


def heartbeat_wrapper(
    argv: List[str],
    *,
    session_id: str,
    interval: float,
    task: str = "",
    python: Optional[str] = None,
) -> List[str]:
    """Wrap `argv` so a heartbeat publisher runs alongside it in the same process tree.

    The shell starts the publisher in the background, then execs the tool, so
    the publisher is a child of the tool process and dies with its tree.
    """
    hb = [python or sys.executable, "-m", "coders", "heartbeat", "--session", session_id, "--interval", f"{interval:g}"]
    if task:
        hb += ["--task", task]
    log_path = coders_home() / "logs" / "heartbeat.log"
    script = (
        f"mkdir -p {shlex.quote(str(log_path.parent))}; "
        f"{shlex.join(hb)} --watch-pid $$ </dev/null >/dev/null 2>>{shlex.quote(str(log_path))} & "
        'exec "$@"'
    )
    return ["sh", "-c", script, "coders-session"] + list(argv)


class SessionRegistry:
    def __init__(
        self,
        *,
        settings: Settings,
        store: KeyValueStore,
        supervisor: Optional[PtySupervisor] = None,
        wrap_heartbeat: Callable[..., List[str]] = heartbeat_wrapper,
    ) -> None:
        self.settings = settings
        self.store = store
        self.promises = PromiseStore(store)
        self.crashes = CrashLog(store)
        self.supervisor = supervisor or PtySupervisor(
            process_tree=ProcessTree(grace_seconds=settings.kill_grace_seconds)
        )
        self.supervisor.set_exit_hook(self._on_exit)
        self._wrap_heartbeat = wrap_heartbeat
        self._lock = threading.Lock()
        self._entries: Dict[str, _Entry] = {}
        self._closing = False

    # ------------------------------------------------------------------ create

    def create_session(self, req: SpawnRequest) -> SessionInfo:
        """Spawn a tool for `req`. Raises SpawnError without retrying."""
        return self._create(req, prompt=task_prompt(req.task) if req.task.strip() else "")

    def _create(self, req: SpawnRequest, *, prompt: str) -> SessionInfo:
        if self._closing:
            raise SpawnError("registry is shutting down")
        tool = (req.tool or self.settings.default_tool).strip().lower()
        name = req.name or session_name(tool, req.task)
        sid = new_session_id(name)
        cwd = Path(req.cwd or os.getcwd()).expanduser().resolve()
        req = req.model_copy(update={"tool": tool, "cwd": str(cwd)})
        heartbeat = self.settings.heartbeat_enabled if req.heartbeat is None else bool(req.heartbeat)
        restart = self.settings.restart_on_crash if req.restart_on_crash is None else bool(req.restart_on_crash)
        max_restarts = self.settings.max_restarts if req.max_restarts is None else max(0, int(req.max_restarts))

        entry = _Entry(
            info=SessionInfo(
                id=sid,
                name=name,
                tool=tool,
                task=req.task,
                cwd=str(cwd),
                model=req.model,
                parent_session_id=req.parent_session_id or None,
                is_orchestrator=is_orchestrator(name),
            ),
            buffer=OutputBuffer(self.settings.output_max_lines),
            request=req,
            heartbeat=heartbeat,
            restart_on_crash=restart,
            max_restarts=max_restarts,
        )
        with self._lock:
            same_name = [k for k, v in self._entries.items() if v.info.name == name and v.info.status == "running"]
        for old in same_name:
            logger.info("replacing session %s", old, extra={"session_id": sid})
            self._kill_quietly(old)
        with self._lock:
            self._entries[sid] = entry
        try:
            self._launch(entry, prompt=prompt)
        except SpawnError:
            with self._lock:
                self._entries.pop(sid, None)
            raise

        if restart:
            try:
                self.crashes.save_state(
                    SessionState(
                        session_id=sid,
                        session_name=name,
                        tool=tool,
                        task=req.task,
                        cwd=str(cwd),
                        model=req.model,
                        parent_session_id=req.parent_session_id or "",
                        extra_args=list(req.extra_args),
                        heartbeat_enabled=heartbeat,
                        restart_on_crash=True,
                        max_restarts=max_restarts,
                    )
                )
            except StoreUnavailableError as e:
                logger.warning("crash-recovery state not saved: %s", e, extra={"session_id": sid})
        logger.info("session created", extra={"op": "session_create", "session_id": sid, "tool": tool})
        return self._snapshot(sid)

    def _launch(self, entry: _Entry, *, prompt: str) -> None:
        sid = entry.info.id
        spec = self.settings.tool(entry.info.tool)
        argv = spec.argv(model=entry.request.model, prompt=prompt, extra_args=entry.request.extra_args)
        if shutil.which(argv[0]) is None:
            raise SpawnError(f"tool binary not found: {argv[0]}")
        if entry.heartbeat:
            argv = self._wrap_heartbeat(
                argv,
                session_id=sid,
                interval=self.settings.heartbeat_interval,
                task=entry.info.task,
            )
        env = {SESSION_ID_ENV: sid, "CODERS_HOME": str(coders_home())}
        if entry.info.parent_session_id:
            env[PARENT_SESSION_ID_ENV] = entry.info.parent_session_id
        with self._lock:
            # The exit hook adopts the new process if it ends before spawn() returns.
            entry.pty = None
            entry.info.status = "running"
            entry.info.exited_at = None
            entry.info.exit_code = None
        ps = self.supervisor.spawn(
            session_id=sid,
            name=entry.info.name,
            cwd=Path(entry.info.cwd),
            command=argv,
            env=env,
            buffer=entry.buffer,
        )
        with self._lock:
            entry.info.pid = ps.pid
            if entry.pty is None:
                entry.pty = ps
        if prompt and spec.prompt_mode == "stdin":
            t = threading.Timer(self.settings.prompt_delay_seconds, self._send_prompt, args=(sid, ps, prompt))
            t.daemon = True
            t.start()

    def _send_prompt(self, sid: str, ps: PtySession, prompt: str) -> None:
        if not ps.write_input((prompt + "\n").encode("utf-8")):
            logger.warning("initial prompt not delivered", extra={"session_id": sid})

    def ensure_orchestrator(self, *, cwd: str = "") -> Tuple[SessionInfo, bool]:
        """Return the running orchestrator session, creating it if needed."""
        with self._lock:
            for e in self._entries.values():
                if e.info.is_orchestrator and e.info.status == "running":
                    return e.info.model_copy(), False
        req = SpawnRequest(tool=self.settings.default_tool, cwd=cwd, name=ORCHESTRATOR_NAME)
        return self._create(req, prompt=ORCHESTRATOR_PROMPT), True

    # ------------------------------------------------------------------ read

    def _snapshot(self, session_id: str) -> SessionInfo:
        with self._lock:
            e = self._entries.get(session_id)
            if e is None:
                raise SessionNotFoundError(session_id)
            return e.info.model_copy()

    def get_session(self, session_id: str) -> SessionInfo:
        return self._snapshot(session_id)

    def list_sessions(self) -> List[SessionInfo]:
        with self._lock:
            items = [e.info.model_copy() for e in self._entries.values()]
        items.sort(key=lambda s: s.created_at)
        return items

    def _entry(self, session_id: str) -> _Entry:
        with self._lock:
            e = self._entries.get(session_id)
        if e is None:
            raise SessionNotFoundError(session_id)
        return e

    def get_output(self, session_id: str, lines: int = 0) -> List[str]:
        e = self._entry(session_id)
        if lines <= 0:
            return e.buffer.get_all_lines()
        return e.buffer.get_lines(lines)

    def output_text(self, session_id: str, lines: int = 100) -> str:
        e = self._entry(session_id)
        out = e.buffer.get_lines(lines)
        partial = e.buffer.partial_line
        if partial:
            out.append(partial)
        return "\n".join(out)

    def process_running(self, session_id: str) -> bool:
        e = self._entry(session_id)
        return bool(e.pty is not None and e.pty.is_running())

    def heartbeat_enabled(self, session_id: str) -> bool:
        return self._entry(session_id).heartbeat

    # ------------------------------------------------------------------ write

    def write(self, session_id: str, data: bytes) -> bool:
        e = self._entry(session_id)
        if e.pty is None:
            return False
        return e.pty.write_input(data)

    # ------------------------------------------------------------------ kill

    def kill_session(self, session_id: str) -> SessionInfo:
        """Kill the process tree, clear the session's promise, and drop it."""
        with self._lock:
            e = self._entries.pop(session_id, None)
        if e is None:
            raise SessionNotFoundError(session_id)
        self.supervisor.kill(session_id)
        for cleanup in (self.promises.delete_promise, self.crashes.delete_state):
            try:
                cleanup(session_id)
            except StoreUnavailableError as exc:
                logger.warning("cleanup after kill failed: %s", exc, extra={"session_id": session_id})
        info = e.info.model_copy()
        info.status = "killed"
        if info.exited_at is None:
            info.exited_at = now_ms()
        logger.info("session killed", extra={"op": "session_kill", "session_id": session_id})
        return info

    def kill_all(self) -> List[SessionInfo]:
        return [self._kill_quietly(s.id) for s in self.list_sessions()]

    def kill_completed(self) -> List[SessionInfo]:
        """Kill every session that has published a promise."""
        out = []
        for s in self.list_sessions():
            if self.promises.get_promise(s.id) is not None:
                out.append(self._kill_quietly(s.id))
        return out

    def _kill_quietly(self, session_id: str) -> SessionInfo:
        try:
            return self.kill_session(session_id)
        except SessionNotFoundError:
            return SessionInfo(id=session_id, name=session_id, tool="", status="killed")

    def close(self) -> None:
        """Kill every tracked session; used at process shutdown."""
        self._closing = True
        self.kill_all()
        self.supervisor.stop_all()

    # ------------------------------------------------------------------ exit / crash recovery

    def _on_exit(self, ps: PtySession) -> None:
        with self._lock:
            e = self._entries.get(ps.session_id)
            if e is None or (e.pty is not None and e.pty is not ps):
                return
            e.pty = ps
            e.info.exited_at = now_ms()
            e.info.exit_code = ps.exit_code
            e.info.status = "killed" if ps.killed else "exited"
            candidate = not ps.killed and not self._closing and e.restart_on_crash
        if not candidate:
            return
        if self.promises.get_promise(ps.session_id) is not None:
            # Finished its work; not a crash.
            try:
                self.crashes.delete_state(ps.session_id)
            except StoreUnavailableError:
                pass
            return
        threading.Thread(
            target=self._recover,
            args=(ps.session_id, ps.exit_code),
            name=f"coders-recover:{ps.session_id}",
            daemon=True,
        ).start()

    def _recover(self, session_id: str, exit_code: Optional[int]) -> None:
        with self._lock:
            e = self._entries.get(session_id)
        if e is None:
            return
        state = None
        try:
            state = self.crashes.get_state(session_id)
        except StoreUnavailableError:
            state = None
        if state is None:
            state = SessionState(
                session_id=session_id,
                session_name=e.info.name,
                tool=e.info.tool,
                task=e.info.task,
                cwd=e.info.cwd,
                restart_on_crash=True,
                restart_count=e.info.restart_count,
                max_restarts=e.max_restarts,
            )
        code = -1 if exit_code is None else int(exit_code)
        try:
            event = self.crashes.on_unexpected_exit(state, exit_code=code)
            will_restart = event.will_restart
        except StoreUnavailableError as exc:
            logger.warning("crash not recorded: %s", exc, extra={"session_id": session_id})
            will_restart = state.restart_count < state.max_restarts
            state.restart_count += 1
        if not will_restart or self._closing:
            with self._lock:
                e.info.status = "failed"
            logger.error("session failed permanently", extra={"session_id": session_id, "restart": state.restart_count})
            return
        with self._lock:
            e.info.restart_count = state.restart_count
        try:
            self._launch(e, prompt=restart_prompt(e.info.task, state.restart_count) if e.info.task else "")
            logger.info("session restarted", extra={"session_id": session_id, "restart": state.restart_count})
        except SpawnError as exc:
            logger.error("restart failed: %s", exc, extra={"session_id": session_id})
            try:
                self.crashes.record(CrashEvent(session_id=session_id, reason=f"restart failed: {exc}", will_restart=False))
                self.crashes.delete_state(session_id)
            except StoreUnavailableError:
                pass
            with self._lock:
                e.info.status = "failed"
