from __future__ import annotations

import fcntl
import logging
import os
import pty
import selectors
import shutil
import signal
import struct
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

import termios

from ..errors import SpawnError
from ..kernel.output_buffer import OutputBuffer
from ..kernel.process_tree import ProcessTree


logger = logging.getLogger("coders.pty")


def _set_winsize(fd: int, *, cols: int, rows: int) -> None:
    try:
        winsize = struct.pack("HHHH", int(rows), int(cols), 0, 0)
        fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)
    except OSError:
        pass


def _best_effort_killpg(pid: int, sig: signal.Signals) -> None:
    if pid <= 0:
        return
    try:
        os.killpg(pid, sig)
    except ProcessLookupError:
        pass
    except OSError:
        try:
            os.kill(pid, sig)
        except OSError:
            pass


def _close_quietly(fd: int) -> None:
    try:
        os.close(fd)
    except OSError:
        pass


class PtySession:
    """One tool process attached to its own pseudo-terminal.

    A reader thread drains the terminal into `buffer` until EOF, then records
    the exit code and calls `on_exit`.
    """

    def __init__(
        self,
        *,
        session_id: str,
        name: str,
        cwd: Path,
        command: Iterable[str],
        env: Dict[str, str],
        buffer: OutputBuffer,
        on_exit: Optional[Callable[["PtySession"], None]] = None,
        cols: int = 120,
        rows: int = 40,
    ) -> None:
        self.session_id = session_id
        self.name = name
        self.buffer = buffer
        self._on_exit = on_exit
        self._write_lock = threading.Lock()
        self._exited = threading.Event()
        self.exit_code: Optional[int] = None
        self.exited_at: Optional[float] = None
        self.killed = False

        cmd = [str(x) for x in command if isinstance(x, str) and str(x).strip()]
        if not cmd:
            raise SpawnError("empty command")
        if shutil.which(cmd[0], path=env.get("PATH") or os.environ.get("PATH")) is None:
            raise SpawnError(f"tool binary not found: {cmd[0]}")
        if not Path(cwd).is_dir():
            raise SpawnError(f"working directory does not exist: {cwd}")

        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError(f"cannot allocate a pseudo-terminal: {e}") from e
        _set_winsize(master_fd, cols=cols, rows=rows)
        os.set_blocking(master_fd, False)

        proc_env = os.environ.copy()
        proc_env.update({k: v for k, v in env.items() if isinstance(k, str) and isinstance(v, str)})
        proc_env.setdefault("TERM", "xterm-256color")

        def _preexec() -> None:
            os.setsid()
            try:
                fcntl.ioctl(0, termios.TIOCSCTTY, 0)
            except OSError:
                pass

        try:
            self._proc = subprocess.Popen(
                cmd,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=str(cwd),
                env=proc_env,
                close_fds=True,
                preexec_fn=_preexec,
            )
        except OSError as e:
            _close_quietly(master_fd)
            _close_quietly(slave_fd)
            raise SpawnError(f"failed to start {cmd[0]}: {e}") from e
        _close_quietly(slave_fd)

        self._master_fd = master_fd
        self._wake_r, self._wake_w = os.pipe()
        os.set_blocking(self._wake_r, False)
        self.started_at = time.time()

        self._thread = threading.Thread(target=self._loop, name=f"coders-pty:{session_id}", daemon=True)
        self._thread.start()
        logger.info("spawned %s", cmd[0], extra={"session_id": session_id, "pid": self.pid})

    @property
    def pid(self) -> int:
        return int(getattr(self._proc, "pid", 0) or 0)

    def is_running(self) -> bool:
        return not self._exited.is_set() and self._proc.poll() is None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the reader has recorded the exit; True if it did."""
        return self._exited.wait(timeout)

    def write_input(self, data: bytes) -> bool:
        if not data:
            return True
        if not self.is_running():
            return False
        remaining = bytes(data)
        deadline = time.monotonic() + 5.0
        with self._write_lock:
            while remaining:
                try:
                    written = os.write(self._master_fd, remaining)
                except BlockingIOError:
                    if time.monotonic() > deadline:
                        return False
                    time.sleep(0.05)
                    continue
                except OSError:
                    return False
                remaining = remaining[written:]
        return True

    def terminate(self, tree: ProcessTree) -> None:
        """Kill the process and all of its descendants; blocks for the grace period."""
        self.killed = True
        if self._proc.poll() is None:
            tree.terminate([self.pid])
        try:
            self._proc.wait(timeout=1.0)
        except subprocess.TimeoutExpired:
            _best_effort_killpg(self.pid, signal.SIGKILL)
            try:
                self._proc.wait(timeout=1.0)
            except subprocess.TimeoutExpired:
                logger.warning("process did not exit after SIGKILL", extra={"session_id": self.session_id, "pid": self.pid})
        if not self._exited.is_set():
            try:
                os.write(self._wake_w, b"x")
            except OSError:
                pass

    def _drain(self) -> bool:
        """Read everything available; False once the terminal reached EOF."""
        while True:
            try:
                chunk = os.read(self._master_fd, 65536)
            except BlockingIOError:
                return True
            except OSError:
                # EIO: the slave side is closed.
                return False
            if not chunk:
                return False
            self.buffer.append(chunk)

    def _loop(self) -> None:
        sel = selectors.DefaultSelector()
        sel.register(self._master_fd, selectors.EVENT_READ, data="pty")
        sel.register(self._wake_r, selectors.EVENT_READ, data="wake")
        try:
            while True:
                events = sel.select(timeout=0.2)
                if not events:
                    if self._proc.poll() is not None:
                        # Exited; an orphaned descendant may still hold the terminal open.
                        self._drain()
                        break
                    continue
                open_ = True
                for key, _ in events:
                    if key.data == "pty":
                        open_ = self._drain()
                    else:
                        try:
                            os.read(self._wake_r, 1024)
                        except OSError:
                            pass
                if not open_:
                    break
        finally:
            sel.close()
            try:
                code = self._proc.wait(timeout=2.0)
            except subprocess.TimeoutExpired:
                code = None
            self.exit_code = code
            self.exited_at = time.time()
            for fd in (self._master_fd, self._wake_r, self._wake_w):
                _close_quietly(fd)
            self._exited.set()
            logger.info(
                "session exited (code=%s, killed=%s)",
                code,
                self.killed,
                extra={"session_id": self.session_id, "pid": self.pid},
            )
            if self._on_exit is not None:
                try:
                    self._on_exit(self)
                except Exception:
                    logger.exception("exit hook failed", extra={"session_id": self.session_id})


class PtySupervisor:
    """Spawns, tracks, and kills PTY sessions keyed by session id."""

    def __init__(
        self,
        *,
        process_tree: Optional[ProcessTree] = None,
        cols: int = 120,
        rows: int = 40,
    ) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, PtySession] = {}
        self._exit_hook: Optional[Callable[[PtySession], None]] = None
        self.process_tree = process_tree or ProcessTree()
        self._cols = cols
        self._rows = rows

    def set_exit_hook(self, hook: Optional[Callable[[PtySession], None]]) -> None:
        with self._lock:
            self._exit_hook = hook

    def _on_session_exit(self, session: PtySession) -> None:
        with self._lock:
            hook = self._exit_hook
        if hook is not None:
            hook(session)

    def get(self, session_id: str) -> Optional[PtySession]:
        with self._lock:
            return self._sessions.get(session_id)

    def find_by_name(self, name: str) -> List[PtySession]:
        with self._lock:
            return [s for s in self._sessions.values() if s.name == name]

    def running(self, session_id: str) -> bool:
        s = self.get(session_id)
        return bool(s and s.is_running())

    def spawn(
        self,
        *,
        session_id: str,
        name: str,
        cwd: Path,
        command: Iterable[str],
        env: Dict[str, str],
        buffer: OutputBuffer,
    ) -> PtySession:
        for existing in self.find_by_name(name):
            if existing.session_id != session_id and existing.is_running():
                logger.info("replacing running session %s", existing.session_id, extra={"session_id": session_id})
                self.kill(existing.session_id)
        prev = self.get(session_id)
        if prev is not None and prev.is_running():
            prev.terminate(self.process_tree)
            prev.wait(timeout=2.0)
        session = PtySession(
            session_id=session_id,
            name=name,
            cwd=cwd,
            command=command,
            env=env,
            buffer=buffer,
            on_exit=self._on_session_exit,
            cols=self._cols,
            rows=self._rows,
        )
        with self._lock:
            self._sessions[session_id] = session
        return session

    def kill(self, session_id: str) -> bool:
        """Terminate and forget a session. Returns False if it was unknown."""
        with self._lock:
            s = self._sessions.pop(session_id, None)
        if s is None:
            return False
        s.terminate(self.process_tree)
        s.wait(timeout=2.0)
        return True

    def forget(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)

    def write(self, session_id: str, data: bytes) -> bool:
        s = self.get(session_id)
        if s is None:
            return False
        return s.write_input(data)

    def stop_all(self) -> None:
        with self._lock:
            ids = list(self._sessions.keys())
        for sid in ids:
            try:
                self.kill(sid)
            except Exception:
                logger.exception("failed to stop session", extra={"session_id": sid})
