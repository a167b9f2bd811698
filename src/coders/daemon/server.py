from __future__ import annotations

import json
import logging
import os
import signal
import socket
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import ValidationError

from .. import __version__
from ..contracts.v1 import DaemonError, DaemonRequest, DaemonResponse
from ..errors import InvalidPromiseError, SessionNotFoundError, SpawnError, StoreUnavailableError
from ..paths import ensure_home
from ..util.fs import atomic_write_text
from ..util.obslog import setup_root_json_logging
from ..util.time import utc_now_iso
from .context import DaemonContext, build_context
from .ops.loop_ops import handle_loop_start, handle_loop_status, handle_loop_stop
from .ops.session_ops import (
    handle_orchestrator,
    handle_session_create,
    handle_session_get,
    handle_session_kill,
    handle_session_list,
    handle_session_output,
    handle_session_write,
)
from .ops.state_ops import (
    handle_crash_events,
    handle_health_check,
    handle_health_summary,
    handle_heartbeat_get,
    handle_promise_delete,
    handle_promise_get,
    handle_promise_list,
    handle_promise_set,
    handle_resume,
)


logger = logging.getLogger("coders.daemon")


@dataclass
class DaemonPaths:
    home: Path

    @property
    def daemon_dir(self) -> Path:
        return self.home / "daemon"

    @property
    def sock_path(self) -> Path:
        return self.daemon_dir / "codersd.sock"

    @property
    def pid_path(self) -> Path:
        return self.daemon_dir / "codersd.pid"

    @property
    def log_path(self) -> Path:
        return self.daemon_dir / "codersd.log"


def default_paths() -> DaemonPaths:
    return DaemonPaths(home=ensure_home())


def _is_socket_alive(sock_path: Path) -> bool:
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(0.2)
            s.connect(str(sock_path))
            s.sendall(b'{"op":"ping"}\n')
            _ = s.recv(1024)
            return True
    except OSError:
        return False


def _write_pid(pid_path: Path) -> None:
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_text(pid_path, str(os.getpid()) + "\n")


def _remove_stale_socket(sock_path: Path) -> None:
    try:
        if sock_path.exists() and not _is_socket_alive(sock_path):
            sock_path.unlink()
    except OSError:
        pass


def _unlink_quietly(path: Path) -> None:
    try:
        if path.exists():
            path.unlink()
    except OSError:
        pass


def _recv_json_line(conn: socket.socket) -> Dict[str, Any]:
    buf = b""
    while b"\n" not in buf:
        chunk = conn.recv(65536)
        if not chunk:
            break
        buf += chunk
        if len(buf) > 2_000_000:
            break
    line = buf.split(b"\n", 1)[0]
    try:
        obj = json.loads(line.decode("utf-8", errors="replace"))
    except ValueError:
        return {}
    return obj if isinstance(obj, dict) else {}


def _send_json(conn: socket.socket, obj: Dict[str, Any]) -> None:
    data = (json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")
    conn.sendall(data)


Handler = Callable[[DaemonContext, Dict[str, Any]], DaemonResponse]

_HANDLERS: Dict[str, Handler] = {
    "session_create": handle_session_create,
    "session_list": handle_session_list,
    "session_get": handle_session_get,
    "session_kill": handle_session_kill,
    "session_write": handle_session_write,
    "session_output": handle_session_output,
    "orchestrator": handle_orchestrator,
    "promise_get": handle_promise_get,
    "promise_set": handle_promise_set,
    "promise_delete": handle_promise_delete,
    "promise_list": handle_promise_list,
    "resume": handle_resume,
    "heartbeat_get": handle_heartbeat_get,
    "health_check": handle_health_check,
    "health_summary": handle_health_summary,
    "crash_events": handle_crash_events,
    "loop_start": handle_loop_start,
    "loop_status": handle_loop_status,
    "loop_stop": handle_loop_stop,
}


def _ping_result(ctx: DaemonContext) -> Dict[str, Any]:
    sessions = ctx.registry.list_sessions()
    return {
        "version": __version__,
        "pid": os.getpid(),
        "ts": utc_now_iso(),
        "sessions": len(sessions),
        "running": sum(1 for s in sessions if s.running),
        "loops": ctx.loops.active(),
        "store_ok": ctx.store.ping(),
    }


def handle_request(ctx: DaemonContext, req: DaemonRequest) -> Tuple[DaemonResponse, bool]:
    op = str(req.op or "").strip()
    args = req.args or {}

    if op == "ping":
        return DaemonResponse.success(_ping_result(ctx)), False

    if op == "shutdown":
        return DaemonResponse.success({"message": "shutting down"}), True

    handler = _HANDLERS.get(op)
    if handler is None:
        return DaemonResponse.failure("unknown_op", f"unknown op: {op}"), False

    try:
        return handler(ctx, args), False
    except SessionNotFoundError as e:
        return DaemonResponse.failure("session_not_found", str(e), details={"session_id": e.session_id}), False
    except SpawnError as e:
        return DaemonResponse.failure("spawn_failed", str(e)), False
    except StoreUnavailableError as e:
        return DaemonResponse.failure("store_unavailable", str(e)), False
    except ValidationError as e:
        return DaemonResponse.failure("invalid_request", "invalid arguments", details={"error": str(e)}), False
    except (InvalidPromiseError, ValueError) as e:
        return DaemonResponse.failure("invalid_request", str(e)), False
    except Exception as e:
        logger.exception("op failed", extra={"op": op})
        return DaemonResponse.failure("internal_error", str(e)), False


def serve_forever(paths: Optional[DaemonPaths] = None, *, ctx: Optional[DaemonContext] = None) -> int:
    p = paths or default_paths()
    p.daemon_dir.mkdir(parents=True, exist_ok=True)

    _remove_stale_socket(p.sock_path)
    if p.sock_path.exists() and _is_socket_alive(p.sock_path):
        return 0
    _unlink_quietly(p.sock_path)

    context = ctx or build_context()
    setup_root_json_logging(component="daemon", level=context.settings.log_level)
    context.monitor.start()

    stop_event = threading.Event()

    # Graceful shutdown on SIGTERM/SIGINT
    def _signal_handler(signum: int, frame: Any) -> None:
        stop_event.set()

    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)

    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.bind(str(p.sock_path))
            s.listen(50)
            s.settimeout(1.0)  # Allow periodic check of stop_event
            _write_pid(p.pid_path)
            logger.info("daemon listening on %s", p.sock_path, extra={"pid": os.getpid()})

            should_exit = False
            while not should_exit and not stop_event.is_set():
                try:
                    conn, _ = s.accept()
                except socket.timeout:
                    continue
                except OSError:
                    continue
                try:
                    conn.settimeout(30.0)
                    raw = _recv_json_line(conn)
                    try:
                        req = DaemonRequest.model_validate(raw)
                    except ValidationError as e:
                        resp = DaemonResponse.failure("invalid_request", "invalid request", details={"error": str(e)})
                    else:
                        resp, should_exit = handle_request(context, req)
                    try:
                        _send_json(conn, resp.model_dump())
                    except OSError:
                        # Client disconnected before the response was sent.
                        pass
                except OSError as e:
                    logger.warning("connection failed: %s", e)
                finally:
                    try:
                        conn.close()
                    except OSError:
                        pass
    finally:
        stop_event.set()
        logger.info("daemon shutting down")
        try:
            context.close()
        except Exception:
            logger.exception("shutdown cleanup failed")
        _unlink_quietly(p.sock_path)
        _unlink_quietly(p.pid_path)
    return 0


def call_daemon(req: Dict[str, Any], *, paths: Optional[DaemonPaths] = None, timeout_s: float = 60.0) -> Dict[str, Any]:
    p = paths or default_paths()
    try:
        request = DaemonRequest.model_validate(req)
    except ValidationError as e:
        return DaemonResponse.failure("invalid_request", "invalid request", details={"error": str(e)}).model_dump()
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as s:
            s.settimeout(timeout_s)
            s.connect(str(p.sock_path))
            s.sendall((json.dumps(request.model_dump(), ensure_ascii=False) + "\n").encode("utf-8"))
            obj = _recv_json_line(s)
        resp = DaemonResponse.model_validate(obj)
        return resp.model_dump()
    except (OSError, ValidationError):
        return DaemonResponse(ok=False, error=DaemonError(code="daemon_unavailable", message="daemon unavailable")).model_dump()


def read_pid(paths: Optional[DaemonPaths] = None) -> int:
    p = paths or default_paths()
    try:
        txt = p.pid_path.read_text(encoding="utf-8").strip()
        return int(txt) if txt.isdigit() else 0
    except OSError:
        return 0
