"""codersd: the process that owns every supervised session.

`run` serves in the foreground. `start` detaches a `run` child logging to
$CODERS_HOME/daemon/codersd.log and waits for it to answer. Stopping the
daemon kills every session it supervises and cancels its loops, so `stop`
reports what was still running.
"""
from __future__ import annotations

import argparse
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional

from .daemon.server import DaemonPaths, call_daemon, default_paths, read_pid, serve_forever
from .kernel.settings import load_settings
from .kernel.store import default_store


def _spawn_daemon(paths: DaemonPaths) -> int:
    paths.daemon_dir.mkdir(parents=True, exist_ok=True)
    env = os.environ.copy()
    env["CODERS_HOME"] = str(paths.home)
    with paths.log_path.open("a", encoding="utf-8") as log_f:
        p = subprocess.Popen(
            [sys.executable, "-m", "coders.daemon_main", "run"],
            stdout=log_f,
            stderr=log_f,
            stdin=subprocess.DEVNULL,
            env=env,
            start_new_session=True,
            cwd=str(Path.cwd()),
        )
    return int(p.pid)


def daemon_status(paths: Optional[DaemonPaths] = None) -> Optional[Dict[str, Any]]:
    """The daemon's ping result, or None when it does not answer."""
    resp = call_daemon({"op": "ping"}, paths=paths, timeout_s=2.0)
    if not resp.get("ok"):
        return None
    result = resp.get("result")
    return result if isinstance(result, dict) else {}


def format_status(result: Dict[str, Any]) -> str:
    loops = result.get("loops") or []
    line = (
        f"codersd: running pid={result.get('pid')} version={result.get('version')}"
        f" sessions={result.get('sessions', 0)} ({result.get('running', 0)} running)"
        f" loops={len(loops)}"
    )
    if result.get("store_ok") is False:
        line += " store=unreachable"
    return line


def ensure_running(paths: Optional[DaemonPaths] = None, *, timeout: float = 3.0) -> bool:
    p = paths or default_paths()
    if daemon_status(p) is not None:
        return True
    try:
        _spawn_daemon(p)
    except OSError:
        return False
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        time.sleep(0.05)
        if daemon_status(p) is not None:
            return True
    return False


def _warn_if_store_down() -> None:
    settings = load_settings()
    store = default_store(settings)
    try:
        if not store.ping():
            print(
                f"codersd: warning: store not reachable at {settings.redis_url}; "
                "heartbeats, promises and loop state will read as absent",
                file=sys.stderr,
            )
    finally:
        store.close()


def cmd_start(paths: DaemonPaths) -> int:
    st = daemon_status(paths)
    if st is not None:
        print(format_status(st))
        return 0
    _warn_if_store_down()
    if not ensure_running(paths):
        print(f"codersd: failed to start (see {paths.log_path})")
        return 1
    print(format_status(daemon_status(paths) or {}))
    return 0


def cmd_stop(paths: DaemonPaths) -> int:
    st = daemon_status(paths)
    resp = call_daemon({"op": "shutdown"}, paths=paths)
    if resp.get("ok"):
        st = st or {}
        print(
            f"codersd: shutdown requested; stopping {st.get('running', 0)} running session(s)"
            f" and {len(st.get('loops') or [])} loop(s)"
        )
        return 0
    pid = read_pid(paths)
    if pid > 0:
        try:
            os.kill(pid, signal.SIGTERM)
            print(f"codersd: SIGTERM sent to pid={pid}")
            return 0
        except ProcessLookupError:
            pass
    print("codersd: not running")
    return 0


def cmd_status(paths: DaemonPaths) -> int:
    st = daemon_status(paths)
    if st is None:
        print("codersd: not running")
        return 1
    print(format_status(st))
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="codersd", description="coders session daemon (owns every supervised session)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Run daemon in foreground")
    sub.add_parser("start", help="Start daemon in background")
    sub.add_parser("stop", help="Stop daemon and every session it supervises")
    sub.add_parser("status", help="Daemon status with session and loop counts")

    args = parser.parse_args(argv)
    paths = default_paths()

    if args.cmd == "run":
        return int(serve_forever(paths))
    if args.cmd == "start":
        return cmd_start(paths)
    if args.cmd == "stop":
        return cmd_stop(paths)
    if args.cmd == "status":
        return cmd_status(paths)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
