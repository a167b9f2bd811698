from __future__ import annotations

import argparse
import json
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import psutil

from . import __version__
from .contracts.v1 import PROMISE_STATUSES
from .daemon.loop import CAPACITY_SCAN_LINES, LoopScheduler, list_loop_states, load_loop_state, read_notification
from .daemon.server import call_daemon
from .daemon_main import ensure_running, main as daemon_main
from .errors import CodersError, InvalidPromiseError, LoopAbortedError, SpawnError, StoreUnavailableError
from .kernel.crash import CrashLog
from .kernel.heartbeat import HeartbeatPublisher
from .kernel.naming import current_parent_session_id, current_session_id
from .kernel.promises import PromiseStore
from .kernel.settings import load_settings
from .kernel.store import default_store
from .util.conv import coerce_seconds
from .util.obslog import setup_root_json_logging


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _daemon_op(op: str, args: Optional[Dict[str, Any]] = None, *, start: bool = True) -> int:
    """Send one op, print the response, and map ok/error to an exit code."""
    if start and not ensure_running():
        _print_json({"ok": False, "error": {"code": "daemon_unavailable", "message": "daemon unavailable"}})
        return 1
    resp = call_daemon({"op": op, "args": dict(args or {})})
    _print_json(resp)
    return 0 if resp.get("ok") else 1


def _split_list(values: List[str]) -> List[str]:
    out: List[str] = []
    for v in values or []:
        out.extend(s.strip() for s in str(v).split(",") if s.strip())
    return out


def cmd_spawn(args: argparse.Namespace) -> int:
    req: Dict[str, Any] = {
        "tool": args.tool or "",
        "task": args.task or "",
        "cwd": str(Path(args.cwd or ".").resolve()),
        "model": args.model or "",
        "parent_session_id": args.parent or current_session_id() or None,
        "extra_args": [a for a in (args.extra_args or []) if a != "--"],
    }
    if args.no_heartbeat:
        req["heartbeat"] = False
    if args.restart_on_crash:
        req["restart_on_crash"] = True
    if args.max_restarts is not None:
        req["max_restarts"] = int(args.max_restarts)
    return _daemon_op("session_create", req)


def cmd_list(args: argparse.Namespace) -> int:
    return _daemon_op("session_list", {"running_only": bool(args.running)})


def cmd_kill(args: argparse.Namespace) -> int:
    if not (args.session_id or args.all or args.completed):
        print("kill: give a session id, --all or --completed", file=sys.stderr)
        return 2
    return _daemon_op(
        "session_kill",
        {"session_id": args.session_id or "", "all": bool(args.all), "completed": bool(args.completed)},
    )


def cmd_send(args: argparse.Namespace) -> int:
    return _daemon_op("session_write", {"session_id": args.session_id, "data": args.text, "enter": not args.no_enter})


def cmd_output(args: argparse.Namespace) -> int:
    resp = call_daemon({"op": "session_output", "args": {"session_id": args.session_id, "lines": int(args.lines)}})
    if not resp.get("ok"):
        _print_json(resp)
        return 1
    for line in (resp.get("result") or {}).get("lines") or []:
        print(line)
    return 0


def cmd_promise(args: argparse.Namespace) -> int:
    sid = str(args.session or current_session_id()).strip()
    if not sid:
        print("promise: not inside a coders session (CODERS_SESSION_ID is unset); pass --session", file=sys.stderr)
        return 2
    try:
        p = PromiseStore(default_store()).publish(
            sid,
            args.summary,
            status=args.status,
            blockers=_split_list(args.blockers),
            files_changed=_split_list(args.files),
        )
    except (InvalidPromiseError, StoreUnavailableError) as e:
        _print_json({"ok": False, "error": str(e)})
        return 1
    _print_json({"ok": True, "result": {"promise": p.model_dump()}})
    return 0


def cmd_promises(args: argparse.Namespace) -> int:
    try:
        promises = PromiseStore(default_store()).list_promises()
    except StoreUnavailableError as e:
        _print_json({"ok": False, "error": str(e)})
        return 1
    _print_json({"ok": True, "result": {"promises": [p.model_dump() for p in promises]}})
    return 0


def cmd_resume(args: argparse.Namespace) -> int:
    sid = str(args.session_id or current_session_id()).strip()
    if not sid:
        print("resume: give a session id", file=sys.stderr)
        return 2
    try:
        cleared = PromiseStore(default_store()).resume(sid)
    except StoreUnavailableError as e:
        _print_json({"ok": False, "error": str(e)})
        return 1
    _print_json({"ok": True, "result": {"session_id": sid, "resumed": cleared}})
    return 0


def _pid_watcher(pid: int):
    if pid <= 0:
        return None

    def _alive() -> bool:
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.Error:
            return False

    return _alive


def cmd_heartbeat(args: argparse.Namespace) -> int:
    settings = load_settings()
    setup_root_json_logging(component="heartbeat", level=settings.log_level)
    sid = str(args.session or current_session_id()).strip()
    if not sid:
        print("heartbeat: missing --session (or CODERS_SESSION_ID)", file=sys.stderr)
        return 2

    def _recent_output() -> str:
        resp = call_daemon(
            {"op": "session_output", "args": {"session_id": sid, "lines": 50}},
            timeout_s=2.0,
        )
        if not resp.get("ok"):
            return ""
        return str((resp.get("result") or {}).get("text") or "")

    publisher = HeartbeatPublisher(
        default_store(),
        sid,
        interval=float(args.interval or settings.heartbeat_interval),
        task=args.task or "",
        parent_session_id=current_parent_session_id() or None,
        output_source=_recent_output,
        is_alive=_pid_watcher(int(args.watch_pid or 0)),
    )

    def _stop(signum: int, frame: Any) -> None:
        publisher.stop()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)
    publisher.run()
    return 0


def cmd_healthcheck(args: argparse.Namespace) -> int:
    return _daemon_op("health_check", {"session_id": args.session_id or ""})


def cmd_heartbeats(args: argparse.Namespace) -> int:
    return _daemon_op("heartbeat_get", {"session_id": args.session_id or ""})


def cmd_crashes(args: argparse.Namespace) -> int:
    try:
        events = CrashLog(default_store()).events(args.session_id)
    except StoreUnavailableError as e:
        _print_json({"ok": False, "error": str(e)})
        return 1
    _print_json({"ok": True, "result": {"events": [e.model_dump() for e in events]}})
    return 0


class DaemonSpawner:
    """Spawns loop tasks through the daemon so sessions outlive this process."""

    def spawn_task(self, *, tool: str, task: str, cwd: str, parent_session_id: Optional[str], model: str) -> str:
        resp = call_daemon(
            {
                "op": "session_create",
                "args": {"tool": tool, "task": task, "cwd": cwd, "parent_session_id": parent_session_id, "model": model},
            }
        )
        if not resp.get("ok"):
            err = resp.get("error") or {}
            raise SpawnError(str(err.get("message") or "session_create failed"))
        return str(((resp.get("result") or {}).get("session") or {}).get("id") or "")

    def recent_output(self, session_id: str, lines: int = CAPACITY_SCAN_LINES) -> str:
        resp = call_daemon({"op": "session_output", "args": {"session_id": session_id, "lines": lines}})
        if not resp.get("ok"):
            return ""
        return str((resp.get("result") or {}).get("text") or "")


def cmd_loop(args: argparse.Namespace) -> int:
    cwd = Path(args.cwd or ".").resolve()
    todolist = Path(args.todolist).expanduser()
    if not todolist.is_absolute():
        todolist = cwd / todolist
    if not todolist.is_file():
        print(f"loop: todolist not found: {todolist}", file=sys.stderr)
        return 2
    parent = current_session_id() or None

    if not args.wait:
        return _daemon_op(
            "loop_start",
            {
                "todolist": str(todolist),
                "cwd": str(cwd),
                "tool": args.tool or "",
                "stop_on_blocked": bool(args.stop_on_blocked),
                "model": args.model or "",
                "parent_session_id": parent,
                "task_timeout": args.task_timeout,
            },
        )

    settings = load_settings()
    setup_root_json_logging(component="loop", level=settings.log_level)
    if not ensure_running():
        print("loop: daemon unavailable", file=sys.stderr)
        return 1
    store = default_store()
    scheduler = LoopScheduler(
        todolist=todolist,
        cwd=str(cwd),
        spawner=DaemonSpawner(),
        promises=PromiseStore(store),
        store=store,
        tool=(args.tool or settings.default_tool).strip().lower(),
        fallback_tool=settings.fallback_tool,
        stop_on_blocked=bool(args.stop_on_blocked),
        poll_interval=settings.promise_poll_interval,
        task_timeout=args.task_timeout,
        parent_session_id=parent,
        model=args.model or "",
    )

    def _cancel(signum: int, frame: Any) -> None:
        scheduler.cancel()

    signal.signal(signal.SIGTERM, _cancel)
    signal.signal(signal.SIGINT, _cancel)
    try:
        state = scheduler.run()
    except LoopAbortedError as e:
        _print_json({"ok": False, "error": str(e), "result": {"state": scheduler.state.model_dump()}})
        return 1
    _print_json({"ok": True, "result": {"state": state.model_dump()}})
    return 0 if state.status == "completed" else 1


def cmd_loop_status(args: argparse.Namespace) -> int:
    store = default_store()
    if not args.loop_id:
        _print_json({"ok": True, "result": {"loops": [s.model_dump() for s in list_loop_states(store)]}})
        return 0
    st = load_loop_state(store, args.loop_id)
    if st is None:
        _print_json({"ok": False, "error": f"loop not found: {args.loop_id}"})
        return 1
    n = read_notification(store, args.loop_id)
    _print_json({"ok": True, "result": {"state": st.model_dump(), "notification": n.model_dump() if n else None}})
    return 0


def cmd_loop_stop(args: argparse.Namespace) -> int:
    return _daemon_op("loop_stop", {"loop_id": args.loop_id}, start=False)


def cmd_orchestrator(args: argparse.Namespace) -> int:
    return _daemon_op("orchestrator", {"cwd": str(Path(args.cwd or ".").resolve())})


def cmd_daemon(args: argparse.Namespace) -> int:
    return daemon_main([args.action])


def cmd_version(args: argparse.Namespace) -> int:
    print(__version__)
    return 0


def _seconds(value: str) -> float:
    v = coerce_seconds(value, default=0.0)
    if v <= 0:
        raise argparse.ArgumentTypeError(f"invalid duration: {value}")
    return v


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="coders", description="Supervise AI coding tools in terminal sessions")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_spawn = sub.add_parser("spawn", help="Spawn a tool session (claude, gemini, codex, opencode, ...)")
    p_spawn.add_argument("tool", nargs="?", default="", help="Tool id (default: settings.default_tool)")
    p_spawn.add_argument("--task", default="", help="Task handed to the tool as its initial prompt")
    p_spawn.add_argument("--cwd", default=".", help="Working directory (default: .)")
    p_spawn.add_argument("--model", default="", help="Model passed to the tool (optional)")
    p_spawn.add_argument("--parent", default="", help="Parent session id (default: $CODERS_SESSION_ID)")
    p_spawn.add_argument("--no-heartbeat", action="store_true", help="Do not run a heartbeat publisher")
    p_spawn.add_argument("--restart-on-crash", action="store_true", help="Relaunch on unexpected exit")
    p_spawn.add_argument("--max-restarts", type=int, default=None, help="Restart limit (default: settings.max_restarts)")
    p_spawn.add_argument("extra_args", nargs=argparse.REMAINDER, help="Extra arguments for the tool (after --)")
    p_spawn.set_defaults(func=cmd_spawn)

    p_list = sub.add_parser("list", help="List sessions")
    p_list.add_argument("--running", action="store_true", help="Only running sessions")
    p_list.set_defaults(func=cmd_list)

    p_kill = sub.add_parser("kill", help="Kill a session and its process tree")
    p_kill.add_argument("session_id", nargs="?", default="", help="Target session id")
    p_kill.add_argument("--all", action="store_true", help="Kill every session")
    p_kill.add_argument("--completed", action="store_true", help="Kill every session that published a promise")
    p_kill.set_defaults(func=cmd_kill)

    p_send = sub.add_parser("send", help="Type text into a session's terminal")
    p_send.add_argument("session_id", help="Target session id")
    p_send.add_argument("text", help="Text to type")
    p_send.add_argument("--no-enter", action="store_true", help="Do not press Enter after the text")
    p_send.set_defaults(func=cmd_send)

    p_output = sub.add_parser("output", help="Print a session's recent terminal output")
    p_output.add_argument("session_id", help="Target session id")
    p_output.add_argument("-n", "--lines", type=int, default=100, help="Show last N lines (default: 100, 0 = all)")
    p_output.set_defaults(func=cmd_output)

    p_promise = sub.add_parser("promise", help="Publish this session's completion promise")
    p_promise.add_argument("summary", help="What was accomplished (or why it is blocked)")
    p_promise.add_argument("--status", choices=list(PROMISE_STATUSES), default="completed", help="Promise status")
    p_promise.add_argument("--blockers", action="append", default=[], help="Blockers (repeatable, comma-separated)")
    p_promise.add_argument("--files", action="append", default=[], help="Files changed (repeatable, comma-separated)")
    p_promise.add_argument("--session", default="", help="Session id (default: $CODERS_SESSION_ID)")
    p_promise.set_defaults(func=cmd_promise)

    p_promises = sub.add_parser("promises", help="List published promises")
    p_promises.set_defaults(func=cmd_promises)

    p_resume = sub.add_parser("resume", help="Clear a session's promise so it counts as active again")
    p_resume.add_argument("session_id", nargs="?", default="", help="Target session id (default: $CODERS_SESSION_ID)")
    p_resume.set_defaults(func=cmd_resume)

    p_hb = sub.add_parser("heartbeat", help="Publish heartbeats for a session until it exits")
    p_hb.add_argument("--session", default="", help="Session id (default: $CODERS_SESSION_ID)")
    p_hb.add_argument("--interval", type=_seconds, default=None, help="Publish interval (default: settings)")
    p_hb.add_argument("--task", default="", help="Task text recorded in each heartbeat")
    p_hb.add_argument("--watch-pid", type=int, default=0, help="Stop once this process exits")
    p_hb.set_defaults(func=cmd_heartbeat)

    p_hbs = sub.add_parser("heartbeats", help="Show heartbeat records and their age")
    p_hbs.add_argument("session_id", nargs="?", default="", help="One session (default: all)")
    p_hbs.set_defaults(func=cmd_heartbeats)

    p_health = sub.add_parser("healthcheck", help="Classify session health now")
    p_health.add_argument("session_id", nargs="?", default="", help="One session (default: all)")
    p_health.set_defaults(func=cmd_healthcheck)

    p_crashes = sub.add_parser("crashes", help="Show a session's recent crash events")
    p_crashes.add_argument("session_id", help="Target session id")
    p_crashes.set_defaults(func=cmd_crashes)

    p_loop = sub.add_parser("loop", help="Work through a todolist, one session per unchecked task")
    p_loop.add_argument("--todolist", required=True, help="File with '[ ] task' lines")
    p_loop.add_argument("--cwd", default=".", help="Working directory for spawned sessions (default: .)")
    p_loop.add_argument("--tool", default="", help="Tool id (default: settings.default_tool)")
    p_loop.add_argument("--model", default="", help="Model passed to the tool (optional)")
    p_loop.add_argument("--stop-on-blocked", action="store_true", help="Stop when a task reports blocked")
    p_loop.add_argument("--task-timeout", type=_seconds, default=None, help="Give up waiting for a promise after this long")
    p_loop.add_argument("--wait", action="store_true", help="Run in the foreground until the loop ends")
    p_loop.set_defaults(func=cmd_loop)

    p_loop_status = sub.add_parser("loop-status", help="Show persisted loop progress")
    p_loop_status.add_argument("loop_id", nargs="?", default="", help="Loop id (default: all)")
    p_loop_status.set_defaults(func=cmd_loop_status)

    p_loop_stop = sub.add_parser("loop-stop", help="Pause a background loop")
    p_loop_stop.add_argument("loop_id", help="Loop id")
    p_loop_stop.set_defaults(func=cmd_loop_stop)

    p_orch = sub.add_parser("orchestrator", help="Start (or show) the orchestrator session")
    p_orch.add_argument("--cwd", default=".", help="Working directory (default: .)")
    p_orch.set_defaults(func=cmd_orchestrator)

    p_daemon = sub.add_parser("daemon", help="Manage codersd daemon")
    p_daemon.add_argument("action", choices=["start", "stop", "status"], help="Action")
    p_daemon.set_defaults(func=cmd_daemon)

    p_ver = sub.add_parser("version", help="Show version")
    p_ver.set_defaults(func=cmd_version)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except CodersError as e:
        print(f"coders: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
