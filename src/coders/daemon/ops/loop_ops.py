"""Background loop operations for daemon."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict

from ...contracts.v1 import DaemonResponse
from ...util.conv import coerce_bool, coerce_seconds
from ..context import DaemonContext
from ..loop import LoopScheduler, RegistrySpawner, list_loop_states, load_loop_state, read_notification


def handle_loop_start(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    raw = str(args.get("todolist") or "").strip()
    if not raw:
        return DaemonResponse.failure("invalid_request", "missing todolist")
    cwd = Path(str(args.get("cwd") or ".")).expanduser().resolve()
    todolist = Path(raw).expanduser()
    if not todolist.is_absolute():
        todolist = cwd / todolist
    if not todolist.is_file():
        return DaemonResponse.failure("invalid_request", f"todolist not found: {todolist}")

    s = ctx.settings
    scheduler = LoopScheduler(
        todolist=todolist,
        cwd=str(cwd),
        spawner=RegistrySpawner(ctx.registry),
        promises=ctx.registry.promises,
        store=ctx.store,
        tool=str(args.get("tool") or s.default_tool).strip().lower(),
        fallback_tool=s.fallback_tool,
        stop_on_blocked=coerce_bool(args.get("stop_on_blocked"), default=False),
        poll_interval=s.promise_poll_interval,
        task_timeout=coerce_seconds(args.get("task_timeout"), default=0.0) or None,
        parent_session_id=str(args.get("parent_session_id") or "") or None,
        model=str(args.get("model") or ""),
    )
    loop_id = ctx.loops.start(scheduler)
    return DaemonResponse.success({"loop_id": loop_id, "state": scheduler.state.model_dump()})


def handle_loop_status(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    loop_id = str(args.get("loop_id") or "").strip()
    if not loop_id:
        states = list_loop_states(ctx.store)
        return DaemonResponse.success({"loops": [st.model_dump() for st in states], "active": ctx.loops.active()})
    st = load_loop_state(ctx.store, loop_id)
    if st is None:
        return DaemonResponse.failure("invalid_request", f"loop not found: {loop_id}")
    n = read_notification(ctx.store, loop_id)
    return DaemonResponse.success(
        {
            "state": st.model_dump(),
            "active": ctx.loops.get(loop_id) is not None,
            "notification": n.model_dump() if n else None,
        }
    )


def handle_loop_stop(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    loop_id = str(args.get("loop_id") or "").strip()
    if not loop_id:
        return DaemonResponse.failure("invalid_request", "missing loop_id")
    return DaemonResponse.success({"loop_id": loop_id, "cancelled": ctx.loops.cancel(loop_id)})
