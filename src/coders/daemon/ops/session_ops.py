"""Session operations for daemon."""
from __future__ import annotations

from typing import Any, Dict

from ...contracts.v1 import DaemonResponse, SpawnRequest
from ...util.conv import coerce_bool, coerce_int
from ..context import DaemonContext


def _session_id(args: Dict[str, Any]) -> str:
    return str(args.get("session_id") or "").strip()


def _missing_session_id() -> DaemonResponse:
    return DaemonResponse.failure("invalid_request", "missing session_id")


def handle_session_create(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    req = SpawnRequest.model_validate(args)
    info = ctx.registry.create_session(req)
    return DaemonResponse.success({"session": info.model_dump()})


def handle_session_list(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    sessions = ctx.registry.list_sessions()
    if coerce_bool(args.get("running_only"), default=False):
        sessions = [s for s in sessions if s.running]
    out = []
    for s in sessions:
        d = s.model_dump()
        d["has_promise"] = ctx.registry.promises.get_promise(s.id) is not None
        out.append(d)
    return DaemonResponse.success({"sessions": out})


def handle_session_get(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    sid = _session_id(args)
    if not sid:
        return _missing_session_id()
    info = ctx.registry.get_session(sid)
    return DaemonResponse.success({"session": info.model_dump()})


def handle_session_kill(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    if coerce_bool(args.get("all"), default=False):
        killed = ctx.registry.kill_all()
    elif coerce_bool(args.get("completed"), default=False):
        killed = ctx.registry.kill_completed()
    else:
        sid = _session_id(args)
        if not sid:
            return _missing_session_id()
        killed = [ctx.registry.kill_session(sid)]
    for info in killed:
        ctx.monitor.evaluator.forget(info.id)
    return DaemonResponse.success({"killed": [k.model_dump() for k in killed]})


def handle_session_write(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    sid = _session_id(args)
    if not sid:
        return _missing_session_id()
    text = str(args.get("data") or "")
    if coerce_bool(args.get("enter"), default=True):
        text += "\n"
    ok = ctx.registry.write(sid, text.encode("utf-8"))
    return DaemonResponse.success({"written": bool(ok)})


def handle_session_output(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    sid = _session_id(args)
    if not sid:
        return _missing_session_id()
    n = coerce_int(args.get("lines"), default=100, min_value=0)
    lines = ctx.registry.get_output(sid, n)
    return DaemonResponse.success({"lines": lines, "text": ctx.registry.output_text(sid, n or 100)})


def handle_orchestrator(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    info, created = ctx.registry.ensure_orchestrator(cwd=str(args.get("cwd") or ""))
    return DaemonResponse.success({"session": info.model_dump(), "created": created})
