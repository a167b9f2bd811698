"""Promise, heartbeat, health and crash-log operations for daemon."""
from __future__ import annotations

from typing import Any, Dict

from ...contracts.v1 import DaemonResponse
from ...kernel.health import read_summary
from ...kernel.heartbeat import read_heartbeat, summarize_heartbeats
from ..context import DaemonContext


def _session_id(args: Dict[str, Any]) -> str:
    return str(args.get("session_id") or "").strip()


def handle_promise_get(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    sid = _session_id(args)
    if not sid:
        return DaemonResponse.failure("invalid_request", "missing session_id")
    p = ctx.registry.promises.get_promise(sid)
    return DaemonResponse.success({"promise": p.model_dump() if p else None})


def handle_promise_set(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    blockers = args.get("blockers") or []
    files = args.get("files_changed") or []
    p = ctx.registry.promises.publish(
        _session_id(args),
        str(args.get("summary") or ""),
        status=str(args.get("status") or "completed"),
        blockers=[str(b) for b in blockers] if isinstance(blockers, list) else [str(blockers)],
        files_changed=[str(f) for f in files] if isinstance(files, list) else [str(files)],
    )
    return DaemonResponse.success({"promise": p.model_dump()})


def handle_promise_delete(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    sid = _session_id(args)
    if not sid:
        return DaemonResponse.failure("invalid_request", "missing session_id")
    return DaemonResponse.success({"deleted": ctx.registry.promises.delete_promise(sid)})


def handle_promise_list(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    return DaemonResponse.success({"promises": [p.model_dump() for p in ctx.registry.promises.list_promises()]})


def handle_resume(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    sid = _session_id(args)
    if not sid:
        return DaemonResponse.failure("invalid_request", "missing session_id")
    ctx.registry.get_session(sid)
    return DaemonResponse.success({"resumed": ctx.registry.promises.resume(sid)})


def handle_heartbeat_get(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    sid = _session_id(args)
    if sid:
        rec = read_heartbeat(ctx.store, sid)
        return DaemonResponse.success({"heartbeat": rec.model_dump() if rec else None})
    return DaemonResponse.success({"heartbeats": summarize_heartbeats(ctx.store)})


def handle_health_check(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    summary = ctx.monitor.check_once()
    sid = _session_id(args)
    if sid:
        for r in summary.sessions:
            if r.session_id == sid:
                return DaemonResponse.success({"result": r.model_dump()})
        ctx.registry.get_session(sid)
        return DaemonResponse.success({"result": None})
    return DaemonResponse.success({"summary": summary.model_dump()})


def handle_health_summary(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    summary = read_summary(ctx.store)
    return DaemonResponse.success({"summary": summary.model_dump() if summary else None})


def handle_crash_events(ctx: DaemonContext, args: Dict[str, Any]) -> DaemonResponse:
    sid = _session_id(args)
    if not sid:
        return DaemonResponse.failure("invalid_request", "missing session_id")
    return DaemonResponse.success({"events": [e.model_dump() for e in ctx.registry.crashes.events(sid)]})
