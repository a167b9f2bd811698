from __future__ import annotations

import os
import re
import time
import uuid
from typing import Mapping, Optional


SESSION_PREFIX = "coder"
ORCHESTRATOR_NAME = "coder-orchestrator"
SESSION_ID_ENV = "CODERS_SESSION_ID"
PARENT_SESSION_ID_ENV = "CODERS_PARENT_SESSION_ID"

_SLUG_MAX = 30
_DASH_RUN_RE = re.compile(r"-{2,}")


def slugify(task: str) -> str:
    out = []
    for ch in (task or "").lower():
        if ("a" <= ch <= "z") or ("0" <= ch <= "9"):
            out.append(ch)
        elif ch in (" ", "-", "_"):
            out.append("-")
    slug = _DASH_RUN_RE.sub("-", "".join(out)).strip("-")
    if len(slug) > _SLUG_MAX:
        slug = slug[:_SLUG_MAX].rstrip("-")
    return slug


def session_name(tool: str, task: str = "") -> str:
    """Human-readable name, e.g. `coder-claude-fix-the-login-bug`."""
    slug = slugify(task) or str(int(time.time()) % 10000)
    return f"{SESSION_PREFIX}-{tool}-{slug}"


def new_session_id(name: str) -> str:
    # Names repeat across spawns; ids never do.
    return f"{name}-{uuid.uuid4().hex[:8]}"


def is_orchestrator(session_id_or_name: str) -> bool:
    return str(session_id_or_name or "").startswith(ORCHESTRATOR_NAME)


def current_session_id(env: Optional[Mapping[str, str]] = None) -> str:
    if env is None:
        env = os.environ
    return str(env.get(SESSION_ID_ENV) or "").strip()


def current_parent_session_id(env: Optional[Mapping[str, str]] = None) -> str:
    if env is None:
        env = os.environ
    return str(env.get(PARENT_SESSION_ID_ENV) or "").strip()
