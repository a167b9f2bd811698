"""Global settings for coders.

Settings are stored in ~/.coders/settings.yaml (or $CODERS_HOME/settings.yaml)
and may be overridden per-process through CODERS_* environment variables:

- CODERS_DEFAULT_TOOL
- CODERS_FALLBACK_TOOL
- CODERS_HEARTBEAT_INTERVAL (seconds, or a duration like "30s", "1m")
- CODERS_DEFAULT_HEARTBEAT
- CODERS_LOG_LEVEL
- CODERS_REDIS_URL (or REDIS_URL)
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml  # type: ignore

from ..paths import ensure_home
from ..util.conv import coerce_bool, coerce_int, coerce_seconds
from ..util.fs import atomic_write_text


@dataclass
class ToolSpec:
    """How to launch one agent CLI and hand it the initial prompt."""
    name: str
    command: List[str]
    # stdin: type the prompt into the terminal once started
    # arg: pass it after `prompt_flag` on the command line
    # none: never send a prompt
    prompt_mode: str = "stdin"
    prompt_flag: str = ""
    model_flag: str = "--model"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": list(self.command),
            "prompt_mode": self.prompt_mode,
            "prompt_flag": self.prompt_flag,
            "model_flag": self.model_flag,
        }

    @classmethod
    def from_dict(cls, name: str, d: Dict[str, Any]) -> "ToolSpec":
        cmd = d.get("command")
        if isinstance(cmd, str):
            command = cmd.split()
        elif isinstance(cmd, list):
            command = [str(x) for x in cmd if str(x).strip()]
        else:
            command = [name]
        mode = str(d.get("prompt_mode") or "stdin").strip().lower()
        if mode not in ("stdin", "arg", "none"):
            mode = "stdin"
        return cls(
            name=name,
            command=command or [name],
            prompt_mode=mode,
            prompt_flag=str(d.get("prompt_flag") or ""),
            model_flag=str(d.get("model_flag") or "--model"),
        )

    def argv(self, *, model: str = "", prompt: str = "", extra_args: Optional[List[str]] = None) -> List[str]:
        out = list(self.command)
        if model and self.model_flag:
            out += [self.model_flag, model]
        out += list(extra_args or [])
        if prompt and self.prompt_mode == "arg":
            if self.prompt_flag:
                out.append(self.prompt_flag)
            out.append(prompt)
        return out


DEFAULT_REDIS_URL = "redis://localhost:6379/0"

DEFAULT_TOOLS: Dict[str, ToolSpec] = {
    "claude": ToolSpec(name="claude", command=["claude", "--dangerously-skip-permissions"]),
    "gemini": ToolSpec(
        name="gemini",
        command=["gemini", "--yolo"],
        prompt_mode="arg",
        prompt_flag="--prompt-interactive",
    ),
    "codex": ToolSpec(name="codex", command=["codex", "--dangerously-bypass-approvals-and-sandbox"]),
    "opencode": ToolSpec(name="opencode", command=["opencode"]),
}


@dataclass
class Settings:
    default_tool: str = "claude"
    # Tool the loop switches to when the current one reports it is near its usage limit.
    fallback_tool: str = "codex"
    heartbeat_interval: float = 30.0
    heartbeat_enabled: bool = True
    output_max_lines: int = 1000
    kill_grace_seconds: float = 0.3
    prompt_delay_seconds: float = 0.5
    promise_poll_interval: float = 5.0
    health_check_interval: float = 30.0
    output_sample_interval: float = 5.0
    output_stale_threshold: float = 300.0
    restart_on_crash: bool = False
    max_restarts: int = 3
    log_level: str = "INFO"
    redis_url: str = DEFAULT_REDIS_URL
    tools: Dict[str, ToolSpec] = field(default_factory=lambda: dict(DEFAULT_TOOLS))

    def tool(self, name: str) -> ToolSpec:
        key = str(name or "").strip().lower()
        spec = self.tools.get(key)
        if spec is not None:
            return spec
        # Unknown tools run as a bare command of the same name.
        return ToolSpec(name=key, command=[key])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "default_tool": self.default_tool,
            "fallback_tool": self.fallback_tool,
            "heartbeat_interval": self.heartbeat_interval,
            "heartbeat_enabled": self.heartbeat_enabled,
            "output_max_lines": self.output_max_lines,
            "kill_grace_seconds": self.kill_grace_seconds,
            "prompt_delay_seconds": self.prompt_delay_seconds,
            "promise_poll_interval": self.promise_poll_interval,
            "health_check_interval": self.health_check_interval,
            "output_sample_interval": self.output_sample_interval,
            "output_stale_threshold": self.output_stale_threshold,
            "restart_on_crash": self.restart_on_crash,
            "max_restarts": self.max_restarts,
            "log_level": self.log_level,
            "redis_url": self.redis_url,
            "tools": {k: v.to_dict() for k, v in self.tools.items()},
        }


def _settings_path() -> Path:
    return ensure_home() / "settings.yaml"


def load_settings_doc() -> Dict[str, Any]:
    """Load the raw settings document, or {} when missing or unreadable."""
    p = _settings_path()
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        return doc if isinstance(doc, dict) else {}
    except Exception:
        return {}


def save_settings(settings: Settings) -> None:
    p = _settings_path()
    p.parent.mkdir(parents=True, exist_ok=True)
    atomic_write_text(p, yaml.safe_dump(settings.to_dict(), allow_unicode=True, sort_keys=False))


def settings_from_doc(doc: Mapping[str, Any], env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from a YAML document, then apply environment overrides."""
    d = Settings()
    src: Dict[str, Any] = dict(doc or {})
    if env is None:
        env = os.environ

    def _env(name: str) -> Optional[str]:
        v = str(env.get(name) or "").strip()
        return v or None

    tools = dict(DEFAULT_TOOLS)
    raw_tools = src.get("tools")
    if isinstance(raw_tools, dict):
        for name, spec in raw_tools.items():
            key = str(name or "").strip().lower()
            if key and isinstance(spec, dict):
                tools[key] = ToolSpec.from_dict(key, spec)

    s = Settings(
        default_tool=str(_env("CODERS_DEFAULT_TOOL") or src.get("default_tool") or d.default_tool).strip().lower(),
        fallback_tool=str(_env("CODERS_FALLBACK_TOOL") or src.get("fallback_tool") or d.fallback_tool).strip().lower(),
        heartbeat_interval=coerce_seconds(
            _env("CODERS_HEARTBEAT_INTERVAL") or src.get("heartbeat_interval"),
            default=d.heartbeat_interval,
        ),
        heartbeat_enabled=coerce_bool(
            _env("CODERS_DEFAULT_HEARTBEAT") or src.get("heartbeat_enabled"),
            default=d.heartbeat_enabled,
        ),
        output_max_lines=coerce_int(src.get("output_max_lines"), default=d.output_max_lines, min_value=1),
        kill_grace_seconds=coerce_seconds(src.get("kill_grace_seconds"), default=d.kill_grace_seconds),
        prompt_delay_seconds=coerce_seconds(src.get("prompt_delay_seconds"), default=d.prompt_delay_seconds),
        promise_poll_interval=coerce_seconds(src.get("promise_poll_interval"), default=d.promise_poll_interval),
        health_check_interval=coerce_seconds(src.get("health_check_interval"), default=d.health_check_interval),
        output_sample_interval=coerce_seconds(src.get("output_sample_interval"), default=d.output_sample_interval),
        output_stale_threshold=coerce_seconds(src.get("output_stale_threshold"), default=d.output_stale_threshold),
        restart_on_crash=coerce_bool(src.get("restart_on_crash"), default=d.restart_on_crash),
        max_restarts=coerce_int(src.get("max_restarts"), default=d.max_restarts, min_value=0, max_value=100),
        log_level=str(_env("CODERS_LOG_LEVEL") or src.get("log_level") or d.log_level).strip().upper(),
        redis_url=str(_env("CODERS_REDIS_URL") or _env("REDIS_URL") or src.get("redis_url") or d.redis_url).strip(),
        tools=tools,
    )
    return s


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    return settings_from_doc(load_settings_doc(), env=env)
