from __future__ import annotations

import os
from pathlib import Path


def coders_home() -> Path:
    env = os.environ.get("CODERS_HOME", "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.home() / ".coders").resolve()


def ensure_home() -> Path:
    home = coders_home()
    home.mkdir(parents=True, exist_ok=True)
    return home
