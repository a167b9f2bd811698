from __future__ import annotations

import os

if os.name == "nt":
    raise ImportError("coders.runners requires a POSIX pseudo-terminal (use WSL on Windows)")

from . import pty

__all__ = ["pty"]
