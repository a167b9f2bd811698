from __future__ import annotations

import re
from typing import Tuple


_ESC = "\x1b"

_SEQUENCE_RE = re.compile(
    r"""
      \x1b\][^\x07\x1b]*(?:\x07|\x1b\\)     # OSC, terminated by BEL or ST
    | \x1b[P^_X][^\x1b]*\x1b\\              # DCS / PM / APC / SOS, terminated by ST
    | \x1b\[[0-?]*[\x20-/]*[@-~]            # CSI
    | \x1b[\x20-/]*[0-OQ-WYZ\\\x60-~]       # two-byte and charset-selection escapes
    """,
    re.VERBOSE,
)

# C0 controls except TAB, LF and CR; DEL; C1 controls.
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f\x80-\x9f]")

# An unterminated escape longer than this is treated as garbage, not held back.
_MAX_PENDING_ESCAPE = 256


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences and non-printing control characters."""
    if not text:
        return ""
    return _CONTROL_RE.sub("", _SEQUENCE_RE.sub("", text))


def split_pending_escape(text: str) -> Tuple[str, str]:
    """Split off a trailing escape sequence that may continue in the next chunk.

    Returns (complete, pending). `pending` is empty unless `text` ends inside
    an escape sequence.
    """
    idx = text.rfind(_ESC)
    if idx < 0:
        return text, ""
    tail = text[idx:]
    if len(tail) > _MAX_PENDING_ESCAPE or "\n" in tail:
        return text, ""
    if _SEQUENCE_RE.match(text, idx) is not None:
        return text, ""
    return text[:idx], tail
