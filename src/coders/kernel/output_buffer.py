from __future__ import annotations

import codecs
import threading
from collections import deque
from typing import Deque, List

from ..util.ansi import split_pending_escape, strip_ansi


DEFAULT_MAX_LINES = 1000


class OutputBuffer:
    """Sliding window of the most recent complete lines of terminal output.

    Raw chunks arrive in arbitrary sizes. Escape sequences, CRLF pairs and
    multibyte characters may straddle chunk boundaries; a trailing incomplete
    line is held as `partial_line` and never counted as a line.
    """

    def __init__(self, max_lines: int = DEFAULT_MAX_LINES) -> None:
        if max_lines <= 0:
            max_lines = DEFAULT_MAX_LINES
        self._max_lines = int(max_lines)
        self._lock = threading.Lock()
        self._lines: Deque[str] = deque(maxlen=self._max_lines)
        self._partial = ""
        self._pending_escape = ""
        self._pending_cr = False
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def max_lines(self) -> int:
        return self._max_lines

    @property
    def partial_line(self) -> str:
        with self._lock:
            return self._partial

    def append(self, data: bytes) -> None:
        if not data:
            return
        with self._lock:
            text = self._pending_escape + self._decoder.decode(bytes(data))
            text, self._pending_escape = split_pending_escape(text)
            text = strip_ansi(text)
            if self._pending_cr:
                text = "\r" + text
                self._pending_cr = False
            if text.endswith("\r"):
                # Could be the first half of a CRLF split across chunks.
                text = text[:-1]
                self._pending_cr = True
            if not text:
                return
            text = text.replace("\r\n", "\n").replace("\r", "\n")
            parts = (self._partial + text).split("\n")
            self._partial = parts.pop()
            self._lines.extend(parts)

    def get_lines(self, n: int) -> List[str]:
        """Return up to the last `n` complete lines, oldest first."""
        if n <= 0:
            return []
        with self._lock:
            if n >= len(self._lines):
                return list(self._lines)
            return list(self._lines)[-n:]

    def get_all_lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def line_count(self) -> int:
        with self._lock:
            return len(self._lines)

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()
            self._partial = ""
            self._pending_escape = ""
            self._pending_cr = False
            self._decoder.reset()
