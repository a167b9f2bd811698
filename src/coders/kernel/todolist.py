from __future__ import annotations

import re
from pathlib import Path
from typing import List

from ..util.fs import atomic_write_text


_UNCHECKED_RE = re.compile(r"^\[ \]\s*(.+)$")


def parse_tasks(text: str) -> List[str]:
    """Unchecked `[ ] task` lines, in file order. Checked lines are skipped."""
    tasks: List[str] = []
    for line in (text or "").splitlines():
        m = _UNCHECKED_RE.match(line)
        if m:
            task = m.group(1).strip()
            if task:
                tasks.append(task)
    return tasks


def read_tasks(path: Path) -> List[str]:
    return parse_tasks(Path(path).read_text(encoding="utf-8"))


def mark_complete_text(text: str, task: str) -> str:
    """Tick the first unchecked line whose text is exactly `task`."""
    pattern = re.compile(r"^\[ \][ \t]*" + re.escape(task.strip()) + r"(?=[ \t]*\r?$)", re.MULTILINE)
    return pattern.sub(lambda _m: "[x] " + task.strip(), text, count=1)


def mark_complete(path: Path, task: str) -> bool:
    """Tick `task` in the file. Returns False when no unchecked line matched."""
    p = Path(path)
    text = p.read_text(encoding="utf-8")
    updated = mark_complete_text(text, task)
    if updated == text:
        return False
    atomic_write_text(p, updated)
    return True
