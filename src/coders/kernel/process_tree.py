from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from collections import deque
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Set

import psutil


logger = logging.getLogger("coders.process_tree")


class ProcessTable(Protocol):
    def children_map(self) -> Optional[Dict[int, List[int]]]:
        """Return parent pid -> child pids, or None when the table is unavailable."""
        ...

    def live_pids(self, pids: Iterable[int]) -> Set[int]:
        ...


def parse_process_table(text: str) -> Dict[int, List[int]]:
    """Parse `pid ppid` rows (as printed by `ps -axo pid=,ppid=`) into a children map.

    Rows that do not hold exactly two integers are skipped.
    """
    children: Dict[int, List[int]] = {}
    for line in (text or "").splitlines():
        fields = line.split()
        if len(fields) != 2:
            continue
        try:
            pid = int(fields[0])
            ppid = int(fields[1])
        except ValueError:
            continue
        children.setdefault(ppid, []).append(pid)
    return children


def collect_descendants(roots: Iterable[int], children: Optional[Dict[int, List[int]]]) -> List[int]:
    """Breadth-first walk from `roots`; the result includes the roots themselves."""
    root_list = [int(p) for p in roots if int(p) > 0]
    if not children:
        return list(dict.fromkeys(root_list))
    seen: Set[int] = set()
    order: List[int] = []
    queue = deque(root_list)
    while queue:
        pid = queue.popleft()
        if pid in seen:
            continue
        seen.add(pid)
        order.append(pid)
        queue.extend(children.get(pid, ()))
    return order


class PsProcessTable:
    """Process table read from the `ps` command."""

    def children_map(self) -> Optional[Dict[int, List[int]]]:
        try:
            out = subprocess.run(
                ["ps", "-axo", "pid=,ppid="],
                capture_output=True,
                text=True,
                timeout=5.0,
                check=True,
            ).stdout
        except (OSError, subprocess.SubprocessError):
            return None
        return parse_process_table(out)

    def live_pids(self, pids: Iterable[int]) -> Set[int]:
        want = {int(p) for p in pids}
        try:
            out = subprocess.run(
                ["ps", "-axo", "pid="],
                capture_output=True,
                text=True,
                timeout=5.0,
                check=True,
            ).stdout
        except (OSError, subprocess.SubprocessError):
            return set()
        live: Set[int] = set()
        for line in out.splitlines():
            try:
                pid = int(line.strip())
            except ValueError:
                continue
            if pid in want:
                live.add(pid)
        return live


class PsutilProcessTable:
    """Process table from psutil (no subprocess per query)."""

    def children_map(self) -> Optional[Dict[int, List[int]]]:
        children: Dict[int, List[int]] = {}
        try:
            for proc in psutil.process_iter(["pid", "ppid"]):
                info = proc.info
                pid = info.get("pid")
                ppid = info.get("ppid")
                if pid is None or ppid is None:
                    continue
                children.setdefault(int(ppid), []).append(int(pid))
        except (psutil.Error, OSError):
            return None
        return children

    def live_pids(self, pids: Iterable[int]) -> Set[int]:
        live: Set[int] = set()
        for pid in pids:
            try:
                proc = psutil.Process(int(pid))
                if proc.status() != psutil.STATUS_ZOMBIE:
                    live.add(int(pid))
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return live


def _send_signal(pid: int, sig: signal.Signals) -> None:
    try:
        os.kill(int(pid), sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        logger.debug("signal %s to pid %s denied", sig.name, pid)


class ProcessTree:
    """Terminates a process together with every descendant it spawned."""

    def __init__(
        self,
        table: Optional[ProcessTable] = None,
        *,
        grace_seconds: float = 0.3,
        sleep: Callable[[float], None] = time.sleep,
        send_signal: Callable[[int, signal.Signals], None] = _send_signal,
    ) -> None:
        self._table: ProcessTable = table or PsutilProcessTable()
        self._grace = max(0.0, float(grace_seconds))
        self._sleep = sleep
        self._send_signal = send_signal

    def descendants(self, roots: Iterable[int]) -> List[int]:
        return collect_descendants(roots, self._table.children_map())

    def terminate(self, roots: Iterable[int]) -> List[int]:
        """SIGTERM the whole tree, wait the grace period, SIGKILL survivors.

        The tree is captured before any signal is sent so that children
        reparented on their parent's death are still reached. Returns the
        pids that needed SIGKILL.
        """
        pids = self.descendants(roots)
        if not pids:
            return []
        for pid in pids:
            self._send_signal(pid, signal.SIGTERM)
        if self._grace > 0:
            self._sleep(self._grace)
        live = self._table.live_pids(pids)
        survivors = [p for p in pids if p in live]
        for pid in survivors:
            self._send_signal(pid, signal.SIGKILL)
        if survivors:
            logger.info("killed %d process(es) that ignored SIGTERM", len(survivors), extra={"pid": pids[0]})
        return survivors
