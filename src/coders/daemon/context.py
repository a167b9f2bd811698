from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from ..kernel.registry import SessionRegistry
from ..kernel.settings import Settings, load_settings
from ..kernel.store import KeyValueStore, default_store
from .loop import BackgroundLoops
from .monitor import HealthMonitor


@dataclass
class DaemonContext:
    """Everything one daemon process owns; handed to every op handler."""
    settings: Settings
    store: KeyValueStore
    registry: SessionRegistry
    monitor: HealthMonitor
    loops: BackgroundLoops = field(default_factory=BackgroundLoops)

    def close(self) -> None:
        self.loops.cancel_all()
        self.monitor.stop()
        self.registry.close()


def build_context(
    *,
    settings: Optional[Settings] = None,
    store: Optional[KeyValueStore] = None,
    registry: Optional[SessionRegistry] = None,
) -> DaemonContext:
    s = settings or load_settings()
    st = store or default_store(s)
    reg = registry or SessionRegistry(settings=s, store=st)
    return DaemonContext(
        settings=s,
        store=st,
        registry=reg,
        monitor=HealthMonitor(reg, interval=s.health_check_interval),
    )
