"""
Daemon operation handlers, grouped by concern:

- session_ops: create/list/get/kill sessions, terminal input and output
- state_ops: promises, heartbeats, health results, crash events
- loop_ops: background loop start/status/stop
"""

from __future__ import annotations
