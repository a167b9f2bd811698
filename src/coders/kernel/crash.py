from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import ValidationError

from ..contracts.v1 import CrashEvent, SessionState
from ..errors import StoreUnavailableError
from ..util.time import now_ms
from .store import (
    CRASHES_PREFIX,
    CRASHES_TTL,
    MAX_CRASH_EVENTS,
    SESSION_STATE_PREFIX,
    SESSION_STATE_TTL,
    KeyValueStore,
)


logger = logging.getLogger("coders.crash")


class CrashLog:
    """Restart metadata and the bounded crash history of each session."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def save_state(self, state: SessionState) -> None:
        self._store.set(SESSION_STATE_PREFIX + state.session_id, state.model_dump(), ttl=SESSION_STATE_TTL)

    def get_state(self, session_id: str) -> Optional[SessionState]:
        try:
            doc = self._store.get(SESSION_STATE_PREFIX + session_id)
        except StoreUnavailableError as e:
            logger.warning("session state lookup failed: %s", e, extra={"session_id": session_id})
            return None
        if doc is None:
            return None
        try:
            return SessionState.model_validate(doc)
        except ValidationError:
            return None

    def delete_state(self, session_id: str) -> None:
        self._store.delete(SESSION_STATE_PREFIX + session_id)

    def record(self, event: CrashEvent) -> None:
        self._store.lpush_trim(
            CRASHES_PREFIX + event.session_id,
            event.model_dump(),
            max_len=MAX_CRASH_EVENTS,
            ttl=CRASHES_TTL,
        )

    def events(self, session_id: str) -> List[CrashEvent]:
        """Most recent first."""
        out: List[CrashEvent] = []
        for doc in self._store.lrange(CRASHES_PREFIX + session_id):
            try:
                out.append(CrashEvent.model_validate(doc))
            except ValidationError:
                continue
        return out

    def on_unexpected_exit(self, state: SessionState, *, exit_code: int, reason: str = "") -> CrashEvent:
        """Record a crash and advance the restart counter.

        Returns the recorded event; `will_restart` tells the caller whether
        to relaunch. Once the limit is reached the state is dropped.
        """
        will_restart = state.restart_on_crash and state.restart_count < state.max_restarts
        if not reason:
            reason = f"process exited with code {exit_code}"
            if not will_restart and state.restart_on_crash:
                reason += f" (max restarts {state.max_restarts} reached)"
        event = CrashEvent(
            session_id=state.session_id,
            reason=reason,
            will_restart=will_restart,
            exit_code=exit_code,
        )
        self.record(event)
        if will_restart:
            state.restart_count += 1
            state.last_restart_at = now_ms()
            self.save_state(state)
        else:
            self.delete_state(state.session_id)
        logger.warning(
            "session crashed: %s",
            reason,
            extra={"session_id": state.session_id, "restart": state.restart_count},
        )
        return event
