from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import ValidationError

from ..contracts.v1 import Promise
from ..errors import InvalidPromiseError, StoreUnavailableError
from .store import PROMISE_PREFIX, PROMISE_TTL, KeyValueStore


logger = logging.getLogger("coders.promises")


def promise_key(session_id: str) -> str:
    return PROMISE_PREFIX + session_id


class PromiseStore:
    """Completion signals, one per session, shared through the keyed store."""

    def __init__(self, store: KeyValueStore, *, ttl: float = PROMISE_TTL) -> None:
        self._store = store
        self._ttl = float(ttl)

    def set_promise(self, promise: Promise) -> Promise:
        self._store.set(promise_key(promise.session_id), promise.model_dump(), ttl=self._ttl)
        logger.info(
            "promise published: %s",
            promise.status,
            extra={"op": "promise_set", "session_id": promise.session_id},
        )
        return promise

    def publish(self, session_id: str, summary: str, *, status: str = "completed", blockers: Optional[List[str]] = None, files_changed: Optional[List[str]] = None) -> Promise:
        try:
            promise = Promise(
                session_id=session_id,
                summary=summary,
                status=status,  # type: ignore[arg-type]
                blockers=list(blockers or []),
                files_changed=list(files_changed or []),
            )
        except ValidationError as e:
            raise InvalidPromiseError(str(e)) from e
        return self.set_promise(promise)

    def get_promise(self, session_id: str) -> Optional[Promise]:
        """Return the session's promise, or None when absent.

        A store outage is reported as absent so that pollers keep waiting.
        """
        try:
            doc = self._store.get(promise_key(session_id))
        except StoreUnavailableError as e:
            logger.warning("promise lookup failed: %s", e, extra={"session_id": session_id})
            return None
        if doc is None:
            return None
        try:
            return Promise.model_validate(doc)
        except ValidationError:
            logger.warning("ignoring malformed promise", extra={"session_id": session_id})
            return None

    def delete_promise(self, session_id: str) -> bool:
        return self._store.delete(promise_key(session_id))

    def resume(self, session_id: str) -> bool:
        """Clear a completion signal so the session counts as active again."""
        return self.delete_promise(session_id)

    def list_promises(self) -> List[Promise]:
        out: List[Promise] = []
        for key in self._store.keys(PROMISE_PREFIX):
            p = self.get_promise(key[len(PROMISE_PREFIX):])
            if p is not None:
                out.append(p)
        out.sort(key=lambda p: p.timestamp, reverse=True)
        return out
