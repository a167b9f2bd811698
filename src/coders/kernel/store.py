"""Shared keyed store with per-key expiry and fire-and-forget channels.

Every session process (heartbeat sidecars, `coders promise` invocations) and
the daemon talk through this store. `RedisStore` is the shared one: keys carry
their own expiry, crash events live in capped lists and heartbeats are
broadcast on a pub/sub channel. `MemoryStore` is the in-process equivalent
used by tests and embedders.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol

import redis
from redis.exceptions import RedisError

from ..errors import StoreUnavailableError
from .settings import DEFAULT_REDIS_URL, Settings, load_settings


logger = logging.getLogger("coders.store")

Subscriber = Callable[[str, Dict[str, Any]], None]

# Key layout shared by every component.
PANE_PREFIX = "coders:pane:"
PROMISE_PREFIX = "coders:promise:"
HEALTH_PREFIX = "coders:health:"
HEALTH_SUMMARY_KEY = "coders:health:summary"
SESSION_STATE_PREFIX = "coders:session-state:"
CRASHES_PREFIX = "coders:crashes:"
LOOP_STATE_PREFIX = "coders:loop:state:"
LOOP_NOTIFY_PREFIX = "coders:loop:notify:"
HEARTBEAT_CHANNEL = "coders:heartbeats"

PROMISE_TTL = 24 * 3600.0
HEALTH_TTL = 10 * 60.0
HEALTH_SUMMARY_TTL = 5 * 60.0
SESSION_STATE_TTL = 24 * 3600.0
CRASHES_TTL = 24 * 3600.0
MAX_CRASH_EVENTS = 10
LOOP_STATE_TTL = 7 * 24 * 3600.0
LOOP_NOTIFY_TTL = 24 * 3600.0


class KeyValueStore(Protocol):
    def ping(self) -> bool: ...

    def get(self, key: str) -> Optional[Dict[str, Any]]: ...

    def set(self, key: str, value: Dict[str, Any], *, ttl: Optional[float] = None) -> None: ...

    def delete(self, key: str) -> bool: ...

    def keys(self, prefix: str) -> List[str]: ...

    def lpush_trim(self, key: str, value: Dict[str, Any], *, max_len: int, ttl: Optional[float] = None) -> None: ...

    def lrange(self, key: str, count: int = -1) -> List[Dict[str, Any]]: ...

    def publish(self, channel: str, message: Dict[str, Any]) -> None: ...

    def subscribe(self, channel: str, callback: Subscriber) -> Callable[[], None]: ...


class _Channels:
    """In-process channel fan-out for MemoryStore."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subs: Dict[str, List[Subscriber]] = {}

    def subscribe(self, channel: str, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subs.setdefault(channel, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                subs = self._subs.get(channel) or []
                if callback in subs:
                    subs.remove(callback)

        return _unsubscribe

    def deliver(self, channel: str, message: Dict[str, Any]) -> None:
        with self._lock:
            subs = list(self._subs.get(channel) or [])
        for cb in subs:
            try:
                cb(channel, dict(message))
            except Exception:
                logger.exception("channel subscriber failed: %s", channel)


class MemoryStore:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._values: Dict[str, tuple] = {}
        self._lists: Dict[str, tuple] = {}
        self._channels = _Channels()

    def _expires(self, ttl: Optional[float]) -> Optional[float]:
        if ttl is None or ttl <= 0:
            return None
        return self._clock() + float(ttl)

    def _alive(self, expires_at: Optional[float]) -> bool:
        return expires_at is None or self._clock() < expires_at

    def ping(self) -> bool:
        return True

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._values.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if not self._alive(expires_at):
                self._values.pop(key, None)
                return None
            return json.loads(value)

    def set(self, key: str, value: Dict[str, Any], *, ttl: Optional[float] = None) -> None:
        encoded = json.dumps(value, ensure_ascii=False)
        with self._lock:
            self._values[key] = (encoded, self._expires(ttl))

    def delete(self, key: str) -> bool:
        with self._lock:
            a = self._values.pop(key, None)
            b = self._lists.pop(key, None)
            return a is not None or b is not None

    def keys(self, prefix: str) -> List[str]:
        with self._lock:
            out = []
            for k, (_, expires_at) in list(self._values.items()) + list(self._lists.items()):
                if k.startswith(prefix) and self._alive(expires_at):
                    out.append(k)
            return sorted(out)

    def lpush_trim(self, key: str, value: Dict[str, Any], *, max_len: int, ttl: Optional[float] = None) -> None:
        encoded = json.dumps(value, ensure_ascii=False)
        with self._lock:
            items, expires_at = self._lists.get(key, ([], None))
            if not self._alive(expires_at):
                items = []
            items = [encoded] + list(items)
            if max_len > 0:
                items = items[:max_len]
            self._lists[key] = (items, self._expires(ttl) if ttl else expires_at)

    def lrange(self, key: str, count: int = -1) -> List[Dict[str, Any]]:
        with self._lock:
            entry = self._lists.get(key)
            if entry is None:
                return []
            items, expires_at = entry
            if not self._alive(expires_at):
                self._lists.pop(key, None)
                return []
            if count >= 0:
                items = items[:count]
            return [json.loads(x) for x in items]

    def publish(self, channel: str, message: Dict[str, Any]) -> None:
        self._channels.deliver(channel, message)

    def subscribe(self, channel: str, callback: Subscriber) -> Callable[[], None]:
        return self._channels.subscribe(channel, callback)


@contextmanager
def _store_errors(what: str) -> Iterator[None]:
    try:
        yield
    except RedisError as e:
        raise StoreUnavailableError(f"{what}: {e}") from e


def _ttl_ms(ttl: Optional[float]) -> Optional[int]:
    if ttl is None or ttl <= 0:
        return None
    return max(1, int(float(ttl) * 1000))


def _glob_escape(prefix: str) -> str:
    out = []
    for ch in prefix:
        if ch in "*?[]\\":
            out.append("\\")
        out.append(ch)
    return "".join(out)


def _decode(raw: Any) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        doc = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return doc if isinstance(doc, dict) else None


class RedisStore:
    """Store on a Redis server, shared by every process on the host.

    Values are JSON documents under plain string keys (SET with PX), lists use
    LPUSH + LTRIM, and channels are Redis pub/sub. Any Redis error surfaces as
    StoreUnavailableError.
    """

    def __init__(
        self,
        url: str = DEFAULT_REDIS_URL,
        *,
        client: Optional[redis.Redis] = None,
        timeout: float = 2.0,
    ) -> None:
        self.url = url
        if client is None:
            client = redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=timeout,
                socket_connect_timeout=timeout,
            )
        self._client = client

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError:
            return False

    def close(self) -> None:
        try:
            self._client.close()
        except RedisError:
            pass

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with _store_errors(f"get {key}"):
            raw = self._client.get(key)
        doc = _decode(raw)
        if raw is not None and doc is None:
            logger.warning("ignoring unreadable store value: %s", key)
        return doc

    def set(self, key: str, value: Dict[str, Any], *, ttl: Optional[float] = None) -> None:
        encoded = json.dumps(value, ensure_ascii=False)
        with _store_errors(f"set {key}"):
            self._client.set(key, encoded, px=_ttl_ms(ttl))

    def delete(self, key: str) -> bool:
        with _store_errors(f"delete {key}"):
            return bool(self._client.delete(key))

    def keys(self, prefix: str) -> List[str]:
        with _store_errors(f"scan {prefix}*"):
            found = set(self._client.scan_iter(match=_glob_escape(prefix) + "*", count=500))
        return sorted(str(k) for k in found)

    def lpush_trim(self, key: str, value: Dict[str, Any], *, max_len: int, ttl: Optional[float] = None) -> None:
        encoded = json.dumps(value, ensure_ascii=False)
        with _store_errors(f"lpush {key}"):
            pipe = self._client.pipeline()
            pipe.lpush(key, encoded)
            if max_len > 0:
                pipe.ltrim(key, 0, max_len - 1)
            ms = _ttl_ms(ttl)
            if ms is not None:
                pipe.pexpire(key, ms)
            pipe.execute()

    def lrange(self, key: str, count: int = -1) -> List[Dict[str, Any]]:
        if count == 0:
            return []
        with _store_errors(f"lrange {key}"):
            raw = self._client.lrange(key, 0, count - 1 if count > 0 else -1)
        out: List[Dict[str, Any]] = []
        for item in raw or []:
            doc = _decode(item)
            if doc is not None:
                out.append(doc)
        return out

    def publish(self, channel: str, message: Dict[str, Any]) -> None:
        with _store_errors(f"publish {channel}"):
            self._client.publish(channel, json.dumps(message, ensure_ascii=False))

    def subscribe(self, channel: str, callback: Subscriber) -> Callable[[], None]:
        """Deliver every message on `channel` to `callback` from a background thread."""

        def _handler(msg: Dict[str, Any]) -> None:
            payload = _decode(msg.get("data"))
            if payload is None:
                logger.warning("dropping non-JSON message on %s", channel)
                return
            try:
                callback(channel, payload)
            except Exception:
                logger.exception("channel subscriber failed: %s", channel)

        def _on_error(e: BaseException, _pubsub: Any, _worker: Any) -> None:
            logger.warning("subscription to %s interrupted: %s", channel, e)
            time.sleep(1.0)

        pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        with _store_errors(f"subscribe {channel}"):
            pubsub.subscribe(**{channel: _handler})
        worker = pubsub.run_in_thread(sleep_time=0.5, daemon=True, exception_handler=_on_error)

        def _unsubscribe() -> None:
            worker.stop()
            try:
                pubsub.close()
            except RedisError:
                pass

        return _unsubscribe


def default_store(settings: Optional[Settings] = None) -> RedisStore:
    s = settings or load_settings()
    return RedisStore(s.redis_url)
