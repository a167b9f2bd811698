from __future__ import annotations

import logging
import random
import re
import threading
import time
from typing import Callable, Dict, List, Optional

from pydantic import ValidationError

from ..contracts.v1 import HeartbeatRecord, HeartbeatStatus, UsageStats
from ..errors import StoreUnavailableError
from .store import HEARTBEAT_CHANNEL, PANE_PREFIX, KeyValueStore


logger = logging.getLogger("coders.heartbeat")

HEALTHY_MAX_AGE = 60.0
STALE_MAX_AGE = 300.0

# Record lifetime relative to the publish interval; a missed publish or two is tolerated.
TTL_FACTOR = 2.5
BACKOFF_BASE = 1.0
BACKOFF_MAX = 30.0

_SESSION_PCT_RE = re.compile(r"Current session\s*\n[█\s]*(\d+)%\s*used")
_WEEKLY_PCT_RE = re.compile(r"Current week \(all models\)\s*\n[█\s]*(\d+)%\s*used")
_COST_RE = re.compile(r"(?:Total )?cost:\s*\$([0-9.]+)", re.IGNORECASE)
_TOKENS_RE = re.compile(r"(?:Total )?tokens:\s*(\d+)", re.IGNORECASE)
_API_CALLS_RE = re.compile(r"API calls:\s*(\d+)", re.IGNORECASE)

# Counters are only trusted from the most recent lines of the sample.
_USAGE_SCAN_LINES = 50


def heartbeat_key(session_id: str) -> str:
    return PANE_PREFIX + session_id


def classify_heartbeat(age_seconds: Optional[float]) -> HeartbeatStatus:
    """healthy below 60s, stale below 300s, dead otherwise (including no record)."""
    if age_seconds is None:
        return "dead"
    if age_seconds < HEALTHY_MAX_AGE:
        return "healthy"
    if age_seconds < STALE_MAX_AGE:
        return "stale"
    return "dead"


def parse_usage(text: str) -> Optional[UsageStats]:
    """Scrape usage counters a tool prints into its terminal."""
    if not text:
        return None
    stats = UsageStats()
    m = _SESSION_PCT_RE.search(text)
    if m:
        stats.session_limit_pct = float(m.group(1))
    m = _WEEKLY_PCT_RE.search(text)
    if m:
        stats.weekly_limit_pct = float(m.group(1))

    for line in reversed(text.splitlines()[-_USAGE_SCAN_LINES:]):
        line = line.strip()
        if not stats.cost:
            m = _COST_RE.search(line)
            if m:
                stats.cost = "$" + m.group(1)
        if not stats.tokens:
            m = _TOKENS_RE.search(line)
            if m:
                stats.tokens = int(m.group(1))
        if not stats.api_calls:
            m = _API_CALLS_RE.search(line)
            if m:
                stats.api_calls = int(m.group(1))
    return None if stats.is_empty() else stats


def read_heartbeat(store: KeyValueStore, session_id: str) -> Optional[HeartbeatRecord]:
    try:
        doc = store.get(heartbeat_key(session_id))
    except StoreUnavailableError as e:
        logger.warning("heartbeat lookup failed: %s", e, extra={"session_id": session_id})
        return None
    if doc is None:
        return None
    try:
        return HeartbeatRecord.model_validate(doc)
    except ValidationError:
        return None


def list_heartbeats(store: KeyValueStore) -> Dict[str, HeartbeatRecord]:
    out: Dict[str, HeartbeatRecord] = {}
    try:
        keys = store.keys(PANE_PREFIX)
    except StoreUnavailableError as e:
        logger.warning("heartbeat scan failed: %s", e)
        return out
    for key in keys:
        sid = key[len(PANE_PREFIX):]
        rec = read_heartbeat(store, sid)
        if rec is not None:
            out[sid] = rec
    return out


def backoff_delay(attempt: int, *, rand: Callable[[], float] = random.random) -> float:
    """Delay before retry number `attempt` (1-based): doubling, jittered, capped."""
    exp = min(BACKOFF_MAX, BACKOFF_BASE * (2 ** max(0, attempt - 1)))
    return min(BACKOFF_MAX, exp + rand() * 0.25 * exp)


class HeartbeatPublisher:
    """Periodically writes this session's liveness record to the shared store.

    Store failures never end the publisher: it keeps retrying with capped
    exponential backoff until `stop()` is called or the watched process exits.
    """

    def __init__(
        self,
        store: KeyValueStore,
        session_id: str,
        *,
        interval: float = 30.0,
        pane_id: str = "",
        task: str = "",
        parent_session_id: Optional[str] = None,
        output_source: Optional[Callable[[], str]] = None,
        is_alive: Optional[Callable[[], bool]] = None,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self._store = store
        self.session_id = session_id
        self.interval = max(0.1, float(interval))
        self.pane_id = pane_id or session_id
        self.task = task
        self.parent_session_id = parent_session_id or None
        self._output_source = output_source
        self._is_alive = is_alive
        self._rand = rand
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.failures = 0

    @property
    def ttl(self) -> float:
        return self.interval * TTL_FACTOR

    def build_record(self) -> HeartbeatRecord:
        usage = None
        if self._output_source is not None:
            try:
                usage = parse_usage(self._output_source())
            except Exception as e:
                logger.debug("usage sample failed: %s", e, extra={"session_id": self.session_id})
        return HeartbeatRecord(
            pane_id=self.pane_id,
            session_id=self.session_id,
            task=self.task,
            parent_session_id=self.parent_session_id,
            usage=usage,
        )

    def publish_once(self) -> HeartbeatRecord:
        rec = self.build_record()
        doc = rec.model_dump()
        self._store.set(heartbeat_key(self.session_id), doc, ttl=self.ttl)
        self._store.publish(HEARTBEAT_CHANNEL, doc)
        return rec

    def _watched_alive(self) -> bool:
        if self._is_alive is None:
            return True
        try:
            return bool(self._is_alive())
        except Exception:
            return False

    def run(self) -> None:
        """Publish until stopped. Blocks the calling thread."""
        logger.info("heartbeat started (every %.0fs)", self.interval, extra={"session_id": self.session_id})
        while not self._stop.is_set():
            if not self._watched_alive():
                logger.info("watched process exited; heartbeat stopping", extra={"session_id": self.session_id})
                break
            try:
                self.publish_once()
                self.failures = 0
                delay = self.interval
            except StoreUnavailableError as e:
                self.failures += 1
                delay = backoff_delay(self.failures, rand=self._rand)
                logger.warning(
                    "heartbeat publish failed (attempt %d, retry in %.1fs): %s",
                    self.failures,
                    delay,
                    e,
                    extra={"session_id": self.session_id},
                )
            self._stop.wait(delay)
        logger.info("heartbeat stopped", extra={"session_id": self.session_id})

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run, name=f"coders-heartbeat-{self.session_id}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        self._thread = None


def heartbeat_age_seconds(rec: Optional[HeartbeatRecord], *, now: Optional[float] = None) -> Optional[float]:
    if rec is None:
        return None
    now_s = time.time() if now is None else float(now)
    return max(0.0, now_s - rec.timestamp / 1000.0)


def summarize_heartbeats(store: KeyValueStore, *, now: Optional[float] = None) -> List[Dict[str, object]]:
    rows: List[Dict[str, object]] = []
    for sid, rec in sorted(list_heartbeats(store).items()):
        age = heartbeat_age_seconds(rec, now=now)
        rows.append({"session_id": sid, "age_seconds": age, "status": classify_heartbeat(age), "record": rec.model_dump()})
    return rows
