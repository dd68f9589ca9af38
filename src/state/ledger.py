from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from .models import RequestLogEntry, UsageRecord
from .store import UsageStore

if TYPE_CHECKING:
    from limiter.clock import Clock

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
DAY_MS = 24 * 60 * 60 * 1000


class LedgerState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


def utc_date(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).date().isoformat()


def _start_of_day_ms(ts: float) -> int:
    day = datetime.fromtimestamp(ts, tz=timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
    return int(day.timestamp() * 1000)


class UsageLedger:
    """Time-stamped log of dispatched requests, mirrored to the usage store.

    The ledger is fail-closed: until load() succeeds, and again after a
    persist() exhausts its retries, ``is_ready`` is False and callers must
    not dispatch.
    """

    def __init__(
        self,
        store: UsageStore,
        clock: "Clock",
        load_max_retries: int = 5,
        load_backoff: float = 2.0,
        persist_max_retries: int = 3,
        persist_backoff: float = 1.0,
    ) -> None:
        self._store = store
        self._clock = clock
        self._load_max_retries = load_max_retries
        self._load_backoff = load_backoff
        self._persist_max_retries = persist_max_retries
        self._persist_backoff = persist_backoff

        self._log: List[RequestLogEntry] = []
        self._state = LedgerState.UNLOADED
        self._loaded_once = False
        self._last_dispatch_at: Optional[float] = None
        self._load_done = asyncio.Event()

    @property
    def state(self) -> LedgerState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == LedgerState.READY

    @property
    def entries(self) -> List[RequestLogEntry]:
        return list(self._log)

    @property
    def last_dispatch_at(self) -> Optional[float]:
        """Seconds since the epoch of the most recent dispatch, if any."""
        return self._last_dispatch_at

    def _now_ms(self) -> int:
        return int(self._clock.time() * 1000)

    async def load(self) -> bool:
        self._state = LedgerState.LOADING
        self._load_done.clear()
        attempt = 0
        try:
            while attempt < self._load_max_retries:
                attempt += 1
                try:
                    await self._load_once()
                    self._state = LedgerState.READY
                    self._loaded_once = True
                    logger.info("Usage ledger loaded; requests today: %d", self.requests_today())
                    return True
                except Exception as e:
                    logger.warning(
                        "Failed to load usage ledger (attempt %d/%d): %s",
                        attempt,
                        self._load_max_retries,
                        e,
                    )
                    if attempt < self._load_max_retries:
                        await self._clock.sleep(self._load_backoff * attempt)

            logger.error("Usage ledger could not be loaded after %d attempts; AI requests are blocked", attempt)
            self._state = LedgerState.FAILED
            return False
        finally:
            self._load_done.set()

    async def _load_once(self) -> None:
        now = self._clock.time()
        today = utc_date(now)
        record = await self._store.fetch()

        if record is None:
            await self._store.insert(
                UsageRecord(requests_today=0, last_reset_date=today, request_log=[], updated_at=_utcnow(now))
            )
            self._log = []
        elif record.last_reset_date == today:
            self._log = list(record.request_log)
            self.prune()
        else:
            logger.info("Usage record is from %s; resetting counters for %s", record.last_reset_date, today)
            await self._store.update(
                UsageRecord(requests_today=0, last_reset_date=today, request_log=[], updated_at=_utcnow(now))
            )
            self._log = []

        newest = max((e.timestamp for e in self._log), default=None)
        self._last_dispatch_at = newest / 1000.0 if newest is not None else None

    async def wait_until_loaded(self) -> None:
        if self._state != LedgerState.LOADING:
            return
        await self._load_done.wait()

    async def persist(self) -> bool:
        """Write the in-memory log back to the store.

        A failure after all retries marks the ledger FAILED. A later
        successful persist restores READY, since the in-memory log is
        authoritative.
        """
        if not self._loaded_once:
            return False

        self.prune()
        attempt = 0
        while attempt < self._persist_max_retries:
            attempt += 1
            try:
                now = self._clock.time()
                await self._store.update(
                    UsageRecord(
                        requests_today=self.requests_today(),
                        last_reset_date=utc_date(now),
                        request_log=list(self._log),
                        updated_at=_utcnow(now),
                    )
                )
                if self._state == LedgerState.FAILED:
                    logger.info("Usage ledger persisted again; AI requests unblocked")
                self._state = LedgerState.READY
                return True
            except Exception as e:
                logger.warning(
                    "Failed to persist usage ledger (attempt %d/%d): %s",
                    attempt,
                    self._persist_max_retries,
                    e,
                )
                if attempt < self._persist_max_retries:
                    await self._clock.sleep(self._persist_backoff)

        logger.error("Usage ledger could not be persisted after %d attempts; blocking AI requests", attempt)
        self._state = LedgerState.FAILED
        return False

    def mark_dispatched(self, timestamp: Optional[float] = None) -> float:
        ts = timestamp if timestamp is not None else self._clock.time()
        self._last_dispatch_at = ts
        return ts

    def record_request(self, model: str, timestamp: Optional[float] = None) -> None:
        """Append a log entry for a call that was actually sent."""
        ts = timestamp if timestamp is not None else self._clock.time()
        # rounded up so an entry never leaves the minute window early
        self._log.append(RequestLogEntry(timestamp=math.ceil(ts * 1000), model=model))
        if self._last_dispatch_at is None or ts > self._last_dispatch_at:
            self._last_dispatch_at = ts
        self.prune()

    def prune(self) -> None:
        cutoff = self._now_ms() - DAY_MS
        self._log = [e for e in self._log if e.timestamp > cutoff]

    def requests_in_last_minute(self) -> int:
        cutoff = self._now_ms() - MINUTE_MS
        return sum(1 for e in self._log if e.timestamp > cutoff)

    def minute_window_entries(self) -> List[int]:
        cutoff = self._now_ms() - MINUTE_MS
        return sorted(e.timestamp for e in self._log if e.timestamp > cutoff)

    def requests_today(self) -> int:
        start = _start_of_day_ms(self._clock.time())
        return sum(1 for e in self._log if e.timestamp >= start)


def _utcnow(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)
