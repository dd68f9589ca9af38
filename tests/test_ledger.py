import asyncio
import copy
from typing import Any, Dict, List

import pytest

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from state.ledger import LedgerState, UsageLedger
from state.models import USAGE_SINGLETON_ID
from state.store import UsageStore

NOON = 1760011200.0  # 2025-10-09T12:00:00Z
TODAY = "2025-10-09"


class FakeClock:
    def __init__(self, start: float = NOON):
        self.now = start
        self.sleeps: List[float] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(0.0, seconds)
        await asyncio.sleep(0)


class FakeCollection:
    def __init__(self):
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.fail_find = 0
        self.fail_update = 0
        self.update_calls = 0

    async def find_one(self, flt: Dict[str, Any]):
        if self.fail_find > 0:
            self.fail_find -= 1
            raise ConnectionError("mongo unavailable")
        doc = self.docs.get(flt["_id"])
        return copy.deepcopy(doc)

    async def insert_one(self, doc: Dict[str, Any]):
        self.docs[doc["_id"]] = copy.deepcopy(doc)

    async def update_one(self, flt: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        self.update_calls += 1
        if self.fail_update > 0:
            self.fail_update -= 1
            raise ConnectionError("mongo unavailable")
        doc = self.docs.setdefault(flt["_id"], {"_id": flt["_id"]})
        doc.update(copy.deepcopy(update["$set"]))


def _ms(ts: float) -> int:
    return int(ts * 1000)


def _ledger(col: FakeCollection, clock: FakeClock) -> UsageLedger:
    return UsageLedger(UsageStore(collection=col), clock)


@pytest.mark.asyncio
async def test_load_creates_record_when_missing():
    col = FakeCollection()
    ledger = _ledger(col, FakeClock())

    assert await ledger.load() is True
    assert ledger.state == LedgerState.READY
    doc = col.docs[USAGE_SINGLETON_ID]
    assert doc["last_reset_date"] == TODAY
    assert doc["requests_today"] == 0
    assert doc["request_log"] == []


@pytest.mark.asyncio
async def test_load_adopts_todays_log_and_prunes_stale_entries():
    col = FakeCollection()
    col.docs[USAGE_SINGLETON_ID] = {
        "_id": USAGE_SINGLETON_ID,
        "requests_today": 3,
        "last_reset_date": TODAY,
        "request_log": [
            {"timestamp": _ms(NOON - 25 * 3600), "model": "gemini-2.5-flash"},
            {"timestamp": _ms(NOON - 2 * 3600), "model": "gemini-2.5-flash"},
            {"timestamp": _ms(NOON - 30), "model": "gemini-2.5-flash"},
        ],
    }
    ledger = _ledger(col, FakeClock())

    assert await ledger.load() is True
    assert len(ledger.entries) == 2
    assert ledger.requests_today() == 2
    assert ledger.requests_in_last_minute() == 1
    assert ledger.last_dispatch_at == NOON - 30


@pytest.mark.asyncio
async def test_load_resets_record_from_prior_day():
    col = FakeCollection()
    col.docs[USAGE_SINGLETON_ID] = {
        "_id": USAGE_SINGLETON_ID,
        "requests_today": 150,
        "last_reset_date": "2025-10-08",
        "request_log": [{"timestamp": _ms(NOON - 14 * 3600), "model": "gemini-2.5-flash"}],
    }
    ledger = _ledger(col, FakeClock())

    assert await ledger.load() is True
    assert ledger.entries == []
    assert ledger.requests_today() == 0
    doc = col.docs[USAGE_SINGLETON_ID]
    assert doc["requests_today"] == 0
    assert doc["last_reset_date"] == TODAY
    assert doc["request_log"] == []


@pytest.mark.asyncio
async def test_persist_round_trip_reproduces_counts():
    col = FakeCollection()
    clock = FakeClock()
    first = _ledger(col, clock)
    await first.load()
    for offset in (120, 40, 10):
        first.record_request("gemini-2.5-flash", NOON - offset)
    assert await first.persist() is True

    second = _ledger(col, clock)
    await second.load()
    assert second.requests_today() == first.requests_today() == 3
    assert second.requests_in_last_minute() == first.requests_in_last_minute() == 2
    assert col.docs[USAGE_SINGLETON_ID]["requests_today"] == 3


@pytest.mark.asyncio
async def test_load_retries_with_growing_backoff():
    col = FakeCollection()
    col.fail_find = 2
    clock = FakeClock()
    ledger = _ledger(col, clock)

    assert await ledger.load() is True
    assert clock.sleeps == [2.0, 4.0]


@pytest.mark.asyncio
async def test_load_exhaustion_leaves_ledger_failed():
    col = FakeCollection()
    col.fail_find = 100
    clock = FakeClock()
    ledger = _ledger(col, clock)

    assert await ledger.load() is False
    assert ledger.state == LedgerState.FAILED
    assert ledger.is_ready is False
    assert clock.sleeps == [2.0, 4.0, 6.0, 8.0]


@pytest.mark.asyncio
async def test_persist_failure_blocks_until_next_successful_write():
    col = FakeCollection()
    clock = FakeClock()
    ledger = _ledger(col, clock)
    await ledger.load()
    ledger.record_request("gemini-2.5-flash")

    col.fail_update = 3
    assert await ledger.persist() is False
    assert ledger.state == LedgerState.FAILED
    assert clock.sleeps == [1.0, 1.0]

    assert await ledger.persist() is True
    assert ledger.state == LedgerState.READY
    assert col.docs[USAGE_SINGLETON_ID]["requests_today"] == 1


@pytest.mark.asyncio
async def test_persist_is_skipped_before_first_load():
    col = FakeCollection()
    ledger = _ledger(col, FakeClock())

    assert await ledger.persist() is False
    assert col.update_calls == 0


@pytest.mark.asyncio
async def test_future_entries_still_count_toward_today():
    col = FakeCollection()
    col.docs[USAGE_SINGLETON_ID] = {
        "_id": USAGE_SINGLETON_ID,
        "requests_today": 1,
        "last_reset_date": TODAY,
        "request_log": [{"timestamp": _ms(NOON + 300), "model": "gemini-2.5-flash"}],
    }
    ledger = _ledger(col, FakeClock())
    await ledger.load()

    assert ledger.requests_today() == 1
    assert ledger.requests_in_last_minute() == 1


@pytest.mark.asyncio
async def test_log_timestamps_round_up_and_last_dispatch_is_exact():
    col = FakeCollection()
    ledger = _ledger(col, FakeClock())
    await ledger.load()

    ledger.record_request("gemini-2.5-flash", NOON + 0.0009)
    assert ledger.entries[0].timestamp == _ms(NOON) + 1
    assert ledger.last_dispatch_at == NOON + 0.0009
