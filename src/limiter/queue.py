import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Optional

from state.ledger import LedgerState, UsageLedger
from .clock import Clock
from .exceptions import DailyLimitReachedError, LimiterUnavailableError, UsagePersistenceError
from .gate import GateReason, RateGate

logger = logging.getLogger(__name__)


@dataclass
class QueuedRequest:
    execute: Callable[[], Awaitable[Any]]
    model: str
    future: "asyncio.Future[Any]"


class AdmissionQueue:
    """FIFO queue drained by a single task, one dispatch at a time.

    The drain task is started on demand and exits when the queue is empty.
    Only the drain task appends to the ledger.
    """

    def __init__(self, gate: RateGate, ledger: UsageLedger, clock: Clock) -> None:
        self._gate = gate
        self._ledger = ledger
        self._clock = clock
        self._items: Deque[QueuedRequest] = deque()
        self._drain_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._items)

    def submit(self, execute: Callable[[], Awaitable[Any]], model: str) -> "asyncio.Future[Any]":
        loop = asyncio.get_running_loop()
        future: "asyncio.Future[Any]" = loop.create_future()
        self._items.append(QueuedRequest(execute=execute, model=model, future=future))
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = loop.create_task(self._drain())
        return future

    async def _drain(self) -> None:
        while self._items:
            try:
                await self._wait_for_slot()
            except (DailyLimitReachedError, LimiterUnavailableError) as e:
                self._reject_all(e)
                break

            item = self._items.popleft()
            await self._dispatch(item)

    async def _wait_for_slot(self) -> None:
        while True:
            decision = self._gate.check()
            if decision.allowed:
                return

            if decision.reason == GateReason.DAILY_LIMIT:
                logger.warning("Daily limit reached (%d requests today)", self._ledger.requests_today())
                raise DailyLimitReachedError(requests_today=self._ledger.requests_today())

            if decision.reason == GateReason.UNINITIALIZED:
                if self._ledger.state == LedgerState.LOADING:
                    await self._ledger.wait_until_loaded()
                    continue
                raise LimiterUnavailableError(f"Usage ledger is {self._ledger.state.value}; AI requests are blocked")

            await self._clock.sleep(decision.retry_after or 0.0)

    async def _dispatch(self, item: QueuedRequest) -> None:
        started = self._clock.time()
        self._ledger.mark_dispatched(started)
        result: Any = None
        error: Optional[BaseException] = None
        try:
            result = await item.execute()
        except Exception as e:
            error = e

        # the call went out whether or not it raised
        self._ledger.record_request(item.model, started)
        persisted = await self._ledger.persist()

        if item.future.done():
            return
        if not persisted:
            item.future.set_exception(
                UsagePersistenceError("Failed to persist usage data. Request blocked for safety.")
            )
        elif error is not None:
            item.future.set_exception(error)
        else:
            item.future.set_result(result)

    def _reject_all(self, error: Exception) -> None:
        rejected = 0
        while self._items:
            item = self._items.popleft()
            if not item.future.done():
                item.future.set_exception(error)
                rejected += 1
        if rejected:
            logger.warning("Rejected %d queued request(s): %s", rejected, error)
