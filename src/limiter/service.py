import asyncio
import logging
from typing import Any, Dict, Optional

from providers.base import ProviderAdapter
from state.ledger import UsageLedger
from state.store import UsageStore
from .clock import Clock, SystemClock
from .gate import RateGate
from .queue import AdmissionQueue
from .settings import LimiterSettings

logger = logging.getLogger(__name__)


class GeminiRateLimiter:
    """Serializes calls to a rate-limited generative-AI provider.

    Construct one instance per process, call ``init()`` before use and
    ``shutdown()`` on exit. Every call goes through the FIFO admission queue
    and is counted in the usage ledger.
    """

    def __init__(
        self,
        provider: ProviderAdapter,
        ledger: UsageLedger,
        settings: Optional[LimiterSettings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._provider = provider
        self._ledger = ledger
        self._settings = settings or LimiterSettings()
        self._clock = clock or SystemClock()
        self._gate = RateGate(ledger, self._settings, self._clock)
        self._queue = AdmissionQueue(self._gate, ledger, self._clock)
        self._sync_task: Optional[asyncio.Task] = None

    @classmethod
    def from_store(
        cls,
        provider: ProviderAdapter,
        store: UsageStore,
        settings: Optional[LimiterSettings] = None,
        clock: Optional[Clock] = None,
    ) -> "GeminiRateLimiter":
        settings = settings or LimiterSettings()
        clock = clock or SystemClock()
        ledger = UsageLedger(
            store,
            clock,
            load_max_retries=settings.load_max_retries,
            load_backoff=settings.load_backoff,
            persist_max_retries=settings.persist_max_retries,
            persist_backoff=settings.persist_backoff,
        )
        return cls(provider, ledger, settings=settings, clock=clock)

    @property
    def ledger(self) -> UsageLedger:
        return self._ledger

    @property
    def settings(self) -> LimiterSettings:
        return self._settings

    async def init(self) -> bool:
        ok = await self._ledger.load()
        if ok:
            logger.info(
                "Gemini rate limiter initialized. Usage today: %d/%d",
                self._ledger.requests_today(),
                self._settings.rpd,
            )
        else:
            logger.error("Gemini rate limiter failed to initialize; AI features are disabled")
        if self._settings.sync_interval and self._sync_task is None:
            self._sync_task = asyncio.get_running_loop().create_task(self._sync_loop())
        return ok

    async def shutdown(self) -> None:
        if self._sync_task is not None:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None
        await self._ledger.persist()

    async def _sync_loop(self) -> None:
        interval = float(self._settings.sync_interval or 60.0)
        while True:
            await self._clock.sleep(interval)
            try:
                await self._ledger.persist()
            except Exception as e:  # pragma: no cover - persist() handles store errors
                logger.warning("Periodic usage sync failed: %s", e)

    async def submit(self, execute, model: Optional[str] = None) -> Any:
        """Queue an arbitrary coroutine function behind the rate gate."""
        return await self._queue.submit(execute, model or self._settings.default_model)

    async def generate_content(
        self,
        contents: str,
        model: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        model = model or self._settings.default_model

        async def execute() -> Dict[str, Any]:
            return await self._provider.generate_content(model=model, contents=contents, config=config)

        return await self._queue.submit(execute, model)

    def can_make_request(self) -> bool:
        return self._gate.can_make_request()

    def should_use_fallback(self) -> bool:
        return self._gate.should_use_fallback()

    def get_usage_stats(self) -> Dict[str, Any]:
        rpm_pct, rpd_pct = self._gate.usage_percentages()
        return {
            "requestsLastMinute": self._ledger.requests_in_last_minute(),
            "requestsToday": self._ledger.requests_today(),
            "limits": {"rpm": self._settings.rpm, "rpd": self._settings.rpd},
            "percentageUsed": {"rpm": rpm_pct, "rpd": rpd_pct},
            "canMakeRequest": self._gate.can_make_request(),
            "queueLength": len(self._queue),
        }
