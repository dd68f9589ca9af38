import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from state.ledger import MINUTE_MS, UsageLedger
from .clock import Clock
from .settings import LimiterSettings

logger = logging.getLogger(__name__)

# ledger timestamps have millisecond resolution
_MIN_WAIT = 0.001


class GateReason(str, Enum):
    UNINITIALIZED = "uninitialized"
    DAILY_LIMIT = "daily_limit"
    MINUTE_WINDOW = "minute_window"
    COOLDOWN = "cooldown"


@dataclass
class GateDecision:
    allowed: bool
    reason: Optional[GateReason] = None
    retry_after: Optional[float] = None  # seconds; None when waiting cannot help


class RateGate:
    """Pure predicate over the ledger and the clock."""

    def __init__(self, ledger: UsageLedger, settings: LimiterSettings, clock: Clock) -> None:
        self._ledger = ledger
        self._settings = settings
        self._clock = clock

    def check(self) -> GateDecision:
        if not self._ledger.is_ready:
            return GateDecision(allowed=False, reason=GateReason.UNINITIALIZED)

        if self._ledger.requests_today() >= self._settings.rpd:
            return GateDecision(allowed=False, reason=GateReason.DAILY_LIMIT)

        now = self._clock.time()

        window = self._ledger.minute_window_entries()
        if len(window) >= self._settings.rpm:
            # the oldest entries must leave the window before one slot frees up
            release_ms = window[len(window) - self._settings.rpm] + MINUTE_MS
            return GateDecision(
                allowed=False,
                reason=GateReason.MINUTE_WINDOW,
                retry_after=max(_MIN_WAIT, release_ms / 1000.0 - now),
            )

        last = self._ledger.last_dispatch_at
        if last is not None:
            elapsed = now - last
            if elapsed < self._settings.min_request_interval:
                return GateDecision(
                    allowed=False,
                    reason=GateReason.COOLDOWN,
                    retry_after=max(_MIN_WAIT, self._settings.min_request_interval - elapsed),
                )

        return GateDecision(allowed=True)

    def can_make_request(self) -> bool:
        return self.check().allowed

    def usage_percentages(self) -> Tuple[float, float]:
        rpm_pct = self._ledger.requests_in_last_minute() / self._settings.rpm * 100
        rpd_pct = self._ledger.requests_today() / self._settings.rpd * 100
        return rpm_pct, rpd_pct

    def should_use_fallback(self) -> bool:
        """Advisory: True when callers should prefer a non-AI code path."""
        if not self._ledger.is_ready:
            logger.warning("Gemini rate limiter not ready; using fallback")
            return True
        rpm_pct, rpd_pct = self.usage_percentages()
        threshold = self._settings.fallback_threshold
        return rpm_pct >= threshold or rpd_pct >= threshold
