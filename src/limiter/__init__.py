from .exceptions import (
    DailyLimitReachedError,
    LimiterUnavailableError,
    RateLimiterError,
    UsagePersistenceError,
)
from .gate import GateDecision, GateReason, RateGate
from .queue import AdmissionQueue
from .service import GeminiRateLimiter
from .settings import LimiterSettings, load_limiter_settings

__all__ = [
    "AdmissionQueue",
    "DailyLimitReachedError",
    "GateDecision",
    "GateReason",
    "GeminiRateLimiter",
    "LimiterSettings",
    "LimiterUnavailableError",
    "RateGate",
    "RateLimiterError",
    "UsagePersistenceError",
    "load_limiter_settings",
]
