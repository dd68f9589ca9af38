class RateLimiterError(Exception):
    """Base class for errors raised by the rate-gated queue."""


class DailyLimitReachedError(RateLimiterError):
    """The daily request budget is spent; not retried until the date rolls over."""

    code = "DAILY_LIMIT_REACHED"

    def __init__(self, requests_today: int = 0, rpd: int = 0) -> None:
        super().__init__(self.code)
        self.requests_today = requests_today
        self.rpd = rpd


class LimiterUnavailableError(RateLimiterError):
    """Usage state is unknown (not loaded or not persisted); requests are refused."""


class UsagePersistenceError(LimiterUnavailableError):
    """A call went out but its usage could not be persisted."""
