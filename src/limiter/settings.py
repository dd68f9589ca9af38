import os
import logging
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class LimiterSettings(BaseModel):
    rpm: int = Field(default=8, gt=0)  # requests per minute
    rpd: int = Field(default=200, gt=0)  # requests per calendar day (UTC)
    min_request_interval: float = Field(default=8.0, ge=0)  # seconds between dispatch starts
    sync_interval: Optional[float] = Field(default=60.0, gt=0)  # None disables periodic sync
    fallback_threshold: float = Field(default=90.0, gt=0, le=100)  # percent of either budget
    default_model: str = "gemini-2.5-flash"

    load_max_retries: int = Field(default=5, ge=1)
    load_backoff: float = Field(default=2.0, ge=0)
    persist_max_retries: int = Field(default=3, ge=1)
    persist_backoff: float = Field(default=1.0, ge=0)


_ENV_OVERRIDES = {
    "GEMINI_RPM": "rpm",
    "GEMINI_RPD": "rpd",
    "GEMINI_MIN_INTERVAL": "min_request_interval",
}


def _default_limits_path() -> str:
    return os.getenv(
        "GEMINI_LIMITS_PATH",
        os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "gemini_limits.yaml"),
    )


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning("Gemini limits file not found at %s; using defaults", path)
        return {}
    except Exception as e:
        logger.warning("Failed to load Gemini limits: %s", e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Gemini limits file %s is not a mapping; using defaults", path)
        return {}
    section = data.get("gemini", data)
    return section if isinstance(section, dict) else {}


def load_limiter_settings(path: Optional[str] = None) -> LimiterSettings:
    """Build settings from the limits YAML, then apply env overrides.

    An invalid file falls back to defaults with a warning; invalid env
    overrides raise, since they are explicit operator input.
    """
    raw = _read_yaml(path or _default_limits_path())
    try:
        settings = LimiterSettings(**raw)
    except ValidationError as e:
        logger.warning("Invalid Gemini limits configuration, using defaults: %s", e)
        settings = LimiterSettings()

    overrides: Dict[str, Any] = {}
    for env_name, field in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            overrides[field] = value
    if overrides:
        settings = LimiterSettings(**{**settings.model_dump(), **overrides})
    return settings
