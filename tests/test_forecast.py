import json
from typing import Any, Dict, List, Optional

import pytest

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from forecast.traffic import HistoricalDay, heuristic_predictions, parse_ai_predictions, predict_traffic
from limiter import DailyLimitReachedError


def _day(date: str, dow: str, evening: int) -> HistoricalDay:
    pattern = [0] * 24
    pattern[19] = evening
    pattern[20] = evening // 2
    return HistoricalDay(date=date, day_of_week=dow, hourly_pattern=pattern)


class FakeLimiter:
    def __init__(self, text: Optional[str] = None, error: Optional[Exception] = None, fallback: bool = False):
        self.text = text
        self.error = error
        self.fallback = fallback
        self.calls: List[Dict[str, Any]] = []

    def should_use_fallback(self) -> bool:
        return self.fallback

    async def generate_content(self, contents: str, model: Optional[str] = None, config: Optional[Dict[str, Any]] = None):
        self.calls.append({"contents": contents, "config": config})
        if self.error is not None:
            raise self.error
        return {"text": self.text}


def test_heuristic_uses_actuals_then_same_weekday_average():
    history = [
        _day("2025-10-02", "Thursday", 10),
        _day("2025-09-25", "Thursday", 6),
        _day("2025-10-01", "Wednesday", 40),
    ]
    today = [0] * 24
    today[9] = 3

    preds = heuristic_predictions(history, "Thursday", 12, today)
    assert len(preds) == 24
    assert preds[9].predicted_visitors == 3 and preds[9].confidence == "high"
    assert preds[19].predicted_visitors == 8
    assert preds[19].confidence == "medium"


def test_heuristic_falls_back_to_all_days_average():
    history = [_day("2025-10-01", "Wednesday", 4), _day("2025-09-30", "Tuesday", 8)]
    preds = heuristic_predictions(history, "Sunday", 0, [])
    assert preds[19].predicted_visitors == 6
    assert preds[19].confidence == "medium"


def test_heuristic_without_history_predicts_zero():
    preds = heuristic_predictions([], "Sunday", 10, [])
    assert preds[15].predicted_visitors == 0
    assert preds[15].confidence == "low"


def test_parse_ai_predictions_fills_missing_hours():
    raw = json.dumps({"predictions": [{"hour": "18:00", "visitors": 7.6, "confidence": "high"},
                                      {"hour": "19:00", "visitors": -2, "confidence": "weird"}]})
    preds = parse_ai_predictions(raw, 17, [1] * 17)
    assert preds[16].predicted_visitors == 1
    assert preds[17].predicted_visitors == 0 and preds[17].confidence == "low"
    assert preds[18].predicted_visitors == 8 and preds[18].confidence == "high"
    assert preds[19].predicted_visitors == 0 and preds[19].confidence == "medium"


@pytest.mark.asyncio
async def test_predict_traffic_uses_ai_when_quota_allows():
    limiter = FakeLimiter(text=json.dumps({"predictions": [{"hour": "20:00", "visitors": 12, "confidence": "high"}]}))
    history = [_day("2025-10-02", "Thursday", 10)]

    forecast = await predict_traffic(history, "Thursday", 18, [0] * 18, limiter=limiter)
    assert forecast.source == "ai"
    assert forecast.peak_hour == "20:00"
    assert forecast.peak_visitors == 12
    assert limiter.calls[0]["config"]["responseMimeType"] == "application/json"
    assert "Thursday" in limiter.calls[0]["contents"]


@pytest.mark.asyncio
async def test_predict_traffic_skips_ai_near_limits():
    limiter = FakeLimiter(text="{}", fallback=True)
    history = [_day("2025-10-02", "Thursday", 10)]

    forecast = await predict_traffic(history, "Thursday", 18, [0] * 18, limiter=limiter)
    assert forecast.source == "heuristic"
    assert limiter.calls == []
    assert forecast.peak_visitors == 10


@pytest.mark.asyncio
async def test_predict_traffic_falls_back_on_daily_limit():
    limiter = FakeLimiter(error=DailyLimitReachedError())
    history = [_day("2025-10-02", "Thursday", 10)]

    forecast = await predict_traffic(history, "Thursday", 18, [0] * 18, limiter=limiter)
    assert forecast.source == "heuristic"
    assert len(limiter.calls) == 1
    assert any("Peak traffic expected at 19:00" in i for i in forecast.insights)


def test_heuristic_rounds_half_visitors_up():
    history = [_day("2025-10-02", "Thursday", 2), _day("2025-09-25", "Thursday", 3)]
    preds = heuristic_predictions(history, "Thursday", 0, [])
    assert preds[19].predicted_visitors == 3
    # hour 20 averages 1 and 1
    assert preds[20].predicted_visitors == 1


def test_parse_ai_predictions_rounds_half_up():
    raw = json.dumps({"predictions": [{"hour": "18:00", "visitors": 4.5, "confidence": "high"}]})
    preds = parse_ai_predictions(raw, 18, [0] * 18)
    assert preds[18].predicted_visitors == 5
