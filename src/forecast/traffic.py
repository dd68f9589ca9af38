import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

HOURS = 24

SYSTEM_INSTRUCTION = (
    "You are an expert in visitor traffic prediction for entertainment venues. "
    "Analyze patterns and provide structured JSON responses only."
)

RESPONSE_SCHEMA = {
    "type": "object",
    "properties": {
        "predictions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "hour": {"type": "string"},
                    "visitors": {"type": "number"},
                    "confidence": {"type": "string"},
                },
                "required": ["hour", "visitors", "confidence"],
            },
        },
    },
    "required": ["predictions"],
}

_CONFIDENCE = ("low", "medium", "high")


@dataclass
class HistoricalDay:
    date: str
    day_of_week: str
    hourly_pattern: List[int]  # walk-in bookings per hour, 24 entries


@dataclass
class HourlyPrediction:
    hour: str
    predicted_visitors: int
    confidence: str


@dataclass
class TrafficForecast:
    predictions: List[HourlyPrediction]
    peak_hour: str
    peak_visitors: int
    total_predicted_visitors: int
    average_visitors: int
    insights: List[str]
    source: str
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _hour_label(hour: int) -> str:
    return f"{hour:02d}:00"


def _actual(today_counts: Sequence[int], hour: int) -> int:
    return int(today_counts[hour]) if hour < len(today_counts) else 0


def heuristic_predictions(
    history: Sequence[HistoricalDay],
    day_of_week: str,
    current_hour: int,
    today_counts: Sequence[int],
) -> List[HourlyPrediction]:
    same_day = [d for d in history if d.day_of_week == day_of_week]
    predictions: List[HourlyPrediction] = []

    for hour in range(HOURS):
        if hour < current_hour:
            predictions.append(HourlyPrediction(_hour_label(hour), _actual(today_counts, hour), "high"))
            continue

        visitors = 0
        confidence = "low"
        if same_day:
            visitors = _round_half_up(sum(d.hourly_pattern[hour] for d in same_day) / len(same_day))
            if len(same_day) >= 4:
                confidence = "high"
            elif len(same_day) >= 2:
                confidence = "medium"
        elif history:
            visitors = _round_half_up(sum(d.hourly_pattern[hour] for d in history) / len(history))
            confidence = "medium"
        predictions.append(HourlyPrediction(_hour_label(hour), visitors, confidence))

    return predictions


def build_prompt(
    history: Sequence[HistoricalDay],
    day_of_week: str,
    current_hour: int,
    today_counts: Sequence[int],
) -> str:
    same_day = [d for d in history if d.day_of_week == day_of_week][:4]

    summary_lines = []
    for i, d in enumerate(same_day):
        peak = max(range(HOURS), key=lambda h: d.hourly_pattern[h])
        summary_lines.append(
            f"Day {i + 1} ({d.date}): Peak at {peak}:00 with {d.hourly_pattern[peak]} visitors, "
            f"Total: {sum(d.hourly_pattern)}"
        )

    today_pattern = ", ".join(f"{h}:00 - {_actual(today_counts, h)} visitors" for h in range(current_hour))

    return f"""As an AI traffic prediction system for a gaming center, analyze historical data and predict visitor traffic for the remaining hours of today.

Today: {day_of_week}
Current Hour: {current_hour}:00
Today's Pattern So Far: {today_pattern or 'No visitors yet'}

Historical {day_of_week} data:
{chr(10).join(summary_lines) or 'No same-weekday history'}

Return predictions for each hour from {current_hour}:00 until 23:00 as JSON:
{{"predictions": [{{"hour": "{current_hour}:00", "visitors": <number>, "confidence": "low|medium|high"}}]}}

Consider:
- Similar day patterns from history
- Today's trend so far
- Typical gaming center peak hours (evening 18:00-22:00)
- Be realistic with numbers (0-20 range typical)"""


def parse_ai_predictions(raw_json: Optional[str], current_hour: int, today_counts: Sequence[int]) -> List[HourlyPrediction]:
    if not raw_json:
        raise ValueError("No response text from Gemini")

    parsed = json.loads(raw_json)
    by_hour: Dict[int, Dict[str, Any]] = {}
    for item in parsed.get("predictions") or []:
        try:
            hour = int(str(item.get("hour", "")).split(":")[0])
        except ValueError:
            continue
        by_hour[hour] = item

    predictions: List[HourlyPrediction] = []
    for hour in range(HOURS):
        if hour < current_hour:
            predictions.append(HourlyPrediction(_hour_label(hour), _actual(today_counts, hour), "high"))
            continue
        item = by_hour.get(hour)
        if item is None:
            predictions.append(HourlyPrediction(_hour_label(hour), 0, "low"))
            continue
        confidence = item.get("confidence")
        if confidence not in _CONFIDENCE:
            confidence = "medium"
        visitors = max(0, _round_half_up(float(item.get("visitors") or 0)))
        predictions.append(HourlyPrediction(_hour_label(hour), visitors, confidence))
    return predictions


def summarize(predictions: List[HourlyPrediction], current_hour: int, source: str) -> TrafficForecast:
    if predictions:
        peak = max(predictions, key=lambda p: p.predicted_visitors)
    else:
        peak = HourlyPrediction("12:00", 0, "low")
    total = sum(p.predicted_visitors for p in predictions)
    average = _round_half_up(total / len(predictions)) if predictions else 0

    insights: List[str] = []
    if peak.predicted_visitors > 0:
        insights.append(f"Peak traffic expected at {peak.hour} with {peak.predicted_visitors} visitors")
    future = [p for p in predictions if int(p.hour.split(":")[0]) >= current_hour]
    if future:
        avg_future = _round_half_up(sum(p.predicted_visitors for p in future) / len(future))
        insights.append(f"Average {avg_future} visitors expected per hour for rest of the day")
    high = sum(1 for p in predictions if p.confidence == "high")
    if high:
        insights.append(f"{high} hours have high-confidence predictions based on historical patterns")

    return TrafficForecast(
        predictions=predictions,
        peak_hour=peak.hour,
        peak_visitors=peak.predicted_visitors,
        total_predicted_visitors=total,
        average_visitors=average,
        insights=insights,
        source=source,
    )


async def predict_traffic(
    history: Sequence[HistoricalDay],
    day_of_week: str,
    current_hour: int,
    today_counts: Sequence[int],
    limiter: Optional[Any] = None,
) -> TrafficForecast:
    """Predict walk-in traffic for today, preferring Gemini when quota allows.

    ``limiter`` is a GeminiRateLimiter; any failure on the AI path,
    including an exhausted daily budget, falls back to the heuristic.
    """
    if limiter is not None and history and not limiter.should_use_fallback():
        try:
            response = await limiter.generate_content(
                contents=build_prompt(history, day_of_week, current_hour, today_counts),
                config={
                    "responseMimeType": "application/json",
                    "responseSchema": RESPONSE_SCHEMA,
                    "systemInstruction": SYSTEM_INSTRUCTION,
                },
            )
            predictions = parse_ai_predictions(response.get("text"), current_hour, today_counts)
            return summarize(predictions, current_hour, source="ai")
        except Exception as e:
            logger.warning("AI traffic prediction failed, falling back to heuristics: %s", e)
    elif limiter is not None and history:
        logger.info("Gemini usage near its limits; using heuristic traffic prediction")

    predictions = heuristic_predictions(history, day_of_week, current_hour, today_counts)
    return summarize(predictions, current_hour, source="heuristic")
