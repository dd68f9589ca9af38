from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class GenerateRequest(BaseModel):
    model: Optional[str] = None
    contents: str = Field(min_length=1)
    config: Optional[Dict[str, Any]] = None


class GenerateResponse(BaseModel):
    model: str
    text: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class UsageLimits(BaseModel):
    rpm: int
    rpd: int


class UsagePercentages(BaseModel):
    rpm: float
    rpd: float


class UsageStats(BaseModel):
    requestsLastMinute: int
    requestsToday: int
    limits: UsageLimits
    percentageUsed: UsagePercentages
    canMakeRequest: bool
    queueLength: int


class HistoricalDayIn(BaseModel):
    date: str
    day_of_week: str
    hourly_pattern: List[int] = Field(min_length=24, max_length=24)


class TrafficRequest(BaseModel):
    day_of_week: str
    current_hour: int = Field(ge=0, le=23)
    today_counts: List[int] = Field(default_factory=list, max_length=24)
    history: List[HistoricalDayIn] = Field(default_factory=list)


class HourlyPredictionOut(BaseModel):
    hour: str
    predicted_visitors: int
    confidence: Literal["low", "medium", "high"]


class TrafficSummary(BaseModel):
    peak_hour: str
    peak_visitors: int
    total_predicted_visitors: int
    average_visitors: int
    insights: List[str]


class TrafficResponse(BaseModel):
    predictions: List[HourlyPredictionOut]
    summary: TrafficSummary
    source: Literal["ai", "heuristic"]
    generated_at: datetime
