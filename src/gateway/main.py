import logging
import os
from dataclasses import asdict

from fastapi import FastAPI, HTTPException

from forecast.traffic import HistoricalDay, predict_traffic
from gateway.schemas import (
    GenerateRequest,
    GenerateResponse,
    HourlyPredictionOut,
    TrafficRequest,
    TrafficResponse,
    TrafficSummary,
    UsageStats,
)
from limiter import (
    DailyLimitReachedError,
    GeminiRateLimiter,
    LimiterUnavailableError,
    load_limiter_settings,
)
from providers.gemini import GeminiAdapter, GeminiAPIError
from state.mongo import init_mongo, close_mongo, get_db
from state.store import UsageStore

logger = logging.getLogger(__name__)

app = FastAPI(title="QuotaGate", version="0.1.0")


@app.on_event("startup")
async def startup_event() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    await init_mongo()

    settings = load_limiter_settings()
    provider = GeminiAdapter()
    limiter = GeminiRateLimiter.from_store(provider, UsageStore(db=get_db()), settings=settings)
    await limiter.init()

    app.state.provider = provider
    app.state.limiter = limiter

    logger.info("Gateway initialized (rpm=%d, rpd=%d)", settings.rpm, settings.rpd)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    limiter = getattr(app.state, "limiter", None)
    if limiter is not None:
        await limiter.shutdown()
    provider = getattr(app.state, "provider", None)
    if provider is not None:
        await provider.aclose()
    await close_mongo()


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}


@app.get("/v1/ai/usage", response_model=UsageStats)
async def ai_usage():
    limiter: GeminiRateLimiter = app.state.limiter
    return limiter.get_usage_stats()


@app.post("/v1/ai/generate", response_model=GenerateResponse)
async def ai_generate(req: GenerateRequest):
    limiter: GeminiRateLimiter = app.state.limiter
    model = req.model or limiter.settings.default_model

    try:
        raw = await limiter.generate_content(contents=req.contents, model=model, config=req.config)
    except DailyLimitReachedError as e:
        logger.warning("Generate rejected: %s", e)
        raise HTTPException(status_code=429, detail=DailyLimitReachedError.code)
    except LimiterUnavailableError as e:
        logger.warning("Generate rejected, limiter unavailable: %s", e)
        raise HTTPException(status_code=503, detail=str(e))
    except GeminiAPIError as e:
        raise HTTPException(status_code=e.status_code, detail=e.args[0])

    raw = dict(raw)
    text = raw.pop("text", None)
    return GenerateResponse(model=model, text=text, raw=raw)


@app.post("/v1/traffic/predictions", response_model=TrafficResponse)
async def traffic_predictions(req: TrafficRequest):
    limiter = getattr(app.state, "limiter", None)
    history = [
        HistoricalDay(date=d.date, day_of_week=d.day_of_week, hourly_pattern=list(d.hourly_pattern))
        for d in req.history
    ]
    forecast = await predict_traffic(
        history,
        day_of_week=req.day_of_week,
        current_hour=req.current_hour,
        today_counts=req.today_counts,
        limiter=limiter,
    )
    return TrafficResponse(
        predictions=[HourlyPredictionOut(**asdict(p)) for p in forecast.predictions],
        summary=TrafficSummary(
            peak_hour=forecast.peak_hour,
            peak_visitors=forecast.peak_visitors,
            total_predicted_visitors=forecast.total_predicted_visitors,
            average_visitors=forecast.average_visitors,
            insights=forecast.insights,
        ),
        source=forecast.source,
        generated_at=forecast.generated_at,
    )
