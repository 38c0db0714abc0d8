"""Liveness, readiness and dependency probes."""

from typing import Dict

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import text

from config import settings

router = APIRouter()


async def _probe_database() -> str:
    from database import engine

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:
        return f"down: {exc}"
    return "up"


async def _probe_redis() -> str:
    client = redis.from_url(settings.REDIS_URL)
    try:
        await client.ping()
    except Exception as exc:
        return f"down: {exc}"
    finally:
        await client.aclose()
    return "up"


def _sweep_flags() -> Dict[str, str]:
    return {
        "riot_api_key": "configured" if settings.RIOT_API_KEY else "missing",
        "match_sweep": "enabled" if settings.MATCH_SWEEP_ENABLED else "disabled",
        "idle_sweep": "enabled" if settings.IDLE_SWEEP_ENABLED else "disabled",
    }


@router.get("/health")
async def health_check():
    database = await _probe_database()
    # Redis only backs rate limiting; an outage degrades quotas, not rentals.
    report = {
        "status": "healthy" if database == "up" else "degraded",
        "api": "up",
        "database": database,
        "redis": await _probe_redis(),
    }
    report.update(_sweep_flags())
    return report


@router.get("/health/ready")
async def readiness_check():
    """Ready once the database answers and the match sweep has its API key."""
    missing = []
    if await _probe_database() != "up":
        missing.append("DATABASE_URL")
    if settings.MATCH_SWEEP_ENABLED and not settings.RIOT_API_KEY:
        missing.append("RIOT_API_KEY")
    if missing:
        return JSONResponse(status_code=503, content={"ready": False, "missing": missing})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
