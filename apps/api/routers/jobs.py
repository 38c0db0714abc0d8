"""Scheduler trigger endpoints guarded by CRON_SECRET."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import require_cron_secret
from services.heartbeat import report_stale_heartbeats
from services.idle_monitor import run_idle_sweep
from services.match_sweep import run_match_sweep

router = APIRouter(dependencies=[Depends(require_cron_secret)])
logger = logging.getLogger(__name__)


@router.post("/match-sweep")
async def trigger_match_sweep(db: AsyncSession = Depends(get_db)):
    try:
        stats = await run_match_sweep(db)
    except ValueError as exc:
        # Raised when the provider cannot be configured.
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    logger.info("Match sweep via cron: %s", stats)
    return stats


@router.post("/idle-sweep")
async def trigger_idle_sweep(db: AsyncSession = Depends(get_db)):
    stats = await run_idle_sweep(db)
    logger.info("Idle sweep via cron: %s", stats)
    return stats


@router.post("/heartbeat-sweep")
async def trigger_heartbeat_sweep(db: AsyncSession = Depends(get_db)):
    return await report_stale_heartbeats(db)
