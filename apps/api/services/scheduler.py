"""Interval loops that drive the match and idle sweeps."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

from config import settings
from services.idle_monitor import run_idle_sweep
from services.match_sweep import run_match_sweep

logger = logging.getLogger(__name__)


SweepJob = Callable[[], Awaitable[Dict[str, Any]]]


async def run_periodically(name: str, interval_minutes: int, job: SweepJob) -> None:
    """Run ``job`` every ``interval_minutes`` until cancelled; a failed tick never stops the loop."""
    interval = max(int(interval_minutes), 0)
    if interval <= 0:
        return
    while True:
        await asyncio.sleep(interval * 60)
        try:
            stats = await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s tick failed", name)
            continue
        logger.info("%s tick: %s", name, stats)


def start_sweep_tasks() -> List[asyncio.Task]:
    tasks: List[asyncio.Task] = []
    if settings.MATCH_SWEEP_ENABLED and int(settings.MATCH_SWEEP_INTERVAL_MINUTES) > 0:
        if not settings.RIOT_API_KEY:
            logger.warning("Match sweep enabled but RIOT_API_KEY is empty; loop not started")
        else:
            tasks.append(
                asyncio.create_task(
                    run_periodically("Match sweep", settings.MATCH_SWEEP_INTERVAL_MINUTES, run_match_sweep)
                )
            )
    if settings.IDLE_SWEEP_ENABLED and int(settings.IDLE_SWEEP_INTERVAL_MINUTES) > 0:
        tasks.append(
            asyncio.create_task(
                run_periodically("Idle sweep", settings.IDLE_SWEEP_INTERVAL_MINUTES, run_idle_sweep)
            )
        )
    return tasks


async def stop_sweep_tasks(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    for task in tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
