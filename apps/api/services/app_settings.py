"""Read-mostly process-wide settings stored in the app_settings table."""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.app_setting import AppSetting

logger = logging.getLogger(__name__)


IDLE_TIMEOUT_KEY = "idle_timeout_minutes"


def _coerce_minutes(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    if isinstance(value, dict):
        return _coerce_minutes(value.get("minutes"))
    return None


async def get_idle_timeout_minutes(db: AsyncSession) -> int:
    """Idle threshold in minutes; falls back to DEFAULT_IDLE_TIMEOUT_MINUTES when unset or unparsable."""
    result = await db.execute(select(AppSetting.value).where(AppSetting.key == IDLE_TIMEOUT_KEY))
    raw = result.scalar_one_or_none()
    minutes = _coerce_minutes(raw)
    if minutes is None or minutes <= 0:
        if raw is not None:
            logger.warning("Ignoring invalid %s setting value: %r", IDLE_TIMEOUT_KEY, raw)
        return max(int(settings.DEFAULT_IDLE_TIMEOUT_MINUTES), 1)
    return minutes


async def set_idle_timeout_minutes(db: AsyncSession, minutes: int) -> int:
    value = int(minutes)
    if value <= 0:
        raise ValueError("idle timeout must be a positive number of minutes")
    row = await db.get(AppSetting, IDLE_TIMEOUT_KEY)
    if row is None:
        db.add(AppSetting(key=IDLE_TIMEOUT_KEY, value=value))
    else:
        row.value = value
    await db.commit()
    return value
