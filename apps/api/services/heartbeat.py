"""Renter heartbeat signal and the stale-heartbeat report."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import async_session_maker
from models.user import User
from services.clock import as_utc, utc_now
from services.events import EVENT_HEARTBEAT_TIMEOUT, emit_event
from services.idle_monitor import load_heartbeats
from services.rentals import get_active_rentals

logger = logging.getLogger(__name__)


async def record_heartbeat(db: AsyncSession, user_id: str, *, now: Optional[datetime] = None) -> datetime:
    beat = now or utc_now()
    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(last_heartbeat_at=beat)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return beat


async def report_stale_heartbeats(db: Optional[AsyncSession] = None, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Observability only: log renters with active rentals whose client went quiet.

    Never transitions a rental; releasing idle rentals is the idle monitor's job.
    """
    stale_users = 0
    total_active = 0

    async def _run_with_session(session: AsyncSession) -> None:
        nonlocal stale_users, total_active
        current = now or utc_now()
        cutoff = current - timedelta(seconds=max(int(settings.HEARTBEAT_STALE_SECONDS), 1))
        rentals = await get_active_rentals(session)
        total_active = len(rentals)
        heartbeats = await load_heartbeats(session, [rental.user_id for rental in rentals])

        stale = {
            user_id
            for user_id in {rental.user_id for rental in rentals}
            if heartbeats.get(user_id) is None or as_utc(heartbeats[user_id]) <= cutoff
        }
        stale_users = len(stale)
        for rental in rentals:
            if rental.user_id not in stale:
                continue
            await emit_event(
                db=session,
                user_id=rental.user_id,
                event_type=EVENT_HEARTBEAT_TIMEOUT,
                metadata={"rental_id": rental.id, "account_id": rental.account_id},
            )

    if db is not None:
        await _run_with_session(db)
    else:
        async with async_session_maker() as session:
            await _run_with_session(session)

    if stale_users:
        logger.info("Stale heartbeats: %s renters across %s active rentals", stale_users, total_active)
    return {"stale_users": stale_users, "total_active": total_active}
