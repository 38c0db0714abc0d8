"""Idle/abandonment monitor.

A rental is idle when its reference time (last attributed match, or rental
start when none) is older than the idle threshold and, when
IDLE_REQUIRE_STALE_HEARTBEAT is on, the renter's heartbeat is missing or just
as stale. Idle rentals are force-released with a proportional refund.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.rental import STATUS_FORCE_RELEASED, Rental
from models.user import User
from services.app_settings import get_idle_timeout_minutes
from services.clock import as_utc, utc_now
from services.events import EVENT_IDLE_TIMEOUT, emit_event
from services.rentals import get_active_rentals, refresh_if_expired, terminate_rental

logger = logging.getLogger(__name__)


IDLE_RELEASE_REASON = "idle_timeout"


def idle_reference_time(rental: Rental) -> datetime:
    return as_utc(rental.last_match_at) or as_utc(rental.created_at)


def is_rental_idle(
    rental: Rental,
    *,
    threshold_minutes: int,
    now: datetime,
    heartbeat_at: Optional[datetime] = None,
    require_stale_heartbeat: Optional[bool] = None,
) -> bool:
    threshold = timedelta(minutes=max(int(threshold_minutes), 1))
    if now - idle_reference_time(rental) <= threshold:
        return False
    if require_stale_heartbeat is None:
        require_stale_heartbeat = bool(settings.IDLE_REQUIRE_STALE_HEARTBEAT)
    if not require_stale_heartbeat:
        return True
    last_beat = as_utc(heartbeat_at)
    return last_beat is None or now - last_beat > threshold


async def load_heartbeats(db: AsyncSession, user_ids: Iterable[str]) -> Dict[str, Optional[datetime]]:
    ids = list(dict.fromkeys(user_ids))
    if not ids:
        return {}
    result = await db.execute(select(User.id, User.last_heartbeat_at).where(User.id.in_(ids)))
    return {user_id: as_utc(beat) for user_id, beat in result.all()}


async def release_idle_rental(
    db: AsyncSession,
    rental: Rental,
    *,
    threshold_minutes: int,
    now: Optional[datetime] = None,
) -> Optional[int]:
    """Force-release with refund. None when another path won or a match landed meanwhile."""
    matches_used = int(rental.matches_used or 0)
    refunded = await terminate_rental(
        db,
        rental,
        to_status=STATUS_FORCE_RELEASED,
        reason=IDLE_RELEASE_REASON,
        refund=True,
        now=now,
        require_unchanged_usage=True,
    )
    if refunded is None:
        return None

    await emit_event(
        db=db,
        user_id=rental.user_id,
        event_type=EVENT_IDLE_TIMEOUT,
        metadata={
            "rental_id": rental.id,
            "account_id": rental.account_id,
            "matches_used": matches_used,
            "matches_total": rental.matches_total,
            "credits_refunded": refunded,
            "idle_timeout_minutes": threshold_minutes,
        },
    )
    return refunded


async def check_rental_idle(
    db: AsyncSession,
    rental: Rental,
    *,
    threshold_minutes: int,
    now: datetime,
    heartbeat_at: Optional[datetime] = None,
) -> Optional[int]:
    """Per-rental idle check; returns the refund when the rental was released here."""
    if not is_rental_idle(rental, threshold_minutes=threshold_minutes, now=now, heartbeat_at=heartbeat_at):
        return None
    return await release_idle_rental(db, rental, threshold_minutes=threshold_minutes, now=now)


async def run_idle_sweep(db: Optional[AsyncSession] = None, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Scheduler entrypoint: release every idle active rental."""
    checked = 0
    released = 0
    refunded_credits = 0
    errors = 0

    async def _run_with_session(session: AsyncSession) -> None:
        nonlocal checked, released, refunded_credits, errors
        current = now or utc_now()
        threshold = await get_idle_timeout_minutes(session)
        rentals = await get_active_rentals(session)
        heartbeats = await load_heartbeats(session, [rental.user_id for rental in rentals])

        for rental_id, rental in [(row.id, row) for row in rentals]:
            checked += 1
            try:
                await refresh_if_expired(session, rental)
                refunded = await check_rental_idle(
                    session,
                    rental,
                    threshold_minutes=threshold,
                    now=current,
                    heartbeat_at=heartbeats.get(rental.user_id),
                )
            except SQLAlchemyError as exc:
                errors += 1
                await session.rollback()
                logger.warning("Idle check failed for rental %s: %s", rental_id, exc)
                continue
            if refunded is not None:
                released += 1
                refunded_credits += refunded

    if db is not None:
        await _run_with_session(db)
    else:
        async with async_session_maker() as session:
            await _run_with_session(session)

    return {
        "checked": checked,
        "released": released,
        "refunded_credits": refunded_credits,
        "errors": errors,
    }
