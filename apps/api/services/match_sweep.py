"""Match attribution poller.

One sweep: load active rentals, ask the match-history provider for matches
played on each rental's account since the rental started, attribute the ones
not seen before, complete rentals whose budget ran out, and hand rentals that
made no progress to the idle check.

Provider calls fan out concurrently (bounded by MATCH_SWEEP_CONCURRENCY) and
never touch the session. Database writes then run serially on the sweep's
session. A failing list call skips that rental until the next sweep; a
failing detail call skips only that match, which the next sweep picks up
again because it is still unattributed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.attributes import set_committed_value

from config import settings
from database import async_session_maker
from models.account import Account
from models.rental import STATUS_COMPLETED, Rental
from services.accounts import resolve_identity
from services.app_settings import get_idle_timeout_minutes
from services.clock import as_utc, utc_now
from services.events import EVENT_MATCH_DETECTED, EVENT_RENTAL_COMPLETED, emit_event
from services.idle_monitor import check_rental_idle, load_heartbeats
from services.match_provider import (
    AccountIdentity,
    MatchDetail,
    MatchHistoryProvider,
    MatchProviderError,
    get_match_provider,
)
from services.rentals import (
    get_active_rentals,
    get_attributed_match_ids,
    record_matches,
    refresh_if_expired,
    terminate_rental,
)

logger = logging.getLogger(__name__)


COMPLETION_REASON = "match_budget_exhausted"


@dataclass(frozen=True)
class _RentalPoll:
    rental_id: str
    identity: AccountIdentity
    start_time: int
    tracked: Set[str]


@dataclass
class _PollOutcome:
    rental_id: str
    details: List[MatchDetail] = field(default_factory=list)
    unseen: int = 0
    failed_details: int = 0
    error: Optional[str] = None


async def _poll_rental(
    provider: MatchHistoryProvider,
    poll: _RentalPoll,
    *,
    page_size: int,
    semaphore: asyncio.Semaphore,
) -> _PollOutcome:
    outcome = _PollOutcome(rental_id=poll.rental_id)
    try:
        async with semaphore:
            match_ids = await provider.list_match_ids(poll.identity, start_time=poll.start_time, count=page_size)
    except MatchProviderError as exc:
        logger.warning(
            "Match listing failed for rental %s (puuid=%s region=%s): %s",
            poll.rental_id,
            poll.identity.puuid,
            poll.identity.region,
            exc,
        )
        outcome.error = str(exc)
        return outcome

    # Providers list newest first; attribute oldest first.
    unseen = [match_id for match_id in reversed(list(dict.fromkeys(match_ids))) if match_id not in poll.tracked]
    outcome.unseen = len(unseen)
    for match_id in unseen:
        try:
            async with semaphore:
                detail = await provider.fetch_match_detail(poll.identity, match_id)
        except MatchProviderError as exc:
            outcome.failed_details += 1
            logger.warning("Match detail %s failed for rental %s; retrying next sweep: %s", match_id, poll.rental_id, exc)
            continue
        outcome.details.append(detail)
    return outcome


async def complete_rental(db: AsyncSession, rental: Rental, *, now: datetime) -> bool:
    outcome = await terminate_rental(db, rental, to_status=STATUS_COMPLETED, reason=COMPLETION_REASON, now=now)
    if outcome is None:
        return False
    await emit_event(
        db=db,
        user_id=rental.user_id,
        event_type=EVENT_RENTAL_COMPLETED,
        metadata={
            "rental_id": rental.id,
            "account_id": rental.account_id,
            "matches_used": rental.matches_used,
            "matches_total": rental.matches_total,
        },
    )
    return True


async def run_match_sweep(
    db: Optional[AsyncSession] = None,
    *,
    provider: Optional[MatchHistoryProvider] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Scheduler entrypoint: attribute new matches for every active rental."""
    stats = {"checked": 0, "new_matches": 0, "completed": 0, "idle_released": 0, "skipped": 0, "errors": 0}
    owns_provider = provider is None
    active_provider = provider or get_match_provider()

    async def _run_with_session(session: AsyncSession) -> None:
        current = now or utc_now()
        rentals = await get_active_rentals(session)
        stats["checked"] = len(rentals)
        if not rentals:
            return

        account_ids = list({rental.account_id for rental in rentals})
        result = await session.execute(select(Account).where(Account.id.in_(account_ids)))
        accounts = {account.id: account for account in result.scalars().all()}
        tracked = await get_attributed_match_ids(session, [rental.id for rental in rentals])
        threshold = await get_idle_timeout_minutes(session)
        heartbeats = await load_heartbeats(session, [rental.user_id for rental in rentals])

        polls: List[_RentalPoll] = []
        by_id: Dict[str, Rental] = {}
        for rental in rentals:
            account = accounts.get(rental.account_id)
            identity = resolve_identity(account) if account is not None else None
            if identity is None:
                stats["skipped"] += 1
                logger.warning("Rental %s skipped: account %s has no resolvable identity", rental.id, rental.account_id)
                continue
            by_id[rental.id] = rental
            polls.append(
                _RentalPoll(
                    rental_id=rental.id,
                    identity=identity,
                    start_time=int(as_utc(rental.created_at).timestamp()),
                    tracked=tracked.get(rental.id, set()),
                )
            )

        semaphore = asyncio.Semaphore(max(int(settings.MATCH_SWEEP_CONCURRENCY), 1))
        page_size = max(int(settings.MATCH_IDS_PAGE_SIZE), 1)
        outcomes = await asyncio.gather(
            *(_poll_rental(active_provider, poll, page_size=page_size, semaphore=semaphore) for poll in polls),
            return_exceptions=True,
        )

        for poll, outcome in zip(polls, outcomes):
            if isinstance(outcome, BaseException):
                stats["errors"] += 1
                logger.error("Unexpected provider failure for rental %s: %r", poll.rental_id, outcome)
                continue
            if outcome.error is not None:
                stats["errors"] += 1
                continue

            rental = by_id[poll.rental_id]
            try:
                await refresh_if_expired(session, rental)
                inserted = 0
                if outcome.details:
                    recorded = await record_matches(session, rental.id, outcome.details, now=current)
                    await session.commit()
                    if not recorded.active:
                        logger.info("Rental %s ended while its matches were being fetched; skipped", rental.id)
                        continue
                    inserted = recorded.inserted
                    set_committed_value(rental, "matches_used", recorded.matches_used)
                    if inserted:
                        set_committed_value(rental, "last_match_at", current)
                        stats["new_matches"] += inserted
                        await emit_event(
                            db=session,
                            user_id=rental.user_id,
                            event_type=EVENT_MATCH_DETECTED,
                            metadata={
                                "rental_id": rental.id,
                                "account_id": rental.account_id,
                                "matches_added": inserted,
                                "matches_used": recorded.matches_used,
                                "matches_total": recorded.matches_total,
                            },
                        )

                if rental.matches_used >= rental.matches_total:
                    if await complete_rental(session, rental, now=current):
                        stats["completed"] += 1
                    continue
                if inserted:
                    continue

                refunded = await check_rental_idle(
                    session,
                    rental,
                    threshold_minutes=threshold,
                    now=current,
                    heartbeat_at=heartbeats.get(rental.user_id),
                )
                if refunded is not None:
                    stats["idle_released"] += 1
            except SQLAlchemyError as exc:
                stats["errors"] += 1
                await session.rollback()
                logger.warning("Attribution write failed for rental %s: %s", poll.rental_id, exc)

    try:
        if db is not None:
            await _run_with_session(db)
        else:
            async with async_session_maker() as session:
                await _run_with_session(session)
    finally:
        if owns_provider:
            await active_provider.aclose()

    return stats
