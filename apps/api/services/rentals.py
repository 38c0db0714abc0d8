"""Rental ledger: creation, match attribution and the terminal-transition chokepoint.

Every terminating path (budget completion, idle release, user cancel, admin
force release) goes through ``terminate_rental``. Its conditional update is
the only arbiter between concurrent callers: the caller whose update changed
a row performs the side effects (occupancy clear, refund, event), every other
caller observes ``None`` and does nothing.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import inspect, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.attributes import set_committed_value

from models.rental import (
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_FORCE_RELEASED,
    TERMINAL_STATUSES,
    Rental,
)
from models.rental_match import RentalMatch
from services.accounts import end_occupancy, get_account, start_occupancy
from services.clock import utc_now
from services.credits import compute_proportional_refund, debit_rental_start, issue_rental_refund
from services.errors import (
    AccountNotFoundError,
    AccountUnavailableError,
    InvalidRentalRequestError,
    RentalNotActiveError,
    RentalNotFoundError,
)
from services.events import (
    EVENT_RENTAL_CANCELLED,
    EVENT_RENTAL_FORCE_RELEASE,
    EVENT_RENTAL_START,
    emit_event,
)
from services.match_provider import MatchDetail

logger = logging.getLogger(__name__)


MAX_MATCH_BUDGET = 1000
_UPSERT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


@dataclass(frozen=True)
class MatchRecordResult:
    inserted: int
    matches_used: int
    matches_total: int
    active: bool = True

    @property
    def exhausted(self) -> bool:
        return self.matches_used >= self.matches_total


async def refresh_if_expired(db: AsyncSession, rental: Rental) -> Rental:
    """Reload a rental whose attributes were expired by an earlier rollback on this session."""
    if inspect(rental).expired_attributes:
        await db.refresh(rental)
    return rental


async def get_rental(db: AsyncSession, rental_id: str) -> Optional[Rental]:
    # Counters move through bulk updates; always reload what the identity map holds.
    result = await db.execute(
        select(Rental).where(Rental.id == rental_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_active_rentals(db: AsyncSession) -> List[Rental]:
    result = await db.execute(
        select(Rental)
        .where(Rental.status == STATUS_ACTIVE)
        .order_by(Rental.created_at.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_active_rentals_for_renter(db: AsyncSession, renter_id: str) -> List[Rental]:
    result = await db.execute(
        select(Rental)
        .where(Rental.user_id == renter_id, Rental.status == STATUS_ACTIVE)
        .order_by(Rental.created_at.desc())
    )
    return list(result.scalars().all())


async def get_rentals_for_renter(db: AsyncSession, renter_id: str, limit: int = 50) -> List[Rental]:
    result = await db.execute(
        select(Rental)
        .where(Rental.user_id == renter_id)
        .order_by(Rental.created_at.desc())
        .limit(max(1, min(int(limit), 200)))
    )
    return list(result.scalars().all())


async def get_match_history(db: AsyncSession, rental_id: str) -> List[RentalMatch]:
    result = await db.execute(
        select(RentalMatch)
        .where(RentalMatch.rental_id == rental_id)
        .order_by(RentalMatch.detected_at.asc(), RentalMatch.match_id.asc())
    )
    return list(result.scalars().all())


async def get_attributed_match_ids(db: AsyncSession, rental_ids: Iterable[str]) -> Dict[str, Set[str]]:
    ids = list(dict.fromkeys(rental_ids))
    tracked: Dict[str, Set[str]] = {rental_id: set() for rental_id in ids}
    if not ids:
        return tracked
    result = await db.execute(
        select(RentalMatch.rental_id, RentalMatch.match_id).where(RentalMatch.rental_id.in_(ids))
    )
    for rental_id, match_id in result.all():
        tracked.setdefault(rental_id, set()).add(match_id)
    return tracked


async def create_rental(
    db: AsyncSession,
    *,
    renter_id: str,
    account_id: str,
    match_budget: int,
    credits_to_spend: int,
    now: Optional[datetime] = None,
) -> Rental:
    """Insert an active rental, occupy the account and debit the renter in one transaction."""
    budget = int(match_budget)
    cost = int(credits_to_spend)
    if budget < 1 or budget > MAX_MATCH_BUDGET:
        raise InvalidRentalRequestError(f"match_budget must be between 1 and {MAX_MATCH_BUDGET}")
    if cost < 0:
        raise InvalidRentalRequestError("credits_to_spend must not be negative")

    account = await get_account(db, account_id)
    if account is None:
        raise AccountNotFoundError(account_id)
    if account.is_banned:
        raise AccountUnavailableError(account_id, "banned")
    if account.status != "active":
        raise AccountUnavailableError(account_id, account.status or "inactive")

    started_at = now or utc_now()
    rental = Rental(
        id=str(uuid.uuid4()),
        user_id=renter_id,
        account_id=account_id,
        credits_spent=cost,
        matches_total=budget,
        matches_used=0,
        status=STATUS_ACTIVE,
        created_at=started_at,
    )
    try:
        db.add(rental)
        await db.flush()
        await start_occupancy(db, account_id, rental.id)
        await debit_rental_start(renter_id, db, cost=cost, rental_id=rental.id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Rental %s started renter=%s account=%s budget=%s credits=%s",
        rental.id,
        renter_id,
        account_id,
        budget,
        cost,
    )
    await emit_event(
        db=db,
        user_id=renter_id,
        event_type=EVENT_RENTAL_START,
        metadata={
            "rental_id": rental.id,
            "account_id": account_id,
            "matches_total": budget,
            "credits_spent": cost,
        },
    )
    return rental


async def _insert_match_if_absent(db: AsyncSession, rental_id: str, record: MatchDetail, detected_at: datetime) -> bool:
    dialect = db.get_bind().dialect.name
    dialect_insert = _UPSERT_INSERTS.get(dialect)
    if dialect_insert is None:
        raise RuntimeError(f"Match attribution needs ON CONFLICT support; unsupported database dialect {dialect!r}")
    statement = (
        dialect_insert(RentalMatch)
        .values(
            id=str(uuid.uuid4()),
            rental_id=rental_id,
            match_id=record.match_id,
            game_mode=record.game_mode,
            champion=record.champion,
            win=record.win,
            duration_secs=record.duration_secs,
            detected_at=detected_at,
        )
        .on_conflict_do_nothing(index_elements=["rental_id", "match_id"])
    )
    result = await db.execute(statement)
    return result.rowcount == 1


async def _hold_active_rental(db: AsyncSession, rental_id: str) -> bool:
    """No-op write that takes the rental's row lock while it is still active.

    Terminal transitions update the same row, so they wait for this
    transaction and a rental cannot end between the check and the inserts.
    """
    result = await db.execute(
        update(Rental)
        .where(Rental.id == rental_id, Rental.status == STATUS_ACTIVE)
        .values(matches_used=Rental.matches_used)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_matches(
    db: AsyncSession,
    rental_id: str,
    records: Sequence[MatchDetail],
    *,
    now: Optional[datetime] = None,
) -> MatchRecordResult:
    """Append attribution rows (insert-if-absent) and bump ``matches_used`` by what was new.

    Safe under duplicate or overlapping delivery: a match already attributed
    to the rental never counts twice. Nothing is written once the rental has
    left ``active``. At most the remaining budget is attributed, in the order
    given; later records stay unattributed. Does not commit.
    """
    detected_at = now or utc_now()
    unique_records = list({record.match_id: record for record in records}.values())

    held = await _hold_active_rental(db, rental_id)
    result = await db.execute(
        select(Rental.matches_used, Rental.matches_total).where(Rental.id == rental_id)
    )
    row = result.one_or_none()
    if row is None:
        raise RentalNotFoundError(rental_id)
    matches_used, matches_total = int(row[0]), int(row[1])
    if not held:
        logger.info("Rental %s is no longer active; %s delivered match(es) ignored", rental_id, len(unique_records))
        return MatchRecordResult(inserted=0, matches_used=matches_used, matches_total=matches_total, active=False)

    budget_left = max(matches_total - matches_used, 0)
    inserted = 0
    for position, record in enumerate(unique_records):
        if inserted >= budget_left:
            logger.info(
                "Rental %s reached its budget; %s delivered match(es) left unattributed",
                rental_id,
                len(unique_records) - position,
            )
            break
        if await _insert_match_if_absent(db, rental_id, record, detected_at):
            inserted += 1

    if inserted:
        bumped = await db.execute(
            update(Rental)
            .where(
                Rental.id == rental_id,
                Rental.status == STATUS_ACTIVE,
                Rental.matches_used + inserted <= Rental.matches_total,
            )
            .values(matches_used=Rental.matches_used + inserted, last_match_at=detected_at)
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount != 1:
            raise RuntimeError(
                f"Rental {rental_id} attributed {inserted} match(es) but its counter could not follow "
                f"(matches_used={matches_used}, matches_total={matches_total})"
            )
        matches_used += inserted

    return MatchRecordResult(inserted=inserted, matches_used=matches_used, matches_total=matches_total)


async def transition_terminal(
    db: AsyncSession,
    rental_id: str,
    to_status: str,
    *,
    ended_at: Optional[datetime] = None,
    from_status: str = STATUS_ACTIVE,
    reason: Optional[str] = None,
    expected_matches_used: Optional[int] = None,
) -> bool:
    """Conditional status write; True only for the single caller whose update applied.

    ``expected_matches_used`` additionally requires that no match was recorded
    since the caller read the rental. Does not commit.
    """
    if to_status not in TERMINAL_STATUSES:
        raise ValueError(f"{to_status!r} is not a terminal rental status")

    conditions = [Rental.id == rental_id, Rental.status == from_status]
    if expected_matches_used is not None:
        conditions.append(Rental.matches_used == int(expected_matches_used))

    result = await db.execute(
        update(Rental)
        .where(*conditions)
        .values(status=to_status, ended_at=ended_at or utc_now(), end_reason=reason)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def terminate_rental(
    db: AsyncSession,
    rental: Rental,
    *,
    to_status: str,
    reason: str,
    refund: bool = False,
    now: Optional[datetime] = None,
    require_unchanged_usage: bool = False,
) -> Optional[int]:
    """Run the terminal transition and, only if it applied, its side effects.

    Returns the refunded amount (0 when none) or None when another caller
    already terminated the rental. Transition, occupancy clear and refund
    commit together. The lifecycle event is left to the caller.
    """
    ended_at = now or utc_now()
    matches_used = int(rental.matches_used or 0)
    refund_amount = 0
    if refund:
        refund_amount = compute_proportional_refund(rental.credits_spent, rental.matches_total, matches_used)

    applied = await transition_terminal(
        db,
        rental.id,
        to_status,
        ended_at=ended_at,
        reason=reason,
        expected_matches_used=matches_used if require_unchanged_usage else None,
    )
    if not applied:
        logger.debug("Terminal transition %s -> %s did not apply; already handled", rental.id, to_status)
        return None

    try:
        if not await end_occupancy(db, rental.account_id, rental.id):
            logger.warning("Rental %s ended but account %s no longer pointed at it", rental.id, rental.account_id)
        if refund_amount > 0:
            await issue_rental_refund(
                rental.user_id,
                db,
                amount=refund_amount,
                rental_id=rental.id,
                reason=(
                    f"Proportional refund: {rental.matches_total - matches_used}/{rental.matches_total} "
                    f"matches unused ({reason})"
                ),
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    set_committed_value(rental, "status", to_status)
    set_committed_value(rental, "ended_at", ended_at)
    set_committed_value(rental, "end_reason", reason)
    logger.info(
        "Rental %s -> %s reason=%s matches=%s/%s refund=%s",
        rental.id,
        to_status,
        reason,
        matches_used,
        rental.matches_total,
        refund_amount,
    )
    return refund_amount


async def cancel_rental(
    db: AsyncSession,
    rental_id: str,
    *,
    renter_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Rental:
    """Voluntary cancellation: no refund. Raises RentalNotActiveError when already terminal."""
    rental = await get_rental(db, rental_id)
    if rental is None or (renter_id is not None and rental.user_id != renter_id):
        raise RentalNotFoundError(rental_id)

    outcome = await terminate_rental(db, rental, to_status=STATUS_CANCELLED, reason="user_cancelled", now=now)
    if outcome is None:
        await db.refresh(rental)
        raise RentalNotActiveError(rental_id, rental.status)

    await emit_event(
        db=db,
        user_id=rental.user_id,
        event_type=EVENT_RENTAL_CANCELLED,
        metadata={
            "rental_id": rental.id,
            "account_id": rental.account_id,
            "matches_used": rental.matches_used,
            "matches_total": rental.matches_total,
        },
    )
    return rental


async def force_release_rental(
    db: AsyncSession,
    rental_id: str,
    *,
    reason: str = "admin_force_release",
    refund: bool = False,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Admin override. Refund is opt-in; the race rules are the same as for every other path."""
    rental = await get_rental(db, rental_id)
    if rental is None:
        raise RentalNotFoundError(rental_id)

    refunded = await terminate_rental(
        db,
        rental,
        to_status=STATUS_FORCE_RELEASED,
        reason=reason,
        refund=refund,
        now=now,
    )
    if refunded is None:
        await db.refresh(rental)
        raise RentalNotActiveError(rental_id, rental.status)

    await emit_event(
        db=db,
        user_id=rental.user_id,
        event_type=EVENT_RENTAL_FORCE_RELEASE,
        metadata={
            "rental_id": rental.id,
            "account_id": rental.account_id,
            "reason": reason,
            "credits_refunded": refunded,
        },
    )
    return {"rental": rental, "credits_refunded": refunded}


def serialize_rental(rental: Rental) -> Dict[str, Any]:
    return {
        "id": rental.id,
        "user_id": rental.user_id,
        "account_id": rental.account_id,
        "status": rental.status,
        "credits_spent": rental.credits_spent,
        "matches_total": rental.matches_total,
        "matches_used": rental.matches_used,
        "matches_remaining": rental.matches_remaining,
        "end_reason": rental.end_reason,
        "created_at": rental.created_at.isoformat() if rental.created_at else None,
        "last_match_at": rental.last_match_at.isoformat() if rental.last_match_at else None,
        "ended_at": rental.ended_at.isoformat() if rental.ended_at else None,
    }


def serialize_match(match: RentalMatch) -> Dict[str, Any]:
    return {
        "match_id": match.match_id,
        "game_mode": match.game_mode,
        "champion": match.champion,
        "win": match.win,
        "duration_secs": match.duration_secs,
        "detected_at": match.detected_at.isoformat() if match.detected_at else None,
    }
