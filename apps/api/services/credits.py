"""Credit ledger and rental accounting helpers.

Balance changes are conditional single-row updates on ``users.credit_balance``
paired with an append-only ``credit_ledger`` entry written in the same
transaction. Helpers used inside a rental transition never commit; the caller
commits once the transition, occupancy change and refund are all staged.
"""

from __future__ import annotations

from typing import Any, Dict, Optional
import uuid

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import CreditLedger
from models.user import User
from services.errors import InsufficientCreditsError


ENTRY_RENTAL_SPEND = "rental_spend"
ENTRY_REFUND = "refund"
ENTRY_ADMIN_ADJUSTMENT = "admin_adjustment"


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(User.credit_balance).where(User.id == user_id))
    return int(result.scalar() or 0)


async def get_ledger_balance(user_id: str, db: AsyncSession) -> int:
    """Running sum of ledger deltas; equals the denormalized balance when books are clean."""
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedger.delta_credits), 0)).where(CreditLedger.user_id == user_id)
    )
    return int(result.scalar() or 0)


async def _insert_entry(
    user_id: str,
    db: AsyncSession,
    *,
    entry_type: str,
    delta_credits: int,
    balance_after: int,
    reason: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> CreditLedger:
    entry = CreditLedger(
        id=str(uuid.uuid4()),
        user_id=user_id,
        entry_type=entry_type,
        delta_credits=int(delta_credits),
        balance_after=balance_after,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    db.add(entry)
    await db.flush()
    return entry


async def _apply_delta(user_id: str, db: AsyncSession, delta: int) -> Optional[int]:
    """Atomically add ``delta`` unless the balance would go negative. Returns the new balance."""
    statement = (
        update(User)
        .where(User.id == user_id, User.credit_balance + delta >= 0)
        .values(credit_balance=User.credit_balance + delta)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(statement)
    if result.rowcount != 1:
        return None
    return await get_credit_balance(user_id, db)


async def debit_rental_start(
    user_id: str,
    db: AsyncSession,
    *,
    cost: int,
    rental_id: str,
) -> Dict[str, Any]:
    debit_cost = max(int(cost), 0)
    if debit_cost == 0:
        return {"charged": 0, "balance_after": await get_credit_balance(user_id, db)}

    balance_after = await _apply_delta(user_id, db, -debit_cost)
    if balance_after is None:
        raise InsufficientCreditsError(required=debit_cost, available=await get_credit_balance(user_id, db))

    await _insert_entry(
        user_id=user_id,
        db=db,
        entry_type=ENTRY_RENTAL_SPEND,
        delta_credits=-debit_cost,
        balance_after=balance_after,
        reason="Rental start",
        reference_type="rental",
        reference_id=rental_id,
    )
    return {"charged": debit_cost, "balance_after": balance_after}


def compute_proportional_refund(credits_spent: int, matches_total: int, matches_used: int) -> int:
    """floor(credits_spent / matches_total * matches_remaining), in integer arithmetic."""
    total = int(matches_total)
    if total <= 0:
        raise RuntimeError(f"Rental budget must be positive to compute a refund (matches_total={total})")
    remaining = max(total - int(matches_used), 0)
    return (max(int(credits_spent), 0) * remaining) // total


async def issue_rental_refund(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    rental_id: str,
    reason: str,
) -> int:
    refund = int(amount)
    if refund <= 0:
        return 0
    balance_after = await _apply_delta(user_id, db, refund)
    if balance_after is None:
        raise RuntimeError(f"Refund target user {user_id} does not exist")
    await _insert_entry(
        user_id=user_id,
        db=db,
        entry_type=ENTRY_REFUND,
        delta_credits=refund,
        balance_after=balance_after,
        reason=reason,
        reference_type="rental",
        reference_id=rental_id,
    )
    return refund


async def adjust_credits(
    user_id: str,
    db: AsyncSession,
    *,
    delta: int,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    change = int(delta)
    if change == 0:
        return {"balance_after": await get_credit_balance(user_id, db)}
    balance_after = await _apply_delta(user_id, db, change)
    if balance_after is None:
        raise InsufficientCreditsError(required=-change, available=await get_credit_balance(user_id, db))
    await _insert_entry(
        user_id=user_id,
        db=db,
        entry_type=ENTRY_ADMIN_ADJUSTMENT,
        delta_credits=change,
        balance_after=balance_after,
        reason=reason or f"Admin adjustment: {change:+d} credits",
    )
    await db.commit()
    return {"balance_after": balance_after}


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    balance = await get_credit_balance(user_id, db)
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.user_id == user_id)
        .order_by(CreditLedger.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": balance,
        "recent_entries": [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "delta_credits": entry.delta_credits,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "reference_id": entry.reference_id,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
