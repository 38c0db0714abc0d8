import pytest
from sqlalchemy.future import select

from conftest import add_user, balance
from models.credit_ledger import CreditLedger
from services.credits import (
    ENTRY_ADMIN_ADJUSTMENT,
    ENTRY_RENTAL_SPEND,
    adjust_credits,
    compute_proportional_refund,
    debit_rental_start,
    get_credit_summary,
    get_ledger_balance,
    issue_rental_refund,
)
from services.errors import InsufficientCreditsError


def test_refund_is_floor_of_unused_share():
    assert compute_proportional_refund(100, 10, 4) == 60
    assert compute_proportional_refund(10, 3, 1) == 6
    assert compute_proportional_refund(7, 4, 3) == 1


def test_refund_bounds():
    assert compute_proportional_refund(50, 5, 0) == 50
    assert compute_proportional_refund(50, 5, 5) == 0
    assert compute_proportional_refund(50, 5, 9) == 0
    assert compute_proportional_refund(0, 5, 1) == 0


def test_refund_rejects_empty_budget():
    with pytest.raises(RuntimeError):
        compute_proportional_refund(10, 0, 0)


@pytest.mark.asyncio
async def test_debit_is_conditional_on_balance(db):
    await add_user(db, "poor-renter", credits=5)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await debit_rental_start("poor-renter", db, cost=10, rental_id="r-1")
    await db.rollback()

    assert exc_info.value.required == 10
    assert exc_info.value.available == 5
    assert await balance(db, "poor-renter") == 5


@pytest.mark.asyncio
async def test_free_rental_skips_ledger(db):
    await add_user(db, "free-renter", credits=3)
    charged = await debit_rental_start("free-renter", db, cost=0, rental_id="r-free")
    await db.commit()

    assert charged == {"charged": 0, "balance_after": 3}
    entries = (await db.execute(select(CreditLedger))).scalars().all()
    assert entries == []


@pytest.mark.asyncio
async def test_ledger_tracks_balance(db):
    await add_user(db, "ledger-renter")

    await adjust_credits("ledger-renter", db, delta=50, reason="welcome")
    await debit_rental_start("ledger-renter", db, cost=20, rental_id="r-2")
    await issue_rental_refund("ledger-renter", db, amount=8, rental_id="r-2", reason="early end")
    await db.commit()

    assert await balance(db, "ledger-renter") == 38
    assert await get_ledger_balance("ledger-renter", db) == 38

    summary = await get_credit_summary("ledger-renter", db)
    assert summary["balance"] == 38
    types = sorted(entry["entry_type"] for entry in summary["recent_entries"])
    assert types == sorted([ENTRY_ADMIN_ADJUSTMENT, ENTRY_RENTAL_SPEND, "refund"])


@pytest.mark.asyncio
async def test_negative_adjustment_cannot_overdraw(db):
    await add_user(db, "adjusted-renter", credits=10)

    with pytest.raises(InsufficientCreditsError):
        await adjust_credits("adjusted-renter", db, delta=-11)
    await db.rollback()

    result = await adjust_credits("adjusted-renter", db, delta=-10)
    assert result["balance_after"] == 0
