import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from conftest import T0, FakeMatchProvider, add_account, add_user, balance, minutes_after, occupant
from models.activity_log import ActivityLog
from models.credit_ledger import CreditLedger
from models.rental import STATUS_ACTIVE, STATUS_CANCELLED, STATUS_COMPLETED, STATUS_FORCE_RELEASED
from models.rental_match import RentalMatch
from services.match_sweep import run_match_sweep
from services.rentals import cancel_rental, create_rental, get_match_history, get_rental


async def _match_rows(db, rental_id: str) -> int:
    result = await db.execute(select(func.count(RentalMatch.id)).where(RentalMatch.rental_id == rental_id))
    return int(result.scalar())


class CancelWhileListing(FakeMatchProvider):
    """Renter cancels from another session while the sweep waits on the provider."""

    def __init__(self, session_maker, rental_id: str, renter_id: str) -> None:
        super().__init__()
        self.session_maker = session_maker
        self.rental_id = rental_id
        self.renter_id = renter_id

    async def list_match_ids(self, identity, *, start_time: int, count: int):
        async with self.session_maker() as request:
            await cancel_rental(request, self.rental_id, renter_id=self.renter_id)
        return await super().list_match_ids(identity, start_time=start_time, count=count)


@pytest.mark.asyncio
async def test_budget_exhaustion_completes_rental_without_refund(db, fake_provider):
    await add_user(db, "renter-a", credits=30)
    await add_account(db, "acct-a", puuid="puuid-a")
    rental = await create_rental(db, renter_id="renter-a", account_id="acct-a", match_budget=3, credits_to_spend=30, now=T0)

    fake_provider.play("puuid-a", "EUW1_100")
    stats = await run_match_sweep(db, provider=fake_provider, now=minutes_after(T0, 10))

    assert stats["checked"] == 1
    assert stats["new_matches"] == 1
    assert stats["completed"] == 0
    current = await get_rental(db, rental.id)
    assert current.matches_used == 1
    assert current.status == STATUS_ACTIVE
    assert fake_provider.list_calls[0]["start_time"] == int(T0.timestamp())

    fake_provider.play("puuid-a", "EUW1_101", "EUW1_102")
    stats = await run_match_sweep(db, provider=fake_provider, now=minutes_after(T0, 40))

    assert stats["new_matches"] == 2
    assert stats["completed"] == 1
    current = await get_rental(db, rental.id)
    assert current.matches_used == 3
    assert current.status == STATUS_COMPLETED
    assert current.ended_at is not None
    assert await occupant(db, "acct-a") is None
    assert await balance(db, "renter-a") == 0

    refunds = await db.execute(select(CreditLedger).where(CreditLedger.entry_type == "refund"))
    assert refunds.scalars().all() == []
    events = (await db.execute(select(ActivityLog.event_type))).scalars().all()
    assert events.count("match_detected") == 2
    assert events.count("rental_completed") == 1
    assert fake_provider.closed is False


@pytest.mark.asyncio
async def test_overlapping_sweeps_attribute_a_match_once(db, fake_provider):
    await add_user(db, "renter-a", credits=50)
    await add_account(db, "acct-a", puuid="puuid-a")
    rental = await create_rental(db, renter_id="renter-a", account_id="acct-a", match_budget=5, credits_to_spend=50, now=T0)

    fake_provider.play("puuid-a", "EUW1_200")
    first = await run_match_sweep(db, provider=fake_provider, now=minutes_after(T0, 5))
    second = await run_match_sweep(db, provider=fake_provider, now=minutes_after(T0, 7))

    assert first["new_matches"] == 1
    assert second["new_matches"] == 0
    assert await _match_rows(db, rental.id) == 1
    assert (await get_rental(db, rental.id)).matches_used == 1


@pytest.mark.asyncio
async def test_listing_failure_isolated_to_one_rental(db, fake_provider):
    await add_user(db, "renter-a", credits=10)
    await add_user(db, "renter-b", credits=10)
    await add_account(db, "acct-a", puuid="puuid-a")
    await add_account(db, "acct-b", puuid="puuid-b")
    healthy = await create_rental(db, renter_id="renter-a", account_id="acct-a", match_budget=5, credits_to_spend=10, now=T0)
    broken = await create_rental(db, renter_id="renter-b", account_id="acct-b", match_budget=5, credits_to_spend=10, now=T0)

    fake_provider.play("puuid-a", "EUW1_300")
    fake_provider.failing_lists.add("puuid-b")
    # Well past the idle threshold: a failed listing must not be mistaken for inactivity.
    stats = await run_match_sweep(db, provider=fake_provider, now=minutes_after(T0, 180))

    assert stats["errors"] == 1
    assert stats["new_matches"] == 1
    assert stats["idle_released"] == 0
    assert (await get_rental(db, healthy.id)).matches_used == 1
    assert (await get_rental(db, broken.id)).status == STATUS_ACTIVE
    assert await balance(db, "renter-b") == 0


@pytest.mark.asyncio
async def test_failed_detail_is_retried_next_sweep(db, fake_provider):
    await add_user(db, "renter-a", credits=10)
    await add_account(db, "acct-a", puuid="puuid-a")
    rental = await create_rental(db, renter_id="renter-a", account_id="acct-a", match_budget=5, credits_to_spend=10, now=T0)

    fake_provider.play("puuid-a", "EUW1_400", "EUW1_401")
    fake_provider.failing_details.add("EUW1_401")
    first = await run_match_sweep(db, provider=fake_provider, now=minutes_after(T0, 5))
    assert first["new_matches"] == 1

    fake_provider.failing_details.clear()
    second = await run_match_sweep(db, provider=fake_provider, now=minutes_after(T0, 10))
    assert second["new_matches"] == 1
    assert (await get_rental(db, rental.id)).matches_used == 2


@pytest.mark.asyncio
async def test_account_without_identity_is_skipped(db, fake_provider):
    await add_user(db, "renter-a", credits=10)
    await add_account(db, "acct-a", puuid=None)
    await create_rental(db, renter_id="renter-a", account_id="acct-a", match_budget=5, credits_to_spend=10, now=T0)

    stats = await run_match_sweep(db, provider=fake_provider, now=minutes_after(T0, 5))

    assert stats["skipped"] == 1
    assert fake_provider.list_calls == []


@pytest.mark.asyncio
async def test_quiet_rental_is_handed_to_idle_check(db, fake_provider):
    await add_user(db, "renter-a", credits=25)
    await add_account(db, "acct-a", puuid="puuid-a")
    rental = await create_rental(db, renter_id="renter-a", account_id="acct-a", match_budget=5, credits_to_spend=25, now=T0)

    stats = await run_match_sweep(db, provider=fake_provider, now=minutes_after(T0, 61))

    assert stats["idle_released"] == 1
    current = await get_rental(db, rental.id)
    assert current.status == STATUS_FORCE_RELEASED
    assert current.end_reason == "idle_timeout"
    assert await balance(db, "renter-a") == 25
    assert await occupant(db, "acct-a") is None


@pytest.mark.asyncio
async def test_sweep_with_no_active_rentals(db, fake_provider):
    stats = await run_match_sweep(db, provider=fake_provider, now=T0)
    assert stats == {"checked": 0, "new_matches": 0, "completed": 0, "idle_released": 0, "skipped": 0, "errors": 0}


@pytest.mark.asyncio
async def test_cancel_during_listing_leaves_no_attribution(db, session_maker):
    await add_user(db, "renter-a", credits=30)
    await add_account(db, "acct-a", puuid="puuid-a")
    rental = await create_rental(db, renter_id="renter-a", account_id="acct-a", match_budget=3, credits_to_spend=30, now=T0)

    provider = CancelWhileListing(session_maker, rental.id, "renter-a")
    provider.play("puuid-a", "EUW1_700")
    stats = await run_match_sweep(db, provider=provider, now=minutes_after(T0, 90))

    assert stats["new_matches"] == 0
    assert stats["completed"] == 0
    assert stats["idle_released"] == 0
    current = await get_rental(db, rental.id)
    assert current.status == STATUS_CANCELLED
    assert current.matches_used == 0
    assert await _match_rows(db, rental.id) == 0
    assert await balance(db, "renter-a") == 0
    events = (await db.execute(select(ActivityLog.event_type))).scalars().all()
    assert "match_detected" not in events
    assert events.count("rental_cancelled") == 1


@pytest.mark.asyncio
async def test_matches_past_budget_stay_unattributed(db, fake_provider):
    await add_user(db, "renter-a", credits=20)
    await add_account(db, "acct-a", puuid="puuid-a")
    rental = await create_rental(db, renter_id="renter-a", account_id="acct-a", match_budget=2, credits_to_spend=20, now=T0)

    fake_provider.play("puuid-a", "EUW1_800", "EUW1_801", "EUW1_802")
    stats = await run_match_sweep(db, provider=fake_provider, now=minutes_after(T0, 30))

    assert stats["new_matches"] == 2
    assert stats["completed"] == 1
    current = await get_rental(db, rental.id)
    assert current.status == STATUS_COMPLETED
    assert current.matches_used == 2
    history = await get_match_history(db, rental.id)
    assert [match.match_id for match in history] == ["EUW1_800", "EUW1_801"]
