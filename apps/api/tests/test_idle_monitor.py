from datetime import timedelta

import pytest
from sqlalchemy.future import select

from conftest import T0, add_account, add_user, balance, minutes_after, occupant
from models.activity_log import ActivityLog
from models.rental import STATUS_ACTIVE, STATUS_FORCE_RELEASED, Rental
from services.app_settings import get_idle_timeout_minutes, set_idle_timeout_minutes
from services.heartbeat import record_heartbeat, report_stale_heartbeats
from services.idle_monitor import is_rental_idle, release_idle_rental, run_idle_sweep
from services.match_provider import MatchDetail
from services.rentals import create_rental, get_rental, record_matches


@pytest.mark.asyncio
async def test_unused_rental_released_with_full_refund(db):
    await add_user(db, "renter-b", credits=50)
    await add_account(db, "acct-b", puuid="puuid-b")
    rental = await create_rental(db, renter_id="renter-b", account_id="acct-b", match_budget=5, credits_to_spend=50, now=T0)

    stats = await run_idle_sweep(db, now=minutes_after(T0, 61))

    assert stats == {"checked": 1, "released": 1, "refunded_credits": 50, "errors": 0}
    current = await get_rental(db, rental.id)
    assert current.status == STATUS_FORCE_RELEASED
    assert current.end_reason == "idle_timeout"
    assert current.ended_at is not None
    assert await occupant(db, "acct-b") is None
    assert await balance(db, "renter-b") == 50

    event = (
        await db.execute(select(ActivityLog).where(ActivityLog.event_type == "idle_timeout"))
    ).scalar_one()
    assert event.metadata_json["credits_refunded"] == 50

    again = await run_idle_sweep(db, now=minutes_after(T0, 120))
    assert again["released"] == 0
    assert await balance(db, "renter-b") == 50


@pytest.mark.asyncio
async def test_partial_use_refunds_unused_share(db):
    await add_user(db, "renter-b", credits=100)
    await add_account(db, "acct-b", puuid="puuid-b")
    rental = await create_rental(db, renter_id="renter-b", account_id="acct-b", match_budget=10, credits_to_spend=100, now=T0)
    details = [
        MatchDetail(match_id=f"EUW1_{i}", game_mode="ARAM", champion="Lux", win=True, duration_secs=1200)
        for i in range(4)
    ]
    await record_matches(db, rental.id, details, now=minutes_after(T0, 5))
    await db.commit()

    not_yet = await run_idle_sweep(db, now=minutes_after(T0, 64))
    assert not_yet["released"] == 0

    stats = await run_idle_sweep(db, now=minutes_after(T0, 66))
    assert stats["refunded_credits"] == 60
    assert await balance(db, "renter-b") == 60


@pytest.mark.asyncio
async def test_recent_heartbeat_keeps_rental_alive(db):
    await add_user(db, "renter-b", credits=10, heartbeat_at=minutes_after(T0, 55))
    await add_account(db, "acct-b", puuid="puuid-b")
    rental = await create_rental(db, renter_id="renter-b", account_id="acct-b", match_budget=5, credits_to_spend=10, now=T0)

    stats = await run_idle_sweep(db, now=minutes_after(T0, 61))

    assert stats["released"] == 0
    assert (await get_rental(db, rental.id)).status == STATUS_ACTIVE

    stats = await run_idle_sweep(db, now=minutes_after(T0, 116))
    assert stats["released"] == 1


@pytest.mark.asyncio
async def test_threshold_comes_from_app_settings(db):
    assert await get_idle_timeout_minutes(db) == 60
    assert await set_idle_timeout_minutes(db, 10) == 10
    with pytest.raises(ValueError):
        await set_idle_timeout_minutes(db, 0)

    await add_user(db, "renter-b", credits=10)
    await add_account(db, "acct-b", puuid="puuid-b")
    await create_rental(db, renter_id="renter-b", account_id="acct-b", match_budget=5, credits_to_spend=10, now=T0)

    stats = await run_idle_sweep(db, now=minutes_after(T0, 11))
    assert stats["released"] == 1


def test_idle_predicate():
    rental = Rental(created_at=T0, last_match_at=None, matches_used=0, matches_total=3)

    assert not is_rental_idle(rental, threshold_minutes=60, now=minutes_after(T0, 60), require_stale_heartbeat=False)
    assert is_rental_idle(rental, threshold_minutes=60, now=minutes_after(T0, 61), require_stale_heartbeat=False)

    rental.last_match_at = minutes_after(T0, 30)
    assert not is_rental_idle(rental, threshold_minutes=60, now=minutes_after(T0, 61), require_stale_heartbeat=False)

    fresh_beat = minutes_after(T0, 100)
    assert not is_rental_idle(
        rental,
        threshold_minutes=60,
        now=minutes_after(T0, 120),
        heartbeat_at=fresh_beat,
        require_stale_heartbeat=True,
    )
    assert is_rental_idle(
        rental,
        threshold_minutes=60,
        now=minutes_after(T0, 120),
        heartbeat_at=fresh_beat,
        require_stale_heartbeat=False,
    )


@pytest.mark.asyncio
async def test_release_skipped_when_match_landed_after_read(session_maker):
    async with session_maker() as setup:
        await add_user(setup, "renter-b", credits=40)
        await add_account(setup, "acct-b", puuid="puuid-b")

    async with session_maker() as monitor_session:
        rental = await create_rental(
            monitor_session,
            renter_id="renter-b",
            account_id="acct-b",
            match_budget=4,
            credits_to_spend=40,
            now=T0,
        )

        async with session_maker() as sweep_session:
            await record_matches(
                sweep_session,
                rental.id,
                [MatchDetail(match_id="EUW1_9", game_mode="CLASSIC", champion="Vi", win=True, duration_secs=1700)],
                now=minutes_after(T0, 1),
            )
            await sweep_session.commit()

        # monitor_session still believes matches_used == 0.
        refunded = await release_idle_rental(monitor_session, rental, threshold_minutes=60, now=minutes_after(T0, 90))
        assert refunded is None

    async with session_maker() as check:
        current = await get_rental(check, rental.id)
        assert current.status == STATUS_ACTIVE
        assert current.matches_used == 1
        assert await balance(check, "renter-b") == 0


@pytest.mark.asyncio
async def test_stale_heartbeat_report_only_observes(db):
    await add_user(db, "quiet", credits=10)
    await add_user(db, "chatty", credits=10)
    await add_account(db, "acct-1", puuid="p1")
    await add_account(db, "acct-2", puuid="p2")
    await create_rental(db, renter_id="quiet", account_id="acct-1", match_budget=2, credits_to_spend=10, now=T0)
    await create_rental(db, renter_id="chatty", account_id="acct-2", match_budget=2, credits_to_spend=10, now=T0)

    now = minutes_after(T0, 30)
    await record_heartbeat(db, "chatty", now=now - timedelta(seconds=30))

    report = await report_stale_heartbeats(db, now=now)

    assert report == {"stale_users": 1, "total_active": 2}
    statuses = (await db.execute(select(Rental.status))).scalars().all()
    assert statuses == [STATUS_ACTIVE, STATUS_ACTIVE]
    events = (
        await db.execute(select(ActivityLog.user_id).where(ActivityLog.event_type == "heartbeat_timeout"))
    ).scalars().all()
    assert events == ["quiet"]
