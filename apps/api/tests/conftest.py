import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret-for-rental-sessions-0123456789")
os.environ.setdefault("RIOT_API_KEY", "")
os.environ.setdefault("CRON_SECRET", "cron-secret-for-tests-0123")

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Set

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.account import Account
from models.user import User
from routers import rate_limit
from services.match_provider import MatchDetail, MatchHistoryProvider, MatchProviderError
from services.session_token import create_session_token


T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def auth_header(user_id: str, role: str = "user") -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_session_token(user_id, role=role)['token']}"}


class FakeMatchProvider(MatchHistoryProvider):
    """In-memory match history keyed by puuid."""

    def __init__(self) -> None:
        self.history: Dict[str, List[str]] = {}
        self.details: Dict[str, MatchDetail] = {}
        self.failing_lists: Set[str] = set()
        self.failing_details: Set[str] = set()
        self.riot_ids: Dict[str, str] = {}
        self.failing_lookups: Set[str] = set()
        self.list_calls: List[Dict[str, object]] = []
        self.closed = False

    def play(self, puuid: str, *match_ids: str) -> None:
        self.history.setdefault(puuid, []).extend(match_ids)

    async def list_match_ids(self, identity, *, start_time: int, count: int) -> List[str]:
        self.list_calls.append({"puuid": identity.puuid, "start_time": start_time, "count": count})
        if identity.puuid in self.failing_lists:
            raise MatchProviderError(f"list failed for {identity.puuid}")
        return list(reversed(self.history.get(identity.puuid, [])))[:count]

    async def fetch_match_detail(self, identity, match_id: str) -> MatchDetail:
        if match_id in self.failing_details:
            raise MatchProviderError(f"detail failed for {match_id}")
        return self.details.get(match_id) or MatchDetail(
            match_id=match_id,
            game_mode="CLASSIC",
            champion="Ahri",
            win=True,
            duration_secs=1800,
        )

    async def resolve_puuid(self, *, game_name: str, tag_line: str, server: str) -> Optional[str]:
        key = f"{game_name}#{tag_line}"
        if key in self.failing_lookups:
            raise MatchProviderError(f"lookup failed for {key}")
        return self.riot_ids.get(key)

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "rentals.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def integration_client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def fake_provider():
    return FakeMatchProvider()


async def add_user(db: AsyncSession, user_id: str, *, credits: int = 0, role: str = "user", heartbeat_at=None) -> User:
    user = User(
        id=user_id,
        email=f"{user_id}@example.test",
        role=role,
        credit_balance=credits,
        last_heartbeat_at=heartbeat_at,
    )
    db.add(user)
    await db.commit()
    return user


async def add_account(
    db: AsyncSession,
    account_id: str,
    *,
    puuid: Optional[str] = None,
    server: str = "EUW",
    status: str = "active",
    is_banned: bool = False,
) -> Account:
    account = Account(
        id=account_id,
        name=f"Account {account_id}",
        riot_username=f"player-{account_id}",
        riot_tag="EUW1",
        server=server,
        puuid=puuid,
        status=status,
        is_banned=is_banned,
    )
    db.add(account)
    await db.commit()
    return account


def minutes_after(base: datetime, minutes: int) -> datetime:
    return base + timedelta(minutes=minutes)


async def occupant(db: AsyncSession, account_id: str) -> Optional[str]:
    from sqlalchemy.future import select

    result = await db.execute(select(Account.current_rental_id).where(Account.id == account_id))
    return result.scalar_one()


async def balance(db: AsyncSession, user_id: str) -> int:
    from services.credits import get_credit_balance

    return await get_credit_balance(user_id, db)
