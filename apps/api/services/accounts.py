"""Account registry: rentable inventory and the account <-> rental occupancy link."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.account import Account
from models.rental import STATUS_ACTIVE, Rental
from services.errors import AccountNotFoundError, AlreadyOccupiedError
from services.match_provider import AccountIdentity, MatchHistoryProvider, MatchProviderError, regional_route

logger = logging.getLogger(__name__)


EDITABLE_ACCOUNT_FIELDS = {"name", "riot_username", "riot_tag", "server", "puuid", "status", "is_banned", "notes"}


async def get_account(db: AsyncSession, account_id: str) -> Optional[Account]:
    result = await db.execute(select(Account).where(Account.id == account_id))
    return result.scalar_one_or_none()


async def list_accounts(db: AsyncSession) -> List[Account]:
    result = await db.execute(select(Account).order_by(Account.created_at.desc()))
    return list(result.scalars().all())


async def create_account(db: AsyncSession, **fields: Any) -> Account:
    values = {key: value for key, value in fields.items() if key in EDITABLE_ACCOUNT_FIELDS}
    values["server"] = str(values.get("server") or "NA").strip().upper()
    account = Account(**values)
    db.add(account)
    await db.commit()
    return account


async def update_account(db: AsyncSession, account_id: str, changes: Dict[str, Any]) -> Account:
    """Operator edit. Occupancy is never writable here."""
    account = await get_account(db, account_id)
    if account is None:
        raise AccountNotFoundError(account_id)
    for key, value in changes.items():
        if key not in EDITABLE_ACCOUNT_FIELDS:
            continue
        if key == "server" and value is not None:
            value = str(value).strip().upper()
        setattr(account, key, value)
    await db.commit()
    return account


def resolve_identity(account: Account) -> Optional[AccountIdentity]:
    """External identity used to query match history, or None when no puuid is known."""
    puuid = str(account.puuid or "").strip()
    if not puuid:
        return None
    return AccountIdentity(
        account_id=account.id,
        puuid=puuid,
        game_name=account.riot_username,
        tag_line=account.riot_tag,
        server=account.server,
        region=regional_route(account.server),
    )


async def _rental_status(db: AsyncSession, rental_id: str) -> Optional[str]:
    result = await db.execute(select(Rental.status).where(Rental.id == rental_id))
    return result.scalar_one_or_none()


async def start_occupancy(db: AsyncSession, account_id: str, rental_id: str) -> None:
    """Compare-and-set the account's occupant to ``rental_id``.

    Raises AlreadyOccupiedError when another active rental holds the account.
    A link to a rental that is no longer active is replaced, again by
    compare-and-set on the stale value.
    """
    for _ in range(2):
        claimed = await db.execute(
            update(Account)
            .where(Account.id == account_id, Account.current_rental_id.is_(None))
            .values(current_rental_id=rental_id)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 1:
            return

        result = await db.execute(select(Account.current_rental_id).where(Account.id == account_id))
        row = result.one_or_none()
        if row is None:
            raise AccountNotFoundError(account_id)
        current = row[0]
        if current == rental_id:
            return
        if current is None:
            # Released between the two statements; claim again.
            continue

        if await _rental_status(db, current) == STATUS_ACTIVE:
            raise AlreadyOccupiedError(account_id, current)

        replaced = await db.execute(
            update(Account)
            .where(Account.id == account_id, Account.current_rental_id == current)
            .values(current_rental_id=rental_id)
            .execution_options(synchronize_session=False)
        )
        if replaced.rowcount == 1:
            logger.warning("Replaced stale occupancy on account %s (rental %s was not active)", account_id, current)
            return
        raise AlreadyOccupiedError(account_id)

    raise AlreadyOccupiedError(account_id)


async def end_occupancy(db: AsyncSession, account_id: str, rental_id: str) -> bool:
    """Clear the occupant only if it is still ``rental_id``. Returns whether it cleared."""
    result = await db.execute(
        update(Account)
        .where(Account.id == account_id, Account.current_rental_id == rental_id)
        .values(current_rental_id=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def reconcile_occupancy(db: AsyncSession) -> Dict[str, int]:
    """Repair account/rental back-references left behind by crashed writers."""
    cleared = 0
    relinked = 0
    conflicts = 0

    result = await db.execute(
        select(Account.id, Account.current_rental_id, Rental.status)
        .outerjoin(Rental, Rental.id == Account.current_rental_id)
        .where(Account.current_rental_id.is_not(None))
    )
    for account_id, rental_id, status in result.all():
        if status == STATUS_ACTIVE:
            continue
        if await end_occupancy(db, account_id, rental_id):
            cleared += 1
            logger.warning("Cleared dangling occupancy account=%s rental=%s status=%s", account_id, rental_id, status)

    result = await db.execute(
        select(Rental.id, Rental.account_id, Account.current_rental_id)
        .join(Account, Account.id == Rental.account_id)
        .where(Rental.status == STATUS_ACTIVE)
    )
    for rental_id, account_id, current in result.all():
        if current == rental_id:
            continue
        if current is None:
            linked = await db.execute(
                update(Account)
                .where(Account.id == account_id, Account.current_rental_id.is_(None))
                .values(current_rental_id=rental_id)
                .execution_options(synchronize_session=False)
            )
            if linked.rowcount == 1:
                relinked += 1
                continue
        conflicts += 1
        logger.error(
            "Active rental %s does not own account %s (occupant=%s); needs operator review",
            rental_id,
            account_id,
            current,
        )

    await db.commit()
    return {"cleared": cleared, "relinked": relinked, "conflicts": conflicts}


async def resolve_missing_puuids(db: AsyncSession, provider: MatchHistoryProvider) -> Dict[str, int]:
    """Fill provider identities for accounts that lack one; failures are counted, never fatal."""
    result = await db.execute(select(Account).where(Account.puuid.is_(None)))
    accounts = result.scalars().all()
    resolved = 0
    failed = 0
    for account in accounts:
        try:
            puuid = await provider.resolve_puuid(
                game_name=account.riot_username,
                tag_line=account.riot_tag,
                server=account.server,
            )
        except MatchProviderError as exc:
            failed += 1
            logger.warning("PUUID lookup failed for account %s (%s#%s): %s", account.id, account.riot_username, account.riot_tag, exc)
            continue
        if not puuid:
            failed += 1
            continue
        account.puuid = puuid
        resolved += 1
    await db.commit()
    return {"resolved": resolved, "failed": failed, "total": len(accounts)}
