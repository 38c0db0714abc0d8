"""Operator endpoints: account inventory, overrides and settings."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.account import Account
from routers.auth_scope import AuthContext, require_admin
from routers.domain_errors import to_http_exception
from routers.users import ensure_user
from services.accounts import (
    create_account,
    get_account,
    list_accounts,
    reconcile_occupancy,
    resolve_missing_puuids,
    update_account,
)
from services.app_settings import get_idle_timeout_minutes, set_idle_timeout_minutes
from services.credits import adjust_credits
from services.errors import RentalError
from services.match_provider import get_match_provider
from services.rentals import force_release_rental, serialize_rental

router = APIRouter()
logger = logging.getLogger(__name__)


class AccountCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    riot_username: str = Field(min_length=1)
    riot_tag: str = Field(min_length=1)
    server: str = "NA"
    puuid: Optional[str] = None
    status: str = Field(default="active", pattern="^(active|inactive)$")
    notes: Optional[str] = None


class AccountUpdateRequest(BaseModel):
    name: Optional[str] = None
    riot_username: Optional[str] = None
    riot_tag: Optional[str] = None
    server: Optional[str] = None
    puuid: Optional[str] = None
    status: Optional[str] = Field(default=None, pattern="^(active|inactive)$")
    is_banned: Optional[bool] = None
    notes: Optional[str] = None


class ForceReleaseRequest(BaseModel):
    reason: str = Field(default="admin_force_release", min_length=1, max_length=200)
    refund: bool = False


class IdleTimeoutRequest(BaseModel):
    minutes: int = Field(ge=1, le=24 * 60)


class CreditAdjustmentRequest(BaseModel):
    delta: int
    reason: Optional[str] = Field(default=None, max_length=500)


def _serialize_account(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "name": account.name,
        "riot_username": account.riot_username,
        "riot_tag": account.riot_tag,
        "server": account.server,
        "puuid": account.puuid,
        "status": account.status,
        "is_banned": account.is_banned,
        "current_rental_id": account.current_rental_id,
        "notes": account.notes,
    }


@router.get("/accounts")
async def accounts_index(
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    accounts = await list_accounts(db)
    return {"accounts": [_serialize_account(account) for account in accounts]}


@router.post("/accounts")
async def accounts_create(
    request: AccountCreateRequest,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    account = await create_account(db, **request.model_dump())
    logger.info("Account %s added (%s#%s %s)", account.id, account.riot_username, account.riot_tag, account.server)
    return _serialize_account(account)


@router.get("/accounts/{account_id}")
async def accounts_detail(
    account_id: str,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    account = await get_account(db, account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found.")
    return _serialize_account(account)


@router.patch("/accounts/{account_id}")
async def accounts_update(
    account_id: str,
    request: AccountUpdateRequest,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        account = await update_account(db, account_id, request.model_dump(exclude_unset=True))
    except RentalError as exc:
        raise to_http_exception(exc) from exc
    return _serialize_account(account)


@router.post("/accounts/resolve-puuids")
async def accounts_resolve_puuids(
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        provider = get_match_provider()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    async with provider:
        return await resolve_missing_puuids(db, provider)


@router.post("/occupancy/reconcile")
async def occupancy_reconcile(
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await reconcile_occupancy(db)


@router.post("/rentals/{rental_id}/force-release")
async def rentals_force_release(
    rental_id: str,
    request: Optional[ForceReleaseRequest] = None,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    payload = request or ForceReleaseRequest()
    try:
        outcome = await force_release_rental(db, rental_id, reason=payload.reason, refund=payload.refund)
    except RentalError as exc:
        raise to_http_exception(exc) from exc
    logger.info("Admin %s force-released rental %s (refund=%s)", admin.user_id, rental_id, outcome["credits_refunded"])
    return {
        "rental": serialize_rental(outcome["rental"]),
        "credits_refunded": outcome["credits_refunded"],
    }


@router.get("/settings/idle-timeout")
async def idle_timeout_get(
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return {"minutes": await get_idle_timeout_minutes(db)}


@router.put("/settings/idle-timeout")
async def idle_timeout_put(
    request: IdleTimeoutRequest,
    _admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return {"minutes": await set_idle_timeout_minutes(db, request.minutes)}


@router.post("/users/{user_id}/credits")
async def users_adjust_credits(
    user_id: str,
    request: CreditAdjustmentRequest,
    admin: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if request.delta == 0:
        raise HTTPException(status_code=422, detail="delta must be non-zero.")
    await ensure_user(db, user_id)
    try:
        result = await adjust_credits(user_id, db, delta=request.delta, reason=request.reason)
    except RentalError as exc:
        raise to_http_exception(exc) from exc
    logger.info("Admin %s adjusted credits for %s by %+d", admin.user_id, user_id, request.delta)
    return {"user_id": user_id, **result}
