"""Renter-facing rental endpoints."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from routers.domain_errors import to_http_exception
from routers.rate_limit import rate_limit
from routers.users import ensure_user
from services.credits import get_credit_balance
from services.errors import RentalError, RentalNotFoundError
from services.heartbeat import record_heartbeat
from services.rentals import (
    MAX_MATCH_BUDGET,
    cancel_rental,
    create_rental,
    get_active_rentals_for_renter,
    get_match_history,
    get_rental,
    get_rentals_for_renter,
    serialize_match,
    serialize_rental,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class CreateRentalRequest(BaseModel):
    user_id: Optional[str] = None
    account_id: str = Field(min_length=1)
    match_budget: int = Field(ge=1, le=MAX_MATCH_BUDGET)
    credits: int = Field(ge=0)


class HeartbeatRequest(BaseModel):
    user_id: Optional[str] = None


@router.post("")
async def start_rental(
    request: CreateRentalRequest,
    _rate_limit: None = Depends(rate_limit("rental_create", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_user(db, scoped_user_id)
    try:
        rental = await create_rental(
            db,
            renter_id=scoped_user_id,
            account_id=request.account_id,
            match_budget=request.match_budget,
            credits_to_spend=request.credits,
        )
    except RentalError as exc:
        logger.info("Rental start rejected for %s on %s: %s", scoped_user_id, request.account_id, exc)
        raise to_http_exception(exc) from exc

    return {
        "rental": serialize_rental(rental),
        "credit_balance": await get_credit_balance(scoped_user_id, db),
    }


@router.get("/active")
async def list_active_rentals(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    rentals = await get_active_rentals_for_renter(db, scoped_user_id)
    return {"rentals": [serialize_rental(rental) for rental in rentals]}


@router.get("")
async def list_rentals(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    rentals = await get_rentals_for_renter(db, scoped_user_id, limit=limit)
    return {"rentals": [serialize_rental(rental) for rental in rentals]}


@router.post("/heartbeat")
async def heartbeat(
    request: HeartbeatRequest,
    _rate_limit: None = Depends(rate_limit("rental_heartbeat", limit=240, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    await ensure_user(db, scoped_user_id)
    beat = await record_heartbeat(db, scoped_user_id)
    return {"user_id": scoped_user_id, "last_heartbeat_at": beat.isoformat()}


@router.get("/{rental_id}")
async def rental_detail(
    rental_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    rental = await get_rental(db, rental_id)
    if rental is None or (rental.user_id != auth.user_id and not auth.is_admin):
        raise HTTPException(status_code=404, detail="Rental not found.")
    return serialize_rental(rental)


@router.get("/{rental_id}/matches")
async def rental_matches(
    rental_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    rental = await get_rental(db, rental_id)
    if rental is None or (rental.user_id != auth.user_id and not auth.is_admin):
        raise HTTPException(status_code=404, detail="Rental not found.")
    matches = await get_match_history(db, rental_id)
    return {
        "rental_id": rental_id,
        "matches_used": rental.matches_used,
        "matches_total": rental.matches_total,
        "matches": [serialize_match(match) for match in matches],
    }


@router.post("/{rental_id}/cancel")
async def cancel(
    rental_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        rental = await cancel_rental(db, rental_id, renter_id=None if auth.is_admin else auth.user_id)
    except RentalNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Rental not found.") from exc
    except RentalError as exc:
        raise to_http_exception(exc) from exc
    return {"cancelled": True, "rental": serialize_rental(rental)}
