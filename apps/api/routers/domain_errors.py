"""Translate rental-domain errors into HTTP responses."""

from fastapi import HTTPException

from services.errors import (
    AccountNotFoundError,
    AccountUnavailableError,
    AlreadyOccupiedError,
    InsufficientCreditsError,
    InvalidRentalRequestError,
    RentalError,
    RentalNotActiveError,
    RentalNotFoundError,
)


def to_http_exception(exc: RentalError) -> HTTPException:
    if isinstance(exc, AlreadyOccupiedError):
        return HTTPException(status_code=409, detail={"code": "already_occupied", "message": str(exc)})
    if isinstance(exc, InsufficientCreditsError):
        return HTTPException(
            status_code=402,
            detail={
                "code": "insufficient_credits",
                "message": str(exc),
                "required": exc.required,
                "available": exc.available,
            },
        )
    if isinstance(exc, RentalNotActiveError):
        return HTTPException(
            status_code=409,
            detail={"code": "not_active", "message": str(exc), "status": exc.status},
        )
    if isinstance(exc, AccountUnavailableError):
        return HTTPException(status_code=409, detail={"code": "account_unavailable", "message": str(exc)})
    if isinstance(exc, (RentalNotFoundError, AccountNotFoundError)):
        return HTTPException(status_code=404, detail={"code": "not_found", "message": str(exc)})
    if isinstance(exc, InvalidRentalRequestError):
        return HTTPException(status_code=422, detail={"code": "invalid_request", "message": str(exc)})
    return HTTPException(status_code=400, detail={"code": "rental_error", "message": str(exc)})
