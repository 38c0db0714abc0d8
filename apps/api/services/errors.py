"""Typed rental-domain errors raised by services and mapped to HTTP by routers."""

from __future__ import annotations

from typing import Optional


class RentalError(Exception):
    """Base class for rental-domain failures surfaced to callers."""


class InvalidRentalRequestError(RentalError):
    """Raised when a rental request carries an impossible budget or cost."""


class AccountNotFoundError(RentalError):
    def __init__(self, account_id: str) -> None:
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class AccountUnavailableError(RentalError):
    """Raised when an account is inactive or banned and cannot be rented."""

    def __init__(self, account_id: str, reason: str) -> None:
        super().__init__(f"Account {account_id} is not rentable: {reason}")
        self.account_id = account_id
        self.reason = reason


class AlreadyOccupiedError(RentalError):
    def __init__(self, account_id: str, current_rental_id: Optional[str] = None) -> None:
        super().__init__(f"Account {account_id} is already occupied")
        self.account_id = account_id
        self.current_rental_id = current_rental_id


class InsufficientCreditsError(RentalError):
    def __init__(self, required: int, available: int) -> None:
        super().__init__(f"Insufficient credits. Required: {required}, available: {available}.")
        self.required = required
        self.available = available


class RentalNotFoundError(RentalError):
    def __init__(self, rental_id: str) -> None:
        super().__init__(f"Rental {rental_id} not found")
        self.rental_id = rental_id


class RentalNotActiveError(RentalError):
    """Raised to direct callers when another path already terminated the rental."""

    def __init__(self, rental_id: str, status: Optional[str] = None) -> None:
        super().__init__(f"Rental {rental_id} is not active (status={status or 'unknown'})")
        self.rental_id = rental_id
        self.status = status
