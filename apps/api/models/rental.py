"""Rental model and lifecycle statuses."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
import uuid

from database import Base


STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_FORCE_RELEASED = "force_released"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_CANCELLED, STATUS_FORCE_RELEASED})


class Rental(Base):
    """Lease of one account to one renter, metered by a match budget.

    Status moves from ``active`` to exactly one terminal status. The move is
    enforced by the conditional update in ``services.rentals.transition_terminal``;
    there is no other writer of ``status`` or ``ended_at``.
    """

    __tablename__ = "rentals"
    __table_args__ = (
        CheckConstraint("matches_total > 0", name="ck_rentals_matches_total_positive"),
        CheckConstraint(
            "matches_used >= 0 AND matches_used <= matches_total",
            name="ck_rentals_matches_used_within_budget",
        ),
        CheckConstraint("credits_spent >= 0", name="ck_rentals_credits_spent_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    credits_spent = Column(Integer, nullable=False, default=0)
    matches_total = Column(Integer, nullable=False)
    matches_used = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=STATUS_ACTIVE, index=True)
    end_reason = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    last_match_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="rentals")
    account = relationship("Account", back_populates="rentals")
    matches = relationship("RentalMatch", back_populates="rental", cascade="all, delete-orphan")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def matches_remaining(self) -> int:
        return max(int(self.matches_total or 0) - int(self.matches_used or 0), 0)
