"""Match attribution record model."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
import uuid

from database import Base


class RentalMatch(Base):
    """Immutable attribution of one external match to one rental."""

    __tablename__ = "rental_matches"
    __table_args__ = (
        UniqueConstraint("rental_id", "match_id", name="uq_rental_matches_rental_match"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    rental_id = Column(String, ForeignKey("rentals.id"), nullable=False, index=True)
    match_id = Column(String, nullable=False)
    game_mode = Column(String, nullable=True)
    champion = Column(String, nullable=True)
    win = Column(Boolean, nullable=True)
    duration_secs = Column(Integer, nullable=True)
    detected_at = Column(DateTime(timezone=True), nullable=False)

    rental = relationship("Rental", back_populates="matches")
