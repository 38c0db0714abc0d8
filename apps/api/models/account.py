"""Rentable game account model."""

from sqlalchemy import Boolean, Column, DateTime, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class Account(Base):
    """Shared third-party account and its single current occupant."""

    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    riot_username = Column(String, nullable=False)
    riot_tag = Column(String, nullable=False)
    server = Column(String, nullable=False, default="NA")  # NA, EUW, KR, ...
    puuid = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default="active")  # active, inactive
    is_banned = Column(Boolean, nullable=False, default=False)
    # Set only by rental start, cleared only by a terminal rental transition.
    current_rental_id = Column(String, nullable=True, index=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    rentals = relationship("Rental", back_populates="account")
