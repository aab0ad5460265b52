"""Availability model definitions."""

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, Time, UniqueConstraint, func
from teletherapy.database import Base

OVERRIDE_UNAVAILABLE = 'unavailable'
OVERRIDE_CUSTOM_HOURS = 'custom_hours'
OVERRIDE_TYPES = (OVERRIDE_UNAVAILABLE, OVERRIDE_CUSTOM_HOURS)


class AvailabilityTemplate(Base):
    """Weekly recurring hours for one therapist on one day of the week (0 = Sunday)."""
    __tablename__ = "therapist_availability"
    __table_args__ = (UniqueConstraint('therapist_id', 'day_of_week', name='uq_availability_therapist_day'),)

    id = Column(Integer, primary_key=True)
    therapist_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    session_duration = Column(Integer, default=60)
    max_sessions_per_day = Column(Integer)
    is_active = Column(Boolean, default=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class AvailabilityOverride(Base):
    """Date-specific exception to a therapist's weekly template."""
    __tablename__ = "availability_overrides"

    id = Column(Integer, primary_key=True)
    therapist_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    override_date = Column(Date, nullable=False)
    override_type = Column(String, nullable=False)
    start_time = Column(Time)
    end_time = Column(Time)
    reason = Column(String)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, server_default=func.now())
