"""Therapy session (booking) model definitions."""

from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, Integer, String, Text, Time, func, text
from teletherapy.database import Base

STATUS_PENDING_APPROVAL = 'pending_approval'
STATUS_SCHEDULED = 'scheduled'
STATUS_IN_PROGRESS = 'in_progress'
STATUS_COMPLETED = 'completed'
STATUS_CANCELLED = 'cancelled'

SESSION_STATUSES = (
    STATUS_PENDING_APPROVAL,
    STATUS_SCHEDULED,
    STATUS_IN_PROGRESS,
    STATUS_COMPLETED,
    STATUS_CANCELLED,
)
SESSION_TYPES = ('video', 'audio', 'chat')

_active_slot_clause = text("status != 'cancelled'")


class TherapySession(Base):
    """Represents a booked session between a user and a therapist."""
    __tablename__ = "sessions"
    __table_args__ = (
        Index(
            'uq_sessions_active_slot',
            'therapist_id',
            'scheduled_date',
            'scheduled_time',
            unique=True,
            sqlite_where=_active_slot_clause,
            postgresql_where=_active_slot_clause,
        ),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    therapist_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    scheduled_date = Column(Date, nullable=False)
    scheduled_time = Column(Time, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=60)
    status = Column(String, nullable=False, default=STATUS_SCHEDULED)
    session_type = Column(String, default='video')
    notes = Column(Text)
    room_name = Column(String)
    room_url = Column(String)
    cancellation_reason = Column(String)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    cancelled_at = Column(DateTime)
