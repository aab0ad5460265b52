"""User and login session model definitions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, func
from teletherapy.database import Base

USER_TYPES = ('individual', 'therapist', 'partner', 'admin')


class User(Base):
    """Represents an application user of any role."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String)
    user_type = Column(String, nullable=False)  # individual/therapist/partner/admin
    is_active = Column(Boolean, default=True)
    is_verified = Column(Boolean, default=False)
    last_login_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())


class UserSession(Base):
    """Represents a login session backing a role cookie."""
    __tablename__ = "user_sessions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    session_token = Column(String, unique=True, index=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime)
    last_accessed_at = Column(DateTime)
