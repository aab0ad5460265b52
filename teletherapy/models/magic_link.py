"""Magic link model definitions."""

from sqlalchemy import JSON, Column, DateTime, Integer, String, func
from teletherapy.database import Base


class MagicLink(Base):
    """Single-use, time-boxed login or signup token."""
    __tablename__ = "magic_links"

    id = Column(Integer, primary_key=True)
    email = Column(String, index=True, nullable=False)
    token = Column(String, unique=True, index=True, nullable=False)
    type = Column(String, nullable=False)  # login/signup
    auth_type = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime)
    link_metadata = Column('metadata', JSON)
    created_at = Column(DateTime, server_default=func.now())
