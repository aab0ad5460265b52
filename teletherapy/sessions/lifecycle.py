"""Status transitions for therapy sessions."""

import logging
from datetime import datetime, timezone

from teletherapy.models.therapy_session import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING_APPROVAL,
    STATUS_SCHEDULED,
    TherapySession,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    STATUS_PENDING_APPROVAL: {STATUS_SCHEDULED, STATUS_CANCELLED},
    STATUS_SCHEDULED: {STATUS_IN_PROGRESS, STATUS_CANCELLED},
    STATUS_IN_PROGRESS: {STATUS_COMPLETED, STATUS_CANCELLED},
    STATUS_COMPLETED: set(),
    STATUS_CANCELLED: set(),
}

RESCHEDULABLE_STATUSES = {STATUS_PENDING_APPROVAL, STATUS_SCHEDULED}


class InvalidStatusTransition(Exception):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot change session status from '{current}' to '{requested}'.")
        self.current = current
        self.requested = requested


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def can_transition(current: str, requested: str) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, set())


def transition(session: TherapySession, requested: str, now: datetime | None = None) -> TherapySession:
    """Move ``session`` to ``requested`` and stamp the matching timestamp.

    Raises InvalidStatusTransition when the move is not allowed. The caller
    commits.
    """
    current = session.status
    if not can_transition(current, requested):
        raise InvalidStatusTransition(current, requested)

    now = now or utcnow()
    session.status = requested
    session.updated_at = now
    if requested == STATUS_IN_PROGRESS:
        session.started_at = now
    elif requested == STATUS_COMPLETED:
        session.completed_at = now
    elif requested == STATUS_CANCELLED:
        session.cancelled_at = now

    logger.info('Session %s moved from %s to %s', session.id, current, requested)
    return session
