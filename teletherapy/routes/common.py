import logging

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError

from teletherapy.database import ensure_availability_schema, ensure_session_schema
from teletherapy.models.user import User

logger = logging.getLogger(__name__)

DATABASE_UNAVAILABLE_DETAIL = 'Database unavailable.'


def database_unavailable(exc: SQLAlchemyError) -> HTTPException:
    logger.error('Database error: %s', exc)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=DATABASE_UNAVAILABLE_DETAIL,
    )


def ensure_database_ready() -> None:
    try:
        ensure_availability_schema()
        ensure_session_schema()
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


def get_active_therapist(db, therapist_id: int, bookable: bool = False) -> User:
    therapist = db.query(User).filter(
        User.id == therapist_id,
        User.user_type == 'therapist',
    ).first()

    if therapist is None or therapist.is_active is False or (bookable and not therapist.is_verified):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail='Therapist not found or not available for bookings.',
        )

    return therapist
