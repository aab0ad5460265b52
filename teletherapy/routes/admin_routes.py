import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from teletherapy.auth.dependencies import require_roles
from teletherapy.database import get_db
from teletherapy.models.user import User
from teletherapy.routes.common import database_unavailable

router = APIRouter(tags=['admin'])

logger = logging.getLogger(__name__)


class TherapistApprovalResponse(BaseModel):
    id: int
    email: str
    full_name: str | None = None
    is_verified: bool

    class Config:
        from_attributes = True


def set_therapist_approval(db: Session, therapist_id: int, approved: bool, admin: User) -> User:
    therapist = db.query(User).filter(
        User.id == therapist_id,
        User.user_type == 'therapist',
    ).first()

    if therapist is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Therapist not found.')

    therapist.is_verified = approved
    db.commit()
    db.refresh(therapist)
    logger.info('Therapist %s %s by admin %s', therapist.id, 'approved' if approved else 'unapproved', admin.id)
    return therapist


@router.post('/therapists/{therapist_id}/approve', response_model=TherapistApprovalResponse)
def approve_therapist(
    therapist_id: int,
    current_user: User = Depends(require_roles('admin')),
    db: Session = Depends(get_db),
):
    try:
        return set_therapist_approval(db, therapist_id, True, current_user)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.post('/therapists/{therapist_id}/unapprove', response_model=TherapistApprovalResponse)
def unapprove_therapist(
    therapist_id: int,
    current_user: User = Depends(require_roles('admin')),
    db: Session = Depends(get_db),
):
    try:
        return set_therapist_approval(db, therapist_id, False, current_user)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc
