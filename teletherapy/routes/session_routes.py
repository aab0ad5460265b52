import logging
from datetime import date, datetime, time, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from teletherapy.auth.dependencies import require_roles
from teletherapy.core import config
from teletherapy.database import get_db
from teletherapy.models.therapy_session import (
    SESSION_STATUSES,
    SESSION_TYPES,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING_APPROVAL,
    STATUS_SCHEDULED,
    TherapySession,
)
from teletherapy.models.user import User
from teletherapy.routes.common import database_unavailable, ensure_database_ready, get_active_therapist
from teletherapy.scheduling import slots as slot_engine
from teletherapy.scheduling.repository import load_schedule, template_duration
from teletherapy.sessions import lifecycle
from teletherapy.video.daily import DailyClient, VideoRoomError, get_video_client

router = APIRouter(tags=['sessions'])

logger = logging.getLogger(__name__)

MAX_SESSION_NOTES_LENGTH = 2000
MAX_SESSION_LIST_LIMIT = 50
ROOM_GRACE_MINUTES = 30
SLOT_TAKEN_DETAIL = 'This time slot is no longer available. Please select a different time.'


def _clean_notes(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    if len(normalized) > MAX_SESSION_NOTES_LENGTH:
        raise ValueError(f'Notes must be {MAX_SESSION_NOTES_LENGTH} characters or fewer.')
    return normalized


class BookSessionRequest(BaseModel):
    therapist_id: int
    session_date: date
    start_time: time
    duration_minutes: int | None = None
    session_type: str = 'video'
    notes: str | None = None

    @field_validator('start_time')
    @classmethod
    def validate_start_time(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)

    @field_validator('duration_minutes')
    @classmethod
    def validate_duration(cls, value: int | None) -> int | None:
        if value is not None and (value <= 0 or value > 240):
            raise ValueError('Duration must be between 1 and 240 minutes.')
        return value

    @field_validator('session_type')
    @classmethod
    def validate_session_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SESSION_TYPES:
            raise ValueError('Session type must be video, audio or chat.')
        return normalized

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _clean_notes(value)


class RescheduleSessionRequest(BaseModel):
    session_date: date
    start_time: time

    @field_validator('start_time')
    @classmethod
    def validate_start_time(cls, value: time) -> time:
        return value.replace(second=0, microsecond=0)


class CompleteSessionRequest(BaseModel):
    notes: str | None = None

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _clean_notes(value)


class CancelSessionRequest(BaseModel):
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip()[:300] or None


class SessionResponse(BaseModel):
    id: int
    user_id: int
    therapist_id: int
    scheduled_date: date
    scheduled_time: time
    duration_minutes: int
    status: str
    session_type: str | None = None
    notes: str | None = None
    room_name: str | None = None
    room_url: str | None = None
    cancellation_reason: str | None = None

    class Config:
        from_attributes = True


def get_session_or_404(db: Session, session_id: int) -> TherapySession:
    session = db.query(TherapySession).filter(TherapySession.id == session_id).first()
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail='Session not found.')
    return session


def is_participant(current_user: User, session: TherapySession) -> bool:
    return current_user.id in (session.user_id, session.therapist_id)


def ensure_participant(current_user: User, session: TherapySession, allow_admin: bool = True) -> None:
    if allow_admin and current_user.user_type == 'admin':
        return
    if not is_participant(current_user, session):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='You are not a participant in this session.',
        )


def ensure_session_therapist(current_user: User, session: TherapySession) -> None:
    if current_user.user_type == 'admin':
        return
    if current_user.user_type != 'therapist' or current_user.id != session.therapist_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Only the session therapist or an admin can do this.',
        )


def raise_for_conflicts(conflicts: list[slot_engine.SlotConflict]) -> None:
    if not conflicts:
        return
    conflict = conflicts[0]
    status_code = (
        status.HTTP_409_CONFLICT
        if conflict.type == slot_engine.CONFLICT_DOUBLE_BOOKING
        else status.HTTP_400_BAD_REQUEST
    )
    raise HTTPException(status_code=status_code, detail=conflict.message)


def apply_transition(session: TherapySession, requested: str) -> None:
    try:
        lifecycle.transition(session, requested)
    except lifecycle.InvalidStatusTransition as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


def room_expiry(session: TherapySession) -> datetime:
    start = datetime.combine(session.scheduled_date, session.scheduled_time)
    return start + timedelta(minutes=session.duration_minutes + ROOM_GRACE_MINUTES)


def attach_video_room(db: Session, session: TherapySession, video_client: DailyClient, required: bool = False) -> None:
    """Create the session's video room unless it already has one.

    Booking does not depend on the room; joining does, so ``required`` turns a
    provider failure into a 502.
    """
    if session.room_url or not video_client.enabled:
        return

    try:
        room = video_client.create_room(f'session-{session.id}', room_expiry(session))
    except VideoRoomError as exc:
        logger.warning('Video room for session %s not created: %s', session.id, exc)
        if required:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail='Video room is unavailable. Please try again.',
            ) from exc
        return

    session.room_name = room.name
    session.room_url = room.url
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        if required:
            raise
        logger.exception('Video room %s for session %s not saved', room.name, session.id)


def create_session(
    db: Session,
    current_user: User,
    data: BookSessionRequest,
    initial_status: str,
) -> TherapySession:
    get_active_therapist(db, data.therapist_id, bookable=True)

    if data.therapist_id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='You cannot book a session with yourself.')

    if data.session_date < date.today():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Cannot book sessions for past dates.')

    schedule = load_schedule(db, data.therapist_id, data.session_date, data.session_date)
    duration = (
        data.duration_minutes
        or template_duration(schedule, slot_engine.day_of_week(data.session_date))
        or config.DEFAULT_SESSION_DURATION_MINUTES
    )

    raise_for_conflicts(
        slot_engine.check_slot(
            data.session_date,
            data.start_time,
            duration,
            schedule.templates,
            schedule.overrides,
            schedule.sessions,
            now=datetime.now(),
            within_hours=initial_status == STATUS_SCHEDULED,
        )
    )

    session = TherapySession(
        user_id=current_user.id,
        therapist_id=data.therapist_id,
        scheduled_date=data.session_date,
        scheduled_time=data.start_time,
        duration_minutes=duration,
        status=initial_status,
        session_type=data.session_type,
        notes=data.notes,
    )
    db.add(session)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        logger.warning('Booking race lost for therapist %s at %s %s',
                       data.therapist_id, data.session_date, data.start_time)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=SLOT_TAKEN_DETAIL) from exc

    db.refresh(session)
    logger.info('Session %s created (%s) for user %s with therapist %s',
                session.id, initial_status, current_user.id, data.therapist_id)
    return session


@router.post('/book', response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def book_session(
    data: BookSessionRequest,
    current_user: User = Depends(require_roles('individual')),
    db: Session = Depends(get_db),
    video_client: DailyClient = Depends(get_video_client),
):
    ensure_database_ready()

    try:
        session = create_session(db, current_user, data, STATUS_SCHEDULED)
        attach_video_room(db, session, video_client)
        return session
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.post('/request', response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def request_session(
    data: BookSessionRequest,
    current_user: User = Depends(require_roles('individual')),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        return create_session(db, current_user, data, STATUS_PENDING_APPROVAL)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.get('', response_model=list[SessionResponse])
def list_sessions(
    status_filter: str | None = Query(default=None, alias='status'),
    limit: int = Query(default=10, ge=1, le=MAX_SESSION_LIST_LIMIT),
    current_user: User = Depends(require_roles('individual', 'therapist', 'partner', 'admin')),
    db: Session = Depends(get_db),
):
    if status_filter is not None and status_filter not in SESSION_STATUSES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid session status.')

    ensure_database_ready()

    try:
        query = db.query(TherapySession)
        if current_user.user_type == 'therapist':
            query = query.filter(TherapySession.therapist_id == current_user.id)
        elif current_user.user_type != 'admin':
            query = query.filter(TherapySession.user_id == current_user.id)

        if status_filter is not None:
            query = query.filter(TherapySession.status == status_filter)

        return query.order_by(
            TherapySession.scheduled_date.asc(),
            TherapySession.scheduled_time.asc(),
        ).limit(limit).all()
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


@router.post('/{session_id}/approve', response_model=SessionResponse)
def approve_session(
    session_id: int,
    current_user: User = Depends(require_roles('therapist', 'admin')),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        session = get_session_or_404(db, session_id)
        ensure_session_therapist(current_user, session)
        apply_transition(session, STATUS_SCHEDULED)
        db.commit()
        db.refresh(session)
        return session
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.post('/{session_id}/join', response_model=SessionResponse)
def join_session(
    session_id: int,
    current_user: User = Depends(require_roles('individual', 'therapist')),
    db: Session = Depends(get_db),
    video_client: DailyClient = Depends(get_video_client),
):
    ensure_database_ready()

    try:
        session = get_session_or_404(db, session_id)
        ensure_participant(current_user, session, allow_admin=False)

        if session.status == STATUS_IN_PROGRESS:
            return session

        if not lifecycle.can_transition(session.status, STATUS_IN_PROGRESS):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=str(lifecycle.InvalidStatusTransition(session.status, STATUS_IN_PROGRESS)),
            )

        attach_video_room(db, session, video_client, required=True)
        apply_transition(session, STATUS_IN_PROGRESS)
        db.commit()
        db.refresh(session)
        return session
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.post('/{session_id}/complete', response_model=SessionResponse)
def complete_session(
    session_id: int,
    data: CompleteSessionRequest | None = None,
    current_user: User = Depends(require_roles('therapist', 'admin')),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        session = get_session_or_404(db, session_id)
        ensure_session_therapist(current_user, session)
        apply_transition(session, STATUS_COMPLETED)
        if data is not None and data.notes:
            session.notes = data.notes
        db.commit()
        db.refresh(session)
        return session
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.post('/{session_id}/cancel', response_model=SessionResponse)
def cancel_session(
    session_id: int,
    data: CancelSessionRequest | None = None,
    current_user: User = Depends(require_roles('individual', 'therapist', 'admin')),
    db: Session = Depends(get_db),
    video_client: DailyClient = Depends(get_video_client),
):
    ensure_database_ready()

    try:
        session = get_session_or_404(db, session_id)
        ensure_participant(current_user, session)
        apply_transition(session, STATUS_CANCELLED)
        session.cancellation_reason = data.reason if data is not None else None
        db.commit()
        db.refresh(session)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc

    if session.room_name and video_client.enabled:
        try:
            video_client.delete_room(session.room_name)
        except VideoRoomError as exc:
            logger.warning('Video room %s for cancelled session %s not deleted: %s',
                           session.room_name, session.id, exc)

    return session


@router.post('/{session_id}/reschedule', response_model=SessionResponse)
def reschedule_session(
    session_id: int,
    data: RescheduleSessionRequest,
    current_user: User = Depends(require_roles('individual', 'therapist')),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        session = get_session_or_404(db, session_id)
        ensure_participant(current_user, session, allow_admin=False)

        if session.status not in lifecycle.RESCHEDULABLE_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"A session that is '{session.status}' cannot be rescheduled.",
            )

        schedule = load_schedule(db, session.therapist_id, data.session_date, data.session_date)
        raise_for_conflicts(
            slot_engine.check_slot(
                data.session_date,
                data.start_time,
                session.duration_minutes,
                schedule.templates,
                schedule.overrides,
                schedule.sessions,
                now=datetime.now(),
                exclude_session_id=session.id,
                within_hours=session.status == STATUS_SCHEDULED,
            )
        )

        session.scheduled_date = data.session_date
        session.scheduled_time = data.start_time
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=SLOT_TAKEN_DETAIL) from exc

        db.refresh(session)
        logger.info('Session %s rescheduled to %s %s', session.id, session.scheduled_date, session.scheduled_time)
        return session
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc
