import logging
from datetime import date, datetime, time, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from teletherapy.auth.dependencies import require_roles
from teletherapy.core import config
from teletherapy.database import get_db
from teletherapy.models.availability import (
    OVERRIDE_CUSTOM_HOURS,
    OVERRIDE_TYPES,
    AvailabilityOverride,
    AvailabilityTemplate,
)
from teletherapy.models.user import User
from teletherapy.routes.common import database_unavailable, ensure_database_ready, get_active_therapist
from teletherapy.scheduling import slots as slot_engine
from teletherapy.scheduling.repository import load_schedule

router = APIRouter(tags=['availability'])

logger = logging.getLogger(__name__)

DEFAULT_SLOT_WINDOW_DAYS = 14
MAX_OVERRIDE_REASON_LENGTH = 300


class TemplateDayRequest(BaseModel):
    day_of_week: int
    start_time: time
    end_time: time
    session_duration: int = 60
    max_sessions_per_day: int | None = None

    @field_validator('day_of_week')
    @classmethod
    def validate_day_of_week(cls, value: int) -> int:
        if not 0 <= value <= 6:
            raise ValueError('Day of week must be between 0 (Sunday) and 6 (Saturday).')
        return value

    @field_validator('session_duration')
    @classmethod
    def validate_session_duration(cls, value: int) -> int:
        if value <= 0 or value > 240:
            raise ValueError('Session duration must be between 1 and 240 minutes.')
        return value

    @field_validator('max_sessions_per_day')
    @classmethod
    def validate_max_sessions(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError('Max sessions per day must be at least 1.')
        return value

    @model_validator(mode='after')
    def validate_time_range(self):
        if self.start_time >= self.end_time:
            raise ValueError('Start time must be before end time.')
        return self


class WeeklyTemplateRequest(BaseModel):
    days: list[TemplateDayRequest]

    @field_validator('days')
    @classmethod
    def validate_unique_days(cls, value: list[TemplateDayRequest]) -> list[TemplateDayRequest]:
        seen = [day.day_of_week for day in value]
        if len(seen) != len(set(seen)):
            raise ValueError('Each day of the week may appear only once.')
        return value


class CreateOverrideRequest(BaseModel):
    override_date: date
    override_type: str
    start_time: time | None = None
    end_time: time | None = None
    reason: str | None = None

    @field_validator('override_type')
    @classmethod
    def validate_override_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in OVERRIDE_TYPES:
            raise ValueError('Override type must be unavailable or custom_hours.')
        return normalized

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if len(normalized) > MAX_OVERRIDE_REASON_LENGTH:
            raise ValueError(f'Reason must be {MAX_OVERRIDE_REASON_LENGTH} characters or fewer.')
        return normalized or None

    @model_validator(mode='after')
    def validate_custom_hours(self):
        if self.override_type == OVERRIDE_CUSTOM_HOURS:
            if self.start_time is None or self.end_time is None:
                raise ValueError('Custom hours require a start and end time.')
            if self.start_time >= self.end_time:
                raise ValueError('Start time must be before end time.')
        else:
            self.start_time = None
            self.end_time = None
        return self


class TemplateResponse(BaseModel):
    id: int
    day_of_week: int
    start_time: time
    end_time: time
    session_duration: int
    max_sessions_per_day: int | None = None

    class Config:
        from_attributes = True


class OverrideResponse(BaseModel):
    id: int
    therapist_id: int
    override_date: date
    override_type: str
    start_time: time | None = None
    end_time: time | None = None
    reason: str | None = None

    class Config:
        from_attributes = True


class AvailabilityResponse(BaseModel):
    therapist_id: int
    templates: list[TemplateResponse]
    overrides: list[OverrideResponse]


class SlotResponse(BaseModel):
    date: date
    start_time: time
    end_time: time
    duration_minutes: int

    class Config:
        from_attributes = True


def ensure_can_manage(current_user: User, therapist_id: int) -> None:
    if current_user.user_type == 'admin':
        return
    if current_user.user_type == 'therapist' and current_user.id == therapist_id:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail='Only the therapist or an admin can change this availability.',
    )


def validate_slot_range(start_date: date, end_date: date) -> None:
    if end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='End date must not be before start date.',
        )
    if (end_date - start_date).days + 1 > config.MAX_SLOT_RANGE_DAYS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Date range cannot exceed {config.MAX_SLOT_RANGE_DAYS} days.',
        )


@router.get('/next-slot', response_model=SlotResponse | None)
def get_next_slot(therapist_id: int = Query(...), db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        get_active_therapist(db, therapist_id, bookable=True)

        now = datetime.now()
        start_date = now.date()
        end_date = start_date + timedelta(days=config.BOOKING_HORIZON_DAYS)
        schedule = load_schedule(db, therapist_id, start_date, end_date)
        available = slot_engine.generate_slots(
            start_date,
            end_date,
            schedule.templates,
            schedule.overrides,
            schedule.sessions,
            now=now,
        )
        return available[0] if available else None
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


@router.delete('/overrides/{override_id}', status_code=status.HTTP_204_NO_CONTENT)
def remove_override(
    override_id: int,
    current_user: User = Depends(require_roles('therapist', 'admin')),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        override = db.query(AvailabilityOverride).filter(
            AvailabilityOverride.id == override_id,
            AvailabilityOverride.is_active.is_(True),
        ).first()

        if not override:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail='Override not found.',
            )

        ensure_can_manage(current_user, override.therapist_id)

        override.is_active = False
        db.commit()
        logger.info('Override %s deactivated by user %s', override_id, current_user.id)
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.get('/{therapist_id}', response_model=AvailabilityResponse)
def get_availability(therapist_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    try:
        get_active_therapist(db, therapist_id)

        templates = db.query(AvailabilityTemplate).filter(
            AvailabilityTemplate.therapist_id == therapist_id,
            AvailabilityTemplate.is_active.is_(True),
        ).order_by(AvailabilityTemplate.day_of_week.asc()).all()

        overrides = db.query(AvailabilityOverride).filter(
            AvailabilityOverride.therapist_id == therapist_id,
            AvailabilityOverride.is_active.is_(True),
            AvailabilityOverride.override_date >= date.today(),
        ).order_by(AvailabilityOverride.override_date.asc()).all()

        return AvailabilityResponse(
            therapist_id=therapist_id,
            templates=[TemplateResponse.model_validate(template) for template in templates],
            overrides=[OverrideResponse.model_validate(override) for override in overrides],
        )
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


@router.put('/{therapist_id}/template', response_model=list[TemplateResponse])
def update_weekly_template(
    therapist_id: int,
    data: WeeklyTemplateRequest,
    current_user: User = Depends(require_roles('therapist', 'admin')),
    db: Session = Depends(get_db),
):
    ensure_can_manage(current_user, therapist_id)
    ensure_database_ready()

    try:
        get_active_therapist(db, therapist_id)

        existing = {
            template.day_of_week: template
            for template in db.query(AvailabilityTemplate).filter(
                AvailabilityTemplate.therapist_id == therapist_id,
            ).all()
        }
        requested_days = {day.day_of_week for day in data.days}

        for day in data.days:
            template = existing.get(day.day_of_week)
            if template is None:
                template = AvailabilityTemplate(therapist_id=therapist_id, day_of_week=day.day_of_week)
                db.add(template)
            template.start_time = day.start_time
            template.end_time = day.end_time
            template.session_duration = day.session_duration
            template.max_sessions_per_day = day.max_sessions_per_day
            template.is_active = True

        for day_of_week, template in existing.items():
            if day_of_week not in requested_days:
                template.is_active = False

        db.commit()
        logger.info('Weekly template updated for therapist %s (%d days)', therapist_id, len(data.days))

        templates = db.query(AvailabilityTemplate).filter(
            AvailabilityTemplate.therapist_id == therapist_id,
            AvailabilityTemplate.is_active.is_(True),
        ).order_by(AvailabilityTemplate.day_of_week.asc()).all()
        return templates
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.post('/{therapist_id}/overrides', response_model=OverrideResponse, status_code=status.HTTP_201_CREATED)
def create_override(
    therapist_id: int,
    data: CreateOverrideRequest,
    current_user: User = Depends(require_roles('therapist', 'admin')),
    db: Session = Depends(get_db),
):
    ensure_can_manage(current_user, therapist_id)

    if data.override_date < date.today():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Overrides cannot be added for past dates.',
        )

    ensure_database_ready()

    try:
        get_active_therapist(db, therapist_id)

        override = AvailabilityOverride(
            therapist_id=therapist_id,
            override_date=data.override_date,
            override_type=data.override_type,
            start_time=data.start_time,
            end_time=data.end_time,
            reason=data.reason,
            is_active=True,
        )
        db.add(override)
        db.commit()
        db.refresh(override)
        logger.info('Override %s (%s) added for therapist %s on %s',
                    override.id, override.override_type, therapist_id, override.override_date)

        return override
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable(exc) from exc


@router.get('/{therapist_id}/slots', response_model=list[SlotResponse])
def list_slots(
    therapist_id: int,
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
):
    start_date = start_date or date.today()
    end_date = end_date or start_date + timedelta(days=DEFAULT_SLOT_WINDOW_DAYS - 1)
    validate_slot_range(start_date, end_date)

    ensure_database_ready()

    try:
        get_active_therapist(db, therapist_id, bookable=True)

        schedule = load_schedule(db, therapist_id, start_date, end_date)
        return slot_engine.generate_slots(
            start_date,
            end_date,
            schedule.templates,
            schedule.overrides,
            schedule.sessions,
            now=datetime.now(),
        )
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc


@router.get('/{therapist_id}/days', response_model=list[date])
def list_available_days(
    therapist_id: int,
    month: int = Query(..., ge=1, le=12),
    year: int = Query(..., ge=2000, le=2100),
    db: Session = Depends(get_db),
):
    start_date = date(year, month, 1)
    next_month = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    end_date = next_month - timedelta(days=1)

    ensure_database_ready()

    try:
        get_active_therapist(db, therapist_id, bookable=True)

        schedule = load_schedule(db, therapist_id, start_date, end_date)
        return slot_engine.get_available_days(
            start_date,
            end_date,
            schedule.templates,
            schedule.overrides,
            schedule.sessions,
            now=datetime.now(),
        )
    except SQLAlchemyError as exc:
        raise database_unavailable(exc) from exc
