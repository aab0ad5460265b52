"""Database reads feeding the slot generator."""

from dataclasses import dataclass, field
from datetime import date

from sqlalchemy.orm import Session

from teletherapy.models.availability import AvailabilityOverride, AvailabilityTemplate
from teletherapy.models.therapy_session import STATUS_CANCELLED, TherapySession


@dataclass
class TherapistSchedule:
    templates: list = field(default_factory=list)
    overrides: list = field(default_factory=list)
    sessions: list = field(default_factory=list)


def load_schedule(db: Session, therapist_id: int, start_date: date, end_date: date) -> TherapistSchedule:
    templates = db.query(AvailabilityTemplate).filter(
        AvailabilityTemplate.therapist_id == therapist_id,
        AvailabilityTemplate.is_active.is_(True),
    ).all()

    overrides = db.query(AvailabilityOverride).filter(
        AvailabilityOverride.therapist_id == therapist_id,
        AvailabilityOverride.is_active.is_(True),
        AvailabilityOverride.override_date >= start_date,
        AvailabilityOverride.override_date <= end_date,
    ).order_by(AvailabilityOverride.id.asc()).all()

    sessions = db.query(TherapySession).filter(
        TherapySession.therapist_id == therapist_id,
        TherapySession.status != STATUS_CANCELLED,
        TherapySession.scheduled_date >= start_date,
        TherapySession.scheduled_date <= end_date,
    ).all()

    return TherapistSchedule(templates=templates, overrides=overrides, sessions=sessions)


def template_duration(schedule: TherapistSchedule, day_of_week: int) -> int | None:
    for template in schedule.templates:
        if template.day_of_week == day_of_week:
            return template.session_duration
    return None
