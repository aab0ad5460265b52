"""
Slot generation and filtering.

Expands a therapist's weekly template and date overrides into discrete
bookable slots, then removes slots taken by active sessions. Everything here
works on rows already loaded from the database (ORM instances or any object
with the same attributes), so it can be exercised without a session.

Days of the week are numbered 0-6 starting on Sunday.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable

from teletherapy.models.availability import OVERRIDE_CUSTOM_HOURS, OVERRIDE_UNAVAILABLE
from teletherapy.models.therapy_session import STATUS_CANCELLED

DEFAULT_SLOT_DURATION_MINUTES = 60

CONFLICT_UNAVAILABLE_TIME = 'unavailable_time'
CONFLICT_DOUBLE_BOOKING = 'double_booking'


@dataclass(frozen=True)
class Slot:
    date: date
    start_time: time
    end_time: time
    duration_minutes: int

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.date, self.start_time)


@dataclass(frozen=True)
class SlotConflict:
    type: str
    message: str


@dataclass(frozen=True)
class DayHours:
    start_time: time
    end_time: time
    duration_minutes: int
    max_sessions: int | None = None


def day_of_week(value: date) -> int:
    return (value.weekday() + 1) % 7


def iterate_dates(start_date: date, end_date: date) -> Iterable[date]:
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def is_active_session(session) -> bool:
    return session.status != STATUS_CANCELLED


def session_bounds(session) -> tuple[datetime, datetime]:
    start = datetime.combine(session.scheduled_date, session.scheduled_time)
    duration = session.duration_minutes or DEFAULT_SLOT_DURATION_MINUTES
    return start, start + timedelta(minutes=duration)


def index_templates(templates) -> dict[int, object]:
    return {template.day_of_week: template for template in templates if template.is_active is not False}


def index_overrides(overrides) -> dict[date, list]:
    by_date: dict[date, list] = defaultdict(list)
    for override in overrides:
        if override.is_active is not False:
            by_date[override.override_date].append(override)
    return by_date


def index_sessions(sessions, exclude_session_id: int | None = None) -> dict[date, list]:
    by_date: dict[date, list] = defaultdict(list)
    for session in sessions:
        if not is_active_session(session):
            continue
        if exclude_session_id is not None and session.id == exclude_session_id:
            continue
        by_date[session.scheduled_date].append(session)
    return by_date


def resolve_day_hours(template, overrides) -> tuple[DayHours | None, object | None]:
    """Work out the bookable hours for one date.

    Returns ``(hours, blocking_override)``. ``hours`` is ``None`` when the day
    has nothing to offer; ``blocking_override`` is the ``unavailable`` override
    responsible, if any. An override always wins over the template.
    """
    for override in overrides:
        if override.override_type == OVERRIDE_UNAVAILABLE:
            return None, override

    duration = DEFAULT_SLOT_DURATION_MINUTES
    max_sessions = None
    if template is not None:
        duration = template.session_duration or DEFAULT_SLOT_DURATION_MINUTES
        max_sessions = template.max_sessions_per_day

    custom = [override for override in overrides if override.override_type == OVERRIDE_CUSTOM_HOURS]
    if custom:
        start = max(override.start_time for override in custom)
        end = min(override.end_time for override in custom)
    elif template is not None:
        start, end = template.start_time, template.end_time
    else:
        return None, None

    if start >= end:
        return None, None

    return DayHours(start_time=start, end_time=end, duration_minutes=duration, max_sessions=max_sessions), None


def generate_time_slots(slot_date: date, hours: DayHours) -> list[Slot]:
    slots: list[Slot] = []
    step = timedelta(minutes=hours.duration_minutes)
    current = datetime.combine(slot_date, hours.start_time)
    range_end = datetime.combine(slot_date, hours.end_time)

    while current + step <= range_end:
        slot_end = current + step
        slots.append(
            Slot(
                date=slot_date,
                start_time=current.time(),
                end_time=slot_end.time(),
                duration_minutes=hours.duration_minutes,
            )
        )
        current = slot_end

    return slots


def overlaps_any(start: datetime, end: datetime, sessions) -> object | None:
    for session in sessions:
        booked_start, booked_end = session_bounds(session)
        if start < booked_end and end > booked_start:
            return session
    return None


def generate_slots(
    start_date: date,
    end_date: date,
    templates,
    overrides,
    sessions,
    now: datetime | None = None,
) -> list[Slot]:
    """Bookable slots for one therapist between two dates, inclusive.

    Ordered by date, then start time.
    """
    templates_by_day = index_templates(templates)
    overrides_by_date = index_overrides(overrides)
    sessions_by_date = index_sessions(sessions)

    available: list[Slot] = []
    for slot_date in iterate_dates(start_date, end_date):
        hours, _ = resolve_day_hours(
            templates_by_day.get(day_of_week(slot_date)),
            overrides_by_date.get(slot_date, []),
        )
        if hours is None:
            continue

        booked = sessions_by_date.get(slot_date, [])
        if hours.max_sessions is not None and len(booked) >= hours.max_sessions:
            continue

        for slot in generate_time_slots(slot_date, hours):
            slot_start = slot.starts_at
            if now is not None and slot_start <= now:
                continue
            slot_end = slot_start + timedelta(minutes=slot.duration_minutes)
            if overlaps_any(slot_start, slot_end, booked):
                continue
            available.append(slot)

    return available


def get_available_days(start_date: date, end_date: date, templates, overrides, sessions, now=None) -> list[date]:
    slots = generate_slots(start_date, end_date, templates, overrides, sessions, now=now)
    return sorted({slot.date for slot in slots})


def check_slot(
    slot_date: date,
    start_time: time,
    duration_minutes: int,
    templates,
    overrides,
    sessions,
    now: datetime | None = None,
    exclude_session_id: int | None = None,
    within_hours: bool = True,
) -> list[SlotConflict]:
    """Conflicts preventing a booking at ``slot_date``/``start_time``; empty when bookable.

    With ``within_hours=False`` the template hours and daily cap are not
    enforced, which is how custom-time requests are checked. Unavailable
    overrides and overlapping sessions always conflict.
    """
    start = datetime.combine(slot_date, start_time)
    end = start + timedelta(minutes=duration_minutes)

    if now is not None and start <= now:
        return [SlotConflict(CONFLICT_UNAVAILABLE_TIME, 'Cannot book sessions in the past.')]

    if end.date() != slot_date:
        return [SlotConflict(CONFLICT_UNAVAILABLE_TIME, 'Sessions cannot run past midnight.')]

    template = index_templates(templates).get(day_of_week(slot_date))
    day_overrides = index_overrides(overrides).get(slot_date, [])
    hours, blocking_override = resolve_day_hours(template, day_overrides)

    if blocking_override is not None:
        reason = blocking_override.reason or 'No reason provided'
        return [SlotConflict(CONFLICT_UNAVAILABLE_TIME, f'Therapist is unavailable on this date: {reason}')]

    booked = index_sessions(sessions, exclude_session_id=exclude_session_id).get(slot_date, [])

    if within_hours:
        if hours is None:
            return [SlotConflict(CONFLICT_UNAVAILABLE_TIME, 'Therapist is not available on this day.')]

        if start.time() < hours.start_time or end.time() > hours.end_time:
            return [
                SlotConflict(
                    CONFLICT_UNAVAILABLE_TIME,
                    'Time slot is not within therapist availability '
                    f'({hours.start_time:%H:%M} - {hours.end_time:%H:%M}).',
                )
            ]

        if hours.max_sessions is not None and len(booked) >= hours.max_sessions:
            return [SlotConflict(CONFLICT_UNAVAILABLE_TIME, 'Therapist has no more sessions available on this day.')]

    conflicting = overlaps_any(start, end, booked)
    if conflicting is not None:
        return [
            SlotConflict(
                CONFLICT_DOUBLE_BOOKING,
                f'Time slot conflicts with an existing {conflicting.status} session '
                f'({conflicting.scheduled_time:%H:%M}).',
            )
        ]

    return []
