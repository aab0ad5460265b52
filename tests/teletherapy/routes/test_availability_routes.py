import os
from datetime import date, time, timedelta

import pytest
from fastapi import HTTPException
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from teletherapy.database import Base  # noqa: E402
from teletherapy.models.availability import AvailabilityOverride, AvailabilityTemplate  # noqa: E402
from teletherapy.models.therapy_session import TherapySession  # noqa: E402
from teletherapy.models.user import User  # noqa: E402
from teletherapy.routes.availability_routes import (  # noqa: E402
    CreateOverrideRequest,
    TemplateDayRequest,
    WeeklyTemplateRequest,
    create_override,
    ensure_can_manage,
    get_availability,
    get_next_slot,
    list_available_days,
    list_slots,
    remove_override,
    update_weekly_template,
)

TABLES = [User.__table__, AvailabilityTemplate.__table__, AvailabilityOverride.__table__, TherapySession.__table__]


@pytest.fixture(autouse=True)
def skip_schema_checks(monkeypatch):
    monkeypatch.setattr('teletherapy.routes.availability_routes.ensure_database_ready', lambda: None)


@pytest.fixture
def availability_db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine, tables=TABLES)

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine, tables=list(reversed(TABLES)))


def add_user(db, email, user_type='therapist', is_verified=True) -> User:
    user = User(email=email, full_name=email.split('@')[0], user_type=user_type, is_active=True, is_verified=is_verified)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def upcoming_monday() -> date:
    today = date.today()
    return today + timedelta(days=(7 - today.weekday()) % 7 or 7)


def monday_template() -> WeeklyTemplateRequest:
    return WeeklyTemplateRequest(days=[TemplateDayRequest(day_of_week=1, start_time=time(9, 0), end_time=time(11, 0))])


def test_template_day_rejects_inverted_hours() -> None:
    with pytest.raises(ValidationError):
        TemplateDayRequest(day_of_week=1, start_time=time(11, 0), end_time=time(9, 0))


def test_template_day_rejects_out_of_range_weekday() -> None:
    with pytest.raises(ValidationError):
        TemplateDayRequest(day_of_week=7, start_time=time(9, 0), end_time=time(11, 0))


def test_weekly_template_rejects_duplicate_days() -> None:
    day = {'day_of_week': 1, 'start_time': time(9, 0), 'end_time': time(11, 0)}

    with pytest.raises(ValidationError):
        WeeklyTemplateRequest(days=[day, day])


def test_custom_hours_override_requires_times() -> None:
    with pytest.raises(ValidationError):
        CreateOverrideRequest(override_date=date(2026, 1, 5), override_type='custom_hours', start_time=time(9, 0))


def test_unavailable_override_drops_times() -> None:
    request = CreateOverrideRequest(
        override_date=date(2026, 1, 5),
        override_type=' Unavailable ',
        start_time=time(9, 0),
        end_time=time(10, 0),
        reason='  Vacation ',
    )

    assert request.override_type == 'unavailable'
    assert request.start_time is None
    assert request.end_time is None
    assert request.reason == 'Vacation'


def test_only_owner_or_admin_can_manage(availability_db) -> None:
    owner = add_user(availability_db, 'owner@example.com')
    other = add_user(availability_db, 'other@example.com')
    admin = add_user(availability_db, 'admin@example.com', user_type='admin')

    ensure_can_manage(owner, owner.id)
    ensure_can_manage(admin, owner.id)
    with pytest.raises(HTTPException) as exception_info:
        ensure_can_manage(other, owner.id)

    assert exception_info.value.status_code == 403


def test_update_weekly_template_upserts_and_deactivates_missing_days(availability_db) -> None:
    therapist = add_user(availability_db, 'dr@example.com')
    both_days = WeeklyTemplateRequest(days=[
        TemplateDayRequest(day_of_week=1, start_time=time(9, 0), end_time=time(11, 0)),
        TemplateDayRequest(day_of_week=2, start_time=time(13, 0), end_time=time(17, 0), session_duration=50),
    ])

    created = update_weekly_template(therapist.id, both_days, current_user=therapist, db=availability_db)
    updated = update_weekly_template(therapist.id, monday_template(), current_user=therapist, db=availability_db)

    assert [template.day_of_week for template in created] == [1, 2]
    assert [template.day_of_week for template in updated] == [1]
    assert availability_db.query(AvailabilityTemplate).count() == 2
    tuesday = availability_db.query(AvailabilityTemplate).filter(AvailabilityTemplate.day_of_week == 2).one()
    assert tuesday.is_active is False


def test_create_override_rejects_past_date(availability_db) -> None:
    therapist = add_user(availability_db, 'dr@example.com')
    request = CreateOverrideRequest(override_date=date.today() - timedelta(days=1), override_type='unavailable')

    with pytest.raises(HTTPException) as exception_info:
        create_override(therapist.id, request, current_user=therapist, db=availability_db)

    assert exception_info.value.status_code == 400


@pytest.mark.parametrize(
    ('start_offset', 'end_offset'),
    [(5, 1), (0, 31)],
)
def test_list_slots_rejects_bad_ranges(availability_db, start_offset, end_offset) -> None:
    therapist = add_user(availability_db, 'dr@example.com')
    today = date.today()

    with pytest.raises(HTTPException) as exception_info:
        list_slots(
            therapist.id,
            start_date=today + timedelta(days=start_offset),
            end_date=today + timedelta(days=end_offset),
            db=availability_db,
        )

    assert exception_info.value.status_code == 400


def test_list_slots_for_unverified_therapist_is_404(availability_db) -> None:
    therapist = add_user(availability_db, 'new@example.com', is_verified=False)

    with pytest.raises(HTTPException) as exception_info:
        list_slots(therapist.id, start_date=upcoming_monday(), end_date=upcoming_monday(), db=availability_db)

    assert exception_info.value.status_code == 404


def test_list_slots_for_non_therapist_is_404(availability_db) -> None:
    client = add_user(availability_db, 'client@example.com', user_type='individual')

    with pytest.raises(HTTPException) as exception_info:
        list_slots(client.id, start_date=upcoming_monday(), end_date=upcoming_monday(), db=availability_db)

    assert exception_info.value.status_code == 404


def test_override_hides_slots_until_removed(availability_db) -> None:
    therapist = add_user(availability_db, 'dr@example.com')
    monday = upcoming_monday()
    update_weekly_template(therapist.id, monday_template(), current_user=therapist, db=availability_db)

    slots = list_slots(therapist.id, start_date=monday, end_date=monday, db=availability_db)
    assert [(slot.start_time, slot.end_time) for slot in slots] == [(time(9, 0), time(10, 0)), (time(10, 0), time(11, 0))]

    override = create_override(
        therapist.id,
        CreateOverrideRequest(override_date=monday, override_type='unavailable', reason='Training'),
        current_user=therapist,
        db=availability_db,
    )
    assert list_slots(therapist.id, start_date=monday, end_date=monday, db=availability_db) == []

    remove_override(override.id, current_user=therapist, db=availability_db)
    assert len(list_slots(therapist.id, start_date=monday, end_date=monday, db=availability_db)) == 2


def test_custom_hours_override_changes_slots(availability_db) -> None:
    therapist = add_user(availability_db, 'dr@example.com')
    monday = upcoming_monday()
    update_weekly_template(therapist.id, monday_template(), current_user=therapist, db=availability_db)
    create_override(
        therapist.id,
        CreateOverrideRequest(
            override_date=monday,
            override_type='custom_hours',
            start_time=time(14, 0),
            end_time=time(15, 0),
        ),
        current_user=therapist,
        db=availability_db,
    )

    slots = list_slots(therapist.id, start_date=monday, end_date=monday, db=availability_db)

    assert [slot.start_time for slot in slots] == [time(14, 0)]


def test_booked_session_is_not_offered(availability_db) -> None:
    therapist = add_user(availability_db, 'dr@example.com')
    client = add_user(availability_db, 'client@example.com', user_type='individual')
    monday = upcoming_monday()
    update_weekly_template(therapist.id, monday_template(), current_user=therapist, db=availability_db)
    availability_db.add(TherapySession(
        user_id=client.id,
        therapist_id=therapist.id,
        scheduled_date=monday,
        scheduled_time=time(9, 0),
        duration_minutes=60,
        status='scheduled',
    ))
    availability_db.commit()

    slots = list_slots(therapist.id, start_date=monday, end_date=monday, db=availability_db)

    assert [slot.start_time for slot in slots] == [time(10, 0)]


def test_remove_override_checks_owner_and_existence(availability_db) -> None:
    therapist = add_user(availability_db, 'dr@example.com')
    other = add_user(availability_db, 'other@example.com')
    override = create_override(
        therapist.id,
        CreateOverrideRequest(override_date=upcoming_monday(), override_type='unavailable'),
        current_user=therapist,
        db=availability_db,
    )

    with pytest.raises(HTTPException) as forbidden:
        remove_override(override.id, current_user=other, db=availability_db)
    with pytest.raises(HTTPException) as missing:
        remove_override(override.id + 100, current_user=therapist, db=availability_db)

    assert forbidden.value.status_code == 403
    assert missing.value.status_code == 404


def test_get_availability_lists_templates_and_upcoming_overrides(availability_db) -> None:
    therapist = add_user(availability_db, 'dr@example.com')
    update_weekly_template(therapist.id, monday_template(), current_user=therapist, db=availability_db)
    create_override(
        therapist.id,
        CreateOverrideRequest(override_date=upcoming_monday(), override_type='unavailable'),
        current_user=therapist,
        db=availability_db,
    )

    availability = get_availability(therapist.id, db=availability_db)

    assert availability.therapist_id == therapist.id
    assert [template.day_of_week for template in availability.templates] == [1]
    assert [override.override_date for override in availability.overrides] == [upcoming_monday()]


def test_available_days_and_next_slot(availability_db) -> None:
    therapist = add_user(availability_db, 'dr@example.com')
    monday = upcoming_monday()
    update_weekly_template(therapist.id, monday_template(), current_user=therapist, db=availability_db)

    days = list_available_days(therapist.id, month=monday.month, year=monday.year, db=availability_db)
    next_slot = get_next_slot(therapist_id=therapist.id, db=availability_db)

    assert monday in days
    assert all(day.isoweekday() == 1 for day in days)
    assert next_slot is not None
    assert next_slot.date <= monday
    assert next_slot.start_time in (time(9, 0), time(10, 0))


def test_next_slot_is_none_without_availability(availability_db) -> None:
    therapist = add_user(availability_db, 'dr@example.com')

    assert get_next_slot(therapist_id=therapist.id, db=availability_db) is None
