import logging
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from teletherapy.core import config

logger = logging.getLogger(__name__)

engine = create_engine(config.DATABASE_URL, pool_pre_ping=True)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_availability_schema_checked = False
_session_schema_checked = False


def ensure_availability_schema() -> None:
    global _availability_schema_checked

    if _availability_schema_checked:
        return

    with _schema_lock:
        if _availability_schema_checked:
            return

        inspector = inspect(engine)
        table_names = inspector.get_table_names()

        with engine.begin() as connection:
            if 'therapist_availability' in table_names:
                existing_columns = {column['name'] for column in inspector.get_columns('therapist_availability')}
                migration_steps = [
                    ('session_duration', 'ALTER TABLE therapist_availability ADD COLUMN session_duration INTEGER DEFAULT 60'),
                    ('max_sessions_per_day', 'ALTER TABLE therapist_availability ADD COLUMN max_sessions_per_day INTEGER'),
                    ('is_active', 'ALTER TABLE therapist_availability ADD COLUMN is_active BOOLEAN DEFAULT TRUE'),
                ]
                for column_name, statement in migration_steps:
                    if column_name not in existing_columns:
                        logger.info('Adding therapist_availability.%s', column_name)
                        connection.execute(text(statement))

            if 'availability_overrides' in table_names:
                connection.execute(
                    text(
                        'CREATE INDEX IF NOT EXISTS idx_overrides_therapist_date '
                        'ON availability_overrides(therapist_id, override_date)'
                    )
                )

        _availability_schema_checked = True


def ensure_session_schema() -> None:
    global _session_schema_checked

    if _session_schema_checked:
        return

    with _schema_lock:
        if _session_schema_checked:
            return

        inspector = inspect(engine)

        if 'sessions' not in inspector.get_table_names():
            _session_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('sessions')}
        migration_steps = [
            ('room_name', 'ALTER TABLE sessions ADD COLUMN room_name VARCHAR'),
            ('room_url', 'ALTER TABLE sessions ADD COLUMN room_url VARCHAR'),
            ('cancellation_reason', 'ALTER TABLE sessions ADD COLUMN cancellation_reason VARCHAR'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    logger.info('Adding sessions.%s', column_name)
                    connection.execute(text(statement))
            connection.execute(
                text(
                    'CREATE UNIQUE INDEX IF NOT EXISTS uq_sessions_active_slot '
                    "ON sessions(therapist_id, scheduled_date, scheduled_time) WHERE status != 'cancelled'"
                )
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_sessions_user_date ON sessions(user_id, scheduled_date)')
            )

        _session_schema_checked = True


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
