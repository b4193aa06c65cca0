from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from therapy_backend.core import config


connect_args = {"check_same_thread": False} if config.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(config.DATABASE_URL, echo=config.SQL_ECHO, connect_args=connect_args)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_schema_checked = False

# Columns added after the first deployment, applied to tables that predate them.
LATE_COLUMNS = {
    'therapy_sessions': [
        ('availability_slot_id', 'ALTER TABLE therapy_sessions ADD COLUMN availability_slot_id INTEGER'),
        ('cancel_reason', 'ALTER TABLE therapy_sessions ADD COLUMN cancel_reason VARCHAR'),
        ('calendar_event_id', 'ALTER TABLE therapy_sessions ADD COLUMN calendar_event_id VARCHAR'),
    ],
    'payments': [
        ('status_message', 'ALTER TABLE payments ADD COLUMN status_message VARCHAR'),
        ('payment_method', 'ALTER TABLE payments ADD COLUMN payment_method VARCHAR'),
    ],
}

INDEXES = [
    'CREATE INDEX IF NOT EXISTS idx_availability_therapist_date ON therapist_availability(therapist_id, date)',
    'CREATE INDEX IF NOT EXISTS idx_sessions_therapist_scheduled ON therapy_sessions(therapist_id, scheduled_at)',
    'CREATE INDEX IF NOT EXISTS idx_notifications_receiver_read ON notifications(receiver_id, is_read)',
]


def ensure_schema() -> None:
    global _schema_checked

    if _schema_checked:
        return

    with _schema_lock:
        if _schema_checked:
            return

        inspector = inspect(engine)
        table_names = set(inspector.get_table_names())

        with engine.begin() as connection:
            for table_name, migration_steps in LATE_COLUMNS.items():
                if table_name not in table_names:
                    continue
                existing_columns = {column['name'] for column in inspector.get_columns(table_name)}
                for column_name, statement in migration_steps:
                    if column_name not in existing_columns:
                        connection.execute(text(statement))

            for statement in INDEXES:
                table_name = statement.split(' ON ')[1].split('(')[0]
                if table_name in table_names:
                    connection.execute(text(statement))

        _schema_checked = True


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
