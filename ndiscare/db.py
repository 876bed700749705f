from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import settings


def create_db_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}

    db_engine = create_engine(database_url, echo=False, connect_args=connect_args)

    # SQLite ignores foreign keys unless enabled per connection; the composite
    # tenant keys depend on it.
    if database_url.startswith("sqlite"):
        @event.listens_for(db_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return db_engine


engine = create_db_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


# Columns added after the first release. SQLite databases created before
# them get the column on startup; PostgreSQL goes through real migrations.
_SQLITE_COLUMN_BACKFILLS = (
    ("shifts", "series_id", "ALTER TABLE shifts ADD COLUMN series_id VARCHAR(64)"),
    ("shifts", "staff_ratio", "ALTER TABLE shifts ADD COLUMN staff_ratio VARCHAR(8) DEFAULT '1:1'"),
    ("shifts", "funding_category", "ALTER TABLE shifts ADD COLUMN funding_category VARCHAR(80)"),
    ("shifts", "start_timestamp", "ALTER TABLE shifts ADD COLUMN start_timestamp DATETIME"),
    ("shifts", "end_timestamp", "ALTER TABLE shifts ADD COLUMN end_timestamp DATETIME"),
    ("case_notes", "linked_shift_id", "ALTER TABLE case_notes ADD COLUMN linked_shift_id INTEGER"),
    ("case_notes", "tags_json", "ALTER TABLE case_notes ADD COLUMN tags_json TEXT"),
    ("users", "pay_point", "ALTER TABLE users ADD COLUMN pay_point INTEGER DEFAULT 1"),
    ("activity_logs", "request_id", "ALTER TABLE activity_logs ADD COLUMN request_id VARCHAR(64)"),
)


def _sqlite_table_exists(conn, table_name: str) -> bool:
    row = conn.execute(
        text("SELECT name FROM sqlite_master WHERE type='table' AND name = :name"),
        {"name": table_name},
    ).first()
    return row is not None


def _sqlite_table_has_column(conn, table_name: str, column_name: str) -> bool:
    rows = conn.execute(text(f"PRAGMA table_info({table_name})")).fetchall()
    return any(r[1] == column_name for r in rows)


def run_schema_migrations(bind: Engine | None = None) -> list[str]:
    target = bind or engine
    if not str(target.url).startswith("sqlite"):
        return []

    applied: list[str] = []
    with target.begin() as conn:
        for table_name, column_name, ddl in _SQLITE_COLUMN_BACKFILLS:
            if not _sqlite_table_exists(conn, table_name):
                continue
            if _sqlite_table_has_column(conn, table_name, column_name):
                continue
            conn.execute(text(ddl))
            applied.append(f"{table_name}.{column_name}")
    return applied


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
