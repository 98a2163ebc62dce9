from sqlmodel import SQLModel, create_engine
from sqlalchemy import inspect, text
from sqlalchemy.exc import OperationalError
from fleetctl.core.config import get_settings
import logging
import os

settings = get_settings()
logger = logging.getLogger(__name__)

connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(settings.DATABASE_URL, connect_args=connect_args)

# Columns added after the first release: (table, column, DDL type)
MIGRATIONS = [
    ("jobschedule", "success_count", "INTEGER DEFAULT 0"),
    ("jobschedule", "failure_count", "INTEGER DEFAULT 0"),
    ("jobschedule", "last_run_status", "VARCHAR"),
    ("jobrun", "notification_sent", "BOOLEAN DEFAULT 0"),
    ("jobrun", "notification_error", "VARCHAR"),
    ("host", "last_error", "VARCHAR"),
]

def create_db_and_tables(bind=None):
    bind = bind or engine
    # Ensure database directory exists
    url = str(bind.url)
    if url.startswith("sqlite:///"):
        db_path = url.replace("sqlite:///", "")
        if db_path and db_path != ":memory:":
            db_dir = os.path.dirname(os.path.abspath(db_path))
            if db_dir:
                try:
                    os.makedirs(db_dir, exist_ok=True)
                except OSError as e:
                    logger.error(f"Could not create database directory {db_dir}: {e}")

    # Import models here to ensure they are registered with SQLModel metadata
    import fleetctl.models  # noqa: F401
    SQLModel.metadata.create_all(bind)

    _run_migrations(bind)

def _run_migrations(bind):
    """Add missing columns to existing SQLite tables."""
    if bind.dialect.name != "sqlite":
        return

    inspector = inspect(bind)
    with bind.begin() as conn:
        for table, column, col_type in MIGRATIONS:
            existing = {c["name"] for c in inspector.get_columns(table)}
            if column in existing:
                continue
            try:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
                logger.info(f"Added column {table}.{column}")
            except OperationalError as e:
                logger.error(f"Migration error on {table}.{column}: {e}")
