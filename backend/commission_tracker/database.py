"""Database engine and helpers.

This module configures the SQLModel/SQLAlchemy engine from
`settings.DATABASE_URL` (a local SQLite file `app.db` by default) and
provides the helpers used by the application, scripts and tests.
"""

from sqlalchemy import event, inspect
from sqlmodel import SQLModel, create_engine, Session

from .config import settings

DB_URL = settings.DATABASE_URL
_is_sqlite = DB_URL.startswith("sqlite")
engine = create_engine(
    DB_URL,
    echo=False,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
)

if _is_sqlite:
    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.close()


def create_db_and_tables():
    """Create database tables using SQLModel metadata.

    This function is intended for local development and lightweight
    deployments; it never drops or rewrites existing tables.
    """
    from . import models  # noqa: F401  register table metadata

    SQLModel.metadata.create_all(engine)
    _ensure_user_role_id_column()


def _ensure_user_role_id_column():
    """Ensure `users.role_id` exists for databases created before roles.

    Older files only carry the plain `role` column; this idempotent ALTER
    keeps them usable without a full migration run.
    """
    columns = {c["name"] for c in inspect(engine).get_columns("users")}
    if "role_id" in columns:
        return
    with engine.begin() as conn:
        conn.exec_driver_sql("ALTER TABLE users ADD COLUMN role_id VARCHAR REFERENCES roles(id)")


def table_exists(name: str) -> bool:
    """Return True when `name` is present in the connected database."""
    return inspect(engine).has_table(name)


def get_session():
    """Yield a database `Session` for FastAPI dependency injection.

    The generator yields a session and ensures it is closed when the
    request scope finishes.
    """
    with Session(engine) as session:
        yield session
