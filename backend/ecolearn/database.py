"""Database engine and helpers.

The engine is built from `settings.DATABASE_URL` (a SQLite file next to
the package by default). SQLite needs `check_same_thread=False` because
FastAPI serves sync endpoints from a thread pool.
"""

from sqlmodel import SQLModel, create_engine, Session

from .config import settings


def _build_engine(url: str):
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, echo=False, connect_args=connect_args)


engine = _build_engine(settings.DATABASE_URL)


def create_db_and_tables():
    """Create database tables using SQLModel metadata.

    Intended for local development and tests; production deployments
    should manage schema changes with a migration tool (alembic).
    """
    # models must be imported so their tables are registered on the metadata
    from . import models  # noqa: F401
    SQLModel.metadata.create_all(engine)


def get_session():
    """Yield a database `Session` for FastAPI dependency injection."""
    with Session(engine) as session:
        yield session
