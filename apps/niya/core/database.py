"""Database engine and session helpers (SQLModel-compatible)."""

from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import Session, SQLModel

from niya.core.exceptions import ConfigurationError
from niya.core.settings import settings


def normalize_db_url(url: str) -> str:
    """Normalize database URL for SQLAlchemy.

    - Force explicit psycopg driver for Postgres URLs
    - Leave other schemes untouched
    """
    if url.startswith("postgres://"):
        return "postgresql+psycopg://" + url[len("postgres://") :]
    if url.startswith("postgresql://") and "+" not in url.split(":", 1)[0]:
        return "postgresql+psycopg://" + url[len("postgresql://") :]
    return url


def build_engine(url: str) -> Engine:
    url = normalize_db_url(url)
    connect_args: dict = {}
    if url.startswith("sqlite"):
        # Store calls run in a worker thread, not the thread that opened the connection.
        connect_args["check_same_thread"] = False
    try:
        return create_engine(url, future=True, pool_pre_ping=True, connect_args=connect_args)
    except ModuleNotFoundError as exc:  # pragma: no cover - runtime dependency hint
        if url.startswith("postgres"):
            raise ConfigurationError(
                'PostgreSQL driver missing. Run: pip install "psycopg[binary]" '
                "or use SQLite locally: DATABASE_URL=sqlite:///apps/niya/niya.db",
            ) from exc
        raise


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
    class_=Session,
)


def init_db(bind: Engine | None = None) -> None:
    """Create all tables. Schema evolution is handled outside this service."""

    import niya.models  # noqa: F401  (register tables on the metadata)

    SQLModel.metadata.create_all(bind or engine)


def get_session() -> Generator[Session, None, None]:
    """Yield a SQLModel session scoped to the request lifecycle."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


__all__ = ["SessionLocal", "build_engine", "engine", "get_session", "init_db", "normalize_db_url"]
