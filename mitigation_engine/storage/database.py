"""SQLAlchemy engine and session helpers for the persisted repositories."""

from contextlib import contextmanager
from typing import Iterator, Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def create_database_engine(database_url: str,
                           echo: bool = False,
                           connect_args: Optional[dict] = None) -> Engine:
    """Create an engine for ``database_url``.

    SQLite engines share one connection (``StaticPool``) so an in-memory
    database stays visible to every worker thread; server databases get a
    regular pool with pre-ping.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, connect_args=connect_args or {}, pool_pre_ping=True)

    if connect_args is None:
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, echo=echo, connect_args=connect_args, poolclass=StaticPool)


def create_session_factory(engine: Engine) -> sessionmaker:
    # Loaded rows are converted to pydantic models after commit.
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """Yield a session, committing on success and rolling back on any error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_tables(engine: Engine):
    from . import models  # noqa: F401  registers the mapped tables
    Base.metadata.create_all(bind=engine)


def drop_tables(engine: Engine):
    from . import models  # noqa: F401
    Base.metadata.drop_all(bind=engine)
