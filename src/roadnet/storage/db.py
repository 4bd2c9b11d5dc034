from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Generator, Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from roadnet.config import settings

log = logging.getLogger(__name__)


def _coerce_psycopg_dialect(url: str) -> str:
    # Use the psycopg (v3) driver when only the base postgresql scheme is given
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    if url.startswith("postgresql://") and "+psycopg" not in url:
        return "postgresql+psycopg://" + url[len("postgresql://"):]
    return url


_engine: Optional[Engine] = None
_SessionLocal = None


def make_engine(url: str) -> Engine:
    url = _coerce_psycopg_dialect(url)
    if url.startswith("sqlite"):
        return create_engine(url, future=True, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        future=True,
        connect_args={"connect_timeout": settings.db_connect_timeout_s},
    )


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = make_engine(settings.database_url)
        log.info("Database engine created (%s)", _engine.dialect.name)
    return _engine


def get_session_factory():
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, bind=get_engine(), future=True
        )
    return _SessionLocal


def reset_engine() -> None:
    """Dispose the process-wide engine; the next call re-reads settings."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def is_postgres(engine: Engine) -> bool:
    return engine.dialect.name == "postgresql"


def init_db(engine: Optional[Engine] = None) -> None:
    """Create the rating tables, plus the PostGIS road table on PostgreSQL."""
    from roadnet.storage.tables import Base, SpatialBase

    engine = engine or get_engine()
    Base.metadata.create_all(engine)
    if is_postgres(engine):
        with engine.begin() as conn:
            conn.execute(text("CREATE EXTENSION IF NOT EXISTS postgis"))
        SpatialBase.metadata.create_all(engine)


def get_db() -> Generator:
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(session_factory=None) -> Iterator[Session]:
    """One transaction: commit on success, roll back and re-raise on failure."""
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
