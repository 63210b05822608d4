import os
import sqlite3
import time
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from fleet import config

Base = declarative_base()


def get_engine(url: str = config.DATABASE_URL):
    if url.startswith("sqlite:///") and not url.startswith("sqlite:///:memory:"):
        db_path = Path(url[len("sqlite:///"):])
        os.makedirs(db_path.parent, exist_ok=True)

    kwargs = {"future": True, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 10}
        if url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty database
            kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute("PRAGMA synchronous=NORMAL;")
            cursor.execute("PRAGMA busy_timeout=5000;")
            cursor.close()

    return engine


def make_session_factory(engine):
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        future=True,
        expire_on_commit=False,  # records stay readable after commit for event payloads
    )


def _is_locked(exc: Exception) -> bool:
    return "locked" in str(exc).lower()


def run_with_retry(fn, retries: int = 3, delay: float = 0.2):
    last_exc = None
    for _ in range(retries):
        try:
            return fn()
        except (sqlite3.OperationalError, OperationalError) as exc:
            last_exc = exc
            if not _is_locked(exc):
                raise
            time.sleep(delay)
    if last_exc:
        raise last_exc


engine = get_engine()
SessionLocal = make_session_factory(engine)


def init_db(bind=None):
    """Create all tables if they do not exist yet."""
    from fleet import db_models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
