from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from dumbrent.config import database_url


def build_engine(url: str) -> Engine:
    """
    Postgres in production, a sqlite file for local runs and tests.
    Request handlers run in the threadpool, so sqlite connections must be shareable across threads.
    """
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False}, future=True)
    return create_engine(url, pool_pre_ping=True, pool_recycle=1800, future=True)


ENGINE = build_engine(database_url())
SessionLocal = sessionmaker(bind=ENGINE, class_=Session, expire_on_commit=False, autoflush=False)


@contextmanager
def session_scope() -> Iterator[Session]:
    """One unit of work: commit on success, roll back and re-raise on any error."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_schema() -> None:
    # Local sqlite and tests only; deployed databases are migrated with `alembic upgrade head`.
    from dumbrent.models import Base

    Base.metadata.create_all(ENGINE)
