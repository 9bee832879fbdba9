"""
Database wiring: engine construction and the unit-of-work helper shared by
every service.
"""

from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import Engine
from sqlmodel import Session, SQLModel, create_engine

from convoflow.config import settings


def make_engine(url: Optional[str] = None, **kwargs) -> Engine:
    url = url or settings.database_url
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    return create_engine(url, echo=False, **kwargs)


def create_schema(engine: Engine) -> None:
    """Create all database tables"""
    # imported for the side effect of registering every table on the metadata
    from convoflow import models  # noqa: F401

    SQLModel.metadata.create_all(engine)


@contextmanager
def unit_of_work(engine: Engine, db: Optional[Session] = None) -> Iterator[Session]:
    """
    Yields `db` untouched when the caller already owns a transaction, otherwise
    opens a session that commits on success and rolls back on error.
    """
    if db is not None:
        yield db
        return
    with Session(engine, expire_on_commit=False) as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
