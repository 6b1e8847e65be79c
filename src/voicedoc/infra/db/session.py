from __future__ import annotations

from collections.abc import Callable

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from src.voicedoc.infra.db.models import Base

SessionFactory = Callable[[], Session]


def create_sqlalchemy_session_factory(database_url: str, *, create_tables: bool = True) -> SessionFactory:
    """Create a SQLAlchemy-backed SessionFactory.

    Tables are created if they do not exist. In a real deployment this should
    be handled by migrations, but this is convenient for early setups and
    tests against SQLite.
    """

    engine = create_engine(database_url, future=True)
    if create_tables:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, class_=Session)
