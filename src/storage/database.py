import logging
import os
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./data/logward.db"


# Base class for SQLAlchemy models
class Base(DeclarativeBase):
    pass


def build_engine(url: str = DEFAULT_DATABASE_URL, **kwargs: Any) -> Engine:
    """
    Create the SQLAlchemy engine for `url`.

    SQLite databases are shared across the scheduler and worker threads;
    in-memory ones additionally need a single pooled connection or every
    session would see its own empty database.
    """
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        database = parsed.database
        if not database or database == ":memory:":
            kwargs.setdefault("poolclass", StaticPool)
        else:
            db_dir = os.path.dirname(database)
            if db_dir and not os.path.exists(db_dir):
                os.makedirs(db_dir, exist_ok=True)

    engine = create_engine(url, **kwargs)
    logger.info(f"Database engine created ({parsed.get_backend_name()})")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    # Registers every table on Base.metadata.
    import storage.models  # noqa: F401

    Base.metadata.create_all(engine)
