import os
import logging
from contextlib import contextmanager
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./securemsg.db")


def make_engine(url: str):
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


engine = make_engine(DATABASE_URL)


def get_engine():
    return engine


def configure_engine(url: str):
    """Point the module at another database (tests, tooling)."""
    global engine
    engine = make_engine(url)
    return engine


def create_db_and_tables(target=None):
    # models must be imported so the tables are registered on the metadata
    from . import models  # noqa: F401
    SQLModel.metadata.create_all(target or engine)
    logger.info("Database tables checked/created.")


def get_session():
    with Session(engine) as session:
        yield session


@contextmanager
def store_errors(session: Session, action: str):
    """Roll back and surface store failures as StoreUnavailable."""
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error(f"Store failure while trying to {action}: {exc}")
        raise StoreUnavailable(f"could not {action}") from exc
