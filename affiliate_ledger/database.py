import logging
from functools import lru_cache
from typing import Callable, Optional, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .config import Settings, get_settings
from .errors import ConcurrentUpdateError, TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


def build_engine(settings: Optional[Settings] = None) -> Engine:
    settings = settings or get_settings()
    if settings.is_sqlite:
        return create_engine(
            settings.DATABASE_URL,
            echo=settings.DEBUG,
            connect_args={"check_same_thread": False, "timeout": settings.DB_POOL_TIMEOUT},
        )
    return create_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        connect_args={"options": f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS}"},
    )


def build_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@lru_cache()
def get_session_factory() -> sessionmaker[Session]:
    engine = build_engine()
    Base.metadata.create_all(bind=engine)
    return build_session_factory(engine)


def run_in_transaction(
    session_factory: sessionmaker[Session],
    work: Callable[[Session], T],
    retries: Optional[int] = None,
) -> T:
    """
    Run ``work`` inside a single transaction, committing on success.

    A lost compare-and-set (ConcurrentUpdateError) rolls the whole
    transaction back and runs ``work`` again with fresh reads. Storage
    timeouts and dropped connections surface as TransientStorageError.
    """
    attempts = retries if retries is not None else get_settings().CAS_MAX_RETRIES
    for attempt in range(1, attempts + 1):
        try:
            with session_factory.begin() as session:
                return work(session)
        except ConcurrentUpdateError as e:
            logger.warning(f"Lost compare-and-set on attempt {attempt}/{attempts}: {e}")
        except OperationalError as e:
            logger.error("Storage operation failed", exc_info=True)
            raise TransientStorageError("Storage temporarily unavailable, retry the request") from e
    raise TransientStorageError(f"Gave up after {attempts} conflicting concurrent updates")
