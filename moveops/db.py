from contextlib import contextmanager
from typing import Iterator

import structlog
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy import create_engine

from .config import settings
from .errors import ConflictError, PersistenceError


logger = structlog.get_logger(__name__)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    # Configure connection pool for better performance
    return {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 3600,  # Recycle connections after 1 hour
    }


engine = create_engine(
    settings.database_url,
    future=True,
    pool_pre_ping=True,
    **_engine_kwargs(settings.database_url),
)

# IMPORTANT: do not use scoped_session with async frameworks; create a fresh Session per request
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """
    Run one business operation as a single transaction.

    Everything flushed inside the block is committed together at the end or
    rolled back together on any error. Storage-level failures are translated
    into the service error taxonomy: optimistic version mismatches and
    constraint races become ConflictError (the caller may retry the whole
    operation), anything else from the driver becomes PersistenceError.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning("unit_of_work_stale", error=str(e))
        raise ConflictError("Concurrent modification detected, retry the operation") from e
    except IntegrityError as e:
        db.rollback()
        logger.warning("unit_of_work_integrity", error=str(e.orig))
        raise ConflictError("Conflicting write detected, retry the operation") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("unit_of_work_failed", error=str(e))
        raise PersistenceError("Storage failure") from e
    except Exception:
        db.rollback()
        raise
