"""
Order number allocation.

Numbers look like ``2026-0042``: the year plus a per-year sequence that starts
at 1. The counter row is bumped with a single conditional UPDATE and read back
inside the same transaction, so concurrent creators serialize on the row lock
instead of racing on "highest existing number + 1". A rolled back transaction
gives its value back.
"""
import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import OrderSequence


logger = structlog.get_logger(__name__)


def _increment(db: Session, year: int) -> bool:
    result = db.execute(
        update(OrderSequence)
        .where(OrderSequence.year == year)
        .values(last_value=OrderSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def next_sequence_value(db: Session, year: int) -> int:
    """Increment-and-fetch the counter for ``year``; does not commit."""
    if not _increment(db, year):
        # First order of the year: create the counter under a savepoint so a
        # concurrent creator winning the insert does not abort our transaction
        savepoint = db.begin_nested()
        try:
            db.add(OrderSequence(year=year, last_value=1))
            db.flush()
            savepoint.commit()
            logger.debug("order_sequence_started", year=year)
            return 1
        except IntegrityError:
            savepoint.rollback()
            logger.debug("order_sequence_race_retry", year=year)
            if not _increment(db, year):
                raise
    value = db.execute(
        select(OrderSequence.last_value)
        .where(OrderSequence.year == year)
        .execution_options(populate_existing=True)
    ).scalar_one()
    logger.debug("order_sequence_allocated", year=year, value=value)
    return value


def format_order_number(year: int, value: int) -> str:
    return f"{year}-{value:0{settings.order_number_width}d}"


def next_order_number(db: Session, year: int) -> str:
    return format_order_number(year, next_sequence_value(db, year))
