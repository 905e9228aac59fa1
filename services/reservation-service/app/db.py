import logging

from sqlalchemy.exc import DBAPIError

from shared.database import Base, get_engine, get_session, is_serialization_failure

from .config import DATABASE_URL, DB_ISOLATION_LEVEL, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from .errors import ConflictError

logger = logging.getLogger(__name__)

engine = get_engine(DATABASE_URL, isolation_level=DB_ISOLATION_LEVEL)

SessionLocal = get_session(engine)


async def run_in_transaction(session_factory, work, attempts: int = 1):
    """
    Run ``work(db)`` inside one transaction, retrying the whole unit when the
    ledger race is lost or the database reports a serialization failure.

    Exhausted retries surface as ConflictError.
    """
    for attempt in range(1, attempts + 1):
        try:
            async with session_factory() as db:
                async with db.begin():
                    return await work(db)
        except ConflictError:
            if attempt >= attempts:
                raise
            logger.info("Ledger conflict, retrying transaction (attempt %s/%s)", attempt, attempts)
        except DBAPIError as e:
            if not is_serialization_failure(e):
                raise
            if attempt >= attempts:
                raise ConflictError("Concurrent update, please retry") from e
            logger.info("Serialization failure, retrying transaction (attempt %s/%s)", attempt, attempts)


def paginate(stmt, page: int = 0, size: int = DEFAULT_PAGE_SIZE):
    """Zero-based page of an ordered select."""
    size = max(1, min(size, MAX_PAGE_SIZE))
    return stmt.limit(size).offset(max(page, 0) * size)


__all__ = ["Base", "engine", "SessionLocal", "run_in_transaction", "paginate"]
