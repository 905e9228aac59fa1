from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import declarative_base

# postgres: serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}


def get_engine(database_url: str, isolation_level: str | None = None):
    kwargs = {"echo": False, "future": True}
    if isolation_level and not database_url.startswith("sqlite"):
        kwargs["isolation_level"] = isolation_level
    return create_async_engine(database_url, **kwargs)


Base = declarative_base()


def get_session(engine):
    return async_sessionmaker(
        bind=engine,
        expire_on_commit=False
    )


def is_serialization_failure(exc: Exception) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in RETRYABLE_SQLSTATES:
        return True
    # sqlite: a second writer lost the file lock
    return "database is locked" in str(orig)
