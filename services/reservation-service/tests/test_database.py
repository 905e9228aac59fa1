import sqlite3

from sqlalchemy.exc import DBAPIError

from shared.database import is_serialization_failure


class PgError(Exception):
    def __init__(self, sqlstate):
        super().__init__(f"sqlstate {sqlstate}")
        self.sqlstate = sqlstate


def _wrap(orig: Exception) -> DBAPIError:
    return DBAPIError("UPDATE accommodations", {}, orig)


def test_postgres_conflicts_are_retryable():
    assert is_serialization_failure(_wrap(PgError("40001")))
    assert is_serialization_failure(_wrap(PgError("40P01")))
    assert not is_serialization_failure(_wrap(PgError("23505")))


def test_sqlite_lock_contention_is_retryable():
    assert is_serialization_failure(_wrap(sqlite3.OperationalError("database is locked")))
    assert not is_serialization_failure(_wrap(sqlite3.OperationalError("no such table: bookings")))


def test_non_database_errors_are_not_retried():
    assert not is_serialization_failure(RuntimeError("boom"))
