"""
Database handle shared by the store, the quota ledger and the tools.

A Database is created once per process and passed explicitly to every
component; nothing here is a module-level singleton.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from tenacity import (
    Retrying, retry_if_exception, stop_after_attempt, wait_exponential
)

from config import settings
from models import Base
from models.errors import PersistenceFailure
from observability import trace_logger

T = TypeVar("T")


def utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime read back from the database to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_transient(exc: BaseException) -> bool:
    """Lock contention and serialization failures are worth retrying."""
    if isinstance(exc, OperationalError):
        message = str(exc).lower()
        return "locked" in message or "busy" in message or "deadlock" in message
    if isinstance(exc, DBAPIError):
        code = getattr(getattr(exc, "orig", None), "pgcode", None)
        return code in {"40001", "40P01"}
    return False


class Database:
    """SQL database handle with transactional session scopes."""

    def __init__(self, database_url: str = None, retry_attempts: int = None):
        """Initialize the engine and session factory."""
        self.database_url = database_url or settings.database_url
        self.retry_attempts = retry_attempts or settings.db_retry_attempts
        is_sqlite = self.database_url.startswith("sqlite")
        if is_sqlite:
            path = make_url(self.database_url).database
            if path and path != ":memory:":
                Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(
            self.database_url,
            connect_args={"check_same_thread": False, "timeout": 30} if is_sqlite else {},
            pool_pre_ping=not is_sqlite,
        )
        if is_sqlite:
            event.listen(self.engine, "connect", _sqlite_pragmas)
            event.listen(self.engine, "begin", _sqlite_begin)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def create_all(self) -> None:
        """Create tables (schema migrations live outside this service)."""
        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional session scope; failures surface as PersistenceFailure."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            trace_logger.error_occurred(
                error_type="database_error",
                error_message=str(e)
            )
            raise PersistenceFailure(f"Database operation failed: {e}", e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def run(self, operation: Callable[[Session], T]) -> T:
        """
        Run operation in its own transaction, retrying transient lock errors.

        The operation must be idempotent with respect to partial failure,
        which every store write is (conditional updates, insert-or-ignore).
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=0.05, max=1.0),
            retry=retry_if_exception(
                lambda e: isinstance(e, PersistenceFailure) and _is_transient(e.original)
            ),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                with self.session() as session:
                    return operation(session)

    def insert_ignore(self, session: Session, model, values: Dict[str, Any]) -> bool:
        """
        INSERT ... ON CONFLICT DO NOTHING for the current dialect.

        Returns True when a row was inserted, False when a unique constraint
        already held a matching row.
        """
        if self.dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif self.dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise PersistenceFailure(f"Unsupported database dialect: {self.dialect}")

        stmt = insert(model).values(**values).on_conflict_do_nothing()
        result = session.execute(stmt)
        return result.rowcount == 1


def _sqlite_pragmas(dbapi_connection, connection_record):
    # SQLAlchemy emits BEGIN itself (see _sqlite_begin)
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def _sqlite_begin(connection):
    # Take the write lock up front: a read transaction that later writes
    # fails with SQLITE_BUSY instead of waiting on busy_timeout.
    connection.exec_driver_sql("BEGIN IMMEDIATE")
