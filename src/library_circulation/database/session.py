"""
Database session management for the Library Circulation server.

Every circulation operation is one unit of work: a single transaction in
which the rows it touches are locked before they are read for a decision.
This module provides:

1. Engine setup - SQLite writers open with ``BEGIN IMMEDIATE`` so concurrent
   units of work are serialized instead of failing at commit time
2. ``session_scope`` - commit on success, roll back on any error
3. ``run_in_transaction`` - re-runs a whole unit of work when it loses a
   lock race, so business rules are always evaluated on fresh data
"""

import logging
import time
from collections.abc import Callable, Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import get_config
from ..exceptions import CirculationError, ConflictError, RepositoryException
from .schema import Base

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _is_memory_url(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in database_url


class DatabaseManager:
    """
    Owns the engine and session factory for the circulation database.

    One manager is shared by all tool handlers; tests build their own
    against a database file per test.
    """

    def __init__(
        self,
        database_url: str | None = None,
        *,
        transaction_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
    ):
        config = get_config()
        if database_url is None:
            if config.database_url:
                database_url = config.database_url
            else:
                db_path = config.database_path
                if not db_path.is_absolute():
                    db_path = Path.cwd() / db_path
                db_path.parent.mkdir(exist_ok=True, parents=True)
                database_url = f"sqlite:///{db_path}"
                logger.info("Using SQLite database at: %s", db_path)

        self.database_url = database_url
        self.transaction_retries = (
            config.transaction_retries if transaction_retries is None else transaction_retries
        )
        self.retry_backoff_seconds = (
            config.retry_backoff_seconds
            if retry_backoff_seconds is None
            else retry_backoff_seconds
        )
        self._engine: Engine | None = None
        self._session_factory: sessionmaker | None = None

    @property
    def engine(self) -> Engine:
        """
        Get or create the database engine.

        For SQLite the driver's own transaction handling is switched off and
        every transaction is opened explicitly with ``BEGIN IMMEDIATE``, which
        takes the database write lock up front. ``SELECT ... FOR UPDATE`` is a
        no-op on SQLite, so this is what serializes writers there; on other
        backends the row locks do that work.
        """
        if self._engine is None:
            if self.database_url.startswith("sqlite"):
                if _is_memory_url(self.database_url):
                    # A single shared connection keeps the in-memory database alive
                    self._engine = create_engine(
                        self.database_url,
                        poolclass=StaticPool,
                        connect_args={"check_same_thread": False},
                        echo=False,
                    )
                else:
                    self._engine = create_engine(
                        self.database_url,
                        connect_args={"check_same_thread": False, "timeout": 30},
                        echo=False,
                    )

                @event.listens_for(self._engine, "connect")
                def set_sqlite_pragma(dbapi_connection, connection_record):  # noqa: ARG001
                    dbapi_connection.isolation_level = None
                    cursor = dbapi_connection.cursor()
                    cursor.execute("PRAGMA foreign_keys=ON")
                    cursor.close()

                @event.listens_for(self._engine, "begin")
                def begin_immediate(conn):
                    conn.exec_driver_sql("BEGIN IMMEDIATE")

            else:
                self._engine = create_engine(
                    self.database_url,
                    pool_size=10,
                    max_overflow=20,
                    pool_pre_ping=True,
                    echo=False,
                )

            logger.info("Database engine created: %s", self._engine.url)

        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self.engine,
                autocommit=False,
                autoflush=False,
                expire_on_commit=False,
            )
        return self._session_factory

    def create_session(self) -> Session:
        """Create a new session. Callers own closing it; prefer session_scope()."""
        return self.session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Provide a transactional scope for one unit of work.

        ```python
        with db_manager.session_scope() as session:
            loan = LoanLedger(session).get(loan_id)
        # Committed on success, rolled back on any exception
        ```
        """
        session = self.create_session()
        try:
            yield session
            session.commit()
            logger.debug("Database transaction committed successfully")
        except CirculationError as e:
            logger.debug("Rolling back unit of work: %s", e)
            session.rollback()
            raise
        except Exception:
            logger.exception("Database error, rolling back")
            session.rollback()
            raise
        finally:
            session.close()

    def run_in_transaction(
        self, operation: Callable[[Session], T], *, description: str = "operation"
    ) -> T:
        """
        Run ``operation`` as one unit of work, retrying on lock contention.

        The whole operation is re-run on each attempt, so every eligibility
        and state check is re-evaluated against the data committed by the
        transaction that won the race.

        Raises:
            ConflictError: Retries exhausted (transient) or a uniqueness
                constraint was violated by a concurrent change
        """
        attempts = self.transaction_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                with self.session_scope() as session:
                    return operation(session)
            except OperationalError as e:
                if attempt >= attempts:
                    logger.warning(
                        "%s failed after %d attempts: %s", description, attempts, e.orig
                    )
                    raise ConflictError(
                        f"{description} could not complete due to concurrent activity; "
                        "please retry",
                        transient=True,
                    ) from e
                delay = self.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.info(
                    "%s hit lock contention (attempt %d/%d), retrying in %.3fs",
                    description,
                    attempt,
                    attempts,
                    delay,
                )
                time.sleep(delay)
            except IntegrityError as e:
                logger.info("%s violated a uniqueness constraint: %s", description, e.orig)
                raise ConflictError(
                    f"{description} conflicts with an existing record"
                ) from e
        raise AssertionError("unreachable")

    def init_database(self, drop_existing: bool = False) -> None:
        """
        Create the schema and seed the loan configuration row.

        Note:
            Suitable for development and testing; production deployments
            should manage schema changes with a migration tool.
        """
        engine = self.engine

        if drop_existing:
            logger.warning("Dropping all existing tables...")
            Base.metadata.drop_all(bind=engine)

        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=engine)

        from .configuration_repository import LoanConfigurationStore

        with self.session_scope() as session:
            LoanConfigurationStore(session).get()

        logger.info("Database initialization complete")

    def verify_connection(self) -> bool:
        """Health check: True when a trivial query succeeds."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database connection verified")
            return True
        except SQLAlchemyError:
            logger.exception("Database connection failed")
            return False

    def close(self) -> None:
        """Dispose of the engine. Called when the server shuts down."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._engine = None
        self._session_factory = None


_db_manager: DatabaseManager | None = None


def get_db_manager(database_url: str | None = None) -> DatabaseManager:
    """
    Get the global database manager instance.

    Args:
        database_url: Database URL (only used on first call)
    """
    global _db_manager  # noqa: PLW0603 - Singleton pattern for database manager

    if _db_manager is None:
        _db_manager = DatabaseManager(database_url)

    return _db_manager


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Convenience wrapper around the global manager's session_scope()."""
    with get_db_manager().session_scope() as session:
        yield session


def safe_query(session: Session, query_func: Callable[[Session], T], error_msg: str) -> T:
    """
    Execute a query, translating unexpected database failures.

    Lock contention and constraint violations pass through untouched so that
    ``run_in_transaction`` can retry or report them as conflicts; any other
    SQLAlchemy error becomes a RepositoryException.
    """
    try:
        return query_func(session)
    except (OperationalError, IntegrityError):
        raise
    except SQLAlchemyError as e:
        logger.exception("Query failed")
        raise RepositoryException(f"{error_msg}: Database query failed") from e
