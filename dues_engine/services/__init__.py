"""Database connection, session management and unit-of-work helpers."""

import logging
import time
from contextlib import contextmanager
from typing import Callable, Generator, Iterator, Optional, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.pool import StaticPool

from dues_engine.config import get_settings
from dues_engine.services.errors import ConcurrencyConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Session.info key tracking nested atomic() blocks
_ATOMIC_DEPTH = "dues_engine.atomic_depth"

# Driver messages that mark a write conflict worth retrying
_TRANSIENT_MARKERS = ("database is locked", "deadlock", "could not serialize", "lock timeout")

RETRY_BACKOFF_SECONDS = 0.05

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Get or create the engine for the configured DATABASE_URL."""
    global _engine
    if _engine is None:
        settings = get_settings()
        if settings.database_url.startswith("sqlite"):
            # SQLite uses StaticPool for simplicity in dev/test
            _engine = create_engine(
                settings.database_url,
                echo=settings.database_echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            _engine = create_engine(
                settings.database_url,
                echo=settings.database_echo,
                pool_pre_ping=True,
            )
    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create the session factory bound to the engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(bind=get_engine())
    return _session_factory


def reset_engine() -> None:
    """Dispose the engine so the next access re-reads settings."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """Run a block as one unit of work.

    The outermost block commits on success and rolls back on any exception.
    Nested blocks join the outer transaction, so public operations can call
    each other without committing halfway.
    """
    depth = db.info.get(_ATOMIC_DEPTH, 0)
    db.info[_ATOMIC_DEPTH] = depth + 1
    try:
        yield db
        if depth == 0:
            db.commit()
    except Exception:
        if depth == 0:
            db.rollback()
        raise
    finally:
        db.info[_ATOMIC_DEPTH] = depth


def in_atomic(db: Session) -> bool:
    """Check whether the session is inside an atomic() block."""
    return db.info.get(_ATOMIC_DEPTH, 0) > 0


def is_transient_conflict(exc: Exception) -> bool:
    """Check whether an exception is a retryable concurrent-write conflict."""
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig).lower()
        return any(marker in message for marker in _TRANSIENT_MARKERS)
    return False


def run_with_retry(
    db: Session,
    operation: Callable[[], T],
    attempts: int | None = None,
    description: str = "operation",
) -> T:
    """Run an atomic operation, retrying transient write conflicts.

    Args:
        db: Database session the operation uses
        operation: Callable performing its own atomic() block
        attempts: Maximum attempts (default: settings.payment_retry_attempts)
        description: Label used in log and error messages

    Returns:
        Whatever the operation returns

    Raises:
        ConcurrencyConflictError: If every attempt hit a write conflict
    """
    if in_atomic(db):
        # The enclosing unit of work owns rollback, a retry here cannot undo it
        return operation()

    max_attempts = attempts or get_settings().payment_retry_attempts
    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except (StaleDataError, OperationalError) as e:
            if not is_transient_conflict(e):
                raise
            db.rollback()
            if attempt == max_attempts:
                logger.error(
                    "%s failed after %d attempts: %s", description, max_attempts, e
                )
                raise ConcurrencyConflictError(
                    f"{description} conflicted with a concurrent write "
                    f"{max_attempts} times"
                ) from e
            logger.warning(
                "Write conflict in %s (attempt %d/%d), retrying", description, attempt, max_attempts
            )
            time.sleep(RETRY_BACKOFF_SECONDS * attempt)

    raise ConcurrencyConflictError(f"{description} was not attempted")


__all__ = [
    "get_engine",
    "get_session_factory",
    "reset_engine",
    "get_db",
    "atomic",
    "in_atomic",
    "is_transient_conflict",
    "run_with_retry",
]
