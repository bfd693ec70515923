"""
Per-aggregate write serialization.

Writers take an in-process lock keyed by (aggregate type, id) and every
aggregate root carries a version column, so a write based on a stale read
fails with StaleDataError instead of silently overwriting. ``run_with_retry``
re-runs the whole read-decide-write step after such a conflict.
"""
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Optional, Tuple, Type, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from dealroom.core.config import get_settings
from dealroom.core.errors import ConcurrencyError
from dealroom.core.logging_config import LoggingConfig
from dealroom.core.metrics import concurrency_conflicts_total

logger = LoggingConfig.get_logger(__name__)

T = TypeVar('T')

_locks: Dict[Tuple[str, str], "_LockEntry"] = {}
_locks_guard = threading.Lock()


class _LockEntry:
    """A lock plus the number of callers holding or waiting on it"""
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


@contextmanager
def aggregate_lock(aggregate: str, aggregate_id):
    """
    Serialize writers of one aggregate inside this process.

    Entries are dropped when the last user leaves, so the table only holds
    aggregates with a writer in flight.
    """
    key = (aggregate, str(aggregate_id))
    with _locks_guard:
        entry = _locks.get(key)
        if entry is None:
            entry = _locks[key] = _LockEntry()
        entry.users += 1
    try:
        with entry.lock:
            yield
    finally:
        with _locks_guard:
            entry.users -= 1
            if entry.users == 0:
                del _locks[key]


def tracked_lock_count() -> int:
    with _locks_guard:
        return len(_locks)


def load_for_update(db: Session, model: Type[T], record_id: UUID) -> Optional[T]:
    """Load a fresh copy of a row, locking it where the dialect supports it"""
    query = db.query(model).filter(model.id == record_id).populate_existing()
    if db.get_bind().dialect.name != "sqlite":
        query = query.with_for_update()
    return query.first()


def run_with_retry(
    db: Session,
    operation: Callable[[], T],
    aggregate: str,
    aggregate_id=None,
    attempts: Optional[int] = None
) -> T:
    """
    Run a read-decide-write operation, retrying on optimistic version conflicts.

    The operation must re-read the aggregate it changes. Only StaleDataError
    is retried; domain errors propagate on the first attempt.
    """
    attempts = attempts or get_settings().concurrency_retry_attempts
    for attempt in range(1, attempts + 1):
        try:
            with aggregate_lock(aggregate, aggregate_id):
                return operation()
        except StaleDataError:
            db.rollback()
            concurrency_conflicts_total.labels(aggregate=aggregate).inc()
            logger.warning(
                f"Version conflict on {aggregate} {aggregate_id}, attempt {attempt}/{attempts}",
                extra={"aggregate": aggregate, "aggregate_id": str(aggregate_id), "attempt": attempt}
            )

    raise ConcurrencyError(
        f"{aggregate} {aggregate_id} was modified concurrently; gave up after {attempts} attempts",
        details={"aggregate": aggregate, "aggregate_id": aggregate_id, "attempts": attempts}
    )
