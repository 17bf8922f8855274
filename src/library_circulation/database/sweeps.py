"""
Batch sweeps over loans and holds.

A sweep first lists its candidates, then updates each one in its own
transaction. Every row is re-checked after it is locked, so a sweep racing a
manual return or pickup converges instead of overwriting it, and one failing
row never aborts the rest of the batch.
"""

import logging
from collections.abc import Callable
from datetime import datetime
from functools import partial

from sqlalchemy.orm import Session

from ..exceptions import CirculationError
from ..models.circulation import SweepResult
from ..observability.context import trace_repository_operation
from ..observability.metrics import record_sweep
from .configuration_repository import LoanConfigurationStore
from .loan_repository import LoanLedger
from .repository import current_time, naive_local
from .reservation_repository import HoldQueue
from .session import DatabaseManager, get_db_manager

logger = logging.getLogger(__name__)


def _mark_loan_overdue(session: Session, row_id: str, now: datetime) -> bool:
    return LoanLedger(session).mark_overdue(row_id, now)


def _expire_reservation(session: Session, row_id: str, now: datetime) -> bool:
    config = LoanConfigurationStore(session).get()
    return HoldQueue(session).expire(row_id, config, now)


def _sweep(
    db: DatabaseManager,
    name: str,
    candidates: Callable[[Session], list[str]],
    update_row: Callable[[Session, str, datetime], bool],
    now: datetime,
) -> SweepResult:
    with db.session_scope() as session:
        ids = candidates(session)

    result = SweepResult()
    for row_id in ids:
        try:
            changed = db.run_in_transaction(
                partial(update_row, row_id=row_id, now=now),
                description=f"{name} {row_id}",
            )
        except CirculationError as e:
            logger.warning("%s skipped %s: %s", name, row_id, e)
            result.failures[row_id] = str(e)
            continue
        except Exception as e:
            logger.exception("%s failed on %s", name, row_id)
            result.failures[row_id] = str(e)
            continue
        if changed:
            result.ids.append(row_id)

    result.updated = len(result.ids)
    record_sweep(name, result.updated)
    logger.info(
        "%s complete: %d of %d candidates updated, %d failed",
        name,
        result.updated,
        len(ids),
        len(result.failures),
    )
    return result


def update_overdue_loans(
    db: DatabaseManager | None = None, as_of: datetime | None = None
) -> SweepResult:
    """
    Flip every ACTIVE loan past its due date to OVERDUE.

    Idempotent; fines and holds are not touched (fines are only assessed at
    return time).
    """
    db = db or get_db_manager()
    now = naive_local(as_of) or current_time()
    with trace_repository_operation("sweeps", "update_overdue_loans", "loans"):
        return _sweep(
            db,
            "Overdue sweep",
            lambda s: LoanLedger(s).overdue_candidates(now),
            _mark_loan_overdue,
            now,
        )


def expire_reservations(
    db: DatabaseManager | None = None, as_of: datetime | None = None
) -> SweepResult:
    """
    Expire every READY hold whose pickup deadline has passed.

    Each expiry releases the held copy and gives the next hold in the queue
    a chance at it, within that hold's transaction.
    """
    db = db or get_db_manager()
    now = naive_local(as_of) or current_time()
    with trace_repository_operation("sweeps", "expire_reservations", "reservations"):
        return _sweep(
            db,
            "Expiry sweep",
            lambda s: HoldQueue(s).expiry_candidates(now),
            _expire_reservation,
            now,
        )
