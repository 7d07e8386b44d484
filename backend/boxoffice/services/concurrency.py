# Overview: Unit-of-work helpers for row locking, guarded updates and retry.

from __future__ import annotations

import time

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Transitions that must happen exactly once go through compare_and_set.
    """
    return query.with_for_update()


def compare_and_set(model, row_id: int, *criteria, **values) -> bool:
    """
    Guarded single-row update: UPDATE model SET values WHERE id = row_id AND criteria.

    Returns True when this caller won the transition, False when the guard
    did not match (row already moved, counter at its bound, ...). The
    database evaluates the guard, so two racing callers can never both win.
    A loaded instance of the row is expired so later reads see the new values.
    """
    db.session.flush()
    stmt = (
        update(model)
        .where(model.id == row_id, *criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)

    instance = db.session.identity_map.get(db.session.identity_key(model, row_id))
    if instance is not None:
        db.session.expire(instance)

    return result.rowcount == 1


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB unit of work with retry on concurrency-related failures.

    Any exception rolls the session back, so a failed unit of work never
    leaves partial changes behind. Only OperationalError (deadlocks, locks)
    and StaleDataError (optimistic locking conflicts) are retried; domain
    errors propagate on the first attempt.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError):
            db.session.rollback()
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
