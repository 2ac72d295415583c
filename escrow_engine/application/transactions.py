# escrow_engine/application/transactions.py

import logging
from typing import Callable, Tuple, Type, TypeVar

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from escrow_engine.domain.exceptions import ConcurrencyConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def run_in_transaction(
    db: Session,
    operation: Callable[[], T],
    *,
    retries: int,
    label: str,
    commit_on: Tuple[Type[BaseException], ...] = (),
) -> T:
    """
    Runs ``operation`` and commits. A version conflict rolls back and
    re-runs it from a fresh read, up to ``retries`` more times.

    Exceptions listed in ``commit_on`` carry state that must persist
    (an automatic cancellation, for instance): the transaction is
    committed before they propagate. Any other error rolls back.
    """
    attempts = retries + 1

    for attempt in range(1, attempts + 1):
        try:
            result = operation()
            db.commit()
            return result
        except commit_on:
            db.commit()
            raise
        except (ConcurrencyConflictError, StaleDataError) as exc:
            db.rollback()
            if attempt == attempts:
                logger.warning("%s: version conflict persisted after %s attempts", label, attempts)
                if isinstance(exc, ConcurrencyConflictError):
                    raise
                raise ConcurrencyConflictError(f"{label}: concurrent modification") from exc
            logger.warning(
                "%s: version conflict (attempt %s/%s). Re-reading and re-applying.",
                label,
                attempt,
                attempts,
            )
        except Exception:
            db.rollback()
            raise

    raise ConcurrencyConflictError(f"{label}: concurrent modification")
