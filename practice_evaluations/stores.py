"""Helpers for working with the two backing stores.

The document store (default bind) owns evaluations, tokens and responses.
The academic store (``academic`` bind) is the relational system of record
and receives a mirror of each evaluation's counters.
"""
import logging
from contextlib import contextmanager

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from practice_evaluations.errors import DependencyUnavailable
from practice_evaluations.models import EvaluationRow

logger = logging.getLogger(__name__)


@contextmanager
def store_guard(session, store_name):
    """Report a store that cannot be reached as ``DependencyUnavailable``."""
    try:
        yield
    except OperationalError as exc:
        session.rollback()
        logger.error("%s store unavailable: %s", store_name, exc)
        raise DependencyUnavailable(f"The {store_name} store is unavailable") from exc


def mirror_to_academic(session, evaluation):
    """Copy an evaluation's counters into the academic store.

    Returns ``False`` when the write fails; the document store is left as
    it was.
    """
    try:
        row = session.get(EvaluationRow, evaluation.id)
        if row is None:
            row = EvaluationRow(evaluation_id=evaluation.id)
            session.add(row)
        row.copy_from(evaluation)
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Could not mirror evaluation %s to the academic store", evaluation.id)
        return False
    return True
