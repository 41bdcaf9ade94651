"""Participation counters per role."""
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.exc import SQLAlchemyError

from practice_evaluations.eligibility import Population
from practice_evaluations.models import SLOT_COMPLETED, Evaluation, ResponseRecord, db, utcnow
from practice_evaluations.stores import mirror_to_academic

logger = logging.getLogger(__name__)


def participation_percentage(completed, total):
    """Whole percentage of ``completed`` over ``total``, halves rounded up."""
    if not total or total <= 0:
        return 0
    ratio = Decimal(completed) * 100 / Decimal(total)
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class ParticipationStat:
    total: int
    completed: int
    percentage: int

    def to_dict(self):
        return {"total": self.total, "completed": self.completed, "percentage": self.percentage}


def count_completed(session, evaluation, role):
    """Completed slots of ``role`` held by the evaluation's current participants.

    Slots left behind by people a refresh dropped from the population are
    not counted, so the count never exceeds the role's total.
    """
    current = {
        (ref.legalization_id, ref.variant)
        for ref in Population.from_dict(evaluation.kind, evaluation.participants).get(role)
    }
    if not current:
        return 0
    rows = (
        session.query(ResponseRecord.legalization_id, ResponseRecord.variant)
        .filter(
            ResponseRecord.evaluation_id == evaluation.id,
            ResponseRecord.status_column(role) == SLOT_COMPLETED,
        )
    )
    return sum(1 for legalization_id, variant in rows if (legalization_id, variant or "") in current)


def aggregate_participation(session, evaluation_id):
    """Recount completed responses and store the percentages in both stores.

    Never raises: a failure is logged and ``None`` is returned. A failed
    academic mirror does not undo the document store update.
    """
    try:
        evaluation = session.get(Evaluation, evaluation_id)
        if evaluation is None:
            logger.warning("Aggregation skipped: evaluation %s not found", evaluation_id)
            return None

        stats = {}
        for role in evaluation.roles:
            total = evaluation.total_for(role)
            completed = count_completed(session, evaluation, role)
            stats[role.value] = ParticipationStat(total, completed, participation_percentage(completed, total))

        evaluation.percentages = {role: stat.percentage for role, stat in stats.items()}
        evaluation.updated_at = utcnow()
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Aggregation of evaluation %s failed", evaluation_id)
        return None

    mirror_to_academic(session, evaluation)
    logger.info("Evaluation %s participation: %s", evaluation_id, evaluation.percentages)
    return stats


def refresh_participation(evaluation_id):
    """Post-commit entry point, runs against the current app context's session."""
    return aggregate_participation(db.session, evaluation_id)
