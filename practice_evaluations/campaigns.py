"""Evaluation lifecycle: creation, population refresh, sending and closing."""
import logging

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from practice_evaluations.eligibility import EligibilityCriteria, resolve_population
from practice_evaluations.errors import DeliveryFailed, InvalidTransition, NotFound, NothingToSend
from practice_evaluations.models import EmailStatus, Evaluation, EvaluationStatus, Item, utcnow
from practice_evaluations.notifications import send_invitations
from practice_evaluations.roles import EvaluationKind, parse_form_codes, role_form_codes
from practice_evaluations.stores import mirror_to_academic, store_guard
from practice_evaluations.tokens import issue_for_evaluation, orphaned_tokens

logger = logging.getLogger(__name__)

TRANSITIONS = {
    EvaluationStatus.CREATED: {EvaluationStatus.SENT, EvaluationStatus.CANCELLED},
    EvaluationStatus.SENT: {EvaluationStatus.FINALIZED, EvaluationStatus.CANCELLED},
}

# Changing any of these changes who is eligible.
FILTER_FIELDS = ("period", "practice_type", "program_ids", "categories", "faculty_id", "excluded_statuses")
EDITABLE_FIELDS = ("name", "start_date", "finish_date") + FILTER_FIELDS


def _default_exclusions():
    config = current_app.config
    return {
        EvaluationKind.PRACTICE: config.get("PRACTICE_EXCLUDED_STATUSES"),
        EvaluationKind.MONITORING: config.get("MONITORING_EXCLUDED_STATUSES"),
    }


def get_evaluation(session, evaluation_id):
    with store_guard(session, "document"):
        evaluation = session.get(Evaluation, evaluation_id)
    if evaluation is None:
        raise NotFound("Evaluation not found")
    return evaluation


def list_evaluations(session, kind=None, status=None, period=None):
    query = session.query(Evaluation)
    if kind:
        query = query.filter_by(kind=EvaluationKind(kind).value)
    if status:
        query = query.filter_by(status=status)
    if period:
        query = query.filter_by(period=period)
    return query.order_by(Evaluation.created_at.desc()).all()


def create_evaluation(session, payload, user):
    """Create an evaluation and issue its participants' tokens.

    The survey item's form codes are mapped onto the evaluation's roles. A
    failed population refresh leaves the evaluation in place with zero
    participants.
    """
    kind = EvaluationKind(payload.get("kind") or EvaluationKind.PRACTICE)
    with store_guard(session, "academic"):
        item = session.get(Item, payload["survey_item_id"])
    if item is None:
        raise NotFound("Survey item not found")

    evaluation = Evaluation(
        name=payload["name"],
        kind=kind.value,
        period=payload["period"],
        practice_type=payload.get("practice_type"),
        faculty_id=payload.get("faculty_id"),
        program_ids=list(payload.get("program_ids") or []),
        categories=list(payload.get("categories") or []),
        excluded_statuses=payload.get("excluded_statuses"),
        survey_item_id=item.id,
        form_codes=role_form_codes(kind, parse_form_codes(item.value_for_reports)),
        participants={},
        totals={},
        percentages={},
        start_date=payload["start_date"],
        finish_date=payload["finish_date"],
        user_creator=user,
    )
    with store_guard(session, "document"):
        session.add(evaluation)
        session.commit()
    mirror_to_academic(session, evaluation)
    logger.info("Created evaluation %s (%s, period %s)", evaluation.id, kind.value, evaluation.period)

    try:
        refresh_population(session, evaluation)
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Population refresh for new evaluation %s failed", evaluation.id)
    return evaluation


def refresh_population(session, evaluation):
    """Recompute the eligible population and issue any missing tokens.

    Tokens of participants who are no longer eligible are kept and only
    reported.
    """
    criteria = EligibilityCriteria.from_evaluation(evaluation, _default_exclusions())
    with store_guard(session, "academic"):
        population = resolve_population(session, criteria)

    evaluation.participants = population.to_dict()
    evaluation.totals = population.totals()
    evaluation.updated_at = utcnow()
    session.commit()
    mirror_to_academic(session, evaluation)

    issued = issue_for_evaluation(session, evaluation, population)
    orphaned = orphaned_tokens(session, evaluation)
    if orphaned:
        logger.warning("Evaluation %s keeps %d unused tokens of ineligible participants", evaluation.id, len(orphaned))
    return {
        "totals": evaluation.totals,
        "tokens": {role: result.to_dict() for role, result in (issued or {}).items()},
        "survey_resolved": issued is not None,
        "orphaned_tokens": len(orphaned),
    }


def _check_open(evaluation):
    status = EvaluationStatus(evaluation.status)
    if status in (EvaluationStatus.FINALIZED, EvaluationStatus.CANCELLED):
        raise InvalidTransition(f"Evaluation is {status.value}")


def update_evaluation(session, evaluation, changes, user):
    _check_open(evaluation)
    touched_filters = False
    for name in EDITABLE_FIELDS:
        if name not in changes:
            continue
        if name in FILTER_FIELDS and getattr(evaluation, name) != changes[name]:
            touched_filters = True
        setattr(evaluation, name, changes[name])
    evaluation.user_updater = user
    evaluation.updated_at = utcnow()
    session.commit()
    mirror_to_academic(session, evaluation)

    if touched_filters:
        refresh_population(session, evaluation)
    return evaluation


def _transition(session, evaluation, target, user):
    current = EvaluationStatus(evaluation.status)
    if target not in TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Cannot move evaluation from {current.value} to {target.value}")
    evaluation.status = target.value
    evaluation.user_updater = user
    evaluation.updated_at = utcnow()
    session.commit()
    mirror_to_academic(session, evaluation)
    logger.info("Evaluation %s moved from %s to %s", evaluation.id, current.value, target.value)
    return evaluation


def send_evaluation(session, evaluation, transport, user):
    """Email the access links; the evaluation becomes SENT once one mail got through.

    Sending an already sent evaluation dispatches again without a status change.
    """
    status = EvaluationStatus(evaluation.status)
    if status not in (EvaluationStatus.CREATED, EvaluationStatus.SENT):
        raise InvalidTransition(f"Cannot send an evaluation that is {status.value}")

    report = send_invitations(session, evaluation, transport)
    if report.sent == 0 and report.failed == 0:
        raise NothingToSend()

    if report.sent == 0:
        evaluation.email_status = EmailStatus.FAILED.value
        evaluation.updated_at = utcnow()
        session.commit()
        raise DeliveryFailed(f"All {report.failed} invitations failed")

    evaluation.email_status = (EmailStatus.PARTIAL if report.failed else EmailStatus.SENT).value
    evaluation.date_sent = utcnow()
    if status is EvaluationStatus.CREATED:
        _transition(session, evaluation, EvaluationStatus.SENT, user)
    else:
        evaluation.user_updater = user
        session.commit()
    return report


def finalize_evaluation(session, evaluation, user):
    return _transition(session, evaluation, EvaluationStatus.FINALIZED, user)


def cancel_evaluation(session, evaluation, user):
    return _transition(session, evaluation, EvaluationStatus.CANCELLED, user)
