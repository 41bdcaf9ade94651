"""Opening access links and collecting answers."""
import logging

from sqlalchemy.exc import IntegrityError

from practice_evaluations.aggregation import refresh_participation
from practice_evaluations.answers import AnswerEntry, answer_display, normalize_answers
from practice_evaluations.errors import AlreadyUsed, Expired, InvalidAnswers, NotFound
from practice_evaluations.models import Evaluation, ResponseRecord, utcnow
from practice_evaluations.roles import Role
from practice_evaluations.stores import store_guard
from practice_evaluations.surveys import resolve_questions
from practice_evaluations.tokens import check_token, claim_token, find_token

logger = logging.getLogger(__name__)


def open_token(session, secret, now=None):
    """Validate a link's secret and return ``(token, evaluation, questions)``."""
    with store_guard(session, "document"):
        token = check_token(find_token(session, secret), now or utcnow())
        evaluation = session.get(Evaluation, token.evaluation_id)
        if evaluation is None:
            raise NotFound("Evaluation not found")
        questions = resolve_questions(session, evaluation, token.role, token.form_code)
    return token, evaluation, questions


def _load_record(session, token):
    key = {
        "evaluation_id": token.evaluation_id,
        "legalization_id": token.legalization_id,
        "variant": token.variant,
    }
    record = session.query(ResponseRecord).filter_by(**key).first()
    if record is not None:
        return record
    try:
        with session.begin_nested():
            record = ResponseRecord(**key)
            session.add(record)
    except IntegrityError:
        # Another role of the same legalization created it first.
        record = session.query(ResponseRecord).filter_by(**key).one()
    return record


def submit_response(session, secret, answers, *, now=None, tasks=None):
    """Record a participant's answers and consume their token.

    The token claim and the answer slot are committed together. The
    participation counters are refreshed afterwards through ``tasks``.
    Returns ``(record, token)``.
    """
    try:
        entries = normalize_answers(answers)
    except ValueError as exc:
        raise InvalidAnswers(str(exc)) from None

    now = now or utcnow()
    with store_guard(session, "document"):
        token = check_token(find_token(session, secret), now)

        if not claim_token(session, token.id, now):
            session.rollback()
            session.refresh(token)
            logger.info("Lost claim on token %s", token.id)
            if token.used:
                raise AlreadyUsed()
            raise Expired()

        record = _load_record(session, token)
        record.fill_slot(token.role, [entry.to_dict() for entry in entries], token.form_code, now)
        session.commit()
    logger.info(
        "Stored %s answers for legalization %s of evaluation %s",
        token.role, token.legalization_id, token.evaluation_id,
    )

    if tasks is not None:
        tasks.add(refresh_participation, token.evaluation_id)
    return record, token


def get_response(session, evaluation, legalization_id, role, variant=""):
    """Return one role's slot with each answer labelled with its question."""
    record = (
        session.query(ResponseRecord)
        .filter_by(evaluation_id=evaluation.id, legalization_id=legalization_id, variant=variant or "")
        .first()
    )
    if record is None:
        raise NotFound("Response not found")
    slot = record.slot(role)
    if not slot["answers"]:
        raise NotFound("Response not found")

    questions = {
        q["id"]: q for q in resolve_questions(session, evaluation, role, slot["form_code"])
    }
    answers = []
    for data in slot["answers"]:
        entry = AnswerEntry.from_dict(data)
        question = questions.get(entry.question_id, {})
        answers.append({
            **entry.to_dict(),
            "question": question.get("text") or entry.question,
            "type": question.get("type"),
            "display": answer_display(entry.answer),
        })
    return {
        "evaluation_id": evaluation.id,
        "legalization_id": legalization_id,
        "variant": variant or None,
        "role": Role(role).value,
        "status": slot["status"],
        "form_code": slot["form_code"],
        "answered_at": slot["answered_at"].isoformat() if slot["answered_at"] else None,
        "answers": answers,
    }
