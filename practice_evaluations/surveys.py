"""Survey definitions and question resolution.

A survey definition groups up to three question lists (student, tutor and
monitor forms). Each non-empty list gets a numeric form code that is also
published in the academic store's reference list, where evaluations pick
it up.
"""
import logging
import re
import uuid

from sqlalchemy import func, or_

from practice_evaluations.errors import InvalidTransition
from practice_evaluations.models import Item, SurveyDefinition, SurveyStatus, utcnow
from practice_evaluations.roles import EvaluationKind, FormList, form_list_for, format_form_codes

logger = logging.getLogger(__name__)

QUESTION_TYPES = ("text", "textarea", "multiple_choice", "checkbox", "scale", "date", "number")
FIRST_FORM_CODE = 2001

SURVEY_LIST_IDS = {
    EvaluationKind.PRACTICE: "L_TYPE_SURVEY",
    EvaluationKind.MONITORING: "L_TYPE_MONITORING_SURVEY",
}

FORM_SUFFIXES = {
    FormList.STUDENT: "Estudiante",
    FormList.TUTOR: "Tutor",
    FormList.MONITOR: "Monitor",
}


def _prepare_questions(questions):
    prepared = []
    for index, question in enumerate(questions or [], start=1):
        item = dict(question)
        if item.get("type") not in QUESTION_TYPES:
            raise ValueError(f"unsupported question type: {item.get('type')!r}")
        item.setdefault("id", uuid.uuid4().hex)
        if item.get("order") is None:
            item["order"] = index
        prepared.append(item)
    return prepared


def next_form_code(session):
    """Return the first free form code, looking at both stores."""
    highest = FIRST_FORM_CODE - 1
    for column in (SurveyDefinition.student_code, SurveyDefinition.tutor_code, SurveyDefinition.monitor_code):
        highest = max(highest, session.query(func.max(column)).scalar() or 0)

    # Codes issued before this service existed only live in the reference list.
    for (value,) in session.query(Item.value_for_reports).filter(Item.value_for_reports.isnot(None)):
        numbers = [int(n) for n in re.findall(r"\d+", value) if int(n) >= 2000]
        if numbers:
            highest = max(highest, max(numbers))
    return highest + 1


def create_survey(session, name, user, description="", kind=EvaluationKind.PRACTICE,
                  student_questions=None, tutor_questions=None, monitor_questions=None):
    kind = EvaluationKind(kind)
    lists = {
        FormList.STUDENT: _prepare_questions(student_questions),
        FormList.TUTOR: _prepare_questions(tutor_questions),
        FormList.MONITOR: _prepare_questions(monitor_questions),
    }
    if not any(lists.values()):
        raise ValueError("at least one form needs questions")

    code = next_form_code(session)
    codes = {}
    survey = SurveyDefinition(
        name=name,
        description=description or "",
        kind=kind.value,
        status=SurveyStatus.ACTIVE.value,
        user_creator=user,
    )
    for form_list, questions in lists.items():
        if not questions:
            continue
        codes[form_list] = code
        code += 1
        setattr(survey, form_list.value, {
            "id": uuid.uuid4().hex,
            "name": f"{name} - {FORM_SUFFIXES[form_list]}",
            "description": description or "",
            "code": codes[form_list],
            "questions": questions,
        })
        setattr(survey, form_list.value.replace("_form", "_code"), codes[form_list])

    item = Item(
        value=name,
        description=description or "",
        value_for_reports=format_form_codes(codes),
        list_id=SURVEY_LIST_IDS[kind],
        status="ACTIVE",
    )
    session.add(item)
    session.flush()
    survey.item_id = item.id
    session.add(survey)
    session.commit()
    logger.info("Created survey %r (item %s, codes %s)", name, item.id, item.value_for_reports)
    return survey


def find_survey(session, survey_item_id=None, form_code=None):
    """Locate a survey by its reference-list item, else by any of its form codes."""
    if survey_item_id:
        survey = session.query(SurveyDefinition).filter_by(item_id=survey_item_id).first()
        if survey is not None:
            return survey
    if form_code:
        return (
            session.query(SurveyDefinition)
            .filter(
                SurveyDefinition.status == SurveyStatus.ACTIVE.value,
                or_(
                    SurveyDefinition.student_code == form_code,
                    SurveyDefinition.tutor_code == form_code,
                    SurveyDefinition.monitor_code == form_code,
                ),
            )
            .first()
        )
    return None


def find_survey_for(session, evaluation, form_code=None):
    survey = find_survey(session, evaluation.survey_item_id, form_code)
    if survey is None and form_code is None:
        for code in (evaluation.form_codes or {}).values():
            survey = find_survey(session, form_code=code)
            if survey is not None:
                break
    return survey


def normalize_question(question, position):
    """Return a question in the shape served to respondents, whatever its stored shape."""
    options = []
    for option in question.get("options") or question.get("opciones") or []:
        label = option.get("label") or option.get("texto")
        value = option.get("value") or option.get("valor")
        options.append({"label": label or value, "value": value or label})

    order = question.get("order", question.get("orden"))
    required = question.get("required", question.get("requerida"))
    return {
        "id": str(question.get("id") or question.get("_id") or position),
        "text": question.get("question") or question.get("texto") or "",
        "type": question.get("type") or question.get("tipo") or "text",
        "options": options,
        "order": order if order is not None else position,
        "required": True if required is None else bool(required),
        "scale_min": question.get("scale_min"),
        "scale_max": question.get("scale_max"),
        "scale_labels": question.get("scale_labels"),
        "validation": question.get("validation"),
    }


def select_questions(survey, kind, role, form_code):
    """Pick the ordered question list a role answers.

    Returns an empty list when the role has no list in this survey or the
    list's code does not match ``form_code``.
    """
    form_list = form_list_for(kind, role)
    if survey is None or form_list is None:
        return []
    form = survey.form(form_list)
    if not form:
        return []
    if form_code is None or int(survey.code(form_list) or 0) != int(form_code):
        logger.warning(
            "Form code mismatch for %s on survey %s: list has %s, token has %s",
            role, survey.id, survey.code(form_list), form_code,
        )
        return []
    questions = [normalize_question(q, i) for i, q in enumerate(form.get("questions") or [], start=1)]
    return sorted(questions, key=lambda q: q["order"])


def resolve_questions(session, evaluation, role, form_code):
    survey = find_survey_for(session, evaluation, form_code)
    if survey is None:
        logger.warning("No survey found for evaluation %s (code %s)", evaluation.id, form_code)
        return []
    return select_questions(survey, evaluation.kind, role, form_code)


def list_survey_types(session, kind=None):
    """Active survey entries of the reference lists, optionally for one kind."""
    if kind:
        list_ids = [SURVEY_LIST_IDS[EvaluationKind(kind)]]
    else:
        list_ids = list(SURVEY_LIST_IDS.values())
    return (
        session.query(Item)
        .filter(Item.list_id.in_(list_ids), Item.status == "ACTIVE")
        .order_by(Item.id.desc())
        .all()
    )


def update_survey(session, survey, changes, user):
    """Rename a survey or replace its question lists.

    A list keeps its form code, so evaluations already pointing at it see
    the new questions. A list that gets questions for the first time takes
    the next free code. A list that already has a code cannot be emptied.
    The reference-list item follows the new name and codes.
    """
    if survey.status != SurveyStatus.ACTIVE.value:
        raise InvalidTransition("Archived surveys cannot be changed")

    name = changes.get("name") or survey.name
    description = changes.get("description", survey.description) or ""
    lists = {}
    for form_list in FormList:
        key = form_list.value.replace("_form", "_questions")
        if key in changes:
            lists[form_list] = _prepare_questions(changes[key])
        else:
            lists[form_list] = (survey.form(form_list) or {}).get("questions") or []
        if not lists[form_list] and survey.code(form_list):
            raise ValueError(f"{form_list.value} is published with code {survey.code(form_list)} and cannot be emptied")
    if not any(lists.values()):
        raise ValueError("at least one form needs questions")

    next_code = None
    codes = {}
    for form_list, questions in lists.items():
        if not questions:
            continue
        form = dict(survey.form(form_list) or {})
        code = survey.code(form_list)
        if not code:
            next_code = next_code or next_form_code(session)
            code, next_code = next_code, next_code + 1
            form["id"] = uuid.uuid4().hex
        form.update(
            name=f"{name} - {FORM_SUFFIXES[form_list]}",
            description=description,
            code=code,
            questions=questions,
        )
        setattr(survey, form_list.value, form)
        setattr(survey, form_list.value.replace("_form", "_code"), code)
        codes[form_list] = code

    survey.name = name
    survey.description = description
    survey.user_updater = user
    survey.updated_at = utcnow()

    item = session.get(Item, survey.item_id) if survey.item_id else None
    if item is not None:
        item.value = name
        item.description = description
        item.value_for_reports = format_form_codes(codes)
    session.commit()
    logger.info("Updated survey %s (codes %s)", survey.id, format_form_codes(codes))
    return survey


def archive_survey(session, survey, user):
    """Archive a survey and withdraw its reference-list item.

    Evaluations created from it keep resolving their questions.
    """
    survey.status = SurveyStatus.ARCHIVED.value
    survey.user_updater = user
    survey.updated_at = utcnow()
    item = session.get(Item, survey.item_id) if survey.item_id else None
    if item is not None:
        item.status = "INACTIVE"
    session.commit()
    logger.info("Archived survey %s", survey.id)
    return survey
