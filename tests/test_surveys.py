import pytest

from practice_evaluations import surveys
from practice_evaluations.errors import InvalidTransition
from practice_evaluations.models import Item, SurveyDefinition, SurveyStatus
from practice_evaluations.roles import EvaluationKind, FormList, Role

from conftest import questions


def test_create_survey_allocates_consecutive_codes(session, practice_survey):
    assert practice_survey.student_code == 2001
    assert practice_survey.tutor_code == 2002
    assert practice_survey.monitor_code is None
    assert practice_survey.monitor_form is None

    item = session.get(Item, practice_survey.item_id)
    assert item.value_for_reports == "e:2001;t:2002;m:0"
    assert item.list_id == "L_TYPE_SURVEY"


def test_codes_continue_after_those_already_published(session, practice_survey):
    session.add(Item(value="Encuesta heredada", value_for_reports="e:2040;t:0;m:2041", list_id="L_TYPE_SURVEY"))
    session.commit()

    survey = surveys.create_survey(
        session, "Monitoría", "tester", kind="MONITORING", monitor_questions=questions("¿Asistencia?"),
    )

    assert survey.monitor_code == 2042
    assert session.get(Item, survey.item_id).list_id == "L_TYPE_MONITORING_SURVEY"


def test_create_survey_needs_questions(session):
    with pytest.raises(ValueError):
        surveys.create_survey(session, "Vacía", "tester")


def test_create_survey_rejects_unknown_question_types(session):
    with pytest.raises(ValueError):
        surveys.create_survey(session, "Rara", "tester", student_questions=[{"question": "?", "type": "slider"}])


def test_find_survey_by_item_or_code(session, practice_survey):
    assert surveys.find_survey(session, survey_item_id=practice_survey.item_id) == practice_survey
    assert surveys.find_survey(session, form_code=2002) == practice_survey
    assert surveys.find_survey(session, form_code=2999) is None


def test_archived_surveys_are_not_found_by_code(session, practice_survey):
    surveys.archive_survey(session, practice_survey, "tester")

    assert practice_survey.status == SurveyStatus.ARCHIVED.value
    assert surveys.find_survey(session, form_code=2001) is None
    assert session.get(Item, practice_survey.item_id).status == "INACTIVE"
    assert surveys.find_survey(session, survey_item_id=practice_survey.item_id) == practice_survey


def test_select_questions_for_role(practice_survey):
    selected = surveys.select_questions(practice_survey, EvaluationKind.PRACTICE, Role.STUDENT, 2001)

    assert [q["text"] for q in selected] == ["¿Cómo califica su práctica?", "¿Recomendaría la empresa?"]
    assert selected[0]["required"] is True
    assert selected[0]["scale_max"] == 5


def test_tutor_only_code_gives_monitor_nothing(session, practice_survey):
    tutor_only = surveys.create_survey(session, "Tutores", "tester", tutor_questions=questions("¿Desempeño?"))

    assert tutor_only.tutor_code == 2003
    assert surveys.select_questions(tutor_only, "PRACTICE", Role.MONITOR, 2003) == []
    assert len(surveys.select_questions(tutor_only, "PRACTICE", Role.BOSS, 2003)) == 1


def test_stale_form_code_gives_nothing(practice_survey):
    assert surveys.select_questions(practice_survey, "PRACTICE", Role.STUDENT, 2002) == []
    assert surveys.select_questions(practice_survey, "PRACTICE", Role.STUDENT, None) == []


def test_questions_follow_their_order():
    survey = SurveyDefinition(student_form={"questions": [
        {"id": "b", "question": "Segunda", "type": "text", "order": 2},
        {"id": "a", "question": "Primera", "type": "text", "order": 1},
    ]}, student_code=2001)

    selected = surveys.select_questions(survey, "PRACTICE", Role.STUDENT, 2001)

    assert [q["id"] for q in selected] == ["a", "b"]


def test_normalize_question_reads_spanish_keys():
    question = surveys.normalize_question({
        "_id": "x1",
        "texto": "¿Nivel de inglés?",
        "tipo": "multiple_choice",
        "opciones": [{"texto": "Alto", "valor": "3"}, {"texto": "Bajo"}],
        "requerida": False,
    }, 4)

    assert question["id"] == "x1"
    assert question["text"] == "¿Nivel de inglés?"
    assert question["options"] == [{"label": "Alto", "value": "3"}, {"label": "Bajo", "value": "Bajo"}]
    assert question["order"] == 4
    assert question["required"] is False


def test_form_lists_keep_their_codes(practice_survey):
    assert practice_survey.form(FormList.TUTOR)["code"] == 2002
    assert practice_survey.codes() == {2001, 2002}


def test_survey_types_by_kind(session, practice_survey):
    monitoring = surveys.create_survey(
        session, "Monitoría", "tester", kind="MONITORING", monitor_questions=questions("¿Asistencia?"),
    )
    session.add(Item(value="Retirada", value_for_reports="e:1;t:0;m:0", list_id="L_TYPE_SURVEY", status="INACTIVE"))
    session.commit()

    practice_types = surveys.list_survey_types(session, EvaluationKind.PRACTICE)

    assert [item.id for item in practice_types] == [practice_survey.item_id]
    assert practice_types[0].to_dict()["form_codes"] == {"student_form": 2001, "tutor_form": 2002}
    assert {item.id for item in surveys.list_survey_types(session)} == {practice_survey.item_id, monitoring.item_id}


def test_update_replaces_questions_and_keeps_codes(session, practice_survey):
    surveys.update_survey(session, practice_survey, {
        "name": "Evaluación de práctica 2026-1",
        "student_questions": questions("¿Qué aprendió?"),
        "monitor_questions": questions("¿Acompañamiento?"),
    }, "editor")

    assert practice_survey.student_code == 2001
    assert practice_survey.tutor_code == 2002
    assert practice_survey.monitor_code == 2003
    assert practice_survey.user_updater == "editor"
    assert [q["text"] for q in surveys.select_questions(practice_survey, "PRACTICE", Role.STUDENT, 2001)] == [
        "¿Qué aprendió?",
    ]
    assert practice_survey.form(FormList.TUTOR)["name"] == "Evaluación de práctica 2026-1 - Tutor"

    item = session.get(Item, practice_survey.item_id)
    assert item.value == "Evaluación de práctica 2026-1"
    assert item.value_for_reports == "e:2001;t:2002;m:2003"


def test_update_cannot_empty_a_published_list(session, practice_survey):
    with pytest.raises(ValueError):
        surveys.update_survey(session, practice_survey, {"tutor_questions": []}, "editor")


def test_archived_survey_cannot_be_updated(session, practice_survey):
    surveys.archive_survey(session, practice_survey, "tester")

    with pytest.raises(InvalidTransition):
        surveys.update_survey(session, practice_survey, {"name": "Otra"}, "editor")
