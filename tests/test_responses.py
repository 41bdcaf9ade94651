import threading
from datetime import timedelta

import pytest
from sqlalchemy.orm import Query

from practice_evaluations import campaigns, responses, surveys, tokens
from practice_evaluations.app import create_app
from practice_evaluations.errors import AlreadyUsed, Expired, InvalidAnswers, NotFound
from practice_evaluations.models import ACADEMIC, SLOT_COMPLETED, ResponseRecord, db, utcnow
from practice_evaluations.roles import Role
from practice_evaluations.tasks import PostCommitTasks

from conftest import FRONTEND_URL, AcademicSeed, evaluation_payload, questions

ANSWERS = [
    {"question_id": "q1", "value": "5"},
    {"question_id": "q2", "value": "Sí", "text": "Excelente ambiente"},
]


def token_for(session, evaluation, role, index=0):
    return tokens.tokens_for_evaluation(session, evaluation.id, role)[index]


def test_open_token_returns_the_role_questions(session, practice_evaluation):
    token = token_for(session, practice_evaluation, Role.BOSS)

    opened, evaluation, questions = responses.open_token(session, token.secret)

    assert opened.id == token.id
    assert evaluation.id == practice_evaluation.id
    assert [q["text"] for q in questions] == ["¿Cómo califica al estudiante?"]


def test_open_token_rejects_unknown_and_expired(session, practice_evaluation):
    token = token_for(session, practice_evaluation, Role.STUDENT)

    with pytest.raises(NotFound):
        responses.open_token(session, "does-not-exist")
    with pytest.raises(Expired):
        responses.open_token(session, token.secret, now=token.expires_at + timedelta(minutes=1))


def test_submit_fills_the_role_slot_and_consumes_the_token(session, practice_evaluation):
    token = token_for(session, practice_evaluation, Role.STUDENT)
    tasks = PostCommitTasks()

    record, submitted = responses.submit_response(session, token.secret, ANSWERS, tasks=tasks)

    slot = record.slot(Role.STUDENT)
    assert slot["status"] == SLOT_COMPLETED
    assert slot["form_code"] == 2001
    assert [a["kind"] for a in slot["answers"]] == ["closed", "both"]
    assert record.slot(Role.BOSS)["status"] is None
    session.refresh(token)
    assert token.used and token.used_at is not None
    assert len(tasks) == 1
    assert submitted.id == token.id
    assert submitted.role == Role.STUDENT.value


def test_second_submission_is_rejected(session, practice_evaluation):
    token = token_for(session, practice_evaluation, Role.STUDENT)
    responses.submit_response(session, token.secret, ANSWERS)

    with pytest.raises(AlreadyUsed):
        responses.submit_response(session, token.secret, [{"question_id": "q1", "value": "1"}])

    record = session.query(ResponseRecord).filter_by(legalization_id=token.legalization_id).one()
    assert record.slot(Role.STUDENT)["answers"][0]["value"] == "5"


def test_expired_token_rejects_submission(session, practice_evaluation):
    token = token_for(session, practice_evaluation, Role.STUDENT)

    with pytest.raises(Expired):
        responses.submit_response(session, token.secret, ANSWERS, now=token.expires_at + timedelta(days=1))

    session.refresh(token)
    assert not token.used


def test_bad_answers_do_not_consume_the_token(session, practice_evaluation):
    token = token_for(session, practice_evaluation, Role.STUDENT)

    with pytest.raises(InvalidAnswers):
        responses.submit_response(session, token.secret, [{"question_id": "q1"}])

    session.refresh(token)
    assert not token.used


def test_student_and_boss_share_one_record(session, practice_evaluation):
    student = token_for(session, practice_evaluation, Role.STUDENT)
    boss = next(
        t for t in tokens.tokens_for_evaluation(session, practice_evaluation.id, Role.BOSS)
        if t.legalization_id == student.legalization_id
    )

    responses.submit_response(session, student.secret, ANSWERS)
    responses.submit_response(session, boss.secret, [{"question_id": "q1", "value": "4"}])

    record = session.query(ResponseRecord).filter_by(legalization_id=student.legalization_id).one()
    assert record.slot(Role.STUDENT)["status"] == SLOT_COMPLETED
    assert record.slot(Role.BOSS)["status"] == SLOT_COMPLETED


def test_get_response_labels_answers(session, practice_evaluation):
    token = token_for(session, practice_evaluation, Role.STUDENT)
    responses.submit_response(session, token.secret, ANSWERS, now=utcnow())

    shown = responses.get_response(session, practice_evaluation, token.legalization_id, "student")

    assert shown["status"] == SLOT_COMPLETED
    assert shown["answers"][0]["question"] == "¿Cómo califica su práctica?"
    assert shown["answers"][0]["type"] == "scale"
    assert shown["answers"][1]["display"] == "Sí - Excelente ambiente"


def test_get_response_for_unanswered_role(session, practice_evaluation):
    token = token_for(session, practice_evaluation, Role.STUDENT)
    responses.submit_response(session, token.secret, ANSWERS)

    with pytest.raises(NotFound):
        responses.get_response(session, practice_evaluation, token.legalization_id, "boss")


def test_claim_taken_after_the_check_reports_already_used(session, practice_evaluation, monkeypatch):
    token = token_for(session, practice_evaluation, Role.STUDENT)

    def claimed_by_another_request(session, token_id, now):
        tokens.claim_token(session, token_id, now)
        session.commit()
        return tokens.claim_token(session, token_id, now)

    monkeypatch.setattr(responses, "claim_token", claimed_by_another_request)

    with pytest.raises(AlreadyUsed):
        responses.submit_response(session, token.secret, ANSWERS)

    assert session.query(ResponseRecord).count() == 0


def test_claim_refused_for_an_unused_token_reports_expired(session, practice_evaluation, monkeypatch):
    token = token_for(session, practice_evaluation, Role.STUDENT)
    monkeypatch.setattr(responses, "claim_token", lambda session, token_id, now: False)

    with pytest.raises(Expired):
        responses.submit_response(session, token.secret, ANSWERS)

    session.refresh(token)
    assert not token.used


def test_record_created_meanwhile_by_another_role_is_reused(session, practice_evaluation, monkeypatch):
    student = token_for(session, practice_evaluation, Role.STUDENT)
    boss = next(
        t for t in tokens.tokens_for_evaluation(session, practice_evaluation.id, Role.BOSS)
        if t.legalization_id == student.legalization_id
    )
    responses.submit_response(session, student.secret, ANSWERS)

    # The boss request does not see the record the student request created.
    original_first = Query.first
    misses = []

    def first_missing_the_record(query):
        if query.column_descriptions[0]["entity"] is ResponseRecord and not misses:
            misses.append(query)
            return None
        return original_first(query)

    monkeypatch.setattr(Query, "first", first_missing_the_record)
    record, _ = responses.submit_response(session, boss.secret, [{"question_id": "q1", "value": "4"}])
    monkeypatch.undo()

    assert misses
    assert record.slot(Role.STUDENT)["status"] == SLOT_COMPLETED
    assert record.slot(Role.BOSS)["status"] == SLOT_COMPLETED
    assert session.query(ResponseRecord).filter_by(legalization_id=student.legalization_id).count() == 1


def test_concurrent_submissions_of_one_link_store_one_answer(tmp_path):
    app = create_app(
        TESTING=True,
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{tmp_path / 'evaluations.db'}",
        SQLALCHEMY_BINDS={ACADEMIC: f"sqlite:///{tmp_path / 'academic.db'}"},
        SQLALCHEMY_ENGINE_OPTIONS={"connect_args": {"timeout": 30, "check_same_thread": False}},
        FRONTEND_URL=FRONTEND_URL,
        POST_COMMIT_MODE="inline",
    )
    with app.app_context():
        seed = AcademicSeed(db.session)
        seed.practice(seed.student("Ana", "ana@example.edu"))
        seed.commit()
        survey = surveys.create_survey(
            db.session, name="Evaluación de práctica", user="tester",
            student_questions=questions("¿Cómo califica su práctica?"),
        )
        evaluation = campaigns.create_evaluation(db.session, evaluation_payload(survey), "tester")
        evaluation_id = evaluation.id
        secret = tokens.tokens_for_evaluation(db.session, evaluation_id, Role.STUDENT)[0].secret
        db.session.remove()

    barrier = threading.Barrier(2)
    outcomes = []

    def submit(value):
        with app.app_context():
            barrier.wait()
            try:
                responses.submit_response(db.session, secret, [{"question_id": "q1", "value": value}])
            except AlreadyUsed:
                outcomes.append("rejected")
            else:
                outcomes.append("stored")
            finally:
                db.session.remove()

    threads = [threading.Thread(target=submit, args=(value,)) for value in ("4", "5")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert sorted(outcomes) == ["rejected", "stored"]
    with app.app_context():
        records = db.session.query(ResponseRecord).filter_by(evaluation_id=evaluation_id).all()
        assert len(records) == 1
        assert records[0].slot(Role.STUDENT)["status"] == SLOT_COMPLETED
        db.session.remove()
        db.drop_all()


def test_each_practice_monitor_answers_into_a_record_of_its_own(session, academic):
    student = academic.student("Ana", "ana@example.edu")
    legalization = academic.practice(
        student,
        tutor=academic.user("Hugo", "hugo@example.edu"),
        tutor_2=academic.user("Irene", "irene@example.edu"),
    )
    academic.commit()
    survey = surveys.create_survey(
        session, "Práctica con monitores", "tester",
        student_questions=questions("¿Cómo califica su práctica?"),
        monitor_questions=questions("¿Cómo fue el acompañamiento?"),
    )
    evaluation = campaigns.create_evaluation(session, evaluation_payload(survey), "tester")

    for token in tokens.tokens_for_evaluation(session, evaluation.id):
        responses.submit_response(session, token.secret, [{"question_id": "q1", "value": "4"}])

    records = (
        session.query(ResponseRecord)
        .filter_by(legalization_id=legalization.id)
        .order_by(ResponseRecord.variant)
        .all()
    )
    assert [record.variant for record in records] == ["", "user_tutor", "user_tutor_2"]
    assert records[0].slot(Role.STUDENT)["status"] == SLOT_COMPLETED
    assert records[1].slot(Role.MONITOR)["status"] == SLOT_COMPLETED
    assert records[2].slot(Role.MONITOR)["status"] == SLOT_COMPLETED
    assert records[1].slot(Role.STUDENT)["status"] is None
