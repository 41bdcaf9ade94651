"""
Test configuration and fixtures.

Provides:
- An app wired to two in-memory SQLite databases (document + academic)
- Post-commit tasks run inline
- A recording mail transport instead of SendGrid
- Helpers seeding academic records and surveys
"""
import itertools
from datetime import date

import pytest

from practice_evaluations import campaigns, surveys
from practice_evaluations.app import create_app
from practice_evaluations.models import (
    ACADEMIC,
    AcademicUser,
    MonitoringLegalization,
    Postulant,
    PracticeBoss,
    PracticeLegalization,
    Program,
    db,
)

ADMIN_TOKEN = "test-admin-token"
FRONTEND_URL = "https://evaluaciones.example.edu/"
PERIOD = 20252


# =============================================================================
# App & session
# =============================================================================

@pytest.fixture
def app():
    app = create_app(
        TESTING=True,
        SQLALCHEMY_DATABASE_URI="sqlite://",
        SQLALCHEMY_BINDS={ACADEMIC: "sqlite://"},
        ADMIN_TOKEN=ADMIN_TOKEN,
        FRONTEND_URL=FRONTEND_URL,
        POST_COMMIT_MODE="inline",
        SENDGRID_API_KEY="",
    )
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def session(app):
    return db.session


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {ADMIN_TOKEN}", "X-Operator": "coordinacion"}


# =============================================================================
# Mail
# =============================================================================

class RecordingTransport:
    """Collects outgoing mail; addresses in ``failing`` raise on send."""

    def __init__(self, failing=()):
        self.sent = []
        self.failing = set(failing)

    def send(self, to, subject, html, text):
        if to in self.failing:
            raise RuntimeError(f"mailbox {to} rejected the message")
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})

    @property
    def recipients(self):
        return sorted(mail["to"] for mail in self.sent)


@pytest.fixture
def transport(app):
    transport = RecordingTransport()
    app.extensions["practice_evaluations.transport"] = transport
    return transport


# =============================================================================
# Academic records
# =============================================================================

class AcademicSeed:
    def __init__(self, session):
        self.session = session
        self._ids = itertools.count(1)

    def _add(self, row):
        self.session.add(row)
        self.session.flush()
        return row

    def user(self, name, email=None, user_name=None):
        return self._add(AcademicUser(
            id=next(self._ids), name=name, last_name="Pérez", personal_email=email, user_name=user_name,
        ))

    def student(self, name, email=None, alternate_email=None):
        user = self.user(name, email)
        self._add(Postulant(postulant_id=user.id, alternate_email=alternate_email))
        return user

    def boss(self, name, email):
        return self._add(PracticeBoss(boss_id=next(self._ids), first_name=name, last_name="Gómez", email=email))

    def program(self, name="Ingeniería Industrial"):
        return self._add(Program(id=next(self._ids), name=name))

    def practice(self, student, boss=None, tutor=None, tutor_2=None, program=None,
                 period=PERIOD, practice_type=1, status="APPROVED"):
        return self._add(PracticeLegalization(
            id=next(self._ids),
            postulant_id=student.id,
            boss_id=boss.boss_id if boss else None,
            tutor_user_id=tutor.id if tutor else None,
            tutor_2_user_id=tutor_2.id if tutor_2 else None,
            program_id=program.id if program else None,
            period=period,
            practice_type=practice_type,
            status=status,
        ))

    def monitoring(self, student, teacher=None, coordinator=None, mail_responsable=None, responsable=None,
                   program=None, category=1, faculty_id=None, period=PERIOD, status="APPROVED"):
        return self._add(MonitoringLegalization(
            id=next(self._ids),
            postulant_id=student.id,
            teacher_user_id=teacher.id if teacher else None,
            coordinator_user_id=coordinator.id if coordinator else None,
            mail_responsable=mail_responsable,
            responsable=responsable,
            program_id=program.id if program else None,
            category=category,
            faculty_id=faculty_id,
            period=period,
            status=status,
        ))

    def commit(self):
        self.session.commit()


@pytest.fixture
def academic(session):
    return AcademicSeed(session)


# =============================================================================
# Surveys & evaluations
# =============================================================================

def questions(*texts, kind="scale"):
    return [
        {"id": f"q{i}", "question": text, "type": kind, "scale_min": 1, "scale_max": 5}
        for i, text in enumerate(texts, start=1)
    ]


@pytest.fixture
def practice_survey(session):
    """Student list (code 2001) and tutor list (code 2002), no monitor list."""
    return surveys.create_survey(
        session,
        name="Evaluación de práctica 2025-2",
        user="tester",
        student_questions=questions("¿Cómo califica su práctica?", "¿Recomendaría la empresa?"),
        tutor_questions=questions("¿Cómo califica al estudiante?"),
    )


@pytest.fixture
def practice_cohort(academic):
    """Three students in practice; the first two have a boss."""
    program = academic.program()
    students = [
        academic.student("Ana", "ana@example.edu"),
        academic.student("Beto", "beto@example.edu"),
        academic.student("Carla", "carla@example.edu"),
    ]
    bosses = [
        academic.boss("Diana", "diana@empresa.com"),
        academic.boss("Elias", "elias@empresa.com"),
    ]
    legalizations = [
        academic.practice(students[0], boss=bosses[0], program=program),
        academic.practice(students[1], boss=bosses[1], program=program),
        academic.practice(students[2], program=program),
    ]
    academic.commit()
    return legalizations


def evaluation_payload(survey, **overrides):
    payload = {
        "name": "Evaluación prácticas 2025-2",
        "kind": "PRACTICE",
        "period": PERIOD,
        "practice_type": 1,
        "survey_item_id": survey.item_id,
        "start_date": date(2025, 8, 1),
        "finish_date": date(2025, 12, 15),
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def practice_evaluation(session, practice_survey, practice_cohort):
    return campaigns.create_evaluation(session, evaluation_payload(practice_survey), "tester")
