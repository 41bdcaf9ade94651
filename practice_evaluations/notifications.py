"""Invitation emails carrying each participant's access link."""
import logging
from dataclasses import dataclass, field
from typing import Protocol

from flask import current_app, render_template
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased

from practice_evaluations.eligibility import Population
from practice_evaluations.models import (
    AcademicUser,
    MonitoringLegalization,
    PracticeBoss,
    PracticeLegalization,
    Program,
)
from practice_evaluations.roles import EvaluationKind, Role
from practice_evaluations.tokens import tokens_for_evaluation

logger = logging.getLogger(__name__)

SUBJECTS = {
    EvaluationKind.PRACTICE: "Evaluación de Práctica - {student_name}",
    EvaluationKind.MONITORING: "Evaluación de Monitoría - {student_name}",
}

# Roles whose invitation names the person they evaluate alongside the student.
COUNTERPART_ROLES = {Role.BOSS, Role.MONITOR, Role.TEACHER, Role.COORDINATOR}


class DeliveryError(Exception):
    pass


class MailTransport(Protocol):
    def send(self, to: str, subject: str, html: str, text: str) -> None: ...


def render_invitation(role, kind, variables):
    """Return ``(subject, html, text)`` for one invitation."""
    role = Role(role)
    kind = EvaluationKind(kind)
    context = dict(variables, kind=kind.value, logo_url=current_app.config.get("MAIL_LOGO_URL") or "")
    subject = SUBJECTS[kind].format(student_name=variables.get("student_name") or "")
    html = render_template(f"email/{role.value}.html", **context)
    text = render_template(f"email/{role.value}.txt", **context)
    return subject, html, text


class SendGridTransport:
    """Delivers mail through the SendGrid API."""

    def __init__(self, api_key, sender, redirect_to=None):
        self.api_key = api_key
        self.sender = sender
        self.redirect_to = redirect_to or None

    @classmethod
    def from_config(cls, config):
        return cls(
            api_key=config.get("SENDGRID_API_KEY"),
            sender=config["MAIL_SENDER"],
            redirect_to=config.get("MAIL_REDIRECT_TO"),
        )

    def send(self, to, subject, html, text):
        if not self.api_key:
            raise DeliveryError("SENDGRID_API_KEY is not configured")
        recipient = self.redirect_to or to
        message = Mail(
            from_email=self.sender,
            to_emails=recipient,
            subject=subject,
            html_content=html,
            plain_text_content=text,
        )
        response = SendGridAPIClient(self.api_key).send(message)
        if response.status_code not in (200, 201, 202):
            raise DeliveryError(f"SendGrid answered {response.status_code}: {response.body}")
        logger.info("Sent %r to %s", subject, recipient)


@dataclass
class DispatchReport:
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    failures: list = field(default_factory=list)

    def to_dict(self):
        return {"sent": self.sent, "failed": self.failed, "skipped": self.skipped, "failures": self.failures}


def _practice_names(session, legalization_ids):
    apl = PracticeLegalization
    student = aliased(AcademicUser)
    tutor = aliased(AcademicUser)
    tutor_2 = aliased(AcademicUser)
    rows = (
        session.query(apl.id, student, PracticeBoss, Program.name, tutor, tutor_2)
        .select_from(apl)
        .outerjoin(student, apl.postulant_id == student.id)
        .outerjoin(PracticeBoss, apl.boss_id == PracticeBoss.boss_id)
        .outerjoin(Program, apl.program_id == Program.id)
        .outerjoin(tutor, apl.tutor_user_id == tutor.id)
        .outerjoin(tutor_2, apl.tutor_2_user_id == tutor_2.id)
        .filter(apl.id.in_(legalization_ids))
    )
    names = {}
    for legalization_id, student_row, boss, program, tutor_row, tutor_2_row in rows:
        boss_name = f"{boss.first_name} {boss.last_name}".strip() if boss else ""
        names[legalization_id] = {
            "student_name": student_row.full_name if student_row else "",
            "program_name": program or "",
            "counterparts": {
                (Role.BOSS, ""): boss_name,
                (Role.MONITOR, "user_tutor"): tutor_row.full_name if tutor_row else "",
                (Role.MONITOR, "user_tutor_2"): tutor_2_row.full_name if tutor_2_row else "",
            },
        }
    return names


def _monitoring_names(session, legalization_ids):
    ml = MonitoringLegalization
    student = aliased(AcademicUser)
    teacher = aliased(AcademicUser)
    coordinator = aliased(AcademicUser)
    rows = (
        session.query(ml, student, Program.name, teacher, coordinator)
        .select_from(ml)
        .outerjoin(student, ml.postulant_id == student.id)
        .outerjoin(Program, ml.program_id == Program.id)
        .outerjoin(teacher, ml.teacher_user_id == teacher.id)
        .outerjoin(coordinator, ml.coordinator_user_id == coordinator.id)
        .filter(ml.id.in_(legalization_ids))
    )
    names = {}
    for legalization, student_row, program, teacher_row, coordinator_row in rows:
        names[legalization.id] = {
            "student_name": student_row.full_name if student_row else "",
            "program_name": program or "",
            "counterparts": {
                (Role.TEACHER, ""): teacher_row.full_name if teacher_row else (legalization.responsable or ""),
                (Role.COORDINATOR, ""): coordinator_row.full_name if coordinator_row else "",
            },
        }
    return names


def display_names(session, evaluation, legalization_ids):
    """Names used in the invitations, keyed by legalization id.

    An unreachable academic store yields no names; invitations then go out
    with blank names rather than not at all.
    """
    if not legalization_ids:
        return {}
    try:
        if EvaluationKind(evaluation.kind) is EvaluationKind.MONITORING:
            return _monitoring_names(session, legalization_ids)
        return _practice_names(session, legalization_ids)
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Could not read display names for evaluation %s", evaluation.id)
        return {}


def send_invitations(session, evaluation, transport: MailTransport):
    """Email every participant that holds an unused access link."""
    population = Population.from_dict(evaluation.kind, evaluation.participants)
    tokens = {
        (token.role, token.legalization_id, token.variant): token
        for token in tokens_for_evaluation(session, evaluation.id)
    }
    legalization_ids = {ref.legalization_id for role in evaluation.roles for ref in population.get(role)}
    names = display_names(session, evaluation, legalization_ids)

    report = DispatchReport()
    for role in evaluation.roles:
        for ref in population.get(role):
            token = tokens.get((role.value, ref.legalization_id, ref.variant))
            if token is None or token.used:
                report.skipped += 1
                continue

            entry = names.get(ref.legalization_id, {})
            variables = {
                "student_name": entry.get("student_name", ""),
                "program_name": entry.get("program_name", ""),
                "counterpart_name": "",
                "link": token.link,
                "evaluation_name": evaluation.name,
                "period": evaluation.period,
            }
            if role in COUNTERPART_ROLES:
                variables["counterpart_name"] = entry.get("counterparts", {}).get((role, ref.variant), "")

            try:
                subject, html, text = render_invitation(role, evaluation.kind, variables)
                transport.send(token.email, subject, html, text)
            except Exception as exc:
                logger.warning("Invitation to %s (%s) failed: %s", token.email, role.value, exc)
                report.failed += 1
                report.failures.append({"email": token.email, "role": role.value, "error": str(exc)})
            else:
                report.sent += 1

    logger.info("Evaluation %s invitations: %s", evaluation.id, report.to_dict())
    return report
