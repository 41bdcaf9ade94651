"""Eligible populations.

Participants are derived from the academic store: every legalization that
matches the evaluation's filters contributes, per role, one participant
reference pointing at the person reachable through that role's contact
chain. People with no usable email address are left out.
"""
import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import aliased

from practice_evaluations.models import (
    AcademicUser,
    MonitoringLegalization,
    Postulant,
    PracticeBoss,
    PracticeLegalization,
)
from practice_evaluations.roles import EvaluationKind, Role, roles_for

logger = logging.getLogger(__name__)

DEFAULT_PRACTICE_EXCLUSIONS = ("CTP_CANCEL", "CANCELLED", "DELETED", "CTP_REJECTED")
DEFAULT_MONITORING_EXCLUSIONS = ("CANCELLED", "DELETED", "CANCELED", "CREATED", "REVIEWING")


@dataclass(frozen=True)
class ParticipantRef:
    legalization_id: int
    role: Role
    email: str
    variant: str = ""

    def to_dict(self):
        return {"legalization_id": self.legalization_id, "email": self.email, "variant": self.variant}

    @classmethod
    def from_dict(cls, role, data):
        return cls(
            legalization_id=int(data["legalization_id"]),
            role=Role(role),
            email=data["email"],
            variant=data.get("variant") or "",
        )


@dataclass
class Population:
    kind: EvaluationKind
    members: dict = field(default_factory=dict)

    def get(self, role):
        return self.members.get(Role(role), [])

    def totals(self):
        return {role.value: len(self.get(role)) for role in roles_for(self.kind)}

    def to_dict(self):
        return {role.value: [ref.to_dict() for ref in self.get(role)] for role in roles_for(self.kind)}

    @classmethod
    def from_dict(cls, kind, data):
        kind = EvaluationKind(kind)
        members = {}
        for role in roles_for(kind):
            members[role] = [ParticipantRef.from_dict(role, item) for item in (data or {}).get(role.value, [])]
        return cls(kind, members)


@dataclass
class EligibilityCriteria:
    kind: EvaluationKind
    period: int
    practice_type: int | None = None
    program_ids: tuple = ()
    categories: tuple = ()
    faculty_id: int | None = None
    excluded_statuses: tuple = ()

    @classmethod
    def from_evaluation(cls, evaluation, default_exclusions=None):
        kind = EvaluationKind(evaluation.kind)
        excluded = evaluation.excluded_statuses
        if excluded is None:
            excluded = (default_exclusions or {}).get(kind) or _DEFAULT_EXCLUSIONS[kind]
        return cls(
            kind=kind,
            period=evaluation.period,
            practice_type=evaluation.practice_type or None,
            program_ids=tuple(evaluation.program_ids or ()),
            categories=tuple(evaluation.categories or ()),
            faculty_id=evaluation.faculty_id or None,
            excluded_statuses=tuple(excluded),
        )


_DEFAULT_EXCLUSIONS = {
    EvaluationKind.PRACTICE: DEFAULT_PRACTICE_EXCLUSIONS,
    EvaluationKind.MONITORING: DEFAULT_MONITORING_EXCLUSIONS,
}


def first_email(*candidates):
    for candidate in candidates:
        if candidate and candidate.strip():
            return candidate.strip()
    return None


def _collect(role, rows, variant=""):
    """Turn ``(legalization_id, *email candidates)`` rows into distinct participant refs."""
    refs = {}
    for legalization_id, *candidates in rows:
        email = first_email(*candidates)
        if email is None:
            logger.debug("Skipping %s of legalization %s: no email", role.value, legalization_id)
            continue
        refs.setdefault(legalization_id, ParticipantRef(legalization_id, role, email, variant))
    return list(refs.values())


# ---------------------------------------------------------------------------
# Practice evaluations
# ---------------------------------------------------------------------------
def _practice_conditions(criteria):
    apl = PracticeLegalization
    conditions = [apl.period == criteria.period]
    if criteria.practice_type:
        conditions.append(apl.practice_type == criteria.practice_type)
    if criteria.program_ids:
        conditions.append(apl.program_id.in_(criteria.program_ids))
    if criteria.excluded_statuses:
        conditions.append(apl.status.notin_(criteria.excluded_statuses))
    return conditions


def resolve_practice_population(session, criteria):
    apl = PracticeLegalization
    conditions = _practice_conditions(criteria)

    students = (
        session.query(apl.id, AcademicUser.personal_email, Postulant.alternate_email)
        .select_from(apl)
        .join(Postulant, apl.postulant_id == Postulant.postulant_id)
        .join(AcademicUser, Postulant.postulant_id == AcademicUser.id)
        .filter(*conditions)
        .order_by(apl.id)
        .all()
    )
    bosses = (
        session.query(apl.id, PracticeBoss.email)
        .select_from(apl)
        .join(PracticeBoss, apl.boss_id == PracticeBoss.boss_id)
        .filter(*conditions)
        .order_by(apl.id)
        .all()
    )

    monitors = []
    for variant, column in (("user_tutor", apl.tutor_user_id), ("user_tutor_2", apl.tutor_2_user_id)):
        tutor = aliased(AcademicUser)
        rows = (
            session.query(apl.id, tutor.personal_email, tutor.user_name)
            .select_from(apl)
            .join(tutor, column == tutor.id)
            .filter(*conditions)
            .order_by(apl.id)
            .all()
        )
        monitors.extend(_collect(Role.MONITOR, rows, variant))
    monitors.sort(key=lambda ref: (ref.legalization_id, ref.variant))

    return Population(
        EvaluationKind.PRACTICE,
        {
            Role.STUDENT: _collect(Role.STUDENT, students),
            Role.BOSS: _collect(Role.BOSS, bosses),
            Role.MONITOR: monitors,
        },
    )


# ---------------------------------------------------------------------------
# Monitoring evaluations
# ---------------------------------------------------------------------------
def _monitoring_conditions(criteria):
    ml = MonitoringLegalization
    conditions = [ml.period == criteria.period]
    if criteria.categories:
        conditions.append(ml.category.in_(criteria.categories))
    if criteria.faculty_id:
        conditions.append(ml.faculty_id == criteria.faculty_id)
    if criteria.program_ids:
        conditions.append(ml.program_id.in_(criteria.program_ids))
    if criteria.excluded_statuses:
        conditions.append(ml.status.notin_(criteria.excluded_statuses))
    return conditions


def resolve_monitoring_population(session, criteria):
    ml = MonitoringLegalization
    conditions = _monitoring_conditions(criteria)

    students = (
        session.query(ml.id, AcademicUser.personal_email, Postulant.alternate_email)
        .select_from(ml)
        .join(Postulant, ml.postulant_id == Postulant.postulant_id)
        .join(AcademicUser, Postulant.postulant_id == AcademicUser.id)
        .filter(*conditions)
        .order_by(ml.id)
        .all()
    )
    teacher_rows = (
        session.query(ml.id, AcademicUser.personal_email, AcademicUser.user_name)
        .select_from(ml)
        .join(AcademicUser, ml.teacher_user_id == AcademicUser.id)
        .filter(*conditions)
        .order_by(ml.id)
        .all()
    )
    teachers = _collect(Role.TEACHER, teacher_rows)
    if not teachers:
        # Older legalizations only record the responsible person's mailbox.
        fallback = session.query(ml.id, ml.mail_responsable).filter(*conditions).order_by(ml.id).all()
        teachers = _collect(Role.TEACHER, fallback)

    coordinators = (
        session.query(ml.id, AcademicUser.personal_email, AcademicUser.user_name)
        .select_from(ml)
        .join(AcademicUser, ml.coordinator_user_id == AcademicUser.id)
        .filter(*conditions)
        .order_by(ml.id)
        .all()
    )

    return Population(
        EvaluationKind.MONITORING,
        {
            Role.STUDENT: _collect(Role.STUDENT, students),
            Role.TEACHER: teachers,
            Role.COORDINATOR: _collect(Role.COORDINATOR, coordinators),
        },
    )


def resolve_population(session, criteria):
    if criteria.kind is EvaluationKind.MONITORING:
        population = resolve_monitoring_population(session, criteria)
    else:
        population = resolve_practice_population(session, criteria)
    logger.info("Resolved %s population for period %s: %s", criteria.kind.value, criteria.period, population.totals())
    return population


def population_totals(population):
    return population.totals()
