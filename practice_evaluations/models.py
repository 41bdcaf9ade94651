from datetime import datetime, timezone
from enum import Enum

from flask_sqlalchemy import SQLAlchemy

from practice_evaluations.roles import EvaluationKind, Role, parse_form_codes, roles_for

db = SQLAlchemy()

ACADEMIC = "academic"


def utcnow():
    # Naive UTC: SQLite drops tzinfo on the way back.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _isoformat(value):
    return value.isoformat() if value else None


class EvaluationStatus(str, Enum):
    CREATED = "CREATED"
    SENT = "SENT"
    FINALIZED = "FINALIZED"
    CANCELLED = "CANCELLED"


class EmailStatus(str, Enum):
    NOT_SENT = "NOT_SENT"
    SENT = "SENT"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class SurveyStatus(str, Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"


SLOT_COMPLETED = "COMPLETED"


# ---------------------------------------------------------------------------
# Document store (default bind): evaluations, tokens, responses, surveys
# ---------------------------------------------------------------------------
class Evaluation(db.Model):
    __tablename__ = "evaluations"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    name = db.Column(db.String(255), nullable=False)
    kind = db.Column(db.String(16), nullable=False, default=EvaluationKind.PRACTICE.value)
    period = db.Column(db.Integer, nullable=False)
    practice_type = db.Column(db.Integer)
    faculty_id = db.Column(db.Integer)
    program_ids = db.Column(db.JSON, nullable=False, default=list)
    categories = db.Column(db.JSON, nullable=False, default=list)
    excluded_statuses = db.Column(db.JSON)
    survey_item_id = db.Column(db.Integer)
    form_codes = db.Column(db.JSON, nullable=False, default=dict)
    participants = db.Column(db.JSON, nullable=False, default=dict)
    totals = db.Column(db.JSON, nullable=False, default=dict)
    percentages = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(db.String(16), nullable=False, default=EvaluationStatus.CREATED.value)
    email_status = db.Column(db.String(16), nullable=False, default=EmailStatus.NOT_SENT.value)
    start_date = db.Column(db.Date, nullable=False)
    finish_date = db.Column(db.Date, nullable=False)
    date_sent = db.Column(db.DateTime)
    user_creator = db.Column(db.String(255), nullable=False)
    user_updater = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def roles(self):
        return roles_for(self.kind)

    def form_code_for(self, role):
        return (self.form_codes or {}).get(Role(role).value)

    def total_for(self, role):
        return (self.totals or {}).get(Role(role).value, 0)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "evaluation_type": self.kind,
            "period": self.period,
            "practice_type": self.practice_type,
            "faculty_id": self.faculty_id,
            "program_ids": list(self.program_ids or []),
            "categories": list(self.categories or []),
            "excluded_statuses": self.excluded_statuses,
            "survey_item_id": self.survey_item_id,
            "form_codes": dict(self.form_codes or {}),
            "totals": {role.value: self.total_for(role) for role in self.roles},
            "percentages": {role.value: (self.percentages or {}).get(role.value, 0) for role in self.roles},
            "status": self.status,
            "email_status": self.email_status,
            "start_date": _isoformat(self.start_date),
            "finish_date": _isoformat(self.finish_date),
            "date_sent": _isoformat(self.date_sent),
            "user_creator": self.user_creator,
            "user_updater": self.user_updater,
            "created_at": _isoformat(self.created_at),
            "updated_at": _isoformat(self.updated_at),
        }


class AccessToken(db.Model):
    __tablename__ = "access_tokens"
    __table_args__ = (
        db.UniqueConstraint("evaluation_id", "legalization_id", "role", "variant", name="uq_access_token_key"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    evaluation_id = db.Column(db.Integer, db.ForeignKey("evaluations.id"), nullable=False, index=True)
    legalization_id = db.Column(db.Integer, nullable=False)
    role = db.Column(db.String(16), nullable=False)
    # Empty string rather than NULL so the unique key holds for roles without variants.
    variant = db.Column(db.String(16), nullable=False, default="")
    email = db.Column(db.String(255), nullable=False)
    form_code = db.Column(db.Integer, nullable=False)
    secret = db.Column(db.String(64), nullable=False, unique=True)
    link = db.Column(db.String(512), nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    used = db.Column(db.Boolean, nullable=False, default=False)
    used_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    evaluation = db.relationship("Evaluation")

    @property
    def key(self):
        return (self.legalization_id, self.variant)

    def is_expired(self, now):
        return now > self.expires_at

    def to_dict(self):
        return {
            "id": self.id,
            "evaluation_id": self.evaluation_id,
            "legalization_id": self.legalization_id,
            "role": self.role,
            "variant": self.variant or None,
            "email": self.email,
            "form_code": self.form_code,
            "link": self.link,
            "expires_at": _isoformat(self.expires_at),
            "used": self.used,
            "used_at": _isoformat(self.used_at),
        }


class ResponseRecord(db.Model):
    """Answers collected for one legalization of an evaluation.

    Records are unique per (evaluation, legalization, variant). Students and
    bosses answer into the record with the empty variant. A practice can
    have two monitors, so each monitor variant (``user_tutor``,
    ``user_tutor_2``) gets a record of its own and both can answer.
    """

    __tablename__ = "response_records"
    __table_args__ = (
        db.UniqueConstraint("evaluation_id", "legalization_id", "variant", name="uq_response_record_key"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    evaluation_id = db.Column(db.Integer, db.ForeignKey("evaluations.id"), nullable=False, index=True)
    legalization_id = db.Column(db.Integer, nullable=False)
    variant = db.Column(db.String(16), nullable=False, default="")

    # One column group per role so that concurrent writes to different
    # slots of the same record never overwrite each other.
    student_status = db.Column(db.String(16))
    student_data = db.Column(db.JSON)
    student_form_code = db.Column(db.Integer)
    student_answered_at = db.Column(db.DateTime)

    boss_status = db.Column(db.String(16))
    boss_data = db.Column(db.JSON)
    boss_form_code = db.Column(db.Integer)
    boss_answered_at = db.Column(db.DateTime)

    monitor_status = db.Column(db.String(16))
    monitor_data = db.Column(db.JSON)
    monitor_form_code = db.Column(db.Integer)
    monitor_answered_at = db.Column(db.DateTime)

    teacher_status = db.Column(db.String(16))
    teacher_data = db.Column(db.JSON)
    teacher_form_code = db.Column(db.Integer)
    teacher_answered_at = db.Column(db.DateTime)

    coordinator_status = db.Column(db.String(16))
    coordinator_data = db.Column(db.JSON)
    coordinator_form_code = db.Column(db.Integer)
    coordinator_answered_at = db.Column(db.DateTime)

    user_creator = db.Column(db.String(255), nullable=False, default="system")
    user_updater = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @classmethod
    def status_column(cls, role):
        return getattr(cls, f"{Role(role).value}_status")

    def slot(self, role):
        prefix = Role(role).value
        return {
            "status": getattr(self, f"{prefix}_status"),
            "answers": getattr(self, f"{prefix}_data"),
            "form_code": getattr(self, f"{prefix}_form_code"),
            "answered_at": getattr(self, f"{prefix}_answered_at"),
        }

    def fill_slot(self, role, answers, form_code, answered_at):
        prefix = Role(role).value
        setattr(self, f"{prefix}_data", answers)
        setattr(self, f"{prefix}_form_code", form_code)
        setattr(self, f"{prefix}_status", SLOT_COMPLETED)
        setattr(self, f"{prefix}_answered_at", answered_at)
        self.user_updater = "system"


class SurveyDefinition(db.Model):
    __tablename__ = "survey_definitions"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    kind = db.Column(db.String(16), nullable=False, default=EvaluationKind.PRACTICE.value)
    status = db.Column(db.String(16), nullable=False, default=SurveyStatus.ACTIVE.value)
    item_id = db.Column(db.Integer, unique=True)
    student_form = db.Column(db.JSON)
    tutor_form = db.Column(db.JSON)
    monitor_form = db.Column(db.JSON)
    student_code = db.Column(db.Integer, index=True)
    tutor_code = db.Column(db.Integer, index=True)
    monitor_code = db.Column(db.Integer, index=True)
    user_creator = db.Column(db.String(255), nullable=False)
    user_updater = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def form(self, form_list):
        return getattr(self, form_list.value)

    def code(self, form_list):
        return getattr(self, form_list.value.replace("_form", "_code"))

    def codes(self):
        return {c for c in (self.student_code, self.tutor_code, self.monitor_code) if c}

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "survey_type": self.kind,
            "status": self.status,
            "item_id": self.item_id,
            "student_form": self.student_form,
            "tutor_form": self.tutor_form,
            "monitor_form": self.monitor_form,
            "created_at": _isoformat(self.created_at),
        }


# ---------------------------------------------------------------------------
# Academic store (bind "academic"): the relational system of record
# ---------------------------------------------------------------------------
class AcademicUser(db.Model):
    __bind_key__ = ACADEMIC
    __tablename__ = "user"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255))
    last_name = db.Column(db.String(255))
    personal_email = db.Column(db.String(255))
    user_name = db.Column(db.String(255))

    @property
    def full_name(self):
        return " ".join(p for p in (self.name, self.last_name) if p).strip()


class Postulant(db.Model):
    __bind_key__ = ACADEMIC
    __tablename__ = "postulant"

    postulant_id = db.Column(db.Integer, db.ForeignKey("user.id"), primary_key=True)
    alternate_email = db.Column(db.String(255))


class PracticeBoss(db.Model):
    __bind_key__ = ACADEMIC
    __tablename__ = "practice_boss"

    boss_id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(255), nullable=False)
    last_name = db.Column(db.String(255), nullable=False)
    job = db.Column(db.String(255))
    email = db.Column(db.String(255))


class Program(db.Model):
    __bind_key__ = ACADEMIC
    __tablename__ = "program"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)


class PracticeLegalization(db.Model):
    __bind_key__ = ACADEMIC
    __tablename__ = "academic_practice_legalized"

    id = db.Column("academic_practice_legalized_id", db.Integer, primary_key=True)
    postulant_id = db.Column("postulant_apl", db.Integer, db.ForeignKey("postulant.postulant_id"))
    boss_id = db.Column("boss_apl", db.Integer, db.ForeignKey("practice_boss.boss_id"))
    program_id = db.Column("program_apl", db.Integer, db.ForeignKey("program.id"))
    tutor_user_id = db.Column("user_tutor", db.Integer, db.ForeignKey("user.id"))
    tutor_2_user_id = db.Column("user_tutor_2", db.Integer, db.ForeignKey("user.id"))
    practice_type = db.Column(db.Integer)
    period = db.Column("academic_period_apl", db.Integer, nullable=False)
    status = db.Column("status_apl", db.String(32), nullable=False)


class MonitoringLegalization(db.Model):
    __bind_key__ = ACADEMIC
    __tablename__ = "monitoring_legalized"

    id = db.Column("monitoring_legalized_id", db.Integer, primary_key=True)
    postulant_id = db.Column("postulant_ml", db.Integer, db.ForeignKey("postulant.postulant_id"))
    teacher_user_id = db.Column("user_teacher", db.Integer, db.ForeignKey("user.id"))
    coordinator_user_id = db.Column("user_coordinator", db.Integer, db.ForeignKey("user.id"))
    program_id = db.Column("program_ml", db.Integer, db.ForeignKey("program.id"))
    responsable = db.Column(db.String(255))
    mail_responsable = db.Column(db.String(255))
    category = db.Column(db.Integer)
    faculty_id = db.Column("faculty_ml", db.Integer)
    period = db.Column("period_ml", db.Integer, nullable=False)
    status = db.Column(db.String(32), nullable=False)


class Item(db.Model):
    """Reference-list entry; survey items carry their form codes in ``value_for_reports``."""

    __bind_key__ = ACADEMIC
    __tablename__ = "item"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    value = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    value_for_reports = db.Column(db.String(255))
    list_id = db.Column(db.String(64))
    status = db.Column(db.String(16), nullable=False, default="ACTIVE")

    def to_dict(self):
        return {
            "id": self.id,
            "value": self.value,
            "description": self.description,
            "value_for_reports": self.value_for_reports,
            "form_codes": {form_list.value: code for form_list, code in parse_form_codes(self.value_for_reports).items()},
            "list_id": self.list_id,
            "status": self.status,
        }


class EvaluationRow(db.Model):
    """Relational mirror of an evaluation's totals, percentages and status."""

    __bind_key__ = ACADEMIC
    __tablename__ = "evaluation"

    evaluation_id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    kind = db.Column(db.String(16), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    period = db.Column(db.Integer, nullable=False)
    type_survey = db.Column(db.Integer)
    status = db.Column(db.String(16), nullable=False)
    total_students = db.Column(db.Integer, nullable=False, default=0)
    total_bosses = db.Column(db.Integer, nullable=False, default=0)
    total_monitors = db.Column(db.Integer, nullable=False, default=0)
    total_teachers = db.Column(db.Integer, nullable=False, default=0)
    total_coordinators = db.Column(db.Integer, nullable=False, default=0)
    percentage_students = db.Column(db.Integer, nullable=False, default=0)
    percentage_bosses = db.Column(db.Integer, nullable=False, default=0)
    percentage_monitors = db.Column(db.Integer, nullable=False, default=0)
    percentage_teachers = db.Column(db.Integer, nullable=False, default=0)
    percentage_coordinators = db.Column(db.Integer, nullable=False, default=0)
    user_creator = db.Column(db.String(255), nullable=False)
    date_creation = db.Column(db.DateTime, nullable=False, default=utcnow)

    PLURALS = {
        Role.STUDENT: "students",
        Role.BOSS: "bosses",
        Role.MONITOR: "monitors",
        Role.TEACHER: "teachers",
        Role.COORDINATOR: "coordinators",
    }

    def copy_from(self, evaluation):
        self.kind = evaluation.kind
        self.name = evaluation.name
        self.period = evaluation.period
        self.type_survey = evaluation.survey_item_id
        self.status = evaluation.status
        self.user_creator = evaluation.user_creator
        percentages = evaluation.percentages or {}
        for role, plural in self.PLURALS.items():
            setattr(self, f"total_{plural}", evaluation.total_for(role))
            setattr(self, f"percentage_{plural}", percentages.get(role.value, 0))
