"""Roles, evaluation kinds and the lookup tables that tie them to survey forms.

A survey definition carries up to three question lists. Which list a role
answers depends on the kind of evaluation: monitoring evaluations reuse the
tutor and monitor lists for coordinators and teachers respectively.
"""
from enum import Enum


class Role(str, Enum):
    STUDENT = "student"
    BOSS = "boss"
    MONITOR = "monitor"
    TEACHER = "teacher"
    COORDINATOR = "coordinator"


class EvaluationKind(str, Enum):
    PRACTICE = "PRACTICE"
    MONITORING = "MONITORING"


class FormList(str, Enum):
    STUDENT = "student_form"
    TUTOR = "tutor_form"
    MONITOR = "monitor_form"


MONITOR_VARIANTS = ("user_tutor", "user_tutor_2")

ROLES_BY_KIND = {
    EvaluationKind.PRACTICE: (Role.STUDENT, Role.BOSS, Role.MONITOR),
    EvaluationKind.MONITORING: (Role.STUDENT, Role.TEACHER, Role.COORDINATOR),
}

FORM_LIST_BY_ROLE = {
    (EvaluationKind.PRACTICE, Role.STUDENT): FormList.STUDENT,
    (EvaluationKind.PRACTICE, Role.BOSS): FormList.TUTOR,
    (EvaluationKind.PRACTICE, Role.MONITOR): FormList.MONITOR,
    (EvaluationKind.MONITORING, Role.STUDENT): FormList.STUDENT,
    (EvaluationKind.MONITORING, Role.TEACHER): FormList.MONITOR,
    (EvaluationKind.MONITORING, Role.COORDINATOR): FormList.TUTOR,
}

# Keys of an item's ``value_for_reports`` string, e.g. ``e:2001;t:2002;m:0``.
FORM_CODE_KEYS = {
    "e": FormList.STUDENT,
    "t": FormList.TUTOR,
    "m": FormList.MONITOR,
}


def roles_for(kind):
    return ROLES_BY_KIND[EvaluationKind(kind)]


def form_list_for(kind, role):
    """Return the question list a role answers, or ``None`` if the role takes no part."""
    return FORM_LIST_BY_ROLE.get((EvaluationKind(kind), Role(role)))


def parse_form_codes(value_for_reports):
    """Parse ``e:2001;t:2002;m:0`` into ``{FormList: code}``, dropping zero or garbled codes."""
    codes = {}
    for part in (value_for_reports or "").split(";"):
        key, _, raw = part.partition(":")
        form_list = FORM_CODE_KEYS.get(key.strip())
        if form_list is None:
            continue
        try:
            code = int(raw.strip())
        except ValueError:
            continue
        if code:
            codes[form_list] = code
    return codes


def format_form_codes(codes):
    return ";".join(f"{key}:{codes.get(form_list) or 0}" for key, form_list in FORM_CODE_KEYS.items())


def role_form_codes(kind, codes):
    """Map parsed form codes onto the roles of an evaluation of ``kind``."""
    return {
        role.value: codes.get(form_list_for(kind, role))
        for role in roles_for(kind)
    }
