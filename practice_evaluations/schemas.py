from marshmallow import Schema, fields, validate

from practice_evaluations.roles import EvaluationKind, Role
from practice_evaluations.surveys import QUESTION_TYPES

KINDS = [kind.value for kind in EvaluationKind]


# ---------------------------------------------------------------------------
# Access links
# ---------------------------------------------------------------------------
class OptionSchema(Schema):
    label = fields.String()
    value = fields.String()


class QuestionSchema(Schema):
    id = fields.String()
    text = fields.String()
    type = fields.String()
    options = fields.List(fields.Nested(OptionSchema))
    order = fields.Integer()
    required = fields.Boolean()
    scale_min = fields.Integer(allow_none=True)
    scale_max = fields.Integer(allow_none=True)
    scale_labels = fields.Raw(allow_none=True)
    validation = fields.Raw(allow_none=True)


class TokenEvaluationSchema(Schema):
    id = fields.Integer()
    name = fields.String()
    evaluation_type = fields.String()
    period = fields.Integer()
    start_date = fields.String(metadata={"format": "date"})
    finish_date = fields.String(metadata={"format": "date"})


class TokenInfoSchema(Schema):
    role = fields.String()
    legalization_id = fields.Integer()
    variant = fields.String(allow_none=True)
    form_code = fields.Integer()
    expires_at = fields.String(metadata={"format": "date-time"})


class AccessLinkSchema(Schema):
    evaluation = fields.Nested(TokenEvaluationSchema)
    token = fields.Nested(TokenInfoSchema)
    questions = fields.List(fields.Nested(QuestionSchema))


class SubmitSchema(Schema):
    token = fields.String(required=True)
    # Entries use several historical key names, so they are read as raw dicts.
    answers = fields.List(fields.Dict(), required=True)


class SubmitResultSchema(Schema):
    status = fields.String()
    role = fields.String()
    answered_at = fields.String(metadata={"format": "date-time"})


# ---------------------------------------------------------------------------
# Surveys
# ---------------------------------------------------------------------------
class QuestionInputSchema(Schema):
    id = fields.String()
    question = fields.String(required=True)
    type = fields.String(required=True, validate=validate.OneOf(QUESTION_TYPES))
    options = fields.List(fields.Dict())
    order = fields.Integer()
    required = fields.Boolean(load_default=True)
    scale_min = fields.Integer()
    scale_max = fields.Integer()
    scale_labels = fields.Dict()
    validation = fields.Dict()


class SurveyCreateSchema(Schema):
    name = fields.String(required=True, validate=validate.Length(min=1))
    description = fields.String(load_default="")
    survey_type = fields.String(load_default=EvaluationKind.PRACTICE.value, validate=validate.OneOf(KINDS))
    student_questions = fields.List(fields.Nested(QuestionInputSchema), load_default=list)
    tutor_questions = fields.List(fields.Nested(QuestionInputSchema), load_default=list)
    monitor_questions = fields.List(fields.Nested(QuestionInputSchema), load_default=list)


class SurveyUpdateSchema(Schema):
    name = fields.String(validate=validate.Length(min=1))
    description = fields.String()
    student_questions = fields.List(fields.Nested(QuestionInputSchema))
    tutor_questions = fields.List(fields.Nested(QuestionInputSchema))
    monitor_questions = fields.List(fields.Nested(QuestionInputSchema))


class SurveySchema(Schema):
    id = fields.Integer()
    name = fields.String()
    description = fields.String()
    survey_type = fields.String()
    status = fields.String()
    item_id = fields.Integer()
    student_form = fields.Dict(allow_none=True)
    tutor_form = fields.Dict(allow_none=True)
    monitor_form = fields.Dict(allow_none=True)
    created_at = fields.String(metadata={"format": "date-time"})


class SurveyTypeQuerySchema(Schema):
    kind = fields.String(validate=validate.OneOf(KINDS))


class SurveyTypeSchema(Schema):
    id = fields.Integer()
    value = fields.String()
    description = fields.String(allow_none=True)
    value_for_reports = fields.String(allow_none=True)
    form_codes = fields.Dict(keys=fields.String(), values=fields.Integer())
    list_id = fields.String()
    status = fields.String()


# ---------------------------------------------------------------------------
# Evaluations
# ---------------------------------------------------------------------------
class EvaluationQuerySchema(Schema):
    evaluation_type = fields.String(validate=validate.OneOf(KINDS))
    status = fields.String()
    period = fields.Integer()


class EvaluationCreateSchema(Schema):
    name = fields.String(required=True, validate=validate.Length(min=1))
    evaluation_type = fields.String(load_default=EvaluationKind.PRACTICE.value, validate=validate.OneOf(KINDS))
    period = fields.Integer(required=True)
    survey_item_id = fields.Integer(required=True)
    practice_type = fields.Integer(allow_none=True)
    faculty_id = fields.Integer(allow_none=True)
    program_ids = fields.List(fields.Integer(), load_default=list)
    categories = fields.List(fields.Integer(), load_default=list)
    excluded_statuses = fields.List(fields.String(), allow_none=True)
    start_date = fields.Date(required=True)
    finish_date = fields.Date(required=True)


class EvaluationUpdateSchema(Schema):
    name = fields.String(validate=validate.Length(min=1))
    period = fields.Integer()
    practice_type = fields.Integer(allow_none=True)
    faculty_id = fields.Integer(allow_none=True)
    program_ids = fields.List(fields.Integer())
    categories = fields.List(fields.Integer())
    excluded_statuses = fields.List(fields.String(), allow_none=True)
    start_date = fields.Date()
    finish_date = fields.Date()


class EvaluationSchema(Schema):
    id = fields.Integer()
    name = fields.String()
    evaluation_type = fields.String()
    period = fields.Integer()
    practice_type = fields.Integer(allow_none=True)
    faculty_id = fields.Integer(allow_none=True)
    program_ids = fields.List(fields.Integer())
    categories = fields.List(fields.Integer())
    excluded_statuses = fields.List(fields.String(), allow_none=True)
    survey_item_id = fields.Integer()
    form_codes = fields.Dict(keys=fields.String(), values=fields.Integer(allow_none=True))
    totals = fields.Dict(keys=fields.String(), values=fields.Integer())
    percentages = fields.Dict(keys=fields.String(), values=fields.Integer())
    status = fields.String()
    email_status = fields.String()
    start_date = fields.String(metadata={"format": "date"})
    finish_date = fields.String(metadata={"format": "date"})
    date_sent = fields.String(allow_none=True, metadata={"format": "date-time"})
    user_creator = fields.String()
    user_updater = fields.String(allow_none=True)
    created_at = fields.String(metadata={"format": "date-time"})
    updated_at = fields.String(metadata={"format": "date-time"})


class RefreshResultSchema(Schema):
    totals = fields.Dict(keys=fields.String(), values=fields.Integer())
    tokens = fields.Dict(keys=fields.String(), values=fields.Dict())
    survey_resolved = fields.Boolean()
    orphaned_tokens = fields.Integer()


class DispatchSchema(Schema):
    sent = fields.Integer()
    failed = fields.Integer()
    skipped = fields.Integer()
    failures = fields.List(fields.Dict())
    status = fields.String()
    email_status = fields.String()


class ParticipationSchema(Schema):
    role = fields.String()
    total = fields.Integer()
    completed = fields.Integer()
    percentage = fields.Integer()


class AccessTokenSchema(Schema):
    id = fields.Integer()
    evaluation_id = fields.Integer()
    legalization_id = fields.Integer()
    role = fields.String()
    variant = fields.String(allow_none=True)
    email = fields.String()
    form_code = fields.Integer()
    link = fields.String()
    expires_at = fields.String(metadata={"format": "date-time"})
    used = fields.Boolean()
    used_at = fields.String(allow_none=True, metadata={"format": "date-time"})


class TokenQuerySchema(Schema):
    role = fields.String(validate=validate.OneOf([role.value for role in Role]))


class ResponseQuerySchema(Schema):
    variant = fields.String(load_default="")


class AnswerSchema(Schema):
    question_id = fields.String()
    question = fields.String(allow_none=True)
    type = fields.String(allow_none=True)
    kind = fields.String()
    value = fields.String(allow_none=True)
    text = fields.String(allow_none=True)
    display = fields.String()


class ResponseSchema(Schema):
    evaluation_id = fields.Integer()
    legalization_id = fields.Integer()
    variant = fields.String(allow_none=True)
    role = fields.String()
    status = fields.String()
    form_code = fields.Integer()
    answered_at = fields.String(allow_none=True, metadata={"format": "date-time"})
    answers = fields.List(fields.Nested(AnswerSchema))
