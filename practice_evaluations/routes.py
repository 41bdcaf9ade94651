from functools import wraps

from flask import current_app, g, jsonify, request
from flask.views import MethodView
from flask_smorest import Blueprint, abort

from practice_evaluations import campaigns, responses, surveys
from practice_evaluations.aggregation import aggregate_participation
from practice_evaluations.models import SurveyDefinition, db
from practice_evaluations.notifications import SendGridTransport
from practice_evaluations.roles import Role, roles_for
from practice_evaluations.schemas import (
    AccessLinkSchema,
    AccessTokenSchema,
    DispatchSchema,
    EvaluationCreateSchema,
    EvaluationQuerySchema,
    EvaluationSchema,
    EvaluationUpdateSchema,
    ParticipationSchema,
    RefreshResultSchema,
    ResponseQuerySchema,
    ResponseSchema,
    SubmitResultSchema,
    SubmitSchema,
    SurveyCreateSchema,
    SurveySchema,
    SurveyTypeQuerySchema,
    SurveyTypeSchema,
    SurveyUpdateSchema,
    TokenQuerySchema,
)
from practice_evaluations.tasks import PostCommitTasks
from practice_evaluations.tokens import tokens_for_evaluation

access_blp = Blueprint(
    "AccessTokens", __name__,
    url_prefix="/api/access-token",
    description="Open access links and submit answers",
)
surveys_blp = Blueprint(
    "Surveys", __name__,
    url_prefix="/api/surveys",
    description="Manage survey definitions",
)
evaluations_blp = Blueprint(
    "Evaluations", __name__,
    url_prefix="/api/evaluations",
    description="Manage evaluations",
)


def require_admin(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        admin_token = current_app.config.get("ADMIN_TOKEN")
        if not admin_token:
            return jsonify({"error": "Admin token not configured"}), 500
        auth = request.headers.get("Authorization", "")
        if auth != f"Bearer {admin_token}":
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)
    return decorated


def operator():
    return request.headers.get("X-Operator") or "system"


def mail_transport():
    transport = current_app.extensions.get("practice_evaluations.transport")
    if transport is None:
        transport = SendGridTransport.from_config(current_app.config)
    return transport


def get_survey_or_404(survey_id):
    survey = db.session.get(SurveyDefinition, survey_id)
    if not survey:
        abort(404, message="Survey not found")
    return survey


def post_commit_tasks():
    if "post_commit" not in g:
        g.post_commit = PostCommitTasks()
    return g.post_commit


@access_blp.after_app_request
def run_post_commit_tasks(response):
    tasks = g.pop("post_commit", None)
    if tasks and response.status_code < 400:
        tasks.run(current_app._get_current_object())
    return response


# ---------------------------------------------------------------------------
# Access links (public)
# ---------------------------------------------------------------------------
@access_blp.route("/<secret>")
class AccessLink(MethodView):

    @access_blp.response(200, AccessLinkSchema)
    def get(self, secret):
        """Resolve an access link into its evaluation, role and questions."""
        token, evaluation, questions = responses.open_token(db.session, secret)
        return {
            "evaluation": evaluation.to_dict(),
            "token": token.to_dict(),
            "questions": questions,
        }


@access_blp.route("/submit")
class AccessSubmit(MethodView):

    @access_blp.arguments(SubmitSchema)
    @access_blp.response(200, SubmitResultSchema)
    def post(self, body):
        """Store a participant's answers; each link can be used once."""
        record, token = responses.submit_response(
            db.session, body["token"], body["answers"], tasks=post_commit_tasks(),
        )
        slot = record.slot(token.role)
        return {
            "status": slot["status"],
            "role": token.role,
            "answered_at": slot["answered_at"].isoformat(),
        }


# ---------------------------------------------------------------------------
# Surveys
# ---------------------------------------------------------------------------
@surveys_blp.route("/")
class SurveyList(MethodView):

    @surveys_blp.doc(security=[{"BearerAuth": []}])
    @surveys_blp.response(200, SurveySchema(many=True))
    @require_admin
    def get(self):
        """List survey definitions."""
        rows = db.session.query(SurveyDefinition).order_by(SurveyDefinition.created_at.desc()).all()
        return [s.to_dict() for s in rows]

    @surveys_blp.doc(security=[{"BearerAuth": []}])
    @surveys_blp.arguments(SurveyCreateSchema)
    @surveys_blp.response(201, SurveySchema)
    @require_admin
    def post(self, body):
        """Create a survey definition and publish its form codes."""
        try:
            survey = surveys.create_survey(
                db.session,
                name=body["name"],
                user=operator(),
                description=body["description"],
                kind=body["survey_type"],
                student_questions=body["student_questions"],
                tutor_questions=body["tutor_questions"],
                monitor_questions=body["monitor_questions"],
            )
        except ValueError as exc:
            abort(422, message=str(exc))
        return survey.to_dict()


@surveys_blp.route("/types")
class SurveyTypes(MethodView):

    @surveys_blp.doc(security=[{"BearerAuth": []}])
    @surveys_blp.arguments(SurveyTypeQuerySchema, location="query")
    @surveys_blp.response(200, SurveyTypeSchema(many=True))
    @require_admin
    def get(self, query):
        """List the survey entries evaluations can be created from."""
        return [item.to_dict() for item in surveys.list_survey_types(db.session, query.get("kind"))]


@surveys_blp.route("/<int:survey_id>")
class SurveyItem(MethodView):

    @surveys_blp.doc(security=[{"BearerAuth": []}])
    @surveys_blp.response(200, SurveySchema)
    @require_admin
    def get(self, survey_id):
        """Get a single survey definition."""
        return get_survey_or_404(survey_id).to_dict()

    @surveys_blp.doc(security=[{"BearerAuth": []}])
    @surveys_blp.arguments(SurveyUpdateSchema)
    @surveys_blp.response(200, SurveySchema)
    @require_admin
    def patch(self, body, survey_id):
        """Rename a survey or replace its question lists."""
        survey = get_survey_or_404(survey_id)
        try:
            surveys.update_survey(db.session, survey, body, operator())
        except ValueError as exc:
            abort(422, message=str(exc))
        return survey.to_dict()

    @surveys_blp.doc(security=[{"BearerAuth": []}])
    @surveys_blp.response(204)
    @require_admin
    def delete(self, survey_id):
        """Archive a survey and withdraw it from the reference list."""
        surveys.archive_survey(db.session, get_survey_or_404(survey_id), operator())


# ---------------------------------------------------------------------------
# Evaluations
# ---------------------------------------------------------------------------
@evaluations_blp.route("/")
class EvaluationList(MethodView):

    @evaluations_blp.doc(security=[{"BearerAuth": []}])
    @evaluations_blp.arguments(EvaluationQuerySchema, location="query")
    @evaluations_blp.response(200, EvaluationSchema(many=True))
    @require_admin
    def get(self, query):
        """List evaluations, newest first."""
        rows = campaigns.list_evaluations(
            db.session, kind=query.get("evaluation_type"), status=query.get("status"), period=query.get("period"),
        )
        return [e.to_dict() for e in rows]

    @evaluations_blp.doc(security=[{"BearerAuth": []}])
    @evaluations_blp.arguments(EvaluationCreateSchema)
    @evaluations_blp.response(201, EvaluationSchema)
    @require_admin
    def post(self, body):
        """Create an evaluation and issue access links to its population."""
        body["kind"] = body.pop("evaluation_type")
        evaluation = campaigns.create_evaluation(db.session, body, operator())
        return evaluation.to_dict()


@evaluations_blp.route("/<int:evaluation_id>")
class EvaluationItem(MethodView):

    @evaluations_blp.doc(security=[{"BearerAuth": []}])
    @evaluations_blp.response(200, EvaluationSchema)
    @require_admin
    def get(self, evaluation_id):
        """Get a single evaluation."""
        return campaigns.get_evaluation(db.session, evaluation_id).to_dict()

    @evaluations_blp.doc(security=[{"BearerAuth": []}])
    @evaluations_blp.arguments(EvaluationUpdateSchema)
    @evaluations_blp.response(200, EvaluationSchema)
    @require_admin
    def patch(self, body, evaluation_id):
        """Edit an evaluation; filter changes recompute its population."""
        evaluation = campaigns.get_evaluation(db.session, evaluation_id)
        return campaigns.update_evaluation(db.session, evaluation, body, operator()).to_dict()


@evaluations_blp.route("/<int:evaluation_id>/refresh")
class EvaluationRefresh(MethodView):

    @evaluations_blp.doc(security=[{"BearerAuth": []}])
    @evaluations_blp.response(200, RefreshResultSchema)
    @require_admin
    def post(self, evaluation_id):
        """Recompute the eligible population and issue missing access links."""
        evaluation = campaigns.get_evaluation(db.session, evaluation_id)
        return campaigns.refresh_population(db.session, evaluation)


@evaluations_blp.route("/<int:evaluation_id>/send")
class EvaluationSend(MethodView):

    @evaluations_blp.doc(security=[{"BearerAuth": []}])
    @evaluations_blp.response(200, DispatchSchema)
    @require_admin
    def post(self, evaluation_id):
        """Email every participant their access link."""
        evaluation = campaigns.get_evaluation(db.session, evaluation_id)
        report = campaigns.send_evaluation(db.session, evaluation, mail_transport(), operator())
        return dict(report.to_dict(), status=evaluation.status, email_status=evaluation.email_status)


@evaluations_blp.route("/<int:evaluation_id>/finalize")
class EvaluationFinalize(MethodView):

    @evaluations_blp.doc(security=[{"BearerAuth": []}])
    @evaluations_blp.response(200, EvaluationSchema)
    @require_admin
    def post(self, evaluation_id):
        """Close a sent evaluation."""
        evaluation = campaigns.get_evaluation(db.session, evaluation_id)
        return campaigns.finalize_evaluation(db.session, evaluation, operator()).to_dict()


@evaluations_blp.route("/<int:evaluation_id>/cancel")
class EvaluationCancel(MethodView):

    @evaluations_blp.doc(security=[{"BearerAuth": []}])
    @evaluations_blp.response(200, EvaluationSchema)
    @require_admin
    def post(self, evaluation_id):
        """Cancel an evaluation that has not been finalized."""
        evaluation = campaigns.get_evaluation(db.session, evaluation_id)
        return campaigns.cancel_evaluation(db.session, evaluation, operator()).to_dict()


@evaluations_blp.route("/<int:evaluation_id>/aggregate")
class EvaluationAggregate(MethodView):

    @evaluations_blp.doc(security=[{"BearerAuth": []}])
    @evaluations_blp.response(200, ParticipationSchema(many=True))
    @require_admin
    def post(self, evaluation_id):
        """Recount participation per role."""
        evaluation = campaigns.get_evaluation(db.session, evaluation_id)
        stats = aggregate_participation(db.session, evaluation.id)
        if stats is None:
            abort(503, message="Participation could not be recomputed")
        return [dict(stat.to_dict(), role=role) for role, stat in stats.items()]


@evaluations_blp.route("/<int:evaluation_id>/tokens")
class EvaluationTokens(MethodView):

    @evaluations_blp.doc(security=[{"BearerAuth": []}])
    @evaluations_blp.arguments(TokenQuerySchema, location="query")
    @evaluations_blp.response(200, AccessTokenSchema(many=True))
    @require_admin
    def get(self, query, evaluation_id):
        """List the access links of an evaluation."""
        evaluation = campaigns.get_evaluation(db.session, evaluation_id)
        role = query.get("role")
        if role and Role(role) not in roles_for(evaluation.kind):
            abort(400, message=f"Role {role} takes no part in this evaluation")
        return [t.to_dict() for t in tokens_for_evaluation(db.session, evaluation.id, role)]


@evaluations_blp.route("/<int:evaluation_id>/responses/<int:legalization_id>/<role>")
class EvaluationResponse(MethodView):

    @evaluations_blp.doc(security=[{"BearerAuth": []}])
    @evaluations_blp.arguments(ResponseQuerySchema, location="query")
    @evaluations_blp.response(200, ResponseSchema)
    @require_admin
    def get(self, query, evaluation_id, legalization_id, role):
        """Show one participant's answers with their questions."""
        evaluation = campaigns.get_evaluation(db.session, evaluation_id)
        if role not in {r.value for r in roles_for(evaluation.kind)}:
            abort(404, message="Role not found")
        return responses.get_response(db.session, evaluation, legalization_id, role, query["variant"])
