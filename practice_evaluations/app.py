import logging
import os
from pathlib import Path

from flask import Flask, jsonify
from flask_smorest import Api
from werkzeug.http import HTTP_STATUS_CODES

from practice_evaluations.eligibility import DEFAULT_MONITORING_EXCLUSIONS, DEFAULT_PRACTICE_EXCLUSIONS
from practice_evaluations.errors import EvaluationError
from practice_evaluations.models import ACADEMIC, db
from practice_evaluations.routes import access_blp, evaluations_blp, surveys_blp
from practice_evaluations.tasks import init_executor


def create_app(**config_overrides) -> Flask:
    """Application factory.

    Parameters
    ----------
    **config_overrides:
        Extra Flask config values (e.g. ``SQLALCHEMY_DATABASE_URI`` or
        ``POST_COMMIT_MODE="inline"`` in tests).
    """
    app = Flask(__name__)

    # Defaults ----------------------------------------------------------------
    cwd = Path.cwd()
    app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get(
        "DATABASE_URL",
        "sqlite:///" + str(cwd / "evaluations.db"),
    )
    app.config["SQLALCHEMY_BINDS"] = {
        ACADEMIC: os.environ.get(
            "ACADEMIC_DATABASE_URL",
            "sqlite:///" + str(cwd / "academic.db"),
        ),
    }
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    app.config["ADMIN_TOKEN"] = os.environ.get("ADMIN_TOKEN", "")
    app.config["FRONTEND_URL"] = os.environ.get("FRONTEND_URL", "http://localhost:5173")
    app.config["TOKEN_TTL_DAYS"] = int(os.environ.get("TOKEN_TTL_DAYS", "90"))
    app.config["PRACTICE_EXCLUDED_STATUSES"] = list(DEFAULT_PRACTICE_EXCLUSIONS)
    app.config["MONITORING_EXCLUDED_STATUSES"] = list(DEFAULT_MONITORING_EXCLUSIONS)
    app.config["POST_COMMIT_MODE"] = os.environ.get("POST_COMMIT_MODE", "thread")
    app.config["LOG_LEVEL"] = os.environ.get("LOG_LEVEL", "INFO")

    # Mail ----------------------------------------------------------------------
    app.config["SENDGRID_API_KEY"] = os.environ.get("SENDGRID_API_KEY", "")
    app.config["MAIL_SENDER"] = os.environ.get("MAIL_SENDER", "practicasypasantias@uao.edu.co")
    app.config["MAIL_LOGO_URL"] = os.environ.get("MAIL_LOGO_URL", "")
    app.config["MAIL_REDIRECT_TO"] = os.environ.get("MAIL_REDIRECT_TO", "")

    # Flask-Smorest -----------------------------------------------------------
    app.config["API_TITLE"] = "Practice Evaluations API"
    app.config["API_VERSION"] = "1.0.0"
    app.config["OPENAPI_VERSION"] = "3.0.3"
    app.config["OPENAPI_URL_PREFIX"] = "/docs"
    app.config["OPENAPI_SWAGGER_UI_PATH"] = "/"
    app.config["OPENAPI_SWAGGER_UI_URL"] = "https://cdn.jsdelivr.net/npm/swagger-ui-dist/"
    app.config["API_SPEC_OPTIONS"] = {
        "components": {
            "securitySchemes": {
                "BearerAuth": {
                    "type": "http",
                    "scheme": "bearer",
                }
            }
        },
    }

    # Apply overrides ---------------------------------------------------------
    app.config.update(config_overrides)

    logging.getLogger("practice_evaluations").setLevel(app.config["LOG_LEVEL"])

    db.init_app(app)
    init_executor(app)

    @app.errorhandler(EvaluationError)
    def handle_evaluation_error(error):
        payload = {
            "code": error.status_code,
            "status": HTTP_STATUS_CODES.get(error.status_code, "Unknown error"),
            "message": error.message,
        }
        return jsonify(payload), error.status_code

    @app.route("/health")
    def health():
        return {"status": "ok"}

    api = Api(app)
    api.register_blueprint(access_blp)
    api.register_blueprint(surveys_blp)
    api.register_blueprint(evaluations_blp)

    with app.app_context():
        db.create_all()

    return app
