"""Access tokens: single-use, expiring links that let one participant answer once."""
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from practice_evaluations.eligibility import Population
from practice_evaluations.errors import AlreadyUsed, Expired, NotFound
from practice_evaluations.models import AccessToken, utcnow
from practice_evaluations.roles import Role
from practice_evaluations.surveys import find_survey_for

logger = logging.getLogger(__name__)

DEFAULT_TTL_DAYS = 90
LINK_PATH = "responder-evaluacion"


def mint_secret():
    # 32 random bytes, URL-safe.
    return secrets.token_urlsafe(32)


def build_link(frontend_url, secret):
    return f"{frontend_url.rstrip('/')}/{LINK_PATH}/{secret}"


@dataclass
class IssueResult:
    role: str
    created: int = 0
    refreshed: int = 0
    skipped_used: int = 0
    duplicates: int = 0

    def to_dict(self):
        return {
            "role": self.role,
            "created": self.created,
            "refreshed": self.refreshed,
            "skipped_used": self.skipped_used,
            "duplicates": self.duplicates,
        }


def _insert_tokens(session, tokens):
    """Insert new tokens, returning how many collided with an existing key."""
    if not tokens:
        return 0
    try:
        with session.begin_nested():
            session.add_all(tokens)
        return 0
    except IntegrityError:
        logger.info("Bulk token insert collided, retrying row by row")

    duplicates = 0
    for token in tokens:
        try:
            with session.begin_nested():
                session.add(token)
        except IntegrityError:
            duplicates += 1
    return duplicates


def issue_tokens(session, evaluation_id, role, participants, form_code, *,
                 frontend_url, ttl_days=DEFAULT_TTL_DAYS, now=None):
    """Make sure every participant of ``role`` holds a token.

    Unused tokens get the participant's current email and form code, used
    tokens are left untouched and new participants get a freshly minted
    token. Does not commit.
    """
    role = Role(role)
    now = now or utcnow()
    result = IssueResult(role.value)
    if not participants:
        return result

    existing = {
        token.key: token
        for token in session.query(AccessToken).filter(
            AccessToken.evaluation_id == evaluation_id,
            AccessToken.role == role.value,
            AccessToken.legalization_id.in_({p.legalization_id for p in participants}),
        )
    }

    fresh = []
    expires_at = now + timedelta(days=ttl_days)
    for participant in participants:
        token = existing.get((participant.legalization_id, participant.variant))
        if token is None:
            secret = mint_secret()
            fresh.append(AccessToken(
                evaluation_id=evaluation_id,
                legalization_id=participant.legalization_id,
                role=role.value,
                variant=participant.variant,
                email=participant.email,
                form_code=form_code,
                secret=secret,
                link=build_link(frontend_url, secret),
                expires_at=expires_at,
                used=False,
                created_at=now,
                updated_at=now,
            ))
        elif token.used:
            result.skipped_used += 1
        else:
            token.email = participant.email
            token.form_code = form_code
            token.updated_at = now
            result.refreshed += 1

    result.duplicates = _insert_tokens(session, fresh)
    result.created = len(fresh) - result.duplicates
    return result


def issue_for_evaluation(session, evaluation, population=None, now=None):
    """Issue tokens for every role of an evaluation.

    Returns ``None`` without issuing anything when the evaluation's survey
    cannot be found. A role whose batch fails is logged and skipped.
    """
    survey = find_survey_for(session, evaluation)
    if survey is None:
        logger.warning("Evaluation %s has no resolvable survey, no tokens issued", evaluation.id)
        return None

    population = population or Population.from_dict(evaluation.kind, evaluation.participants)
    frontend_url = current_app.config["FRONTEND_URL"]
    ttl_days = int(current_app.config.get("TOKEN_TTL_DAYS", DEFAULT_TTL_DAYS))
    known_codes = survey.codes()

    results = {}
    for role in evaluation.roles:
        form_code = evaluation.form_code_for(role)
        if not form_code or form_code not in known_codes:
            logger.warning(
                "Evaluation %s: form code %s for %s is not part of survey %s",
                evaluation.id, form_code, role.value, survey.id,
            )
            continue
        try:
            with session.begin_nested():
                results[role.value] = issue_tokens(
                    session, evaluation.id, role, population.get(role), form_code,
                    frontend_url=frontend_url, ttl_days=ttl_days, now=now,
                )
        except SQLAlchemyError:
            logger.exception("Token issuance for %s of evaluation %s failed", role.value, evaluation.id)
    session.commit()

    for result in results.values():
        logger.info("Evaluation %s tokens: %s", evaluation.id, result.to_dict())
    return results


def find_token(session, secret):
    if not secret:
        return None
    return session.query(AccessToken).filter_by(secret=secret).first()


def check_token(token, now=None):
    if token is None:
        raise NotFound("Invalid access token")
    if token.used:
        raise AlreadyUsed()
    if token.is_expired(now or utcnow()):
        raise Expired()
    return token


def claim_token(session, token_id, now):
    """Mark a token used if, and only if, it is still unused and unexpired.

    Exactly one of any number of concurrent claims succeeds.
    """
    outcome = session.execute(
        update(AccessToken)
        .where(
            AccessToken.id == token_id,
            AccessToken.used.is_(False),
            AccessToken.expires_at > now,
        )
        .values(used=True, used_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    return outcome.rowcount == 1


def tokens_for_evaluation(session, evaluation_id, role=None):
    query = session.query(AccessToken).filter_by(evaluation_id=evaluation_id)
    if role:
        query = query.filter_by(role=Role(role).value)
    return query.order_by(AccessToken.role, AccessToken.legalization_id, AccessToken.variant).all()


def orphaned_tokens(session, evaluation):
    """Return unused tokens whose holder is no longer part of the population."""
    population = Population.from_dict(evaluation.kind, evaluation.participants)
    keys = {
        (ref.role.value, ref.legalization_id, ref.variant)
        for role in evaluation.roles
        for ref in population.get(role)
    }
    return [
        token for token in tokens_for_evaluation(session, evaluation.id)
        if not token.used and (token.role, token.legalization_id, token.variant) not in keys
    ]
