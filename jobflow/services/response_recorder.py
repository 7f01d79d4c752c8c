"""Response recorder - validates and stores answers to stage questions.

Validation runs before any write, so an invalid value never leaves a
trace. A job holds exactly one response per question: resubmission
overwrites the value (last write wins). Recording never evaluates
transitions; that is the progression service's job.

yes_no answers are stored in canonical form ("Yes" / "No") so that
"y", "TRUE" and " yes " all fire a transition triggered by "Yes".
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from jobflow.core.exceptions import ValidationError
from jobflow.models import db
from jobflow.models.job import Job
from jobflow.models.progression import RESPONSE_SOURCES, Response
from jobflow.models.workflow import Question
from jobflow.services.conditions import as_number, normalise
from jobflow.utils.helpers import parse_date, utcnow

logger = logging.getLogger(__name__)

_YES_TOKENS = {"yes", "y", "true"}
_NO_TOKENS = {"no", "n", "false"}


def _invalid(question: Question, reason: str) -> ValidationError:
    return ValidationError(
        f"Invalid response for question {question.id} ({question.response_type})",
        details={"response_value": reason},
    )


def validate_response(question: Question, value) -> str:
    """Check ``value`` against the question's response type.

    Returns:
        The value to store (trimmed; canonical for yes_no).

    Raises:
        ValidationError: with ``details["response_value"]`` describing the problem.
    """
    raw = "" if value is None else str(value).strip()
    rtype = question.response_type

    if rtype == "yes_no":
        token = raw.casefold()
        if token in _YES_TOKENS:
            return "Yes"
        if token in _NO_TOKENS:
            return "No"
        raise _invalid(question, "Expected Yes or No")

    if rtype == "number":
        if as_number(raw) is None:
            raise _invalid(question, "Expected a number")
        return raw

    if rtype == "date":
        if parse_date(raw) is None:
            raise _invalid(question, "Expected a date (YYYY-MM-DD or DD.MM.YYYY)")
        return raw

    if rtype == "multiple_choice":
        options = question.response_options or []
        if not raw:
            raise _invalid(question, "A choice is required")
        if options:
            for option in options:
                if normalise(option) == normalise(raw):
                    return str(option)
            raise _invalid(question, f"Expected one of: {', '.join(str(o) for o in options)}")
        return raw

    # text, file_upload
    if not raw:
        raise _invalid(question, "Response cannot be empty")
    return raw


def record_response(
    job: Job,
    question: Question,
    value,
    *,
    actor_id: int | None = None,
    source: str = "web_app",
    metadata: dict | None = None,
) -> Response:
    """Validate and upsert the (job, question) response. Flushes, never commits.

    Raises:
        ValidationError: invalid value or unknown source.
    """
    if source not in RESPONSE_SOURCES:
        raise ValidationError(
            f"Unknown response source {source!r}",
            details={"response_source": f"must be one of: {', '.join(sorted(RESPONSE_SOURCES))}"},
        )
    stored_value = validate_response(question, value)

    response = db.session.execute(
        select(Response).where(Response.job_id == job.id, Response.question_id == question.id)
    ).scalar_one_or_none()

    if response is None:
        response = Response(job_id=job.id, question_id=question.id)
        db.session.add(response)
        is_new = True
    else:
        is_new = False

    response.response_value = stored_value
    response.response_metadata = metadata or {}
    response.responded_by_id = actor_id
    response.response_source = source
    response.updated_at = utcnow()
    db.session.flush()

    logger.debug(
        "Response %s job_id=%s question_id=%s",
        "recorded" if is_new else "updated", job.id, question.id,
        extra={"tenant_id": job.tenant_id, "job_id": job.id},
    )
    return response


def latest_response(job_id: int, question_id: int) -> Response | None:
    return db.session.execute(
        select(Response).where(Response.job_id == job_id, Response.question_id == question_id)
    ).scalar_one_or_none()
