"""Skip evaluator - decides whether a question is skipped for a job.

A skipped question's response is still stored but never fires a
transition. ``skip_conditions`` supports two rules, either of which
skips the question:

    {"job_types": ["maintenance", "warranty"]}
        the job's job_type is listed

    {"previous_responses": [{"question_id": 7, "response_value": "No"}]}
        the job's stored answer to question 7 equals "No"
        (case-insensitive, trimmed)
"""

from __future__ import annotations

from jobflow.models.job import Job
from jobflow.models.workflow import Question
from jobflow.services.conditions import normalise
from jobflow.services.response_recorder import latest_response


def should_skip(job: Job, question: Question) -> bool:
    conditions = question.skip_conditions or {}
    if not conditions:
        return False

    job_types = conditions.get("job_types") or []
    if job.job_type and job.job_type in job_types:
        return True

    for rule in conditions.get("previous_responses") or []:
        question_id = rule.get("question_id")
        if question_id is None:
            continue
        previous = latest_response(job.id, question_id)
        if previous is not None and normalise(previous.response_value) == normalise(rule.get("response_value")):
            return True

    return False
