"""Transition evaluator - picks the transition a response fires, if any.

Candidates are the transitions leaving the current stage that are either
unbound or bound to the answered question. Transitions that require an
admin override never fire from a response.

A candidate matches when its trigger text equals the response
(case-insensitive, trimmed) or its condition evaluates true. Among
several matches, automatic transitions win; ties fall back to
declaration order.
"""

from __future__ import annotations

from jobflow.models.workflow import Question, Stage, Transition
from jobflow.services.conditions import normalise, parse_condition
from jobflow.services.stage_graph import outgoing_transitions


def transition_matches(transition: Transition, response_value) -> bool:
    trigger = normalise(transition.trigger_response)
    if trigger and trigger == normalise(response_value):
        return True
    if transition.condition:
        return parse_condition(transition.condition).matches(response_value)
    return False


def evaluate(
    current_stage: Stage,
    response_value,
    question: Question | None = None,
) -> Transition | None:
    """Return the transition fired by ``response_value``, or None."""
    matches = []
    for transition in outgoing_transitions(current_stage.id):
        if transition.requires_admin_override:
            continue
        if transition.question_id is not None and (
            question is None or transition.question_id != question.id
        ):
            continue
        if transition_matches(transition, response_value):
            matches.append(transition)

    if not matches:
        return None
    # stable sort keeps declaration order within each group
    matches.sort(key=lambda t: not t.is_automatic)
    return matches[0]
