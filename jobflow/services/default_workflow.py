"""Default global workflow - the 12-stage construction job lifecycle.

Seeded once into the global stage set (tenant_id NULL) by the
``flask seed-default-stages`` command. Tenants that never customise
their workflow run on these stages; ``copy_global_stages_to_tenant``
gives a tenant its own editable copy.

Transitions reference questions by ``(stage position, question position)``.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from jobflow.models import db
from jobflow.models.workflow import Stage
from jobflow.services import question_store, stage_graph

logger = logging.getLogger(__name__)


def _subtasks(*titles: str) -> list[dict]:
    return [{"title": t, "completed": False} for t in titles]


DEFAULT_STAGES = [
    {
        "position": 1, "name": "Lead Qualification", "maps_to_status": "planning", "kind": "standard",
        "min_duration_hours": 1, "max_duration_hours": 168,
        "description": "Initial assessment of lead viability and requirements",
        "questions": [
            {"text": "Have you qualified this lead as a viable opportunity?", "response_type": "yes_no",
             "help_text": "Consider budget, timeline, and project scope"},
            {"text": "What is the estimated project value?", "response_type": "number",
             "help_text": "Enter rough estimate in dollars"},
            {"text": "When does the client want to start?", "response_type": "date",
             "help_text": "Ideal project start date"},
        ],
        "task_templates": [
            {"task_type": "checklist", "title": "Lead Qualification Checklist",
             "description": "Complete initial lead assessment", "priority": "normal", "auto_assign_to": "creator",
             "subtasks": _subtasks("Review lead source and details", "Assess project budget range",
                                   "Evaluate timeline feasibility", "Check client references if applicable")},
        ],
    },
    {
        "position": 2, "name": "Initial Client Meeting", "maps_to_status": "planning", "kind": "milestone",
        "min_duration_hours": 2, "max_duration_hours": 72,
        "description": "First meeting with client to understand project scope",
        "questions": [
            {"text": "Have you had your initial meeting with the client?", "response_type": "yes_no",
             "help_text": "Face-to-face or video meeting to discuss project"},
            {"text": "When is the site meeting scheduled?", "response_type": "date",
             "help_text": "Schedule on-site assessment",
             "skip_if": [((2, 1), "Yes")]},
            {"text": "Upload meeting notes or photos", "response_type": "file_upload",
             "help_text": "Document important details from the meeting"},
        ],
        "task_templates": [
            {"task_type": "scheduling", "title": "Schedule Initial Meeting",
             "description": "Arrange first meeting with client", "priority": "high", "auto_assign_to": "creator",
             "subtasks": _subtasks("Contact client to schedule meeting", "Confirm meeting time and location",
                                   "Prepare meeting agenda")},
        ],
    },
    {
        "position": 3, "name": "Quote Preparation", "maps_to_status": "planning", "kind": "standard",
        "min_duration_hours": 4, "max_duration_hours": 120,
        "description": "Prepare detailed project quote and estimates",
        "questions": [
            {"text": "Have you completed the site assessment?", "response_type": "yes_no",
             "help_text": "Detailed on-site evaluation for accurate quoting"},
            {"text": "Are all materials and labor costs calculated?", "response_type": "yes_no",
             "help_text": "Ensure comprehensive cost breakdown"},
            {"text": "What is the total quote amount?", "response_type": "number",
             "help_text": "Final quote amount including all costs and margin"},
        ],
        "task_templates": [
            {"task_type": "documentation", "title": "Prepare Detailed Quote",
             "description": "Create comprehensive project quote", "priority": "high", "auto_assign_to": "creator",
             "upload_required": True,
             "subtasks": _subtasks("Conduct site survey", "Calculate material costs", "Estimate labor requirements",
                                   "Add profit margin", "Create quote document")},
        ],
    },
    {
        "position": 4, "name": "Quote Submission", "maps_to_status": "planning", "kind": "milestone",
        "min_duration_hours": 1, "max_duration_hours": 336,
        "description": "Submit quote to client and await response",
        "questions": [
            {"text": "Has the quote been submitted to the client?", "response_type": "yes_no",
             "help_text": "Quote formally sent via email or hand-delivered"},
            {"text": "When do you expect a response?", "response_type": "date",
             "help_text": "Client indicated decision timeline"},
            {"text": "Upload quote document", "response_type": "file_upload",
             "help_text": "Keep copy of submitted quote"},
        ],
        "task_templates": [],
    },
    {
        "position": 5, "name": "Client Decision", "maps_to_status": "planning", "kind": "approval",
        "min_duration_hours": 1, "max_duration_hours": 168,
        "description": "Client reviews and makes decision on quote",
        "questions": [
            {"text": "Has the client accepted the quote?", "response_type": "yes_no",
             "help_text": "Client formally agreed to proceed"},
            {"text": "Are there any requested changes?", "response_type": "text",
             "help_text": "Document any scope or price modifications",
             "skip_if": [((5, 1), "Yes")]},
            {"text": "What is the reason for rejection?", "response_type": "text",
             "help_text": "Understand why quote was declined",
             "skip_if": [((5, 1), "No")]},
        ],
        "task_templates": [],
    },
    {
        "position": 6, "name": "Contract & Deposit", "maps_to_status": "active", "kind": "milestone",
        "min_duration_hours": 2, "max_duration_hours": 72,
        "description": "Finalize contract terms and collect deposit",
        "questions": [
            {"text": "Has the contract been signed?", "response_type": "yes_no",
             "help_text": "Both parties have signed the agreement"},
            {"text": "Has the deposit been received?", "response_type": "yes_no",
             "help_text": "Initial payment collected as per contract"},
            {"text": "Upload signed contract", "response_type": "file_upload",
             "help_text": "Store signed contract documents"},
        ],
        "task_templates": [
            {"task_type": "documentation", "title": "Contract and Deposit Collection",
             "description": "Finalize contract and collect deposit", "priority": "urgent", "auto_assign_to": "creator",
             "upload_required": True,
             "subtasks": _subtasks("Prepare contract documents", "Review terms with client",
                                   "Collect signed contract", "Process deposit payment")},
        ],
    },
    {
        "position": 7, "name": "Planning & Procurement", "maps_to_status": "active", "kind": "standard",
        "min_duration_hours": 8, "max_duration_hours": 168,
        "description": "Detailed planning and material procurement",
        "questions": [
            {"text": "Have you ordered materials yet?", "response_type": "yes_no",
             "help_text": "Materials ordered and delivery scheduled"},
            {"text": "When will materials be delivered?", "response_type": "date",
             "help_text": "Expected delivery date for materials"},
            {"text": "Is the work schedule finalized?", "response_type": "yes_no",
             "help_text": "Team schedule and project timeline confirmed"},
        ],
        "task_templates": [
            {"task_type": "checklist", "title": "Planning and Material Procurement",
             "description": "Organize project planning and order materials", "priority": "high",
             "auto_assign_to": "foreman", "sla_hours": 48,
             "subtasks": _subtasks("Create detailed work schedule", "Order materials from suppliers",
                                   "Arrange delivery schedules", "Coordinate with team members")},
        ],
    },
    {
        "position": 8, "name": "On-Site Preparation", "maps_to_status": "active", "kind": "standard",
        "min_duration_hours": 4, "max_duration_hours": 72,
        "description": "Site preparation and setup for construction",
        "questions": [
            {"text": "Is the site prepared for construction?", "response_type": "yes_no",
             "help_text": "Site cleared and ready for work to begin"},
            {"text": "Are all permits obtained?", "response_type": "yes_no",
             "help_text": "All required building permits and approvals"},
            {"text": "When will construction begin?", "response_type": "date",
             "help_text": "Actual construction start date"},
        ],
        "task_templates": [],
    },
    {
        "position": 9, "name": "Construction Execution", "maps_to_status": "active", "kind": "standard",
        "min_duration_hours": 40, "max_duration_hours": 2000,
        "description": "Main construction and building phase",
        "questions": [
            {"text": "Are there any variations so far?", "response_type": "yes_no",
             "help_text": "Changes to original scope during construction"},
            {"text": "What is the current completion percentage?", "response_type": "number",
             "help_text": "Estimated percentage of work completed"},
            {"text": "Upload progress photos", "response_type": "file_upload",
             "help_text": "Document construction progress"},
        ],
        "task_templates": [
            {"task_type": "documentation", "title": "Progress Documentation",
             "description": "Document construction progress", "priority": "normal", "auto_assign_to": "foreman",
             "upload_required": True,
             "subtasks": _subtasks("Take daily progress photos", "Update completion percentage",
                                   "Note any issues or delays", "Communicate with client")},
        ],
    },
    {
        "position": 10, "name": "Inspections & Progress Payments", "maps_to_status": "active", "kind": "milestone",
        "min_duration_hours": 2, "max_duration_hours": 48,
        "description": "Quality inspections and progress billing",
        "questions": [
            {"text": "Have inspections been passed?", "response_type": "yes_no",
             "help_text": "All required inspections completed successfully"},
            {"text": "Has progress payment been requested?", "response_type": "yes_no",
             "help_text": "Invoice sent for completed work"},
            {"text": "Upload inspection certificates", "response_type": "file_upload",
             "help_text": "Store inspection approval documents"},
        ],
        "task_templates": [],
    },
    {
        "position": 11, "name": "Finalisation", "maps_to_status": "active", "kind": "standard",
        "min_duration_hours": 8, "max_duration_hours": 120,
        "description": "Final touches and completion preparations",
        "questions": [
            {"text": "Are all finishing touches complete?", "response_type": "yes_no",
             "help_text": "Final details and cleanup completed"},
            {"text": "Is the final invoice prepared?", "response_type": "yes_no",
             "help_text": "Final billing ready for client"},
            {"text": "When is handover scheduled?", "response_type": "date",
             "help_text": "Scheduled date for project handover"},
        ],
        "task_templates": [],
    },
    {
        "position": 12, "name": "Handover & Close", "maps_to_status": "completed", "kind": "milestone",
        "min_duration_hours": 1, "max_duration_hours": 24,
        "description": "Final handover and project closure",
        "questions": [
            {"text": "Has the project been handed over to the client?", "response_type": "yes_no",
             "help_text": "Client has accepted completed project"},
            {"text": "Has final payment been received?", "response_type": "yes_no",
             "help_text": "All payments collected from client"},
            {"text": "Upload handover documentation", "response_type": "file_upload",
             "help_text": "Warranties, manuals, and completion certificates"},
        ],
        "task_templates": [
            {"task_type": "documentation", "title": "Project Handover Documentation",
             "description": "Complete project handover process", "priority": "high", "auto_assign_to": "creator",
             "upload_required": True,
             "subtasks": _subtasks("Prepare handover documentation", "Collect final payment",
                                   "Provide warranties and manuals", "Schedule follow-up check")},
        ],
    },
]

# (from position, to position, trigger, (stage position, question position), extra)
DEFAULT_TRANSITIONS = [
    (1, 2, "Yes", (1, 1), {}),
    (1, 12, "No", (1, 1), {"action": "close_as_unqualified", "is_automatic": False}),
    (2, 3, "Yes", (2, 1), {}),
    (3, 4, "Yes", (3, 2), {}),
    (4, 5, "Yes", (4, 1), {}),
    (5, 6, "Yes", (5, 1), {}),
    (5, 3, "No", (5, 1), {"action": "revise_quote", "is_automatic": False}),
    (6, 7, "Yes", (6, 2), {}),
    (7, 8, "Yes", (7, 3), {}),
    (8, 9, "Yes", (8, 2), {}),
    (9, 10, "90", (9, 2), {"condition": ">=90"}),
    (10, 11, "Yes", (10, 1), {}),
    (11, 12, "Yes", (11, 2), {}),
]


def seed_default_stages() -> int:
    """Create the global workflow unless global stages already exist.

    Returns:
        Number of stages created (0 when already seeded).
    """
    existing = db.session.execute(
        select(Stage.id).where(Stage.tenant_id.is_(None)).limit(1)
    ).first()
    if existing is not None:
        logger.info("Global stages already present; nothing seeded")
        return 0

    stages: dict[int, Stage] = {}
    questions: dict[tuple[int, int], int] = {}
    pending_skips = []

    for stage_def in DEFAULT_STAGES:
        fields = {k: v for k, v in stage_def.items() if k not in ("questions", "task_templates")}
        stage = stage_graph.create_stage(None, fields, commit=False)
        stages[stage.position] = stage
        for position, q in enumerate(stage_def["questions"], start=1):
            q_fields = {k: v for k, v in q.items() if k != "skip_if"}
            question = question_store.create_question(
                stage.id, None, {**q_fields, "position": position}, commit=False,
            )
            questions[(stage.position, position)] = question.id
            if q.get("skip_if"):
                pending_skips.append((question, q["skip_if"]))
        for tpl in stage_def["task_templates"]:
            question_store.create_task_template(stage.id, None, tpl, commit=False)

    for question, rules in pending_skips:
        question.skip_conditions = {
            "previous_responses": [
                {"question_id": questions[key], "response_value": value} for key, value in rules
            ]
        }

    for from_pos, to_pos, trigger, question_key, extra in DEFAULT_TRANSITIONS:
        stage_graph.create_transition(None, {
            "from_stage_id": stages[from_pos].id,
            "to_stage_id": stages[to_pos].id,
            "trigger_response": trigger,
            "question_id": questions[question_key],
            **extra,
        }, commit=False)

    db.session.commit()
    logger.info("Seeded %d global stages", len(stages))
    return len(stages)
