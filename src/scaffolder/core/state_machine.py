"""Conversation phase graph, readiness scoring and checkpoint/undo.

Every operation takes a ``ConversationState`` and returns a new one; the
input is never mutated, so callers can compare before/after and tests can
hold on to earlier states.
"""
from __future__ import annotations

import logging
from typing import Dict, List, NamedTuple, Optional

from ..domain.models import (
    AnswerValue,
    Checkpoint,
    ConversationState,
    ImplementationPlan,
    Message,
    Readiness,
    utc_now_iso,
)
from ..errors import NotFoundError, ValidationError
from ..services.plan_generator import build_fallback_plan
from ..services.proposals import generate_proposals
from ..services.question_engine import QuestionEngine
from ..services.spec_builder import build_spec_from_answers, readiness_for_spec

logger = logging.getLogger("scaffolder.state")

PHASES: List[str] = ["intake", "clarification", "design", "planning", "build", "complete"]

PHASE_TRANSITIONS: Dict[str, List[str]] = {
    "intake": ["clarification"],
    "clarification": ["design"],
    "design": ["planning"],
    "planning": ["build"],
    "build": ["complete"],
    "complete": [],
}

READINESS_DIMENSIONS = ("schema", "ui", "workflow")
BUILD_READY_THRESHOLD = 80
MAX_CHECKPOINTS = 10
PROPOSAL_BOOST = 20
PLANNING_WORKFLOW_READINESS = 80

# fields captured by a checkpoint; everything else (messages, answers) is left alone by undo
SNAPSHOT_FIELDS = ("spec", "plan", "layout", "workflows", "readiness", "phase")


class AnswerResult(NamedTuple):
    state: ConversationState
    known_question: bool


class UndoResult(NamedTuple):
    state: ConversationState
    restored: Optional[Checkpoint]
    notice: Optional[str]


def next_phase(current: str) -> Optional[str]:
    options = PHASE_TRANSITIONS.get(current, [])
    return options[0] if options else None


def is_valid_transition(current: str, target: str) -> bool:
    return target in PHASE_TRANSITIONS.get(current, [])


def _copy(state: ConversationState) -> ConversationState:
    new = state.model_copy(deep=True)
    new.updated_at = utc_now_iso()
    return new


def transition(state: ConversationState, target: str) -> ConversationState:
    if not is_valid_transition(state.phase, target):
        raise ValidationError([f"Cannot move from {state.phase} to {target}"], phase=state.phase)
    new = _copy(state)
    new.phase = target
    logger.info("phase_transition", extra={"conversation_id": state.id, "from": state.phase, "to": target})
    return new


# ----------------------------------------------------------------------
# Readiness
# ----------------------------------------------------------------------
def _clamp(value: int) -> int:
    return max(0, min(100, int(value)))


def compute_overall(schema: int, ui: int, workflow: int) -> int:
    """Weighted 40/40/20, rounded half up (integer arithmetic keeps it exact)."""
    return (4 * schema + 4 * ui + 2 * workflow + 5) // 10


def _with_scores(schema: int, ui: int, workflow: int) -> Readiness:
    schema, ui, workflow = _clamp(schema), _clamp(ui), _clamp(workflow)
    return Readiness(schema=schema, ui=ui, workflow=workflow, overall=compute_overall(schema, ui, workflow))


def update_readiness(state: ConversationState, delta: Dict[str, int]) -> ConversationState:
    """Add non-negative increments per dimension; scores never go down and stay within 0..100."""
    r = state.readiness
    inc = {k: max(0, int(delta.get(k, 0))) for k in READINESS_DIMENSIONS}
    new = _copy(state)
    new.readiness = _with_scores(r.schema + inc["schema"], r.ui + inc["ui"], r.workflow + inc["workflow"])
    return new


def raise_readiness_to(state: ConversationState, targets: Dict[str, int]) -> ConversationState:
    r = state.readiness
    delta = {k: max(0, int(targets.get(k, 0)) - getattr(r, k)) for k in READINESS_DIMENSIONS}
    return update_readiness(state, delta)


def phase_from_readiness(overall: int) -> str:
    if overall < 20:
        return "intake"
    if overall < 40:
        return "clarification"
    if overall < 60:
        return "design"
    if overall < 80:
        return "planning"
    return "build"


def is_ready_to_build(state: ConversationState) -> bool:
    return state.readiness.overall >= BUILD_READY_THRESHOLD


# ----------------------------------------------------------------------
# Messages and answers
# ----------------------------------------------------------------------
def add_message(
    state: ConversationState,
    role: str,
    content: str,
    metadata: Optional[Dict] = None,
) -> ConversationState:
    new = _copy(state)
    new.messages.append(Message(role=role, content=content, metadata=dict(metadata or {}, phase=state.phase)))
    return new


def queue_user_message(state: ConversationState, content: str) -> ConversationState:
    """Hold a message that arrived mid-build; it is replayed in order on the next model step."""
    new = _copy(state)
    new.pending_user_messages.append(Message(role="user", content=content, metadata={"queued": True}))
    logger.info("user_message_queued", extra={"conversation_id": state.id, "pending": len(new.pending_user_messages)})
    return new


def drain_pending_messages(state: ConversationState) -> tuple[ConversationState, List[Message]]:
    new = _copy(state)
    pending = list(new.pending_user_messages)
    new.pending_user_messages = []
    new.messages.extend(pending)
    return new, pending


def record_answer(state: ConversationState, question_id: str, answer: AnswerValue) -> AnswerResult:
    """Store an answer; unknown question ids are still recorded but reported."""
    new = _copy(state)
    known = False
    for q in new.questions:
        if q.id == question_id:
            q.answered = True
            known = True
    new.answers[question_id] = answer
    if not known:
        if question_id not in new.unknown_answer_ids:
            new.unknown_answer_ids.append(question_id)
        logger.warning(
            "answer_unknown_question",
            extra={"conversation_id": state.id, "question_id": question_id, "known": [q.id for q in state.questions]},
        )
    return AnswerResult(new, known)


def unanswered_questions(state: ConversationState) -> List[str]:
    return [q.id for q in state.questions if not QuestionEngine.all_answered([q], state.answers)]


# ----------------------------------------------------------------------
# Phase advancement
# ----------------------------------------------------------------------
def advance_phase(
    state: ConversationState,
    *,
    regenerate: bool = False,
    plan: Optional[ImplementationPlan] = None,
) -> ConversationState:
    """Move to the next phase, synthesizing whatever the next phase needs.

    The spec and plan are derived deterministically from the accumulated
    answers; an existing spec or plan is kept unless ``regenerate`` is set.
    A model-produced ``plan`` may be supplied for the design -> planning step.
    """
    target = next_phase(state.phase)
    if target is None:
        raise ValidationError([f"Conversation is already {state.phase}"], phase=state.phase)

    if state.phase == "intake" and not state.questions:
        raise ValidationError(["No clarification questions have been prepared"], phase=state.phase)

    if state.phase == "clarification":
        pending = unanswered_questions(state)
        if pending:
            raise ValidationError(
                [f"Please answer all questions first ({', '.join(pending)})"],
                phase=state.phase,
            )
        if state.intent is None:
            raise ValidationError(["Cannot build a specification without a parsed intent"], phase=state.phase)
        new = transition(state, target)
        if new.spec is None or regenerate:
            new.spec = build_spec_from_answers(new.intent, new.answers, new.questions)
        if not new.proposals:
            new.proposals = generate_proposals(new.spec)
        return raise_readiness_to(new, readiness_for_spec(new.spec))

    if state.phase == "design":
        if state.spec is None:
            raise ValidationError(["No specification has been designed yet"], phase=state.phase)
        new = transition(state, target)
        if plan is not None:
            new.plan = plan
        elif new.plan is None or regenerate:
            new.plan = build_fallback_plan(new.spec)
        return raise_readiness_to(new, {"workflow": PLANNING_WORKFLOW_READINESS})

    return transition(state, target)


# ----------------------------------------------------------------------
# Checkpoints
# ----------------------------------------------------------------------
def create_checkpoint(state: ConversationState, label: str, max_checkpoints: int = MAX_CHECKPOINTS) -> ConversationState:
    dumped = state.model_dump(mode="json")
    snapshot = {name: dumped.get(name) for name in SNAPSHOT_FIELDS}
    new = _copy(state)
    new.checkpoints.append(Checkpoint(label=label, snapshot=snapshot))
    if len(new.checkpoints) > max_checkpoints:
        new.checkpoints = new.checkpoints[-max_checkpoints:]
    return new


def undo(state: ConversationState) -> UndoResult:
    if not state.checkpoints:
        return UndoResult(state, None, "Nothing to undo yet.")
    new = _copy(state)
    checkpoint = new.checkpoints.pop()
    restored = ConversationState.model_validate({**new.model_dump(mode="json"), **checkpoint.snapshot})
    for name in SNAPSHOT_FIELDS:
        setattr(new, name, getattr(restored, name))
    logger.info("checkpoint_restored", extra={"conversation_id": state.id, "label": checkpoint.label})
    return UndoResult(new, checkpoint, f"Restored to before: {checkpoint.label}")


# ----------------------------------------------------------------------
# Proposals
# ----------------------------------------------------------------------
def select_proposal(state: ConversationState, proposal_id: str, boost: int = PROPOSAL_BOOST) -> ConversationState:
    proposal = next((p for p in state.proposals if p.id == proposal_id), None)
    if proposal is None:
        raise NotFoundError("Proposal", proposal_id)
    new = _copy(state)
    delta = {"schema": 0, "ui": 0, "workflow": 0}
    if proposal.fields and new.spec is not None:
        existing = {f.name for f in new.spec.data_store.fields}
        added = [f for f in proposal.fields if f.name not in existing]
        new.spec.data_store.fields.extend(f.model_copy(deep=True) for f in added)
        if added:
            delta["schema"] = boost
    if proposal.layout is not None:
        new.layout = dict(proposal.layout)
        delta["ui"] = boost
    if proposal.workflows:
        known = {w.get("id") for w in new.workflows}
        new.workflows.extend(dict(w) for w in proposal.workflows if w.get("id") not in known)
        delta["workflow"] = boost
    new.proposals = []
    logger.info("proposal_selected", extra={"conversation_id": state.id, "proposal_id": proposal_id})
    return update_readiness(new, delta)
