import pytest

from src.scaffolder.core import state_machine as sm
from src.scaffolder.domain.models import ConversationState, Question, Readiness
from src.scaffolder.errors import NotFoundError, ValidationError
from src.scaffolder.services.intent_parser import keyword_intent
from src.scaffolder.services.question_engine import QuestionEngine


def answer_for(question: Question, engine: QuestionEngine, category: str):
    """A valid answer: the template default, else the first options."""
    defaults = engine.default_answers(category)
    if question.id in defaults:
        return defaults[question.id]
    ids = [o.id for o in question.options]
    if question.type == "single":
        return ids[0]
    return ids[:2]


def _clarification_state(prompt="track my coffee shop orders"):
    engine = QuestionEngine()
    intent = keyword_intent(prompt)
    state = ConversationState(intent=intent, questions=engine.generate_questions(intent))
    return sm.advance_phase(state), engine


def _design_state():
    state, engine = _clarification_state()
    for q in state.questions:
        state, _ = sm.record_answer(state, q.id, answer_for(q, engine, state.intent.category))
    return sm.advance_phase(state)


def test_compute_overall_is_weighted_and_rounded():
    assert sm.compute_overall(80, 80, 50) == 74
    assert sm.compute_overall(100, 100, 100) == 100
    assert sm.compute_overall(0, 0, 0) == 0


def test_readiness_never_decreases_and_is_clamped():
    state = ConversationState(readiness=Readiness(schema=60, ui=40, workflow=10, overall=42))
    lowered = sm.update_readiness(state, {"schema": -30})
    assert lowered.readiness.schema == 60
    raised = sm.update_readiness(state, {"schema": 80, "ui": 10})
    assert raised.readiness.schema == 100
    assert raised.readiness.ui == 50
    assert raised.readiness.overall == sm.compute_overall(100, 50, 10)
    # input is never mutated
    assert state.readiness.schema == 60


def test_invalid_transition_is_rejected():
    with pytest.raises(ValidationError):
        sm.transition(ConversationState(), "build")


def test_phase_from_readiness_thresholds():
    assert sm.phase_from_readiness(10) == "intake"
    assert sm.phase_from_readiness(45) == "design"
    assert sm.phase_from_readiness(80) == "build"


def test_clarification_requires_all_answers():
    state, _ = _clarification_state()
    assert state.phase == "clarification"
    with pytest.raises(ValidationError) as exc:
        sm.advance_phase(state)
    assert "Please answer all questions first" in exc.value.message


def test_answers_produce_spec_proposals_and_readiness():
    state = _design_state()
    assert state.phase == "design"
    assert state.spec is not None
    assert [f.name for f in state.spec.data_store.fields] == ["taskName", "status", "priority", "dueDate"]
    assert state.proposals
    assert state.readiness.schema > 0 and state.readiness.ui > 0
    assert state.readiness.workflow == 50


def test_planning_uses_fallback_plan_and_raises_workflow():
    state = sm.advance_phase(_design_state())
    assert state.phase == "planning"
    assert state.plan is not None
    assert state.readiness.workflow >= sm.PLANNING_WORKFLOW_READINESS


def test_unknown_answer_is_recorded_and_flagged():
    state, _ = _clarification_state()
    result = sm.record_answer(state, "q_mystery", "yes")
    assert result.known_question is False
    assert result.state.answers["q_mystery"] == "yes"
    assert "q_mystery" in result.state.unknown_answer_ids


def test_undo_restores_snapshot_but_keeps_messages():
    state = _design_state()
    original_name = state.spec.name
    state = sm.create_checkpoint(state, "Rename")
    state.spec.name = "Renamed"
    state = sm.add_message(state, "user", "rename it")
    restored, checkpoint, notice = sm.undo(state)
    assert restored.spec.name == original_name
    assert checkpoint.label == "Rename"
    assert notice == "Restored to before: Rename"
    assert restored.messages[-1].content == "rename it"
    assert restored.checkpoints == []


def test_undo_without_checkpoint_is_a_noop():
    state = ConversationState()
    result = sm.undo(state)
    assert result.restored is None
    assert result.notice == "Nothing to undo yet."


def test_checkpoints_are_capped():
    state = ConversationState()
    for i in range(5):
        state = sm.create_checkpoint(state, f"cp {i}", max_checkpoints=3)
    assert [c.label for c in state.checkpoints] == ["cp 2", "cp 3", "cp 4"]


def test_select_proposal_applies_layout_and_workflows():
    state = _design_state()
    before = state.readiness
    selected = sm.select_proposal(state, "proposal-dashboard")
    assert selected.layout is not None
    assert selected.workflows[0]["id"] == "wf-refresh-stats"
    assert selected.readiness.workflow == before.workflow + sm.PROPOSAL_BOOST
    assert selected.readiness.ui >= before.ui
    assert selected.proposals == []


def test_select_unknown_proposal_raises_not_found():
    with pytest.raises(NotFoundError):
        sm.select_proposal(_design_state(), "proposal-nope")


def test_queued_messages_drain_in_order():
    state = ConversationState(phase="build")
    state = sm.queue_user_message(state, "first")
    state = sm.queue_user_message(state, "second")
    drained, pending = sm.drain_pending_messages(state)
    assert [m.content for m in pending] == ["first", "second"]
    assert drained.pending_user_messages == []
    assert [m.content for m in drained.messages] == ["first", "second"]


def test_is_ready_to_build_threshold():
    assert sm.is_ready_to_build(ConversationState(readiness=Readiness(overall=80))) is True
    assert sm.is_ready_to_build(ConversationState(readiness=Readiness(overall=79))) is False
