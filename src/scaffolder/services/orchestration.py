"""Client-facing actions over the conversation state machine.

``ScaffolderService`` owns one repository, one status bus and one model
client. Every action loads the conversation, applies pure state-machine
transitions, persists the result and reports progress on the conversation's
status channel. A terminal failure publishes a ``severity="error"`` status
event carrying the same message as the raised error.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..agents.consent import ConsentManager
from ..agents.executor import AGENT_SYSTEM_PROMPT, AgentExecutor, build_file_context
from ..agents.tools import AgentContext
from ..config import ScaffolderConfig
from ..core import state_machine as sm
from ..domain.models import (
    AnswerValue,
    ConversationState,
    GeneratedAppRecord,
    GenerationLogEntry,
    Message,
    Question,
    new_id,
)
from ..errors import ModelFailureError, ScaffolderError, ValidationError, wrap_error
from ..infrastructure.event_bus import StatusEventBus, StatusReporter, get_event_bus
from ..infrastructure.state_store import ScaffolderRepository, get_state_store
from ..observability.telemetry_sink import TelemetryEvent, record_event
from .code_generator import regenerate_app_code
from .fallback_generator import PAGE_FILE
from .generation_pipeline import run_generation
from .intent_parser import parse_intent
from .model_client import ModelClient
from .plan_generator import format_plan_message, generate_plan, plan_summary
from .question_engine import QuestionEngine
from .spec_builder import generate_preview_html, user_fields, validate_spec
from .streaming import CancellationToken

logger = logging.getLogger("scaffolder.service")

HISTORY_LIMIT = 20

DESIGN_CHAT_PROMPT = (
    "You are helping a user design a personal tracker app. Answer briefly and concretely. "
    "When the user asks for changes, describe what will change in the design."
)

SCAFFOLD_DEPENDENCIES = {
    "react": "^18.3.1",
    "react-dom": "^18.3.1",
    "lucide-react": "^0.462.0",
    "clsx": "^2.1.1",
    "tailwind-merge": "^2.5.2",
    "zod": "^3.23.8",
    "react-hook-form": "^7.53.0",
    "date-fns": "^3.6.0",
    "recharts": "^2.12.7",
}


def default_package_json(name: str) -> Dict[str, Any]:
    slug = "-".join(name.lower().split()) or "generated-app"
    return {
        "name": slug,
        "private": True,
        "version": "0.1.0",
        "dependencies": dict(SCAFFOLD_DEPENDENCIES),
        "devDependencies": {"typescript": "^5.5.3"},
    }


def _question_prompt(question: Question) -> str:
    text = question.text
    if question.options:
        text += "\n" + "\n".join(f"- {o.label}" for o in question.options)
    return text


def _answer_text(question: Optional[Question], answer: AnswerValue) -> str:
    values = answer if isinstance(answer, list) else [answer]
    if question is not None:
        labels = {o.id: o.label for o in question.options}
        values = [labels.get(v, v) for v in values]
    return ", ".join(str(v) for v in values)


def _spec_message(state: ConversationState) -> str:
    spec = state.spec
    fields = ", ".join(f.label for f in user_fields(spec))
    views = ", ".join(v.title for v in spec.views)
    lines = [
        f"Here's the design for **{spec.name}**.",
        "",
        spec.description,
        "",
        f"**Fields:** {fields}",
        f"**Views:** {views}",
    ]
    if state.proposals:
        lines += ["", "Pick a layout to continue:"]
        lines += [f"- **{p.title}**: {p.description}" for p in state.proposals]
    return "\n".join(lines)


class ScaffolderService:
    def __init__(
        self,
        repository: ScaffolderRepository,
        bus: StatusEventBus,
        *,
        config: Optional[ScaffolderConfig] = None,
        client: Optional[ModelClient] = None,
        consent: Optional[ConsentManager] = None,
    ) -> None:
        self.repository = repository
        self.bus = bus
        self.config = config or ScaffolderConfig.from_env()
        self.client = client or ModelClient()
        self.questions = QuestionEngine(max_questions=self.config.max_questions)
        self.consent = consent or ConsentManager(notify=self._publish_consent)
        self._cancels: Dict[str, CancellationToken] = {}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def reporter(self, channel_id: str) -> StatusReporter:
        return StatusReporter(self.bus, channel_id)

    def _publish_consent(self, request: Any) -> None:
        self.bus.publish(request.conversation_id, request.to_dict())

    def _fail(self, reporter: StatusReporter, exc: BaseException, phase: str) -> ScaffolderError:
        err = wrap_error(exc, phase)
        reporter.emit(
            phase,
            err.message,
            severity="error",
            progress=100,
            technical_details=None if self.config.is_production else err.technical_details,
        )
        logger.warning("action_failed", extra={"channel_id": reporter.channel_id, "code": err.code, "err": err.message})
        return err

    def _checkpoint(self, state: ConversationState, label: str) -> ConversationState:
        return sm.create_checkpoint(state, label, max_checkpoints=self.config.max_checkpoints)

    def _track(self, name: str, state: ConversationState, **properties: Any) -> None:
        record_event(TelemetryEvent(name=name, properties=properties, conversation_id=state.id, actor=state.owner_id))

    def _token(self, key: str) -> CancellationToken:
        token = CancellationToken()
        self._cancels[key] = token
        return token

    def cancel(self, key: str, reason: str = "Cancelled by user") -> bool:
        """Abort the build or agent turn running for a conversation or app id."""
        self.consent.cancel(key)
        token = self._cancels.get(key)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def get_conversation(self, conversation_id: str) -> ConversationState:
        return self.repository.load_conversation(conversation_id)

    def get_app(self, app_id: str) -> GeneratedAppRecord:
        return self.repository.load_app(app_id)

    def preview_html(self, conversation_id: str) -> str:
        state = self.repository.load_conversation(conversation_id)
        if state.spec is None:
            raise ValidationError(["No specification has been designed yet"], phase=state.phase)
        return generate_preview_html(state.spec)

    # ------------------------------------------------------------------
    # start / answer
    # ------------------------------------------------------------------
    async def start(
        self,
        initial_message: str,
        *,
        owner_id: str = "anonymous",
        channel_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Parse the idea, prepare clarification questions and open the conversation.

        ``channel_id`` is a temporary status channel the client may already be
        listening on; its events are moved to the conversation id afterwards.
        """
        state = ConversationState(owner_id=owner_id)
        reporter = self.reporter(channel_id or state.id)
        try:
            text = (initial_message or "").strip()
            if not text:
                raise ValidationError(["Please describe the app you want to build"], phase="intake")
            reporter.emit("intake", "Understanding your idea...", progress=10)
            state = sm.add_message(state, "user", text)
            intent = await parse_intent(text, self.client)
            reporter.emit("intake", "Preparing a few questions...", progress=60)
            state.intent = intent
            state.questions = self.questions.generate_questions(intent)
            state = sm.advance_phase(state)
            first = state.questions[0]
            state = sm.add_message(
                state,
                "assistant",
                f"Great, let's build **{intent.suggested_name}**. A few quick questions first.\n\n"
                + _question_prompt(first),
                {"questionId": first.id},
            )
            self.repository.save_conversation(state)
        except Exception as exc:
            raise self._fail(reporter, exc, "intake") from exc
        reporter.emit("intake", "Ready for your answers", severity="success", progress=100)
        if channel_id and channel_id != state.id:
            self.bus.transfer(channel_id, state.id)
        self._track("conversation_started", state, category=state.intent.category, questions=len(state.questions))
        return {"conversationId": state.id, "messages": state.messages, "state": state}

    async def answer(self, conversation_id: str, question_id: str, answer: AnswerValue) -> Dict[str, Any]:
        reporter = self.reporter(conversation_id)
        try:
            state = self.repository.load_conversation(conversation_id)
            question = next((q for q in state.questions if q.id == question_id), None)
            if question is not None:
                check = self.questions.validate_answer(question, answer)
                if not check.valid:
                    raise ValidationError([check.error or "Invalid answer"], phase=state.phase)
            state = self._checkpoint(state, f"Answer {question_id}")
            state = sm.add_message(state, "user", _answer_text(question, answer), {"questionId": question_id})
            state, known = sm.record_answer(state, question_id, answer)

            if state.intent is not None and state.phase == "clarification":
                seen = {q.id for q in state.questions}
                for q in self.questions.generate_questions(state.intent, state.answers):
                    if q.id not in seen:
                        state.questions.append(q)

            pending = QuestionEngine.next_question(state.questions, state.answers)
            if pending is not None:
                state = sm.add_message(state, "assistant", _question_prompt(pending), {"questionId": pending.id})
            elif state.phase == "clarification":
                reporter.emit("design", "Designing your app...", progress=40)
                state = sm.advance_phase(state)
                state = sm.add_message(state, "assistant", _spec_message(state), {"proposals": len(state.proposals)})
                reporter.emit("design", "Design ready", severity="success", progress=100)
            self.repository.save_conversation(state)
        except Exception as exc:
            raise self._fail(reporter, exc, "clarification") from exc
        self._track("question_answered", state, question_id=question_id, known=known)
        return {"messages": state.messages, "state": state, "knownQuestion": known}

    # ------------------------------------------------------------------
    # design-time actions
    # ------------------------------------------------------------------
    async def select_proposal(self, conversation_id: str, proposal_id: str) -> Dict[str, Any]:
        reporter = self.reporter(conversation_id)
        try:
            state = self.repository.load_conversation(conversation_id)
            proposal = next((p for p in state.proposals if p.id == proposal_id), None)
            label = proposal.title if proposal is not None else proposal_id
            state = self._checkpoint(state, f"Select {label}")
            state = sm.select_proposal(state, proposal_id, boost=self.config.proposal_boost)
            state = sm.add_message(
                state,
                "assistant",
                f"Applied **{label}**. Readiness is now {state.readiness.overall}/100.",
                {"proposalId": proposal_id},
            )
            self.repository.save_conversation(state)
        except Exception as exc:
            raise self._fail(reporter, exc, "design") from exc
        reporter.emit("design", f"Applied {label}", severity="success", progress=100)
        self._track("proposal_selected", state, proposal_id=proposal_id, overall=state.readiness.overall)
        return {"messages": state.messages, "state": state}

    async def undo(self, conversation_id: str) -> Dict[str, Any]:
        reporter = self.reporter(conversation_id)
        try:
            state = self.repository.load_conversation(conversation_id)
            state, restored, notice = sm.undo(state)
            state = sm.add_message(state, "system", notice, {"undo": restored is not None})
            self.repository.save_conversation(state)
        except Exception as exc:
            raise self._fail(reporter, exc, "design") from exc
        self._track("undo", state, restored=restored is not None)
        return {"messages": state.messages, "state": state, "restored": restored is not None, "notice": notice}

    # ------------------------------------------------------------------
    # build
    # ------------------------------------------------------------------
    async def _plan(self, state: ConversationState, reporter: StatusReporter) -> ConversationState:
        plan = await generate_plan(state.spec, reporter.scoped(0, 25), self.client)
        state = sm.advance_phase(state, plan=plan)
        self._track("plan_generated", state, **plan_summary(plan))
        return sm.add_message(state, "assistant", format_plan_message(plan), {"plan": True})

    async def finalize(self, conversation_id: str) -> Dict[str, Any]:
        """Plan (when still in design), generate and persist the app."""
        reporter = self.reporter(conversation_id)
        cancel = self._token(conversation_id)
        building = False
        try:
            state = self.repository.load_conversation(conversation_id)
            if state.phase in ("intake", "clarification"):
                raise ValidationError(
                    [f"Please answer all questions first ({', '.join(sm.unanswered_questions(state)) or 'none'})"],
                    phase=state.phase,
                )
            if state.phase == "build":
                raise ValidationError(["A build is already in progress"], phase=state.phase)
            if state.phase == "complete":
                raise ValidationError(["This app has already been built; use regenerate instead"], phase=state.phase)
            errors, warnings = validate_spec(state.spec)
            if errors:
                raise ValidationError(errors, warnings, phase=state.phase)
            if state.phase == "design":
                state = await self._plan(state, reporter)
            if not sm.is_ready_to_build(state):
                reporter.emit(
                    "build",
                    f"Building with readiness {state.readiness.overall}/100",
                    severity="warning",
                    progress=25,
                )
            state = self._checkpoint(state, "Build app")
            state = sm.advance_phase(state)
            self.repository.save_conversation(state)
            building = True
            record = await self._build(state, reporter, cancel)
        except Exception as exc:
            if building:
                self._rollback_build(conversation_id)
            raise self._fail(reporter, exc, "build") from exc
        finally:
            self._cancels.pop(conversation_id, None)
        return record

    def _rollback_build(self, conversation_id: str) -> None:
        try:
            state = self.repository.load_conversation(conversation_id)
            if state.phase != "build":
                return
            state, _, _ = sm.undo(state)
            state = sm.add_message(state, "system", "The build failed; your design was kept.")
            self.repository.save_conversation(state)
        except ScaffolderError as exc:
            logger.warning("build_rollback_failed", extra={"conversation_id": conversation_id, "err": exc.message})

    async def _build(self, state: ConversationState, reporter: StatusReporter, cancel: CancellationToken) -> Dict[str, Any]:
        app_id = new_id("app")
        await self.bus.wait_for_connection(state.id, self.config.connect_wait_seconds)
        reporter.emit("build", "Starting code generation...", progress=25)
        result = await run_generation(
            state.spec,
            app_id,
            reporter,
            client=self.client,
            cancel=cancel,
            verify_quality=self.config.quality_enabled,
        )
        record = GeneratedAppRecord(
            id=app_id,
            conversation_id=state.id,
            owner_id=state.owner_id,
            name=state.spec.name,
            description=state.spec.description,
            spec=state.spec,
            layout=state.layout,
            files=result.files,
            package_json=default_package_json(state.spec.name),
            generation_log=result.log,
            build_status=result.build_status,
            quality_score=result.quality_score,
            used_fallback=result.used_fallback,
        )
        self.repository.save_app(record)

        # messages queued by chat() while the build ran live only in the stored copy
        latest = self.repository.load_conversation(state.id)
        state.pending_user_messages = list(latest.pending_user_messages)
        state.app_id = app_id
        if result.cancelled:
            state, _, _ = sm.undo(state)
            state.app_id = app_id
            state = sm.add_message(state, "assistant", "Build cancelled. Partial code was saved.", {"appId": app_id})
        else:
            state = sm.advance_phase(state)
            note = " (built from templates because the AI service was unavailable)" if result.used_fallback else ""
            state = sm.add_message(state, "assistant", f"Your app is ready!{note}", {"appId": app_id})
        state, pending = sm.drain_pending_messages(state)
        self.repository.save_conversation(state)

        if not result.cancelled:
            reporter.emit("build", "Your app is ready!", severity="success", progress=100)
        self._track(
            "app_built",
            state,
            app_id=app_id,
            status=result.build_status,
            used_fallback=result.used_fallback,
            queued_messages=len(pending),
        )
        return {"appId": app_id, "app": record, "state": state, "messages": state.messages}

    async def regenerate(self, app_id: str, issues: str) -> Dict[str, Any]:
        """Regenerate the page with the reported issues; keeps the old code if the model is unavailable."""
        # errors go to the app id channel until the record names its conversation
        channel = app_id
        reporter = self.reporter(channel)
        cancel = None
        try:
            record = self.repository.load_app(app_id)
            if record.conversation_id:
                channel = record.conversation_id
                reporter = self.reporter(channel)
            cancel = self._token(channel)
            if not (issues or "").strip():
                raise ValidationError(["Please describe what should be fixed"], phase="build")
            previous = record.files.get(PAGE_FILE, "")
            source = regenerate_app_code(record.spec, app_id, previous, issues, client=self.client, cancel=cancel)
            result = await run_generation(
                record.spec,
                app_id,
                reporter,
                source=source,
                cancel=cancel,
                verify_quality=self.config.quality_enabled,
            )
            record.generation_log.append(GenerationLogEntry(message=f"Regeneration requested: {issues[:200]}"))
            record.generation_log.extend(result.log)
            if result.cancelled:
                record.generation_log.append(GenerationLogEntry(level="warning", message="Regeneration cancelled"))
            elif result.used_fallback and previous:
                record.generation_log.append(
                    GenerationLogEntry(level="warning", message="Regeneration failed; kept previous code")
                )
            else:
                record.files.update(result.files)
                record.build_status = result.build_status
                record.quality_score = result.quality_score
                record.used_fallback = result.used_fallback
            self.repository.save_app(record)
        except Exception as exc:
            raise self._fail(reporter, exc, "build") from exc
        finally:
            if cancel is not None:
                self._cancels.pop(channel, None)
        if not result.cancelled:
            reporter.emit("build", "Regeneration complete", severity="success", progress=100)
        logger.info("app_regenerated", extra={"app_id": app_id, "used_fallback": result.used_fallback})
        return {"appId": app_id, "app": record, "usedFallback": result.used_fallback}

    # ------------------------------------------------------------------
    # chat
    # ------------------------------------------------------------------
    async def chat(self, conversation_id: str, message: str) -> Dict[str, Any]:
        reporter = self.reporter(conversation_id)
        try:
            state = self.repository.load_conversation(conversation_id)
            text = (message or "").strip()
            if not text:
                raise ValidationError(["Message cannot be empty"], phase=state.phase)
            if state.phase == "build":
                state = sm.queue_user_message(state, text)
                self.repository.save_conversation(state)
                return {"messages": state.messages, "state": state, "queued": True}

            state = self._checkpoint(state, f"Chat: {text[:40]}")
            state = sm.add_message(state, "user", text)
            if state.phase == "complete" and state.app_id:
                state, manifest = await self._agent_turn(state, reporter)
            else:
                state = await self._design_reply(state)
                manifest = None
            self.repository.save_conversation(state)
        except Exception as exc:
            raise self._fail(reporter, exc, "chat") from exc
        return {"messages": state.messages, "state": state, "queued": False, "changes": manifest}

    def _history(self, state: ConversationState) -> List[Dict[str, str]]:
        recent: List[Message] = [m for m in state.messages if m.role in ("user", "assistant")][-HISTORY_LIMIT:]
        return [{"role": m.role, "content": m.content} for m in recent]

    async def _design_reply(self, state: ConversationState) -> ConversationState:
        context = DESIGN_CHAT_PROMPT
        if state.spec is not None:
            context += f"\n\nCurrent design: {state.spec.model_dump_json()}"
        try:
            reply = await self.client.acomplete([{"role": "system", "content": context}] + self._history(state))
        except ModelFailureError as exc:
            logger.info("chat_fallback_reply", extra={"conversation_id": state.id, "err": exc.message})
            pending = QuestionEngine.next_question(state.questions, state.answers)
            reply = "Noted. " + (_question_prompt(pending) if pending is not None else "Tell me what you'd like to change.")
        return sm.add_message(state, "assistant", reply)

    async def _agent_turn(self, state: ConversationState, reporter: StatusReporter):
        app = self.repository.load_app(state.app_id)
        cancel = self._token(state.id)
        ctx = AgentContext(
            files=dict(app.files),
            package_json=dict(app.package_json),
            chat_summary=app.chat_summary,
            conversation_id=state.id,
        )

        def commit(context: AgentContext, manifest: Any) -> None:
            app.files = dict(context.files)
            app.package_json = dict(context.package_json)
            app.chat_summary = context.chat_summary
            app.generation_log.append(
                GenerationLogEntry(message=f"Agent changes: {context.chat_summary or len(manifest.tool_executions)}")
            )
            self.repository.save_app(app)

        executor = AgentExecutor(consent=self.consent, commit=commit, reporter=reporter)
        messages = [
            {"role": "system", "content": AGENT_SYSTEM_PROMPT},
            {"role": "system", "content": build_file_context(ctx.files, ctx.package_json)},
        ] + self._history(state)
        reporter.emit("build", "Working on your changes...", progress=10)
        try:
            turn = await executor.run_stream(
                self.client.stream_complete(messages, purpose="codegen", cancel=cancel), ctx, cancel=cancel
            )
        except ModelFailureError as exc:
            self._cancels.pop(state.id, None)
            reporter.emit("build", "AI service unavailable; no changes were made", severity="warning", progress=100)
            reply = "I couldn't reach the AI service, so nothing was changed. Please try again in a moment."
            logger.info("agent_turn_unavailable", extra={"conversation_id": state.id, "err": exc.message})
            return sm.add_message(state, "assistant", reply), None

        self._cancels.pop(state.id, None)
        manifest = turn.manifest
        reply = turn.prose or turn.chat_summary or "Done."
        state = sm.add_message(state, "assistant", reply, {"changes": manifest.model_dump()})
        severity = "warning" if manifest.errors or manifest.warnings else "success"
        reporter.emit(
            "build",
            turn.chat_summary or ("Changes applied" if manifest.has_changes else "No changes needed"),
            severity=severity,
            progress=100,
            technical_details="; ".join(manifest.errors + manifest.warnings) or None,
        )
        self._track(
            "agent_turn",
            state,
            created=len(manifest.created_files),
            modified=len(manifest.modified_files),
            errors=len(manifest.errors),
        )
        return state, manifest


_service: Optional[ScaffolderService] = None


def get_scaffolder_service() -> ScaffolderService:
    global _service
    if _service is None:
        _service = ScaffolderService(ScaffolderRepository(get_state_store()), get_event_bus())
    return _service
