"""Runs directive tags from model output against an app's working files.

Directives execute strictly in the order they appear. Each one is resolved
to a registered tool, checked against read-only mode and consent, executed,
and its effect recorded on an :class:`AgentChangeManifest`. A failing
directive is logged and skipped; the rest of the turn still runs.
"""
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Mapping, Optional

from ..domain.models import AgentChangeManifest, ToolExecution
from ..errors import ScaffolderError
from ..infrastructure.event_bus import StatusReporter
from ..observability.metrics import DIRECTIVE_EXECUTIONS
from ..services.streaming import CancellationToken
from .consent import ConsentManager
from .directives import Directive, DirectiveStreamParser, parse_directives, strip_directives
from .tools import (
    CONSENT_ASK,
    CONSENT_NEVER,
    DIRECTIVE_TOOLS,
    AgentContext,
    directive_arguments,
    get_tool,
    normalize_path,
)

logger = logging.getLogger("scaffolder.agents")

# tags that only annotate the transcript for the UI
IGNORED_DIRECTIVES = frozenset({"command"})

MAX_CONTEXT_FILE_BYTES = 50_000
_ARG_PREVIEW_LIMIT = 200

CommitHook = Callable[[AgentContext, AgentChangeManifest], Any]


AGENT_SYSTEM_PROMPT = """You are an expert React developer editing an existing generated app.

Reply in plain prose and express every change as a directive tag:
- <scaffold-write path="src/file.tsx">full file content</scaffold-write> to create or replace a file
- <scaffold-edit path="src/file.tsx">edit using // ... existing code ... markers</scaffold-edit>
- <scaffold-delete path="src/file.tsx" />
- <scaffold-rename from="src/old.tsx" to="src/new.tsx" />
- <scaffold-add-dependency packages="pkg-a pkg-b" />
- <scaffold-chat-summary>one line describing this change</scaffold-chat-summary>

Only touch files that need to change. Always finish with a chat-summary."""


def build_file_context(files: Mapping[str, str], package_json: Optional[Mapping[str, Any]] = None) -> str:
    """Render the working files as prompt context, skipping oversized files."""
    parts = ["<current_codebase>"]
    for path in sorted(files):
        content = files[path]
        if len(content.encode("utf-8")) > MAX_CONTEXT_FILE_BYTES:
            continue
        parts.append(f'<file path="{path}">\n{content}\n</file>')
    parts.append("</current_codebase>")
    if package_json:
        deps = {**(package_json.get("dependencies") or {}), **(package_json.get("devDependencies") or {})}
        if deps:
            parts.append("\nInstalled dependencies: " + ", ".join(sorted(deps)))
    return "\n".join(parts)


@dataclass
class AgentTurnResult:
    full_response: str
    prose: str
    manifest: AgentChangeManifest
    files: Dict[str, str]
    package_json: Dict[str, Any]
    chat_summary: Optional[str] = None
    cancelled: bool = False


def _summarize_args(args: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in args.items():
        if key == "content" and isinstance(value, str):
            out["content_length"] = len(value)
        elif isinstance(value, str) and len(value) > _ARG_PREVIEW_LIMIT:
            out[key] = value[:_ARG_PREVIEW_LIMIT] + "..."
        else:
            out[key] = value
    return out


def _add_unique(items: List[str], value: str) -> None:
    if value not in items:
        items.append(value)


class AgentExecutor:
    """Dispatch directives to the tool registry and track their effects.

    ``consents`` overrides a tool's default consent mode (``always``, ``ask``
    or ``never``). Tools in ``ask`` mode wait on ``consent`` when one is
    configured. ``commit`` runs once after the directives when anything
    changed and the context is writable; its failure only adds a warning.
    """

    def __init__(
        self,
        *,
        consent: Optional[ConsentManager] = None,
        consents: Optional[Dict[str, str]] = None,
        commit: Optional[CommitHook] = None,
        reporter: Optional[StatusReporter] = None,
        consent_timeout: Optional[float] = None,
    ) -> None:
        self._consent = consent
        self._consents = dict(consents or {})
        self._commit = commit
        self._reporter = reporter
        self._consent_timeout = consent_timeout

    async def execute(
        self,
        directives: Iterable[Directive],
        ctx: AgentContext,
        *,
        manifest: Optional[AgentChangeManifest] = None,
        cancel: Optional[CancellationToken] = None,
        commit: bool = True,
    ) -> AgentChangeManifest:
        manifest = manifest if manifest is not None else AgentChangeManifest()
        pending = list(directives)
        for index, directive in enumerate(pending):
            if cancel is not None and cancel.cancelled:
                self._on_cancel(ctx, manifest, len(pending) - index)
                return manifest
            await self.execute_one(directive, ctx, manifest)
        if commit:
            await self.finalize(ctx, manifest, cancel=cancel)
        return manifest

    async def execute_text(
        self,
        text: str,
        ctx: AgentContext,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> AgentTurnResult:
        manifest = await self.execute(parse_directives(text), ctx, cancel=cancel)
        return self._result(text, ctx, manifest, cancel)

    async def run_stream(
        self,
        fragments: AsyncIterator[str],
        ctx: AgentContext,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> AgentTurnResult:
        """Consume a model stream, executing each directive as soon as its tag closes."""
        parser = DirectiveStreamParser()
        manifest = AgentChangeManifest()
        full = ""
        last_preview: Optional[tuple] = None
        try:
            async for fragment in fragments:
                full += fragment
                for directive in parser.feed(fragment):
                    if cancel is not None and cancel.cancelled:
                        break
                    await self.execute_one(directive, ctx, manifest)
                if cancel is not None and cancel.cancelled:
                    break
                preview = parser.preview()
                if preview is not None and self._reporter is not None:
                    marker = (preview.name, tuple(sorted(preview.attrs.items())), len(preview.content))
                    if marker != last_preview:
                        last_preview = marker
                        self._reporter.forward(
                            {
                                "type": "directive_preview",
                                "directive": preview.name,
                                "attrs": preview.attrs,
                                "content": preview.content,
                                "status": "planned",
                            }
                        )
        finally:
            aclose = getattr(fragments, "aclose", None)
            if aclose is not None:
                await aclose()

        if cancel is not None and cancel.cancelled:
            self._on_cancel(ctx, manifest, 0)
            return self._result(full, ctx, manifest, cancel)
        leftover = parser.close()
        if leftover is not None:
            manifest.warnings.append(f"Directive {leftover.name} was not closed and was ignored")
        await self.finalize(ctx, manifest, cancel=cancel)
        return self._result(full, ctx, manifest, cancel)

    async def execute_one(self, directive: Directive, ctx: AgentContext, manifest: AgentChangeManifest) -> Optional[str]:
        if directive.name in IGNORED_DIRECTIVES:
            return None
        tool_name = DIRECTIVE_TOOLS.get(directive.name)
        tool = get_tool(tool_name) if tool_name else None
        if tool is None:
            logger.warning("directive_unknown", extra={"directive": directive.name, "attrs": directive.attrs})
            manifest.errors.append(f"Unknown directive: {directive.name}")
            DIRECTIVE_EXECUTIONS.labels(tool=directive.name, result="error").inc()
            return None

        args = directive_arguments(directive.name, directive.attrs, directive.content)
        summary = _summarize_args(args)

        if tool.modifies_state and ctx.read_only:
            result = f"Cannot use {tool.name} in read-only mode"
            return self._reject(tool.name, summary, result, manifest)

        mode = self._consents.get(tool.name, tool.default_consent)
        if mode == CONSENT_NEVER:
            return self._reject(tool.name, summary, f"Tool {tool.name} is disabled", manifest)
        if mode == CONSENT_ASK and self._consent is not None and ctx.conversation_id:
            allowed = await self._consent.request(
                ctx.conversation_id, tool.name, tool.consent_preview(args), timeout=self._consent_timeout
            )
            if not allowed:
                return self._reject(tool.name, summary, f"User denied permission for {tool.name}", manifest)

        before = dict(ctx.files)
        deps_before = set(ctx.dependency_names())
        try:
            result = tool.run(args, ctx)
        except ScaffolderError as exc:
            return self._fail(tool.name, summary, exc.message, manifest)
        except Exception as exc:
            logger.warning("directive_crashed", extra={"tool": tool.name, "err_type": exc.__class__.__name__})
            return self._fail(tool.name, summary, str(exc) or exc.__class__.__name__, manifest)

        target = self._target(args)
        for path, content in ctx.files.items():
            if path not in before:
                _add_unique(manifest.created_files, path)
            elif (tool.modifies_state and path == target) or content != before[path]:
                _add_unique(manifest.modified_files, path)
        for path in before:
            if path not in ctx.files:
                _add_unique(manifest.deleted_files, path)
        for dep in ctx.dependency_names():
            if dep not in deps_before:
                _add_unique(manifest.added_dependencies, dep)
        if tool.name == "set_chat_summary":
            manifest.chat_summary = ctx.chat_summary

        manifest.tool_executions.append(ToolExecution(tool=tool.name, args=summary, result=result))
        DIRECTIVE_EXECUTIONS.labels(tool=tool.name, result="ok").inc()
        logger.info("directive_executed", extra={"tool": tool.name, "tool_args": summary})
        return result

    async def finalize(
        self,
        ctx: AgentContext,
        manifest: AgentChangeManifest,
        *,
        cancel: Optional[CancellationToken] = None,
    ) -> None:
        """Run the commit step; a failure degrades to a warning."""
        if ctx.read_only or self._commit is None or not manifest.has_changes:
            return
        if cancel is not None and cancel.cancelled:
            return
        try:
            outcome = self._commit(ctx, manifest)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.warning("agent_commit_failed", extra={"err": str(exc), "files": len(ctx.files)})
            manifest.warnings.append(f"Changes were applied but could not be committed: {exc}")

    @staticmethod
    def _target(args: Dict[str, Any]) -> Optional[str]:
        path = args.get("path")
        if not path:
            return None
        try:
            return normalize_path(path)
        except ScaffolderError:
            return None

    def _reject(self, tool: str, summary: Dict[str, Any], result: str, manifest: AgentChangeManifest) -> str:
        logger.info("directive_rejected", extra={"tool": tool, "reason": result})
        manifest.errors.append(result)
        manifest.tool_executions.append(ToolExecution(tool=tool, args=summary, result=result))
        DIRECTIVE_EXECUTIONS.labels(tool=tool, result="rejected").inc()
        return result

    def _fail(self, tool: str, summary: Dict[str, Any], message: str, manifest: AgentChangeManifest) -> str:
        result = f"Tool '{tool}' failed: {message}"
        logger.warning("directive_failed", extra={"tool": tool, "err": message})
        manifest.errors.append(result)
        manifest.tool_executions.append(ToolExecution(tool=tool, args=summary, result=result))
        DIRECTIVE_EXECUTIONS.labels(tool=tool, result="error").inc()
        return result

    def _on_cancel(self, ctx: AgentContext, manifest: AgentChangeManifest, skipped: int) -> None:
        if self._consent is not None and ctx.conversation_id:
            self._consent.cancel(ctx.conversation_id)
        note = "Cancelled; remaining directives were not run"
        if skipped:
            note = f"Cancelled; {skipped} directive(s) were not run"
        manifest.warnings.append(note)
        logger.info("agent_cancelled", extra={"skipped": skipped, "conversation_id": ctx.conversation_id})

    @staticmethod
    def _result(
        text: str,
        ctx: AgentContext,
        manifest: AgentChangeManifest,
        cancel: Optional[CancellationToken],
    ) -> AgentTurnResult:
        files = dict(ctx.files)
        return AgentTurnResult(
            full_response=text,
            prose=strip_directives(text),
            manifest=manifest,
            files=files,
            package_json=dict(ctx.package_json),
            chat_summary=ctx.chat_summary,
            cancelled=bool(cancel is not None and cancel.cancelled),
        )
