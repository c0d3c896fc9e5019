import asyncio
import dataclasses

from src.scaffolder.agents import tools
from src.scaffolder.agents.consent import ConsentManager
from src.scaffolder.agents.executor import AgentExecutor, build_file_context
from src.scaffolder.agents.tools import AgentContext
from src.scaffolder.infrastructure.event_bus import StatusEventBus, StatusReporter
from src.scaffolder.services.streaming import CancellationToken


def _ctx(**kwargs):
    files = kwargs.pop("files", {"src/a.tsx": "export const a = 1;"})
    return AgentContext(files=dict(files), **kwargs)


def _run(executor, text, ctx, cancel=None):
    return asyncio.run(executor.execute_text(text, ctx, cancel=cancel))


def test_rewrite_of_same_content_counts_as_modified():
    ctx = _ctx()
    result = _run(AgentExecutor(), '<scaffold-write path="src/a.tsx">export const a = 1;</scaffold-write>', ctx)
    assert result.manifest.modified_files == ["src/a.tsx"]
    assert result.manifest.created_files == []


def test_second_write_to_new_file_in_same_turn_counts_as_modified():
    text = (
        '<scaffold-write path="a.tsx">export const a = 1;</scaffold-write>\n'
        '<scaffold-write path="a.tsx">export const a = 2;</scaffold-write>'
    )
    result = _run(AgentExecutor(), text, _ctx(files={}))
    assert result.manifest.created_files == ["a.tsx"]
    assert result.manifest.modified_files == ["a.tsx"]
    assert result.files["a.tsx"] == "export const a = 2;"


def test_new_file_and_summary_are_recorded():
    ctx = _ctx()
    text = (
        "Added b.\n"
        '<scaffold-write path="src/b.tsx">export const b = 2;</scaffold-write>\n'
        "<scaffold-chat-summary>Add b constant</scaffold-chat-summary>"
    )
    result = _run(AgentExecutor(), text, ctx)
    assert result.manifest.created_files == ["src/b.tsx"]
    assert result.chat_summary == "Add b constant"
    assert result.manifest.chat_summary == "Add b constant"
    assert result.prose == "Added b."
    assert [t.tool for t in result.manifest.tool_executions] == ["write_file", "set_chat_summary"]
    assert result.manifest.tool_executions[0].args == {"path": "src/b.tsx", "content_length": 19}


def test_read_does_not_mark_file_modified():
    result = _run(AgentExecutor(), '<scaffold-read path="src/a.tsx" />', _ctx())
    assert result.manifest.modified_files == []
    assert result.manifest.tool_executions[0].result == "export const a = 1;"


def test_read_only_mode_rejects_mutations():
    ctx = _ctx(read_only=True)
    result = _run(AgentExecutor(), '<scaffold-delete path="src/a.tsx" />', ctx)
    assert result.manifest.errors == ["Cannot use delete_file in read-only mode"]
    assert "src/a.tsx" in result.files


def test_unknown_directive_is_an_error_and_command_is_ignored():
    text = '<scaffold-launch target="moon" />\n<scaffold-command>npm run dev</scaffold-command>'
    result = _run(AgentExecutor(), text, _ctx())
    assert result.manifest.errors == ["Unknown directive: launch"]
    assert result.manifest.tool_executions == []


def test_failed_directive_does_not_stop_the_turn():
    text = (
        '<scaffold-edit path="src/missing.tsx">x</scaffold-edit>\n'
        '<scaffold-write path="src/c.tsx">export const c = 3;</scaffold-write>'
    )
    result = _run(AgentExecutor(), text, _ctx())
    assert len(result.manifest.errors) == 1
    assert result.manifest.errors[0].startswith("Tool 'edit_file' failed:")
    assert result.manifest.created_files == ["src/c.tsx"]


def test_unexpected_tool_crash_does_not_stop_the_turn(monkeypatch):
    def crash(args, ctx):
        raise IndexError("list index out of range")

    monkeypatch.setitem(tools.TOOLS, "edit_file", dataclasses.replace(tools.TOOLS["edit_file"], handler=crash))
    text = (
        '<scaffold-edit path="src/a.tsx">x</scaffold-edit>\n'
        '<scaffold-write path="src/c.tsx">export const c = 3;</scaffold-write>'
    )
    result = _run(AgentExecutor(), text, _ctx())
    assert result.manifest.errors == ["Tool 'edit_file' failed: list index out of range"]
    assert result.manifest.created_files == ["src/c.tsx"]


def test_commit_runs_once_and_failure_becomes_warning():
    calls = []

    def commit(ctx, manifest):
        calls.append(sorted(ctx.files))
        raise RuntimeError("disk full")

    text = (
        '<scaffold-write path="src/b.tsx">1</scaffold-write>'
        '<scaffold-write path="src/c.tsx">2</scaffold-write>'
    )
    result = _run(AgentExecutor(commit=commit), text, _ctx())
    assert calls == [["src/a.tsx", "src/b.tsx", "src/c.tsx"]]
    assert result.manifest.warnings == ["Changes were applied but could not be committed: disk full"]
    assert "src/c.tsx" in result.files


def test_commit_is_skipped_without_changes():
    calls = []
    _run(AgentExecutor(commit=lambda ctx, m: calls.append(1)), '<scaffold-list-files />', _ctx())
    assert calls == []


def test_never_mode_disables_tool():
    result = _run(AgentExecutor(consents={"write_file": "never"}), '<scaffold-write path="x.ts">1</scaffold-write>', _ctx())
    assert result.manifest.errors == ["Tool write_file is disabled"]
    assert "x.ts" not in result.files


def test_denied_consent_skips_delete():
    requests = []

    def notify(req):
        requests.append(req)
        manager.resolve(req.id, False)

    manager = ConsentManager(notify=notify)
    ctx = _ctx(conversation_id="conv-1")
    result = _run(AgentExecutor(consent=manager), '<scaffold-delete path="src/a.tsx" />', ctx)
    assert [r.preview for r in requests] == ["Delete src/a.tsx"]
    assert result.manifest.errors == ["User denied permission for delete_file"]
    assert "src/a.tsx" in result.files


def test_ask_mode_without_manager_runs_tool():
    result = _run(AgentExecutor(), '<scaffold-delete path="src/a.tsx" />', _ctx(conversation_id="conv-1"))
    assert result.manifest.deleted_files == ["src/a.tsx"]


def test_cancelled_turn_skips_remaining_directives():
    token = CancellationToken()
    token.cancel()
    result = _run(AgentExecutor(), '<scaffold-write path="x.ts">1</scaffold-write>', _ctx(), cancel=token)
    assert result.cancelled
    assert result.manifest.warnings == ["Cancelled; 1 directive(s) were not run"]
    assert "x.ts" not in result.files


def test_run_stream_executes_directives_as_they_close():
    fragments = [
        "Updating. <scaffold-write pa",
        'th="src/b.tsx">export const ',
        "b = 2;</scaffold-write> then ",
        '<scaffold-edit path="src/a.tsx">never closed',
    ]

    async def source():
        for fragment in fragments:
            yield fragment

    async def scenario():
        bus = StatusEventBus(mirror=False)
        reporter = StatusReporter(bus, "conv-stream")
        result = await AgentExecutor(reporter=reporter).run_stream(source(), _ctx())
        return result, bus.subscribe("conv-stream").drain()

    result, events = asyncio.run(scenario())
    assert result.files["src/b.tsx"] == "export const b = 2;"
    assert result.manifest.created_files == ["src/b.tsx"]
    assert result.manifest.warnings == ["Directive edit was not closed and was ignored"]
    previews = [e for e in events if e.get("type") == "directive_preview"]
    assert previews[0]["directive"] == "write"
    assert previews[-1]["directive"] == "edit"


def test_build_file_context_skips_large_files():
    text = build_file_context(
        {"b.ts": "B", "a.ts": "A", "big.ts": "x" * 60_000},
        {"dependencies": {"react": "^18"}, "devDependencies": {"vitest": "1"}},
    )
    assert text.index('path="a.ts"') < text.index('path="b.ts"')
    assert "big.ts" not in text
    assert text.endswith("Installed dependencies: react, vitest")
