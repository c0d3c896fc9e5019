import asyncio
import types

import pytest

from src.scaffolder.errors import ModelFailureError
from src.scaffolder.services import model_client as mc


class _FakeLLM:
    def __init__(self, text="", tokens=()):
        self.text = text
        self.tokens = list(tokens)
        self.calls = []

    def invoke(self, messages):
        self.calls.append(messages)
        return types.SimpleNamespace(content=self.text)

    def stream(self, messages):
        for token in self.tokens:
            yield types.SimpleNamespace(content=token)


@pytest.fixture
def fake_llm(monkeypatch):
    monkeypatch.delenv("SCAFFOLDER_DISABLE_LLM", raising=False)
    llm = _FakeLLM()
    monkeypatch.setattr(mc, "_get_llm", lambda *a, **k: (llm, "openai", "gpt-test"))
    return llm


def test_parse_json_response_handles_fences_and_trailing_commas():
    text = "Here you go:\n```json\n{'category': 'expense', \"entities\": [\"coffee\",],}\n```"
    assert mc.parse_json_response(text) == {"category": "expense", "entities": ["coffee"]}


def test_parse_json_response_repairs_truncated_output():
    assert mc.parse_json_response('{"a": 1, "b": [1, 2') == {"a": 1, "b": [1, 2]}


def test_parse_json_response_raises_when_nothing_recoverable():
    with pytest.raises(ModelFailureError):
        mc.parse_json_response("no json here")


def test_strip_code_fence_handles_unterminated_fence():
    assert mc.strip_code_fence("```tsx\nconst a = 1;") == "const a = 1;"
    assert mc.strip_code_fence("plain") == "plain"


def test_parse_partial_json_is_best_effort():
    assert mc.parse_partial_json('{"path": "src/App.tsx", "content": "expo') == {
        "path": "src/App.tsx",
        "content": "expo",
    }
    assert mc.parse_partial_json("") is None


def test_disabled_client_raises_model_failure():
    client = mc.ModelClient()
    with pytest.raises(ModelFailureError):
        client.complete([{"role": "user", "content": "hi"}])


def test_disabled_stream_raises_on_first_iteration():
    async def scenario():
        async for _ in mc.ModelClient().stream_complete([{"role": "user", "content": "hi"}]):
            pass

    with pytest.raises(ModelFailureError):
        asyncio.run(scenario())


def test_complete_json_adds_schema_and_json_instruction(fake_llm):
    fake_llm.text = '```json\n{"ok": true}\n```'
    result = mc.ModelClient().complete_json([{"role": "user", "content": "go"}], schema='{"ok": "bool"}')
    assert result == {"ok": True}
    sent = fake_llm.calls[0]
    assert sent[0]["content"] == mc.JSON_SYSTEM_PROMPT
    assert "Respond with valid JSON matching this schema" in sent[-1]["content"]


def test_empty_completion_counts_as_failure(fake_llm):
    fake_llm.text = ""
    with pytest.raises(ModelFailureError):
        mc.ModelClient().complete([{"role": "user", "content": "go"}])
    assert mc._BREAKER_STATE["fails"] == 1


def test_stream_complete_yields_tokens_in_order(fake_llm):
    fake_llm.tokens = ["export ", "default ", "function Page() {}"]

    async def scenario():
        return [t async for t in mc.ModelClient().stream_complete([{"role": "user", "content": "go"}])]

    assert asyncio.run(scenario()) == ["export ", "default ", "function Page() {}"]


def test_breaker_opens_after_repeated_failures(fake_llm):
    for _ in range(mc._BREAKER_THRESHOLD):
        mc._record_fail()
    with pytest.raises(ModelFailureError) as exc:
        mc.ModelClient().complete([{"role": "user", "content": "go"}])
    assert "llm_circuit_open" in (exc.value.technical_details or "")
    mc.reset_breaker()
    fake_llm.text = "fine"
    assert mc.ModelClient().complete([{"role": "user", "content": "go"}]) == "fine"
