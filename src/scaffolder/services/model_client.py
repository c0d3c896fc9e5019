from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import time
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Tuple

import requests
from json_repair import repair_json
from langchain_openai import ChatOpenAI
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..errors import ModelFailureError
from .model_router import ModelRouter, ProviderSelection
from .streaming import CancellationToken, iter_in_thread

LOG = logging.getLogger("scaffolder.llm")

ChatMessage = Dict[str, str]

_BREAKER_STATE = {"fails": 0, "opened_at": 0.0}
_BREAKER_THRESHOLD = int(os.getenv("SCAFFOLDER_LLM_BREAKER_THRESHOLD", "3"))
_BREAKER_COOLDOWN = float(os.getenv("SCAFFOLDER_LLM_BREAKER_COOLDOWN", "60.0"))
_STREAM_TIMEOUT = (
    int(os.getenv("SCAFFOLDER_LLM_CONNECT_TIMEOUT", "3")),
    int(os.getenv("SCAFFOLDER_LLM_READ_TIMEOUT", "120")),
)

DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai",
    "xai": "https://api.x.ai/v1",
    "local": "http://127.0.0.1:11434",
}

JSON_SYSTEM_PROMPT = "You must respond with valid JSON only. No markdown, no explanations, just valid JSON."


def llm_disabled() -> bool:
    return (os.getenv("SCAFFOLDER_DISABLE_LLM") or "").strip().lower() in ("1", "true", "yes")


def _breaker_open() -> bool:
    opened = _BREAKER_STATE["opened_at"]
    if opened == 0.0:
        return False
    if time.time() - opened < _BREAKER_COOLDOWN:
        return True
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0
    return False


def _record_fail() -> None:
    _BREAKER_STATE["fails"] += 1
    if _BREAKER_STATE["fails"] >= _BREAKER_THRESHOLD and _BREAKER_STATE["opened_at"] == 0.0:
        _BREAKER_STATE["opened_at"] = time.time()
        LOG.warning(
            "llm_breaker_opened",
            extra={"fails": _BREAKER_STATE["fails"], "cooldown_s": _BREAKER_COOLDOWN},
        )


def _record_success() -> None:
    if _BREAKER_STATE["fails"] or _BREAKER_STATE["opened_at"]:
        LOG.info("llm_breaker_closed")
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0


def reset_breaker() -> None:
    _BREAKER_STATE["fails"] = 0
    _BREAKER_STATE["opened_at"] = 0.0


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class LocalLLMClient:
    """OpenAI-compatible or Ollama endpoint reached over plain HTTP."""

    def __init__(self, base_url: str, model: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._timeout = _STREAM_TIMEOUT
        self._session = _build_session()
        self.api_style = (os.getenv("SCAFFOLDER_LLM_LOCAL_API") or "auto").lower()

    def invoke(self, messages: List[ChatMessage]) -> str:
        if self.api_style == "ollama":
            return self._invoke_ollama(messages)
        if self.api_style == "openai":
            return self._invoke_openai(messages)
        try:
            return self._invoke_openai(messages)
        except requests.exceptions.RequestException as exc:
            LOG.warning(
                "local_llm_openai_failed_switching_to_ollama",
                extra={"base_url": self.base_url, "model": self.model, "err": str(exc)},
            )
            self.api_style = "ollama"
            return self._invoke_ollama(messages)

    def stream(self, messages: List[ChatMessage]) -> Iterator[str]:
        if self.api_style == "ollama":
            yield from self._stream_ollama(messages)
            return
        if self.api_style == "openai":
            yield from self._stream_openai(messages)
            return
        try:
            yield from self._stream_openai(messages)
        except requests.exceptions.RequestException as exc:
            LOG.warning(
                "local_llm_stream_openai_failed_switching_to_ollama",
                extra={"base_url": self.base_url, "model": self.model, "err": str(exc)},
            )
            self.api_style = "ollama"
            yield from self._stream_ollama(messages)

    def _invoke_openai(self, messages: List[ChatMessage]) -> str:
        LOG.debug("local_llm_invoke", extra={"model": self.model, "base_url": self.base_url})
        resp = self._session.post(
            f"{self.base_url}/v1/chat/completions",
            json={"model": self.model, "messages": messages, "stream": False},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        choices = data.get("choices") or []
        if choices:
            content = (choices[0].get("message") or {}).get("content")
            if content:
                return content
        return data.get("response") or data.get("text") or ""

    def _stream_openai(self, messages: List[ChatMessage]) -> Iterator[str]:
        payload = {"model": self.model, "messages": messages, "stream": True}
        with self._session.post(
            f"{self.base_url}/v1/chat/completions",
            json=payload,
            timeout=self._timeout,
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                if not line.startswith("data: "):
                    continue
                data = line[6:].strip()
                if data == "[DONE]":
                    break
                try:
                    parsed = json.loads(data)
                except json.JSONDecodeError:
                    continue
                delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
                token = delta.get("content") or ""
                if token:
                    yield token

    def _invoke_ollama(self, messages: List[ChatMessage]) -> str:
        prompt = self._messages_to_prompt(messages)
        resp = self._session.post(
            f"{self.base_url}/api/generate",
            json={"model": self.model, "prompt": prompt, "stream": False},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        data = resp.json()
        return data.get("response") or data.get("text") or ""

    def _stream_ollama(self, messages: List[ChatMessage]) -> Iterator[str]:
        prompt = self._messages_to_prompt(messages)
        with self._session.post(
            f"{self.base_url}/api/generate",
            json={"model": self.model, "prompt": prompt, "stream": True},
            timeout=self._timeout,
            stream=True,
        ) as resp:
            resp.raise_for_status()
            for raw_line in resp.iter_lines():
                if not raw_line:
                    continue
                try:
                    data = json.loads(raw_line.decode("utf-8"))
                except json.JSONDecodeError:
                    continue
                token = data.get("response") or ""
                if token:
                    yield token
                if data.get("done"):
                    break

    @staticmethod
    def _messages_to_prompt(messages: List[ChatMessage]) -> str:
        parts: List[str] = []
        for msg in messages:
            role = (msg.get("role") or "user").strip().upper()
            parts.append(f"{role}: {msg.get('content') or ''}")
        parts.append("ASSISTANT:")
        return "\n".join(parts)


def _get_llm(
    purpose: str,
    provider: Optional[str] = None,
    model_hint: Optional[str] = None,
    *,
    temperature: float = 0.2,
) -> Tuple[object, str, str]:
    router = ModelRouter()
    if provider:
        try:
            selection = router.resolve_provider(provider)
        except KeyError:
            raise RuntimeError(f"Unknown provider override: {provider}")
        if model_hint:
            selection = ProviderSelection(
                name=selection.name,
                model=model_hint,
                api_key_env=selection.api_key_env,
                base_url_env=selection.base_url_env,
                default_base_url=selection.default_base_url,
                requires_api_key=selection.requires_api_key,
            )
    else:
        selection = router.select_provider(purpose)

    base_url = DEFAULT_BASE_URLS.get(selection.name) or selection.default_base_url
    if selection.base_url_env:
        base_url = os.getenv(selection.base_url_env, base_url)

    if selection.name == "local":
        LOG.info("llm_selected", extra={"provider": "local", "model": selection.model, "base_url": base_url})
        return LocalLLMClient(base_url=base_url or DEFAULT_BASE_URLS["local"], model=selection.model), selection.name, selection.model

    api_key = os.getenv(selection.api_key_env) if selection.api_key_env else None
    if selection.requires_api_key and not api_key:
        raise RuntimeError("LLM not configured")

    LOG.info("llm_selected", extra={"provider": selection.name, "model": selection.model, "base_url": base_url})
    client = ChatOpenAI(api_key=api_key, base_url=base_url, model=selection.model, temperature=temperature)
    return client, selection.name, selection.model


# ----------------------------------------------------------------------
# JSON decoding of model output
# ----------------------------------------------------------------------
_FENCE_RE = re.compile(r"```(?:[a-zA-Z0-9_+-]+)?\s*\n?([\s\S]*?)```")
_SINGLE_QUOTED_KEY_RE = re.compile(r"([{,]\s*)'([^'\\]+)'\s*:")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def strip_code_fence(text: str) -> str:
    """Return the body of the first fenced block, or the text itself when unfenced."""
    if not text:
        return ""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    stripped = text.strip()
    if stripped.startswith("```"):
        # unterminated fence (truncated response)
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
    return stripped.strip()


def _json_candidate(text: str) -> str:
    body = strip_code_fence(text)
    starts = [i for i in (body.find("{"), body.find("[")) if i >= 0]
    if not starts:
        return body
    start = min(starts)
    closer = "}" if body[start] == "{" else "]"
    end = body.rfind(closer)
    return body[start : end + 1] if end > start else body[start:]


def repair_json_text(text: str) -> str:
    """Cheap textual repairs: single-quoted keys and trailing commas."""
    fixed = _SINGLE_QUOTED_KEY_RE.sub(lambda m: f'{m.group(1)}"{m.group(2)}":', text)
    return _TRAILING_COMMA_RE.sub(r"\1", fixed)


def parse_json_response(text: str) -> Any:
    """Decode JSON from possibly fenced, slightly malformed model output.

    Raises ``ModelFailureError`` when nothing usable can be recovered.
    """
    candidate = _json_candidate(text or "")
    if not candidate:
        raise ModelFailureError("Could not understand AI response", raw_response=text)
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass
    repaired = repair_json_text(candidate)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError:
        pass
    recovered = repair_json(repaired, return_objects=True)
    if isinstance(recovered, (dict, list)) and recovered:
        LOG.info("llm_json_repaired", extra={"chars": len(candidate)})
        return recovered
    raise ModelFailureError("Could not understand AI response", raw_response=text)


def parse_partial_json(text: str) -> Optional[Any]:
    """Best-effort decode of an incomplete JSON buffer for live previews only."""
    if not text or not text.strip():
        return None
    try:
        recovered = repair_json(text, return_objects=True)
    except Exception:
        return None
    return recovered if isinstance(recovered, (dict, list)) else None


# ----------------------------------------------------------------------
# Client
# ----------------------------------------------------------------------
class ModelClient:
    """The three call shapes the orchestration core consumes.

    Every failure surfaces as ``ModelFailureError`` so callers can switch to
    their deterministic fallback.
    """

    def __init__(self, provider: Optional[str] = None, model_hint: Optional[str] = None) -> None:
        self._provider = provider
        self._model_hint = model_hint

    def _client(self, purpose: str, temperature: float) -> Tuple[object, str, str]:
        if llm_disabled():
            raise ModelFailureError("AI generation disabled", original=RuntimeError("SCAFFOLDER_DISABLE_LLM=1"))
        if _breaker_open():
            LOG.info("llm_skipped_due_to_breaker", extra={"cooldown_s": _BREAKER_COOLDOWN})
            raise ModelFailureError(original=RuntimeError("llm_circuit_open"))
        try:
            return _get_llm(purpose, self._provider, self._model_hint, temperature=temperature)
        except RuntimeError as exc:
            raise ModelFailureError(original=exc) from exc

    def complete(self, messages: List[ChatMessage], *, purpose: str = "structured", temperature: float = 0.3) -> str:
        llm, provider, model = self._client(purpose, temperature)
        started = time.perf_counter()
        try:
            res = llm.invoke(messages)
        except Exception as exc:
            _record_fail()
            LOG.warning("llm_call_failed", extra={"provider": provider, "model": model, "err": str(exc)})
            raise ModelFailureError(original=exc) from exc
        text = res.content if hasattr(res, "content") else str(res)
        if not text:
            _record_fail()
            raise ModelFailureError("AI returned an empty response")
        _record_success()
        LOG.debug(
            "llm_call_ok",
            extra={"provider": provider, "model": model, "ms": int((time.perf_counter() - started) * 1000)},
        )
        return text

    def complete_json(
        self,
        messages: List[ChatMessage],
        *,
        schema: Optional[str] = None,
        purpose: str = "structured",
        temperature: float = 0.3,
    ) -> Any:
        msgs = [dict(m) for m in messages]
        if schema and msgs:
            last = msgs[-1]
            last["content"] = f"{last.get('content', '')}\n\nRespond with valid JSON matching this schema:\n{schema}"
        if not any(m.get("role") == "system" and "JSON" in (m.get("content") or "") for m in msgs):
            msgs.insert(0, {"role": "system", "content": JSON_SYSTEM_PROMPT})
        text = self.complete(msgs, purpose=purpose, temperature=temperature)
        return parse_json_response(text)

    async def acomplete(self, messages: List[ChatMessage], **kwargs: Any) -> str:
        return await asyncio.to_thread(self.complete, messages, **kwargs)

    async def acomplete_json(self, messages: List[ChatMessage], **kwargs: Any) -> Any:
        return await asyncio.to_thread(self.complete_json, messages, **kwargs)

    def _stream_sync(self, llm: object, messages: List[ChatMessage]) -> Iterator[str]:
        if isinstance(llm, LocalLLMClient):
            yield from llm.stream(messages)
            return
        for chunk in llm.stream(messages):  # type: ignore[attr-defined]
            token = chunk.content if hasattr(chunk, "content") else str(chunk)
            if token:
                yield token

    async def stream_complete(
        self,
        messages: List[ChatMessage],
        *,
        purpose: str = "codegen",
        temperature: float = 0.2,
        cancel: Optional[CancellationToken] = None,
    ) -> AsyncIterator[str]:
        """Yield text fragments as they arrive. No timeout; stops when ``cancel`` fires."""
        llm, provider, model = self._client(purpose, temperature)
        received = 0
        try:
            async for token in iter_in_thread(lambda: self._stream_sync(llm, messages), cancel=cancel):
                received += len(token)
                yield token
        except Exception as exc:
            _record_fail()
            LOG.warning("llm_stream_failed", extra={"provider": provider, "model": model, "err": str(exc)})
            raise ModelFailureError(original=exc) from exc
        if received:
            _record_success()
