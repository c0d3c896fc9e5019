"""Directive tags embedded in streamed model text.

A directive looks like ``<scaffold-write path="src/a.tsx">...</scaffold-write>``
or the self-closing ``<scaffold-delete path="src/b.tsx" />``. Text may arrive in
fragments, so :class:`DirectiveStreamParser` keeps a buffer, hands back each
directive once its tag closes and exposes a best-effort preview of the one
still arriving.
"""
from __future__ import annotations

import html
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import ToolExecutionError
from ..services.model_client import parse_partial_json

logger = logging.getLogger("scaffolder.agents")

TAG_PREFIX = "scaffold-"

_TAG_RE = re.compile(
    r"<scaffold-(\w[\w-]*)((?:\s+[\w-]+=\"[^\"]*\")*)\s*(?:/>|>([\s\S]*?)</scaffold-\1\s*>)"
)
_ATTR_RE = re.compile(r'([\w-]+)="([^"]*)"')
_OPEN_RE = re.compile(r"<scaffold-(\w[\w-]*)")
_PARTIAL_ATTR_RE = re.compile(r'([\w-]+)="([^"]*)"?')


@dataclass
class Directive:
    name: str
    attrs: Dict[str, str] = field(default_factory=dict)
    content: str = ""
    complete: bool = True

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.attrs.get(key, default)


def escape_attr(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
    )


def unescape_attr(value: str) -> str:
    return html.unescape(value)


def parse_attrs(raw: str) -> Dict[str, str]:
    return {key: unescape_attr(value) for key, value in _ATTR_RE.findall(raw or "")}


def parse_directives(text: str) -> List[Directive]:
    """Return every closed directive in ``text`` in order of appearance."""
    return [
        Directive(name=m.group(1), attrs=parse_attrs(m.group(2)), content=(m.group(3) or "").strip())
        for m in _TAG_RE.finditer(text or "")
    ]


def render_directive(name: str, attrs: Optional[Dict[str, str]] = None, content: Optional[str] = None) -> str:
    """Build the tag text for a directive; ``content=None`` renders it self-closing."""
    attr_text = "".join(f' {k}="{escape_attr(str(v))}"' for k, v in (attrs or {}).items())
    if content is None:
        return f"<{TAG_PREFIX}{name}{attr_text} />"
    return f"<{TAG_PREFIX}{name}{attr_text}>\n{content}\n</{TAG_PREFIX}{name}>"


def strip_directives(text: str) -> str:
    """Prose left once every closed directive is removed."""
    return re.sub(r"\n{3,}", "\n\n", _TAG_RE.sub("", text or "")).strip()


class DirectiveStreamParser:
    """Incremental tag parser.

    ``feed`` returns directives that closed with this fragment; ``preview``
    describes the directive currently being streamed, if any.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._parsed: List[Directive] = []

    @property
    def directives(self) -> List[Directive]:
        return list(self._parsed)

    def feed(self, fragment: str) -> List[Directive]:
        self._buffer += fragment or ""
        found: List[Directive] = []
        while True:
            match = _TAG_RE.search(self._buffer)
            if not match:
                break
            found.append(
                Directive(name=match.group(1), attrs=parse_attrs(match.group(2)), content=(match.group(3) or "").strip())
            )
            self._buffer = self._buffer[match.end():]
        if not found:
            self._trim_prose()
        self._parsed.extend(found)
        return found

    def _trim_prose(self) -> None:
        # prose before the next possible tag start can never become part of a directive
        start = self._buffer.find("<")
        if start == -1:
            self._buffer = ""
        elif start > 0:
            self._buffer = self._buffer[start:]

    def preview(self) -> Optional[Directive]:
        match = _OPEN_RE.search(self._buffer)
        if not match:
            return None
        rest = self._buffer[match.end():]
        close = rest.find(">")
        if close == -1:
            attrs = {k: unescape_attr(v) for k, v in _PARTIAL_ATTR_RE.findall(rest)}
            return Directive(name=match.group(1), attrs=attrs, complete=False)
        attrs = parse_attrs(rest[:close])
        return Directive(name=match.group(1), attrs=attrs, content=rest[close + 1:].lstrip("\n"), complete=False)

    def close(self) -> Optional[Directive]:
        """End of stream; logs and returns a directive left unterminated."""
        pending = self.preview()
        if pending is not None:
            logger.warning("directive_unterminated", extra={"directive": pending.name, "attrs": pending.attrs})
        self._buffer = ""
        return pending


class ToolArgumentBuffer:
    """JSON arguments of a tool call that arrive in pieces."""

    def __init__(self, tool: str) -> None:
        self.tool = tool
        self._text = ""

    def append(self, fragment: str) -> None:
        self._text += fragment or ""

    @property
    def text(self) -> str:
        return self._text

    def preview(self) -> Dict[str, Any]:
        parsed = parse_partial_json(self._text)
        return parsed if isinstance(parsed, dict) else {}

    def parse(self) -> Dict[str, Any]:
        try:
            parsed = json.loads(self._text or "{}")
        except json.JSONDecodeError as exc:
            raise ToolExecutionError(self.tool, f"Invalid arguments for {self.tool}: {exc.msg}") from exc
        if not isinstance(parsed, dict):
            raise ToolExecutionError(self.tool, f"Arguments for {self.tool} must be an object")
        return parsed
