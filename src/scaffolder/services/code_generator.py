"""Streams page component code for a spec from the model.

Produces a sequence of :class:`GenerationChunk` values:

- ``status``: human readable progress (0-100)
- ``code``: a raw fragment for a component, to be concatenated
- ``complete``: the cleaned, authoritative code for a component
- ``error``: the model path failed; the consumer should fall back

Errors are reported as an ``error`` chunk instead of raised so the consumer
decides how to recover.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Tuple

from ..domain.models import AppSpec
from ..errors import ScaffolderError
from .model_client import ModelClient
from .spec_builder import user_fields
from .streaming import CancellationToken

logger = logging.getLogger("scaffolder.codegen")

CHUNK_TYPES = ("status", "code", "complete", "error")
COMPONENTS = ("page", "form", "table", "chart", "types")

PREVIOUS_CODE_LIMIT = 2000


@dataclass(frozen=True)
class GenerationChunk:
    type: str
    content: str = ""
    progress: int = 0
    component: Optional[str] = None


SYSTEM_PROMPT = """You are an expert React developer generating production-ready Next.js components.

CRITICAL REQUIREMENTS:
1. Generate ONLY the code - no explanations, no markdown code blocks, no comments before or after
2. Use TypeScript with proper types
3. Use Tailwind CSS for styling with a modern dark theme
4. Include proper error handling
5. Make the component fully functional with CRUD operations
6. Use 'use client' directive for client components
7. Follow React best practices (hooks, memoization where needed)

AVAILABLE IMPORTS:
- React hooks: useState, useEffect, useCallback, useMemo, useRef
- lucide-react icons
- date-fns: format, parseISO, differenceInDays, addDays, subDays
- react-hook-form and zod for forms and validation
- recharts: LineChart, BarChart, PieChart, XAxis, YAxis, Tooltip, Legend, ResponsiveContainer
- clsx, tailwind-merge, nanoid

EXPLICITLY AVOID:
- axios (use native fetch)
- moment (use date-fns)
- redux/mobx
- Any server-side packages"""

REGENERATION_CONTEXT = """

REGENERATION CONTEXT:
The previous code had issues reported by the user. Fix these issues while maintaining the overall structure."""


def component_name(spec: AppSpec) -> str:
    name = re.sub(r"[^0-9A-Za-z]+", "", spec.name.title())
    if not name or name[0].isdigit():
        name = f"App{name}"
    return name


def build_page_prompt(spec: AppSpec, app_id: str) -> str:
    lines = []
    for f in user_fields(spec):
        info = f"- {f.name}: {f.type}"
        if f.required:
            info += " (required)"
        info += f' [label: "{f.label}"]'
        if f.options:
            info += f" [options: {', '.join(f.options)}]"
        if f.placeholder:
            info += f' [placeholder: "{f.placeholder}"]'
        lines.append(info)
    views = "\n".join(f"- {v.type}: {v.title}" for v in spec.views)
    fields = "\n".join(lines)
    return (
        f'Generate a complete Next.js page component for a {spec.category} tracking app called "{spec.name}".\n\n'
        f"APP DESCRIPTION: {spec.description}\n\n"
        f"DATA FIELDS:\n{fields}\n\n"
        f"VIEWS TO INCLUDE:\n{views}\n\n"
        "API ENDPOINTS (already implemented):\n"
        f"- GET /api/apps/{app_id}/data - Fetch all records\n"
        f"- POST /api/apps/{app_id}/data - Create new record (body: field values)\n"
        f"- DELETE /api/apps/{app_id}/data?id={{recordId}} - Delete a record\n\n"
        "REQUIREMENTS:\n"
        "1. Start with 'use client'\n"
        "2. Create a DataRecord interface with all fields plus id: string and createdAt: string\n"
        "3. Create a form to add new entries with proper validation\n"
        "4. Display data in a table with sorting capability\n"
        "5. Add delete functionality with confirmation\n"
        "6. Include loading and empty states\n"
        "7. Make it responsive (mobile-friendly)\n"
        "8. Include a header with the app name\n\n"
        f"STRUCTURE:\n- Export default function {component_name(spec)}Page()\n"
        "- Include all TypeScript interfaces at the top\n\n"
        "Generate the complete page.tsx code now:"
    )


def build_regeneration_prompt(spec: AppSpec, app_id: str, previous_code: str, issues: str) -> str:
    truncated = previous_code[:PREVIOUS_CODE_LIMIT]
    if len(previous_code) > PREVIOUS_CODE_LIMIT:
        truncated += "\n... (truncated)"
    return (
        f"{build_page_prompt(spec, app_id)}\n\n"
        f"PREVIOUS CODE (with issues):\n```tsx\n{truncated}\n```\n\n"
        f"USER REPORTED ISSUES:\n{issues}\n\n"
        "Generate the FIXED page.tsx code now, addressing all the reported issues:"
    )


_FENCE_OPEN_RE = re.compile(r"^```(?:typescript|tsx|javascript|jsx|ts|js)?[ \t]*\n?", re.MULTILINE)
_FENCE_CLOSE_RE = re.compile(r"```[ \t]*$", re.MULTILINE)
_CLIENT_HOOKS = ("useState", "useEffect", "useCallback")


def clean_generated_code(code: str) -> str:
    """Strip markdown fences and add the client directive when hooks are used."""
    cleaned = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", code)).strip()
    if not cleaned.startswith(("'use client'", '"use client"')):
        if any(hook in cleaned for hook in _CLIENT_HOOKS):
            cleaned = "'use client';\n\n" + cleaned
    return cleaned


def validate_generated_code(code: str) -> Tuple[bool, List[str]]:
    issues: List[str] = []
    if "export default" not in code:
        issues.append("Missing default export")
    if "'use client'" in code or '"use client"' in code:
        if "useState" not in code:
            issues.append("Client component should use useState for state management")
    if "function" not in code and "=>" not in code:
        issues.append("No function definition found")
    if "return (" not in code and "return(" not in code:
        issues.append("No JSX return statement found")
    return not issues, issues


def code_progress(length: int) -> int:
    return min(15 + (length * 70) // 3000, 85)


async def _stream_page(
    messages: List[dict],
    client: ModelClient,
    cancel: Optional[CancellationToken],
    done_message: str,
) -> AsyncIterator[GenerationChunk]:
    full = ""
    try:
        async for fragment in client.stream_complete(messages, purpose="codegen", temperature=0.3, cancel=cancel):
            full += fragment
            yield GenerationChunk("code", fragment, code_progress(len(full)), "page")
            if cancel is not None and cancel.cancelled:
                return
        if cancel is not None and cancel.cancelled:
            return
        if not full.strip():
            yield GenerationChunk("error", "Model returned no code", 0)
            return

        yield GenerationChunk("status", "Cleaning and validating code...", 90)
        cleaned = clean_generated_code(full)
        valid, issues = validate_generated_code(cleaned)
        if not valid:
            logger.warning("codegen_validation_warnings", extra={"issues": issues})
            yield GenerationChunk("status", f"Code generated with warnings: {', '.join(issues)}", 95)
        logger.info("codegen_complete", extra={"length": len(cleaned)})
        yield GenerationChunk("status", done_message, 100)
        yield GenerationChunk("complete", cleaned, 100, "page")
    except ScaffolderError as exc:
        logger.warning("codegen_failed", extra={"err": exc.message, "details": exc.technical_details})
        yield GenerationChunk("error", exc.message, 0)


async def generate_app_code(
    spec: AppSpec,
    app_id: str,
    *,
    client: Optional[ModelClient] = None,
    cancel: Optional[CancellationToken] = None,
) -> AsyncIterator[GenerationChunk]:
    logger.info(
        "codegen_started",
        extra={"app_id": app_id, "fields": len(user_fields(spec)), "views": len(spec.views)},
    )
    yield GenerationChunk("status", "Initializing code generation...", 5)
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": build_page_prompt(spec, app_id)},
    ]
    yield GenerationChunk("status", "Generating page component...", 10)
    yield GenerationChunk("status", "Writing component code...", 15, "page")
    async for chunk in _stream_page(messages, client or ModelClient(), cancel, "Code generation complete!"):
        yield chunk


async def regenerate_app_code(
    spec: AppSpec,
    app_id: str,
    previous_code: str,
    issues: str,
    *,
    client: Optional[ModelClient] = None,
    cancel: Optional[CancellationToken] = None,
) -> AsyncIterator[GenerationChunk]:
    """Same protocol as :func:`generate_app_code`, with the previous code and reported issues as context."""
    logger.info("codegen_regenerate_started", extra={"app_id": app_id, "issues": issues[:200]})
    yield GenerationChunk("status", "Analyzing issues and preparing fix...", 5)
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT + REGENERATION_CONTEXT},
        {"role": "user", "content": build_regeneration_prompt(spec, app_id, previous_code, issues)},
    ]
    yield GenerationChunk("status", "Generating fixed code...", 15, "page")
    async for chunk in _stream_page(messages, client or ModelClient(), cancel, "Code regeneration complete!"):
        yield chunk
