"""Deterministic, model-free page and types files rendered from a spec.

Used whenever the model path fails so a build always ends with a usable
artifact. Rendering is pure: the same spec and app id produce the same files.
"""
from __future__ import annotations

import html
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List

from jinja2 import Environment, FileSystemLoader, select_autoescape

from ..domain.models import AppSpec
from .code_generator import component_name
from .spec_builder import user_fields

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"

PAGE_FILE = "page.tsx"
TYPES_FILE = "types.ts"

_TS_TYPES = {"number": "number", "boolean": "boolean"}
_INPUT_TYPES = {"number": "number", "date": "date"}


def _jsx_text(value: Any) -> str:
    return html.escape(str(value), quote=True).replace("{", "&#123;").replace("}", "&#125;")


def _js_string(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace("'", "\\'").replace("\n", " ")


@lru_cache(maxsize=1)
def _build_env() -> Environment:
    env = Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        autoescape=select_autoescape(enabled_extensions=(".html", ".xml"), default_for_string=False),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters["jsx"] = _jsx_text
    env.filters["js"] = _js_string
    return env


def _identifier(name: str, index: int) -> str:
    ident = re.sub(r"\W+", "_", name).strip("_")
    if not ident or ident[0].isdigit():
        ident = f"field_{index}"
    return ident


def _field_context(spec: AppSpec) -> List[Dict[str, Any]]:
    out = []
    for i, f in enumerate(user_fields(spec)):
        out.append(
            {
                "name": _identifier(f.name, i),
                "label": f.label or f.name,
                "type": f.type,
                "required": f.required,
                "options": list(f.options or []),
                "ts_type": _TS_TYPES.get(f.type, "string"),
                "input_type": _INPUT_TYPES.get(f.type, "text"),
            }
        )
    return out


def generate_fallback_code(spec: AppSpec, app_id: str) -> str:
    return _build_env().get_template("page.tsx.j2").render(
        spec=spec,
        app_id=app_id,
        component=component_name(spec),
        fields=_field_context(spec),
    )


def generate_types_file(spec: AppSpec) -> str:
    return _build_env().get_template("types.ts.j2").render(spec=spec, fields=_field_context(spec))


def generate_fallback_files(spec: AppSpec, app_id: str) -> Dict[str, str]:
    return {
        PAGE_FILE: generate_fallback_code(spec, app_id),
        TYPES_FILE: generate_types_file(spec),
    }
