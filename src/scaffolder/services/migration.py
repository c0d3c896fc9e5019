"""Pure v1 -> v2 record migration.

Every function here takes plain dicts (as read from the store or an export)
and returns new v2 models; nothing touches storage or the live pipeline.
Missing or malformed v1 values are replaced by explicit defaults so the
conversion is total.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from ..core.state_machine import compute_overall, phase_from_readiness
from ..domain.models import (
    AppSpec,
    ConversationState,
    DataStoreConfig,
    FieldDefinition,
    GeneratedAppRecord,
    Message,
    Readiness,
    new_id,
)
from .intent_parser import validate_category
from .proposals import LayoutBuilder
from .spec_builder import create_view_config, normalize_view_types, user_fields

logger = logging.getLogger("scaffolder.migration")

PHASE_MAP: Dict[str, str] = {
    "parse": "intake",
    "probe": "clarification",
    "picture": "design",
    "plan": "planning",
    "build": "build",
    "complete": "complete",
    # already-v2 names pass through
    "intake": "intake",
    "clarification": "clarification",
    "design": "design",
    "planning": "planning",
}

FIELD_TYPE_MAP: Dict[str, str] = {
    "string": "text",
    "text": "text",
    "textarea": "textarea",
    "number": "number",
    "integer": "number",
    "float": "number",
    "decimal": "number",
    "boolean": "boolean",
    "bool": "boolean",
    "date": "date",
    "datetime": "date",
    "timestamp": "date",
    "enum": "select",
    "select": "select",
    "array": "textarea",
    "list": "textarea",
    "json": "textarea",
    "object": "textarea",
}

SYSTEM_FIELDS = ("id", "createdAt")

_LAYOUT_COMPONENTS = {"form", "table", "chart", "cards", "kanban", "calendar", "stats", "filters", "custom"}


@dataclass
class MigrationStats:
    conversations_total: int = 0
    conversations_migrated: int = 0
    conversations_failed: int = 0
    apps_total: int = 0
    apps_migrated: int = 0
    apps_failed: int = 0
    errors: List[str] = field(default_factory=list)


def _as_obj(raw: Any, default: Any) -> Any:
    """Accept a decoded value or a JSON string (older stores kept JSON as text)."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return default
    return raw if isinstance(raw, type(default)) else default


def sanitize_name(name: str) -> str:
    cleaned = re.sub(r"[^a-zA-Z0-9]", "", name)
    return re.sub(r"^([0-9])", r"_\1", cleaned) or "field"


def format_label(name: str) -> str:
    spaced = re.sub(r"([A-Z])", r" \1", name).replace("_", " ").strip()
    return spaced[:1].upper() + spaced[1:] if spaced else name


def map_phase(v1_phase: Any) -> Optional[str]:
    if not isinstance(v1_phase, str):
        return None
    return PHASE_MAP.get(v1_phase.strip().lower())


def map_field_type(v1_type: Any) -> str:
    if not isinstance(v1_type, str) or not v1_type:
        return "text"
    return FIELD_TYPE_MAP.get(v1_type.lower(), "text")


def convert_field(raw: Any) -> FieldDefinition:
    data = raw if isinstance(raw, dict) else {"name": str(raw)}
    name = str(data.get("name") or data.get("key") or "field")
    type_ = map_field_type(data.get("type"))
    options = data.get("options") if isinstance(data.get("options"), list) else None
    if type_ == "select" and not options:
        type_ = "text"
    return FieldDefinition(
        name=sanitize_name(name),
        label=str(data.get("label") or format_label(name)),
        type=type_,
        required=data.get("required") is True,
        options=[str(o) for o in options] if options else None,
        placeholder=data.get("placeholder") if isinstance(data.get("placeholder"), str) else None,
        generated=data.get("generated") is True,
    )


def ensure_system_fields(fields: List[FieldDefinition]) -> List[FieldDefinition]:
    out = list(fields)
    names = {f.name for f in out}
    if "id" not in names:
        out.insert(0, FieldDefinition(name="id", label="ID", type="text", required=True, generated=True))
    if "createdAt" not in names:
        out.append(FieldDefinition(name="createdAt", label="Created At", type="date", required=True, generated=True))
    for f in out:
        if f.name in SYSTEM_FIELDS:
            f.generated = True
    return out


def _schema_fields(schema: Dict[str, Any]) -> List[FieldDefinition]:
    raw = schema.get("fields") if isinstance(schema.get("fields"), list) else schema.get("attributes")
    return [convert_field(f) for f in raw] if isinstance(raw, list) else []


def _form_view_fields(views: List[Any]) -> List[FieldDefinition]:
    for view in views:
        if isinstance(view, dict) and view.get("type") == "form":
            config = view.get("config") if isinstance(view.get("config"), dict) else {}
            if isinstance(config.get("fields"), list):
                return [convert_field(f) for f in config["fields"]]
    return []


def convert_spec(v1_spec: Dict[str, Any], *, name: Optional[str] = None, description: str = "") -> Optional[AppSpec]:
    """Build an ``AppSpec`` from a v1 spec dict; ``None`` when it carries no schema at all."""
    views_raw = v1_spec.get("views") if isinstance(v1_spec.get("views"), list) else []
    schema = v1_spec.get("schema") if isinstance(v1_spec.get("schema"), dict) else None
    if schema is not None:
        fields = _schema_fields(schema)
        entity = str(schema.get("name") or schema.get("entity") or "item")
        label = str(schema.get("label") or format_label(entity))
        schema_description = str(schema.get("description") or "")
    elif isinstance(v1_spec.get("entity"), str):
        fields = _form_view_fields(views_raw)
        entity = v1_spec["entity"]
        label = format_label(entity)
        schema_description = f"Migrated from V1 {entity} app"
    elif isinstance(v1_spec.get("dataStore"), dict):
        fields = _schema_fields(v1_spec["dataStore"])
        entity = str(v1_spec["dataStore"].get("name") or "entries")
        label = str(v1_spec["dataStore"].get("label") or format_label(entity))
        schema_description = ""
    else:
        return None

    fields = ensure_system_fields(fields)
    kinds = [str(v.get("type", "")) if isinstance(v, dict) else str(v) for v in views_raw]
    kinds = [k for k in kinds if k and k != "form"]
    view_types = normalize_view_types(kinds) if kinds else ["table"]
    visible = [f for f in fields if not f.generated]
    app_name = name or str(v1_spec.get("name") or label)
    return AppSpec(
        name=app_name,
        description=description or str(v1_spec.get("description") or schema_description),
        category=validate_category(v1_spec.get("category")),
        data_store=DataStoreConfig(name=sanitize_name(entity) if entity else "entries", label=label, fields=fields),
        views=[create_view_config(k, visible) for k in view_types],
    )


# ----------------------------------------------------------------------
# Layout
# ----------------------------------------------------------------------
def _validate_node(node: Dict[str, Any], b: LayoutBuilder) -> Dict[str, Any]:
    out: Dict[str, Any] = {"id": str(node.get("id") or b.next_id()), "type": node.get("type")}
    container = node.get("container")
    if isinstance(container, dict):
        children = container.get("children") if isinstance(container.get("children"), list) else []
        out["container"] = {
            "direction": container.get("direction") or "column",
            "gap": container.get("gap") or "1rem",
            "children": [_validate_node(c, b) for c in children if isinstance(c, dict)],
        }
        for key in ("padding", "responsive"):
            if container.get(key):
                out["container"][key] = container[key]
    component = node.get("component")
    if isinstance(component, dict):
        kind = component.get("type") if component.get("type") in _LAYOUT_COMPONENTS else "table"
        out["component"] = {"type": kind, "props": dict(component.get("props") or {})}
        if component.get("variant"):
            out["component"]["variant"] = component["variant"]
    if isinstance(node.get("sizing"), dict):
        out["sizing"] = dict(node["sizing"])
    return out


def default_layout(components: Iterable[str] = ("form", "table")) -> Dict[str, Any]:
    b = LayoutBuilder()
    kinds = [c for c in components if c in _LAYOUT_COMPONENTS] or ["form", "table"]
    return b.container("column", [b.component(k) for k in kinds], padding="1.5rem")


def layout_from_structure(structure: str, components: List[str]) -> Dict[str, Any]:
    b = LayoutBuilder()
    if structure == "dashboard":
        children = [b.component(k) for k in ("stats", "chart") if k in components]
        children.append(
            b.container(
                "row",
                [
                    b.component("form", sizing={"basis": "350px", "grow": 0, "shrink": 0}),
                    b.component("table", sizing={"basis": "1fr", "grow": 1, "shrink": 1}),
                ],
                responsive={"mobile": "stack", "tablet": "stack", "desktop": "side-by-side"},
            )
        )
        return b.container("column", children, padding="1.5rem")
    if structure in ("sidebar", "split"):
        basis = ("320px", "1fr") if structure == "sidebar" else ("50%", "50%")
        return b.container(
            "row",
            [
                b.component("form", sizing={"basis": basis[0], "grow": 0 if structure == "sidebar" else 1, "shrink": 0}),
                b.component("table", sizing={"basis": basis[1], "grow": 1, "shrink": 1}),
            ],
            padding="1.5rem",
            responsive={"mobile": "stack", "tablet": "side-by-side", "desktop": "side-by-side"},
        )
    if structure == "kanban":
        return b.container("column", [b.component("form", variant="inline"), b.component("kanban")], gap="1rem", padding="1.5rem")
    return default_layout(components)


def convert_layout(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        return default_layout()
    if raw.get("type") and (raw.get("container") or raw.get("component")):
        return _validate_node(raw, LayoutBuilder())
    if isinstance(raw.get("structure"), str):
        components = raw.get("components") if isinstance(raw.get("components"), list) else ["form", "table"]
        return layout_from_structure(raw["structure"], [str(c) for c in components])
    return default_layout()


def layout_from_views(views: List[Any]) -> Dict[str, Any]:
    kinds = [v.get("type") for v in views if isinstance(v, dict) and v.get("type") in ("form", "table", "chart")]
    return default_layout(kinds)


def count_components(node: Optional[Dict[str, Any]]) -> int:
    if not node:
        return 0
    if node.get("type") == "component":
        return 1
    children = (node.get("container") or {}).get("children") or []
    return sum(count_components(c) for c in children)


# ----------------------------------------------------------------------
# Readiness
# ----------------------------------------------------------------------
def infer_readiness(spec: Optional[AppSpec], layout: Optional[Dict[str, Any]]) -> Readiness:
    schema = 0
    if spec is not None:
        schema = min(30 + 15 * len(user_fields(spec)), 100)
        if spec.description:
            schema = min(schema + 10, 100)
    ui = 0
    if layout:
        components = count_components(layout)
        ui = 100 if components >= 4 else 85 if components >= 2 else 70
    workflow = 50
    return Readiness(schema=schema, ui=ui, workflow=workflow, overall=compute_overall(schema, ui, workflow))


# ----------------------------------------------------------------------
# Records
# ----------------------------------------------------------------------
def _messages(raw: Any) -> List[Message]:
    out: List[Message] = []
    for item in _as_obj(raw, []):
        if not isinstance(item, dict) or item.get("role") not in ("system", "user", "assistant"):
            continue
        data = {k: item[k] for k in ("id", "role", "timestamp", "metadata") if item.get(k) is not None}
        data["content"] = str(item.get("content") or "")
        try:
            out.append(Message.model_validate(data))
        except PydanticValidationError:
            logger.debug("migration_message_skipped", extra={"message_id": item.get("id")})
    return out


def migrate_conversation(v1: Dict[str, Any]) -> ConversationState:
    agent_state = _as_obj(v1.get("agentState") if "agentState" in v1 else v1.get("agent_state"), {})
    spec_raw = agent_state.get("spec") if isinstance(agent_state.get("spec"), dict) else {}
    schemas = agent_state.get("schemas") if isinstance(agent_state.get("schemas"), list) else []
    name = agent_state.get("suggestedAppName") if isinstance(agent_state.get("suggestedAppName"), str) else None

    if schemas and isinstance(schemas[0], dict):
        spec = convert_spec({**spec_raw, "schema": schemas[0]}, name=name)
    else:
        spec = convert_spec(spec_raw, name=name)

    layout = convert_layout(agent_state["layout"]) if agent_state.get("layout") else None
    readiness = infer_readiness(spec, layout)
    phase = map_phase(agent_state.get("phase")) or phase_from_readiness(readiness.overall)

    answers = agent_state.get("answers") if isinstance(agent_state.get("answers"), dict) else {}
    state = ConversationState(
        id=str(v1.get("id") or new_id("conv")),
        owner_id=str(v1.get("userId") or v1.get("owner_id") or "anonymous"),
        phase=phase,
        messages=_messages(v1.get("messages")),
        answers={str(k): v if isinstance(v, list) else str(v) for k, v in answers.items()},
        spec=spec,
        layout=layout,
        readiness=readiness,
    )
    logger.info("conversation_migrated", extra={"conversation_id": state.id, "phase": phase})
    return state


def migrate_app(v1: Dict[str, Any]) -> GeneratedAppRecord:
    v1_spec = _as_obj(v1.get("spec"), {})
    name = str(v1.get("name") or v1_spec.get("name") or "Migrated App")
    spec = convert_spec(v1_spec, name=name, description=str(v1.get("description") or ""))
    if spec is None:
        spec = AppSpec(
            name=name,
            description=str(v1.get("description") or ""),
            data_store=DataStoreConfig(label=name, fields=ensure_system_fields([])),
            views=[create_view_config("table", [])],
        )

    files: Dict[str, str] = {}
    components = v1_spec.get("components") if isinstance(v1_spec.get("components"), dict) else {}
    for key, code in components.items():
        if isinstance(code, str) and code:
            files[key if "." in key else f"{key}.tsx"] = code
    if isinstance(v1.get("code"), str) and v1["code"]:
        files.setdefault("page.tsx", v1["code"])

    if v1_spec.get("layout"):
        layout = convert_layout(v1_spec["layout"])
    elif isinstance(v1_spec.get("views"), list):
        layout = layout_from_views(v1_spec["views"])
    else:
        layout = None

    status = str(v1.get("status") or v1.get("buildStatus") or "COMPLETED").upper()
    if status not in ("GENERATING", "COMPLETED", "FAILED", "CANCELLED"):
        status = "COMPLETED" if files else "FAILED"
    record = GeneratedAppRecord(
        id=str(v1.get("id") or new_id("app")),
        conversation_id=v1.get("conversationId") or v1.get("conversation_id"),
        owner_id=str(v1.get("userId") or v1.get("owner_id") or "anonymous"),
        name=name,
        description=spec.description,
        spec=spec,
        layout=layout,
        files=files,
        build_status=status,
    )
    logger.info("app_migrated", extra={"app_id": record.id, "files": sorted(files)})
    return record


def migrate_all(
    conversations: Iterable[Dict[str, Any]],
    apps: Iterable[Dict[str, Any]],
) -> Tuple[List[ConversationState], List[GeneratedAppRecord], MigrationStats]:
    """Migrate a batch; a record that cannot be converted is counted and skipped."""
    stats = MigrationStats()
    migrated_conversations: List[ConversationState] = []
    migrated_apps: List[GeneratedAppRecord] = []
    for raw in conversations:
        stats.conversations_total += 1
        try:
            migrated_conversations.append(migrate_conversation(raw))
            stats.conversations_migrated += 1
        except (PydanticValidationError, AttributeError, TypeError, ValueError) as exc:
            stats.conversations_failed += 1
            stats.errors.append(f"conversation {raw.get('id') if isinstance(raw, dict) else '?'}: {exc}")
    for raw in apps:
        stats.apps_total += 1
        try:
            migrated_apps.append(migrate_app(raw))
            stats.apps_migrated += 1
        except (PydanticValidationError, AttributeError, TypeError, ValueError) as exc:
            stats.apps_failed += 1
            stats.errors.append(f"app {raw.get('id') if isinstance(raw, dict) else '?'}: {exc}")
    if stats.errors:
        logger.warning("migration_errors", extra={"count": len(stats.errors)})
    return migrated_conversations, migrated_apps, stats
