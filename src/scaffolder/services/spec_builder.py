"""Deterministic synthesis of an ``AppSpec`` from clarification answers.

Everything here is pure: the same answers always produce the same spec.
Loosely shaped specs coming back from a model go through
``normalize_spec_payload`` before they are trusted.
"""
from __future__ import annotations

import html
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..domain.models import (
    AnswerValue,
    AppSpec,
    DataStoreConfig,
    FieldDefinition,
    ParsedIntent,
    Question,
    ViewConfig,
)
from .intent_parser import CATEGORY_TEMPLATES, validate_category

logger = logging.getLogger("scaffolder.spec")

VIEW_TYPES = ("table", "chart", "cards")
MIN_FIELDS = 2

VIEW_TYPE_MAPPING: Dict[str, str] = {
    "table": "table",
    "tables": "table",
    "list": "table",
    "chart": "chart",
    "charts": "chart",
    "graph": "chart",
    "graphs": "chart",
    "calendar": "chart",
    "summary": "chart",
    "card": "cards",
    "cards": "cards",
}

COMMON_FIELDS = ["name", "value", "date", "notes", "description", "category", "completed", "status"]

DEFAULT_FIELDS: Dict[str, List[str]] = {
    "expense": ["amount", "category", "date", "description"],
    "habit": ["habitName", "completed", "date", "notes"],
    "project": ["taskName", "status", "priority", "dueDate"],
    "health": ["metric", "value", "date", "notes"],
    "learning": ["topic", "timeSpent", "date", "notes"],
    "inventory": ["itemName", "quantity", "category", "location"],
    "time": ["activity", "duration", "date", "category"],
    "custom": ["name", "value", "date", "notes"],
}


def _f(name: str, label: str, type_: str = "text", required: bool = False, **kw: Any) -> FieldDefinition:
    return FieldDefinition(name=name, label=label, type=type_, required=required, **kw)


FIELD_TEMPLATES: Dict[str, FieldDefinition] = {
    "name": _f("name", "Name", "text", True),
    "value": _f("value", "Value", "number", True),
    "date": _f("date", "Date", "date", True),
    "notes": _f("notes", "Notes", "textarea"),
    "description": _f("description", "Description", "textarea"),
    "amount": _f("amount", "Amount", "number", True, placeholder="0.00"),
    "category": _f("category", "Category", "select", True, options=["Food", "Transport", "Entertainment", "Shopping", "Bills", "Other"]),
    "paymentMethod": _f("paymentMethod", "Payment Method", "select", options=["Cash", "Credit Card", "Debit Card", "Bank Transfer", "Other"]),
    "habitName": _f("habitName", "Habit", "text", True),
    "completed": _f("completed", "Completed", "boolean", True),
    "streak": _f("streak", "Streak", "number"),
    "taskName": _f("taskName", "Task", "text", True),
    "status": _f("status", "Status", "select", True, options=["To Do", "In Progress", "Done", "Blocked"]),
    "priority": _f("priority", "Priority", "select", options=["Low", "Medium", "High", "Urgent"]),
    "dueDate": _f("dueDate", "Due Date", "date"),
    "assignee": _f("assignee", "Assignee", "text"),
    "metric": _f("metric", "Metric", "text", True),
    "unit": _f("unit", "Unit", "text"),
    "topic": _f("topic", "Topic", "text", True),
    "timeSpent": _f("timeSpent", "Time Spent (min)", "number", True),
    "progress": _f("progress", "Progress (%)", "number"),
    "itemName": _f("itemName", "Item", "text", True),
    "quantity": _f("quantity", "Quantity", "number", True),
    "location": _f("location", "Location", "text"),
    "lastUpdated": _f("lastUpdated", "Last Updated", "date"),
    "activity": _f("activity", "Activity", "text", True),
    "startTime": _f("startTime", "Start Time", "text", True),
    "endTime": _f("endTime", "End Time", "text"),
    "duration": _f("duration", "Duration (min)", "number", True),
}

# answers that refine the options of a select field
_OPTION_OVERRIDES = {"q_statuses": "status", "q_categories": "category"}


def valid_fields_for(category: str) -> List[str]:
    template = CATEGORY_TEMPLATES.get(category) or CATEGORY_TEMPLATES["custom"]
    seen = list(template["fields"])
    for name in COMMON_FIELDS:
        if name not in seen:
            seen.append(name)
    return seen


def default_fields_for(category: str) -> List[str]:
    return list(DEFAULT_FIELDS.get(category) or DEFAULT_FIELDS["custom"])


def create_field_definition(field_id: str) -> FieldDefinition:
    template = FIELD_TEMPLATES.get(field_id)
    if template is not None:
        return template.model_copy(deep=True)
    return FieldDefinition(name=field_id, label=field_id[:1].upper() + field_id[1:], type="text", required=False)


def user_fields(spec: AppSpec) -> List[FieldDefinition]:
    """Fields the user enters; system fields such as ``id`` are filled in by the record itself."""
    return [f for f in spec.data_store.fields if not f.generated]


def _non_empty_list(value: Optional[AnswerValue]) -> Optional[List[str]]:
    if isinstance(value, list) and value:
        return [str(v) for v in value]
    return None


def extract_fields(answers: Dict[str, AnswerValue], questions: Sequence[Question], category: str) -> List[str]:
    """Pick the field ids the user chose, trying progressively looser matches."""
    valid = valid_fields_for(category)

    chosen = _non_empty_list(answers.get("q_fields"))
    if chosen:
        return chosen

    data_question = next((q for q in questions if q.category == "data"), None)
    if data_question is not None:
        chosen = _non_empty_list(answers.get(data_question.id))
        if chosen:
            return chosen

    for q in questions:
        qid = q.id.lower()
        if "field" in qid or "data" in qid or "track" in qid:
            chosen = _non_empty_list(answers.get(q.id))
            if chosen:
                return chosen

    for answer in answers.values():
        matches = [a for a in (_non_empty_list(answer) or []) if a in valid]
        if matches:
            return matches

    for q in questions:
        if q.category != "data":
            continue
        picked = _non_empty_list(answers.get(q.id))
        if not picked:
            continue
        mapped: List[str] = []
        for opt_id in picked:
            if opt_id in valid:
                mapped.append(opt_id)
                continue
            option = next((o for o in q.options if o.id == opt_id or o.label == opt_id), None)
            if option is not None and option.id in valid:
                mapped.append(option.id)
            elif opt_id:
                mapped.append(opt_id)
        if mapped:
            return mapped

    logger.info("spec_fields_defaulted", extra={"category": category})
    return default_fields_for(category)


def normalize_view_types(views: Sequence[str]) -> List[str]:
    normalized: List[str] = []
    for view in views:
        lower = str(view).lower()
        kind = VIEW_TYPE_MAPPING.get(lower)
        if kind is None and lower.startswith("chart"):
            kind = "chart"
        if kind and kind not in normalized:
            normalized.append(kind)
    return normalized or ["table"]


def extract_views(answers: Dict[str, AnswerValue], questions: Sequence[Question]) -> List[str]:
    chosen = _non_empty_list(answers.get("q_visualization"))
    if chosen:
        return normalize_view_types(chosen)

    ui_question = next((q for q in questions if q.category == "ui"), None)
    if ui_question is not None:
        chosen = _non_empty_list(answers.get(ui_question.id))
        if chosen:
            return normalize_view_types(chosen)

    for q in questions:
        qid = q.id.lower()
        if "view" in qid or "visual" in qid or "display" in qid:
            chosen = _non_empty_list(answers.get(q.id))
            if chosen:
                return normalize_view_types(chosen)

    for answer in answers.values():
        matches = [a for a in (_non_empty_list(answer) or []) if a.lower() in VIEW_TYPE_MAPPING]
        if matches:
            return normalize_view_types(matches)
    return ["table"]


def validate_selected_fields(selected: Sequence[str], category: str) -> List[str]:
    valid = valid_fields_for(category)
    fields: List[str] = []
    for name in selected:
        if name in valid and name not in fields:
            fields.append(name)
    if not fields:
        return default_fields_for(category)
    if len(fields) < MIN_FIELDS:
        for name in default_fields_for(category):
            if len(fields) >= MIN_FIELDS:
                break
            if name not in fields:
                fields.append(name)
    return fields


def _primary_chart_type(answers: Dict[str, AnswerValue]) -> str:
    primary = answers.get("q_primary_chart")
    if isinstance(primary, list):
        primary = primary[0] if primary else None
    if primary in ("bar", "line", "pie", "area"):
        return primary
    for choice in _non_empty_list(answers.get("q_visualization")) or []:
        if choice.startswith("chart_"):
            kind = choice[len("chart_"):]
            if kind in ("bar", "line", "pie", "area"):
                return kind
    return "bar"


def create_view_config(view_type: str, fields: Sequence[FieldDefinition], chart_type: str = "bar") -> ViewConfig:
    if view_type == "chart":
        numeric = next((f for f in fields if f.type == "number"), None)
        date = next((f for f in fields if f.type == "date"), None)
        select = next((f for f in fields if f.type == "select"), None)
        x_axis = (date or select or (fields[0] if fields else None))
        config: Dict[str, Any] = {
            "chartType": chart_type,
            "xAxis": x_axis.name if x_axis else "date",
            "yAxis": numeric.name if numeric else "value",
            "aggregation": "sum",
        }
        if select is not None:
            config["groupBy"] = select.name
        return ViewConfig(type="chart", title="Trends", config=config)
    if view_type == "cards":
        date = next((f for f in fields if f.type == "date"), None)
        config = {
            "titleField": fields[0].name if fields else "name",
            "bodyFields": [f.name for f in fields[1:4]],
        }
        if date is not None:
            config["subtitleField"] = date.name
        return ViewConfig(type="cards", title="Cards View", config=config)
    return ViewConfig(
        type="table",
        title="All Entries",
        config={
            "columns": [
                {"field": f.name, "label": f.label, "sortable": True, "filterable": f.type == "select"}
                for f in fields
            ],
            "defaultSort": {"field": "date", "direction": "desc"},
        },
    )


def _apply_option_overrides(
    fields: List[FieldDefinition], answers: Dict[str, AnswerValue], questions: Sequence[Question]
) -> None:
    by_id = {q.id: q for q in questions}
    for question_id, field_name in _OPTION_OVERRIDES.items():
        chosen = _non_empty_list(answers.get(question_id))
        target = next((f for f in fields if f.name == field_name and f.type == "select"), None)
        if not chosen or target is None:
            continue
        question = by_id.get(question_id)
        labels = {o.id: o.label for o in question.options} if question else {}
        target.options = [labels.get(c, c) for c in chosen]


def generate_description(intent: ParsedIntent, fields: Sequence[FieldDefinition], views: Sequence[ViewConfig]) -> str:
    prompt = (intent.original_prompt or "").lower()
    if "daily" in prompt or "everyday" in prompt:
        parts = ["Track your daily"]
    elif "weekly" in prompt:
        parts = ["Track your weekly"]
    elif "monthly" in prompt:
        parts = ["Track your monthly"]
    else:
        parts = ["Track your"]

    parts.append(" and ".join(intent.entities[:2]) if intent.entities else f"{intent.category} data")

    key_fields = [f.label.lower() for f in fields if f.required][:3]
    if key_fields:
        parts.append(f"with {', '.join(key_fields)}")

    kinds = [v.type for v in views]
    if "chart" in kinds:
        parts.append("and visualize trends")
    elif "cards" in kinds:
        parts.append("in an organized card view")
    return " ".join(parts) + "."


def build_spec_from_answers(
    intent: ParsedIntent,
    answers: Dict[str, AnswerValue],
    questions: Sequence[Question] = (),
) -> AppSpec:
    category = validate_category(intent.category)
    selected = extract_fields(answers, questions, category)
    fields = [create_field_definition(name) for name in validate_selected_fields(selected, category)]
    _apply_option_overrides(fields, answers, questions)

    chart_type = _primary_chart_type(answers)
    views = [create_view_config(kind, fields, chart_type) for kind in extract_views(answers, questions)]

    spec = AppSpec(
        name=intent.suggested_name,
        description=generate_description(intent, fields, views),
        category=category,
        data_store=DataStoreConfig(name="entries", label=intent.suggested_name, fields=fields),
        views=views,
    )
    logger.info(
        "spec_built",
        extra={"category": category, "fields": [f.name for f in fields], "views": [v.type for v in views]},
    )
    return spec


def validate_spec(spec: Optional[AppSpec]) -> Tuple[List[str], List[str]]:
    """Return ``(errors, warnings)``; a spec with errors must not be built."""
    errors: List[str] = []
    warnings: List[str] = []
    if spec is None:
        return ["No specification has been designed yet"], warnings
    if not spec.name.strip():
        errors.append("App name is required")
    fields = user_fields(spec)
    if len(fields) < MIN_FIELDS:
        errors.append(f"At least {MIN_FIELDS} fields are required")
    names = [f.name for f in fields]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        errors.append(f"Duplicate field names: {', '.join(dupes)}")
    for f in fields:
        if f.type == "select" and not f.options:
            errors.append(f'Select field "{f.name}" has no options')
    if not spec.views:
        errors.append("At least one view is required")
    if not any(f.required for f in fields):
        warnings.append("No required fields; entries may be empty")
    if not any(f.type == "date" for f in fields):
        warnings.append("Consider adding a date field for time-based tracking")
    for view in spec.views:
        if view.type == "chart" and not any(f.type == "number" for f in fields):
            warnings.append("Chart view has no numeric field to plot")
            break
    return errors, warnings


def readiness_for_spec(spec: AppSpec) -> Dict[str, int]:
    """Readiness targets implied by a spec: richer schemas and more views score higher."""
    field_count = len(user_fields(spec))
    schema = min(30 + 15 * field_count, 100)
    if spec.description:
        schema = min(schema + 10, 100)
    views = len(spec.views)
    ui = 0 if views == 0 else min(70 + 15 * (views - 1), 100)
    return {"schema": schema, "ui": ui, "workflow": 50}


def _coerce_field(raw: Any) -> Optional[FieldDefinition]:
    if isinstance(raw, str):
        return create_field_definition(raw)
    if not isinstance(raw, dict):
        return None
    name = str(raw.get("name") or raw.get("id") or "").strip()
    if not name:
        return None
    base = create_field_definition(name)
    type_ = str(raw.get("type") or base.type).lower()
    if type_ not in ("text", "textarea", "number", "date", "boolean", "select"):
        type_ = {"string": "text", "integer": "number", "float": "number", "bool": "boolean", "enum": "select"}.get(type_, "text")
    options = raw.get("options")
    if not isinstance(options, list):
        options = base.options
    if type_ == "select" and not options:
        type_ = "text"
    return FieldDefinition(
        name=name,
        label=str(raw.get("label") or base.label),
        type=type_,
        required=bool(raw.get("required", base.required)),
        options=[str(o) for o in options] if options else None,
        placeholder=raw.get("placeholder") or base.placeholder,
    )


def normalize_spec_payload(payload: Any, fallback: AppSpec) -> AppSpec:
    """Decode a loosely shaped spec dict, filling gaps from ``fallback``.

    Unknown keys are ignored and malformed fields dropped; if fewer than two
    usable fields remain the fallback's schema is kept.
    """
    if not isinstance(payload, dict):
        return fallback.model_copy(deep=True)
    store = payload.get("dataStore") or payload.get("data_store") or {}
    raw_fields = store.get("fields") if isinstance(store, dict) else payload.get("fields")
    fields = [f for f in (_coerce_field(r) for r in (raw_fields or [])) if f is not None]
    seen: Dict[str, FieldDefinition] = {}
    for f in fields:
        seen.setdefault(f.name, f)
    fields = list(seen.values())
    if len(fields) < MIN_FIELDS:
        fields = [f.model_copy(deep=True) for f in fallback.data_store.fields]

    raw_views = payload.get("views") or []
    kinds = normalize_view_types(
        [v.get("type", "") if isinstance(v, dict) else str(v) for v in raw_views]
    ) if raw_views else [v.type for v in fallback.views]
    views = [create_view_config(k, fields) for k in kinds]

    name = str(payload.get("name") or fallback.name)
    return AppSpec(
        name=name,
        description=str(payload.get("description") or fallback.description),
        category=validate_category(payload.get("category") or fallback.category),
        data_store=DataStoreConfig(name="entries", label=name, fields=fields),
        views=views,
        features=dict(fallback.features),
    )


def generate_preview_html(spec: AppSpec) -> str:
    e = html.escape
    field_html = []
    for f in user_fields(spec):
        input_type = "number" if f.type == "number" else "date" if f.type == "date" else "text"
        star = " *" if f.required else ""
        field_html.append(
            f'<div class="field"><label>{e(f.label)}{star}</label>'
            f'<input type="{input_type}" placeholder="{e(f.placeholder or f.label)}" /></div>'
        )
    view_html = [
        f'<div class="view-preview"><h4>{e(v.title)}</h4><div class="view-type">{v.type.upper()}</div></div>'
        for v in spec.views
    ]
    return (
        '<div class="app-preview">'
        f"<header><h2>{e(spec.name)}</h2><p>{e(spec.description)}</p></header>"
        '<section class="form-preview"><h3>Data Entry Form</h3>'
        + "".join(field_html)
        + "<button>Add Entry</button></section>"
        '<section class="views-preview"><h3>Views</h3>'
        + "".join(view_html)
        + "</section></div>"
    )
