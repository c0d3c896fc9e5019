from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from ..domain.models import AppSpec, ComponentPlan, ImplementationPlan, PlanArchitecture, PlanComponents
from ..errors import ModelFailureError
from ..infrastructure.event_bus import StatusReporter
from .model_client import ModelClient
from .spec_builder import user_fields

logger = logging.getLogger("scaffolder.plan")

PLAN_SYSTEM_PROMPT = (
    "You are an expert software architect. Generate detailed implementation plans "
    "for web applications. Always respond with valid JSON."
)

PLAN_SCHEMA = """{
  "overview": "2-3 sentences",
  "architecture": {"primitives": ["FormPrimitive", "TablePrimitive", "ChartPrimitive"], "dataFlow": "string"},
  "components": {
    "form": {"name": "EntryForm", "type": "FormPrimitive", "description": "string", "props": {}},
    "views": [{"name": "string", "type": "TablePrimitive|ChartPrimitive", "description": "string", "props": {}}]
  },
  "steps": ["string"],
  "estimatedComplexity": "simple|moderate|complex"
}"""


def estimate_complexity(spec: AppSpec) -> str:
    fields = len(user_fields(spec))
    views = len(spec.views)
    if fields > 8 or views > 3:
        return "complex"
    if fields > 5 or views > 2:
        return "moderate"
    return "simple"


def build_fallback_plan(spec: AppSpec) -> ImplementationPlan:
    """Plan derived from the spec alone; used when the model is unavailable."""
    field_names = [f.name for f in user_fields(spec)]
    has_chart = any(v.type == "chart" for v in spec.views)

    primitives = ["FormPrimitive", "TablePrimitive"]
    views: List[ComponentPlan] = [
        ComponentPlan(
            name="DataTable",
            type="TablePrimitive",
            description=f"Displays all {spec.data_store.label or 'entries'} in a sortable, filterable table",
            props={"columns": ", ".join(field_names), "sortable": "true"},
        )
    ]
    if has_chart:
        primitives.append("ChartPrimitive")
        chart = next(v for v in spec.views if v.type == "chart")
        views.append(
            ComponentPlan(
                name="DataChart",
                type="ChartPrimitive",
                description=chart.title or "Visualizes data trends and patterns",
                props={"chartType": str(chart.config.get("chartType", "bar")), "animated": "true"},
            )
        )

    count = len(field_names)
    return ImplementationPlan(
        overview=(
            f"{spec.name} is a {spec.category} tracking application that helps you manage and visualize "
            f"your {spec.category} data. It provides an intuitive form for data entry and multiple views for analysis."
        ),
        architecture=PlanArchitecture(
            primitives=primitives,
            data_flow=(
                "User enters data through the form -> Data is validated and stored -> "
                "Views automatically update to reflect changes -> Users can filter, sort, and analyze their data"
            ),
        ),
        components=PlanComponents(
            form=ComponentPlan(
                name="EntryForm",
                type="FormPrimitive",
                description=f"A dynamic form with {count} fields for adding new {spec.category} entries",
                props={"fields": ", ".join(field_names), "validation": "enabled"},
            ),
            views=views,
        ),
        steps=[
            "Initialize data storage with the defined schema",
            f"Render FormPrimitive with {count} configured fields",
            "Set up TablePrimitive with sortable columns and filtering",
            "Configure ChartPrimitive for data visualization" if has_chart else "Enable data export functionality",
            "Connect form submission to data storage",
            "Wire up views to reactively display stored data",
        ],
        estimated_complexity=estimate_complexity(spec),
    )


def _component(raw: Any) -> ComponentPlan:
    data = raw if isinstance(raw, dict) else {}
    props = data.get("props") if isinstance(data.get("props"), dict) else {}
    return ComponentPlan(
        name=str(data.get("name") or "Component"),
        type=str(data.get("type") or "TablePrimitive"),
        description=str(data.get("description") or ""),
        props={str(k): str(v) for k, v in props.items()},
    )


def plan_from_payload(payload: Any, spec: AppSpec) -> ImplementationPlan:
    """Decode the model's plan; raises ``ModelFailureError`` when required parts are missing."""
    if not isinstance(payload, dict):
        raise ModelFailureError("Plan response was not an object")
    missing = [k for k in ("overview", "architecture", "components", "steps") if not payload.get(k)]
    if missing:
        raise ModelFailureError(f"Plan response missing: {', '.join(missing)}")
    arch = payload["architecture"] if isinstance(payload["architecture"], dict) else {}
    comps = payload["components"] if isinstance(payload["components"], dict) else {}
    complexity = str(payload.get("estimatedComplexity") or "").lower()
    if complexity not in ("simple", "moderate", "complex"):
        complexity = estimate_complexity(spec)
    try:
        return ImplementationPlan(
            overview=str(payload["overview"]),
            architecture=PlanArchitecture(
                primitives=[str(p) for p in arch.get("primitives") or []],
                data_flow=str(arch.get("dataFlow") or arch.get("data_flow") or ""),
            ),
            components=PlanComponents(
                form=_component(comps.get("form")),
                views=[_component(v) for v in comps.get("views") or []],
            ),
            steps=[str(s) for s in payload["steps"]] if isinstance(payload["steps"], list) else [str(payload["steps"])],
            estimated_complexity=complexity,
        )
    except PydanticValidationError as exc:
        raise ModelFailureError("Plan response had an unexpected shape", original=exc) from exc


def build_plan_prompt(spec: AppSpec) -> str:
    fields = "\n".join(
        f"- {f.label} ({f.type}{', required' if f.required else ''})" for f in user_fields(spec)
    )
    views = "\n".join(f"- {v.title} ({v.type})" for v in spec.views)
    return (
        f'You are building a web application called "{spec.name}".\n\n'
        f"Description: {spec.description}\nCategory: {spec.category}\n\n"
        f"DATA FIELDS:\n{fields}\n\nVIEWS:\n{views}\n\n"
        "Based on this specification, generate an implementation plan as a JSON object."
    )


async def generate_plan(
    spec: AppSpec,
    reporter: Optional[StatusReporter] = None,
    client: Optional[ModelClient] = None,
) -> ImplementationPlan:
    """Ask the model for a plan, falling back to :func:`build_fallback_plan`."""
    client = client or ModelClient()

    def emit(message: str, progress: int, severity: str = "info", details: Optional[str] = None) -> None:
        if reporter is not None:
            reporter.emit("planning", message, severity=severity, progress=progress, technical_details=details)

    emit("Analyzing app architecture...", 20, details="Building prompt for plan generation")
    try:
        emit("Generating implementation plan...", 40, details="Calling model for plan generation")
        payload = await client.acomplete_json(
            [
                {"role": "system", "content": PLAN_SYSTEM_PROMPT},
                {"role": "user", "content": build_plan_prompt(spec)},
            ],
            schema=PLAN_SCHEMA,
            temperature=0.3,
        )
        emit("Processing plan details...", 70, details="Parsing model response into structured plan")
        plan = plan_from_payload(payload, spec)
    except ModelFailureError as exc:
        logger.info("plan_fallback_used", extra={"err": exc.message})
        emit("Using simplified plan (AI unavailable)", 100, severity="warning", details=exc.technical_details or exc.message)
        return build_fallback_plan(spec)
    emit(
        "Implementation plan ready!",
        100,
        severity="success",
        details=f"Plan: {len(plan.steps)} steps, {plan.estimated_complexity} complexity",
    )
    return plan


def format_plan_message(plan: ImplementationPlan) -> str:
    steps = "\n".join(f"{i + 1}. {step}" for i, step in enumerate(plan.steps))
    primitives = "\n".join(f"- {p}" for p in plan.architecture.primitives)
    complexity = plan.estimated_complexity[:1].upper() + plan.estimated_complexity[1:]
    return (
        "## Implementation Plan\n\n"
        f"{plan.overview}\n\n"
        "### Architecture\n"
        f"**Components Used:**\n{primitives}\n\n"
        f"**Data Flow:**\n{plan.architecture.data_flow}\n\n"
        "### Build Steps\n"
        f"{steps}\n\n"
        f"**Estimated Complexity:** {complexity}\n\n"
        "---\n\n"
        'Review the plan above and click "Build My App" when you\'re ready!'
    )


def plan_summary(plan: ImplementationPlan) -> Dict[str, Any]:
    return {
        "steps": len(plan.steps),
        "complexity": plan.estimated_complexity,
        "primitives": list(plan.architecture.primitives),
    }
