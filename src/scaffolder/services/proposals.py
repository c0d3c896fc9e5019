"""Design proposals offered once a spec exists.

Each proposal is a partial design (layout, extra fields, workflows) that
``select_proposal`` merges into the conversation. Proposals are derived from
the spec deterministically so the same spec always yields the same offer.
"""
from __future__ import annotations

from itertools import count
from typing import Any, Dict, List, Optional

from ..domain.models import AppSpec, FieldDefinition, Proposal
from .spec_builder import create_field_definition

LayoutNode = Dict[str, Any]


class LayoutBuilder:
    def __init__(self) -> None:
        self._ids = count(1)

    def next_id(self) -> str:
        return f"node-{next(self._ids)}"

    def component(self, kind: str, sizing: Optional[Dict[str, Any]] = None, **props: Any) -> LayoutNode:
        node: LayoutNode = {"id": self.next_id(), "type": "component", "component": {"type": kind, "props": props}}
        if sizing:
            node["sizing"] = sizing
        return node

    def container(self, direction: str, children: List[LayoutNode], gap: str = "1.5rem", **extra: Any) -> LayoutNode:
        container: Dict[str, Any] = {"direction": direction, "gap": gap, "children": children}
        container.update(extra)
        return {"id": self.next_id(), "type": "container", "container": container}


def simple_layout(spec: AppSpec) -> LayoutNode:
    b = LayoutBuilder()
    children = [b.component("form")]
    for view in spec.views:
        children.append(b.component(view.type))
    if not any(v.type == "table" for v in spec.views):
        children.append(b.component("table"))
    return b.container("column", children, padding="1.5rem")


def dashboard_layout(spec: AppSpec) -> LayoutNode:
    b = LayoutBuilder()
    chart_type = next((v.config.get("chartType", "bar") for v in spec.views if v.type == "chart"), "bar")
    children = [
        b.component("stats"),
        b.component("chart", chartType=chart_type),
        b.container(
            "row",
            [
                b.component("form", sizing={"basis": "350px", "grow": 0, "shrink": 0}),
                b.component("table", sizing={"basis": "1fr", "grow": 1, "shrink": 1}),
            ],
            responsive={"mobile": "stack", "tablet": "stack", "desktop": "side-by-side"},
        ),
    ]
    return b.container("column", children, padding="1.5rem")


def sidebar_layout(spec: AppSpec) -> LayoutNode:
    b = LayoutBuilder()
    main = [b.component("table")]
    if any(v.type == "chart" for v in spec.views):
        main.append(b.component("chart"))
    if any(v.type == "cards" for v in spec.views):
        main.append(b.component("cards"))
    return b.container(
        "row",
        [
            b.container("column", [b.component("form"), b.component("filters")], gap="1rem"),
            b.container("column", main, gap="1rem"),
        ],
        padding="1.5rem",
    )


def kanban_layout(spec: AppSpec, field: FieldDefinition) -> LayoutNode:
    b = LayoutBuilder()
    columns = field.options or ["To Do", "In Progress", "Done"]
    return b.container(
        "column",
        [
            b.component("form"),
            b.component("kanban", groupBy=field.name, columns=list(columns)),
        ],
        padding="1.5rem",
    )


def generate_proposals(spec: AppSpec) -> List[Proposal]:
    names = {f.name for f in spec.data_store.fields}
    proposals = [
        Proposal(
            id="proposal-simple",
            title="Simple Tracker",
            description="A single column: entry form on top, your chosen views below.",
            layout=simple_layout(spec),
        ),
        Proposal(
            id="proposal-dashboard",
            title="Analytics Dashboard",
            description="Summary stats and a chart up front, with the form and table side by side.",
            layout=dashboard_layout(spec),
            workflows=[
                {"id": "wf-refresh-stats", "trigger": "entry.created", "action": "recalculate_stats"},
            ],
        ),
    ]
    status = next((f for f in spec.data_store.fields if f.type == "select" and f.name in ("status", "priority")), None)
    if status is not None:
        proposals.append(
            Proposal(
                id="proposal-board",
                title="Board View",
                description=f"Entries grouped into columns by {status.label.lower()}, moved as they progress.",
                layout=kanban_layout(spec, status),
                workflows=[
                    {"id": "wf-move-card", "trigger": f"{status.name}.changed", "action": "move_card"},
                ],
            )
        )
    else:
        extra = [create_field_definition(n) for n in ("notes", "date") if n not in names]
        proposals.append(
            Proposal(
                id="proposal-workspace",
                title="Sidebar Workspace",
                description="Form and filters in a sidebar, with room for notes on every entry.",
                fields=extra,
                layout=sidebar_layout(spec),
            )
        )
    return proposals
