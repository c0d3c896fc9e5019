import json

from src.scaffolder.services.migration import (
    convert_field,
    convert_layout,
    count_components,
    map_phase,
    migrate_all,
    migrate_app,
    migrate_conversation,
)

V1_CONVERSATION = {
    "id": "conv-old",
    "userId": "user-7",
    "messages": json.dumps(
        [
            {"id": "m1", "role": "user", "content": "track my workouts", "timestamp": "2024-01-01T00:00:00Z"},
            {"id": "m2", "role": "tool", "content": "ignored"},
        ]
    ),
    "agentState": {
        "phase": "probe",
        "suggestedAppName": "Workout Log",
        "schemas": [
            {
                "name": "workout",
                "fields": [
                    {"name": "exercise name", "type": "string", "required": True},
                    {"name": "reps", "type": "integer"},
                    {"name": "kind", "type": "enum"},
                ],
            }
        ],
        "spec": {"views": [{"type": "form"}, {"type": "chart"}]},
        "answers": {"q_fields": ["reps"], "q_goal": 3},
    },
}


def test_phase_names_map_to_v2():
    assert map_phase("probe") == "clarification"
    assert map_phase("PICTURE") == "design"
    assert map_phase("planning") == "planning"
    assert map_phase("mystery") is None
    assert map_phase(None) is None


def test_convert_field_sanitizes_and_degrades_types():
    field = convert_field({"name": "exercise name", "type": "enum"})
    assert field.name == "exercisename"
    assert field.label == "Exercise name"
    assert field.type == "text"
    assert convert_field({"name": "2nd", "type": "decimal"}).name == "_2nd"
    assert convert_field({"name": "dueDate", "type": "timestamp"}).label == "Due Date"


def test_migrate_conversation():
    state = migrate_conversation(V1_CONVERSATION)
    assert state.id == "conv-old"
    assert state.owner_id == "user-7"
    assert state.phase == "clarification"
    assert [m.id for m in state.messages] == ["m1"]
    assert state.answers == {"q_fields": ["reps"], "q_goal": "3"}

    spec = state.spec
    assert spec.name == "Workout Log"
    names = [f.name for f in spec.data_store.fields]
    assert names == ["id", "exercisename", "reps", "kind", "createdAt"]
    assert [f.name for f in spec.data_store.fields if f.generated] == ["id", "createdAt"]
    assert [v.type for v in spec.views] == ["chart"]
    assert spec.views[0].config["yAxis"] == "reps"

    assert state.layout is None
    assert state.readiness.as_dict() == {"schema": 75, "ui": 0, "workflow": 50, "overall": 40}


def test_conversation_phase_inferred_from_readiness_when_missing():
    state = migrate_conversation({"id": "conv-2", "agentState": "{broken"})
    assert state.spec is None
    assert state.readiness.overall == 10
    assert state.phase == "intake"


def test_layout_conversion():
    dashboard = convert_layout({"structure": "dashboard", "components": ["stats", "chart", "form", "table"]})
    assert count_components(dashboard) == 4

    tree = convert_layout({"type": "container", "container": {"children": [{"type": "component", "component": {"type": "weird"}}]}})
    assert tree["id"] == "node-1"
    assert tree["container"]["direction"] == "column"
    assert tree["container"]["children"][0]["component"] == {"type": "table", "props": {}}

    assert count_components(convert_layout("junk")) == 2


def test_migrate_app_collects_files_and_layout():
    v1 = {
        "id": "app-old",
        "name": "Workouts",
        "code": "export default function Page() { return null; }",
        "status": "weird",
        "spec": json.dumps(
            {
                "entity": "workout",
                "views": [{"type": "form", "config": {"fields": [{"name": "reps", "type": "number"}]}}, {"type": "table"}],
                "components": {"chart": "chart code", "types.ts": "export {};"},
            }
        ),
    }
    app = migrate_app(v1)
    assert app.id == "app-old"
    assert app.files == {
        "chart.tsx": "chart code",
        "types.ts": "export {};",
        "page.tsx": "export default function Page() { return null; }",
    }
    assert app.build_status == "COMPLETED"
    assert app.description == "Migrated from V1 workout app"
    assert [f.name for f in app.spec.data_store.fields] == ["id", "reps", "createdAt"]
    assert count_components(app.layout) == 2


def test_migrate_app_without_code_or_spec():
    app = migrate_app({"id": "app-empty", "name": "Empty", "status": "broken"})
    assert app.build_status == "FAILED"
    assert app.spec.name == "Empty"
    assert [v.type for v in app.spec.views] == ["table"]


def test_migrate_all_counts_failures():
    conversations, apps, stats = migrate_all([V1_CONVERSATION, "not-a-record"], [{"id": "app-1", "name": "A", "code": "x"}])
    assert [c.id for c in conversations] == ["conv-old"]
    assert [a.id for a in apps] == ["app-1"]
    assert stats.conversations_total == 2
    assert stats.conversations_migrated == 1
    assert stats.conversations_failed == 1
    assert stats.apps_migrated == 1
    assert stats.errors[0].startswith("conversation ?:")
