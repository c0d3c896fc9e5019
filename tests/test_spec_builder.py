from src.scaffolder.domain.models import AppSpec, DataStoreConfig, FieldDefinition, ParsedIntent, ViewConfig
from src.scaffolder.services.proposals import generate_proposals
from src.scaffolder.services.question_engine import generate_questions
from src.scaffolder.services.spec_builder import (
    build_spec_from_answers,
    generate_preview_html,
    normalize_spec_payload,
    normalize_view_types,
    readiness_for_spec,
    validate_spec,
)


def _expense_spec():
    intent = ParsedIntent(category="expense", entities=["expenses"], suggested_name="Expense Tracker")
    answers = {
        "q_fields": ["amount", "category", "date"],
        "q_categories": ["food", "transport"],
        "q_visualization": ["table", "chart_pie"],
    }
    return build_spec_from_answers(intent, answers, generate_questions(intent, answers))


def test_spec_from_answers_fields_views_and_options():
    spec = _expense_spec()
    assert [f.name for f in spec.data_store.fields] == ["amount", "category", "date"]
    assert [v.type for v in spec.views] == ["table", "chart"]
    chart = spec.views[1]
    assert chart.config["chartType"] == "pie"
    assert chart.config["yAxis"] == "amount"
    category = next(f for f in spec.data_store.fields if f.name == "category")
    assert category.options == ["Food & Dining", "Transportation"]


def test_spec_is_deterministic():
    assert _expense_spec().model_dump() == _expense_spec().model_dump()


def test_unknown_fields_fall_back_to_defaults():
    intent = ParsedIntent(category="custom", suggested_name="Things")
    spec = build_spec_from_answers(intent, {"q_fields": ["zzz"]}, [])
    assert [f.name for f in spec.data_store.fields] == ["name", "value", "date", "notes"]
    assert [v.type for v in spec.views] == ["table"]


def test_normalize_view_types_maps_synonyms():
    assert normalize_view_types(["graph", "list", "card", "chart_line"]) == ["chart", "table", "cards"]
    assert normalize_view_types([]) == ["table"]


def test_validate_spec_errors_and_warnings():
    spec = AppSpec(
        name="Broken",
        data_store=DataStoreConfig(
            label="Broken",
            fields=[FieldDefinition(name="kind", label="Kind", type="select")],
        ),
        views=[],
    )
    errors, warnings = validate_spec(spec)
    assert "At least 2 fields are required" in errors
    assert 'Select field "kind" has no options' in errors
    assert "At least one view is required" in errors
    assert "No required fields; entries may be empty" in warnings
    assert validate_spec(None)[0] == ["No specification has been designed yet"]


def test_valid_spec_has_no_errors():
    errors, _ = validate_spec(_expense_spec())
    assert errors == []


def test_readiness_for_spec_scores():
    spec = _expense_spec()
    scores = readiness_for_spec(spec)
    assert scores == {"schema": 85, "ui": 85, "workflow": 50}


def test_normalize_spec_payload_keeps_fallback_on_garbage():
    fallback = _expense_spec()
    assert normalize_spec_payload("not a spec", fallback).model_dump() == fallback.model_dump()


def test_proposals_offer_board_for_status_field():
    spec = AppSpec(
        name="Tasks",
        data_store=DataStoreConfig(
            label="Tasks",
            fields=[
                FieldDefinition(name="taskName", label="Task", required=True),
                FieldDefinition(name="status", label="Status", type="select", options=["To Do", "Done"]),
            ],
        ),
        views=[ViewConfig(type="table", title="All Entries")],
    )
    ids = [p.id for p in generate_proposals(spec)]
    assert ids == ["proposal-simple", "proposal-dashboard", "proposal-board"]


def test_proposals_offer_workspace_with_extra_fields_otherwise():
    spec = _expense_spec()
    workspace = generate_proposals(spec)[-1]
    assert workspace.id == "proposal-workspace"
    assert [f.name for f in workspace.fields] == ["notes"]


def test_normalize_spec_payload_coerces_loose_fields():
    fallback = _expense_spec()
    payload = {
        "name": "Books",
        "fields": ["title", {"name": "pages", "type": "integer"}, {"type": "text"}],
        "views": ["graph"],
    }
    spec = normalize_spec_payload(payload, fallback)
    assert spec.name == "Books"
    assert [(f.name, f.type) for f in spec.data_store.fields] == [("title", "text"), ("pages", "number")]
    assert [v.type for v in spec.views] == ["chart"]


def test_preview_html_escapes_and_lists_views():
    spec = _expense_spec()
    spec.name = "Tom & Jerry <Expenses>"
    out = generate_preview_html(spec)
    assert "<h2>Tom &amp; Jerry &lt;Expenses&gt;</h2>" in out
    assert out.count('class="view-preview"') == 2
    assert '<input type="number"' in out
    assert "<button>Add Entry</button>" in out
