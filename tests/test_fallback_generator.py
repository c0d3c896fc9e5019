from src.scaffolder.domain.models import AppSpec, DataStoreConfig, FieldDefinition, ViewConfig
from src.scaffolder.services.fallback_generator import generate_fallback_files, generate_types_file
from src.scaffolder.services.quality import check_delimiters


def _spec(name="Reading Log"):
    return AppSpec(
        name=name,
        category="custom",
        data_store=DataStoreConfig(
            label="Books",
            fields=[
                FieldDefinition(name="title", label="Title", required=True),
                FieldDefinition(name="pages", label="Pages", type="number"),
                FieldDefinition(name="genre", label="Genre", type="select", options=["Sci-Fi", "Kid's"]),
                FieldDefinition(name="id", label="ID", generated=True),
            ],
        ),
        views=[ViewConfig(type="table", title="Books")],
    )


def test_fallback_is_deterministic():
    assert generate_fallback_files(_spec(), "app-9") == generate_fallback_files(_spec(), "app-9")


def test_fallback_page_names_component_and_endpoint():
    page = generate_fallback_files(_spec(), "app-9")["page.tsx"]
    assert page.startswith("'use client';")
    assert "export default function ReadingLogPage()" in page
    assert "/api/apps/app-9/data" in page
    assert check_delimiters(page) == []


def test_types_file_lists_user_fields_only():
    types = generate_types_file(_spec())
    assert "  title: string;" in types
    assert "  pages?: number;" in types
    assert "  id: string;" in types
    assert types.count("id: string;") == 1
    assert "'Kid\\'s'," in types


def test_component_name_never_starts_with_digit():
    page = generate_fallback_files(_spec(name="2024 goals"), "app-1")["page.tsx"]
    assert "export default function App2024GoalsPage()" in page
