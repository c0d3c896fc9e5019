import json

import pytest

from src.scaffolder.agents.tools import AgentContext, apply_edit, get_tool, normalize_path
from src.scaffolder.errors import ToolExecutionError

ORIGINAL = "import a;\n\nfunction f() {\n  return 1;\n}\n\nexport default f;"


def test_apply_edit_replaces_marked_region():
    edit = "// ... existing code ...\nfunction f() {\n  return 2;\n}\n// ... existing code ..."
    assert apply_edit(ORIGINAL, edit) == "import a;\n\nfunction f() {\n  return 2;\n}\n\nexport default f;"


def test_apply_edit_without_markers_is_full_replacement():
    assert apply_edit(ORIGINAL, "const b = 2;") == "const b = 2;"


def test_apply_edit_inserts_unmatched_code_before_default_export():
    edit = "// ... existing code ...\nconst helper = 1;\n// ... existing code ..."
    assert apply_edit("a\nexport default X;", edit) == "a\n\nconst helper = 1;\n\nexport default X;"


@pytest.mark.parametrize("path", ["", "/etc/passwd", "../secret.ts", "src/../../x.ts", "C:/win.ts", "."])
def test_normalize_path_rejects_unsafe_paths(path):
    with pytest.raises(ToolExecutionError):
        normalize_path(path)


def test_normalize_path_canonicalizes():
    assert normalize_path("src//components/./Card.tsx") == "src/components/Card.tsx"
    assert normalize_path("src\\App.tsx") == "src/App.tsx"


def test_write_rejects_script_files():
    with pytest.raises(ToolExecutionError):
        get_tool("write_file").run({"path": "deploy.sh", "content": "rm -rf /"}, AgentContext())


def test_edit_requires_existing_file():
    with pytest.raises(ToolExecutionError):
        get_tool("edit_file").run({"path": "src/missing.tsx", "content": "x"}, AgentContext())


def test_missing_arguments_are_reported():
    with pytest.raises(ToolExecutionError) as exc:
        get_tool("write_file").run({"content": "x"}, AgentContext())
    assert "path" in exc.value.message


def test_add_dependency_skips_preinstalled_packages():
    ctx = AgentContext(package_json={"dependencies": {"react": "^18.2.0"}})
    result = get_tool("add_dependency").run({"packages": "react zustand@4.5.0 axios"}, ctx)
    assert result == "Added packages: zustand@4.5.0, axios\nAlready installed: react"
    deps = ctx.package_json["dependencies"]
    assert deps["zustand"] == "4.5.0"
    assert deps["axios"] == "latest"
    assert json.loads(ctx.files["package.json"]) == ctx.package_json


def test_add_dev_dependency():
    ctx = AgentContext()
    get_tool("add_dependency").run({"packages": "@types/lodash", "dev": True}, ctx)
    assert ctx.package_json == {"devDependencies": {"@types/lodash": "latest"}}


def test_rename_rewrites_relative_imports():
    ctx = AgentContext(
        files={
            "src/components/Old.tsx": "export default function Old() {}",
            "src/App.tsx": "import Old from './components/Old';\nimport x from 'react';\n",
        }
    )
    get_tool("rename_file").run({"from": "src/components/Old.tsx", "to": "src/widgets/New.tsx"}, ctx)
    assert "src/components/Old.tsx" not in ctx.files
    assert ctx.files["src/App.tsx"] == "import Old from './widgets/New';\nimport x from 'react';\n"


def test_rename_refuses_to_overwrite():
    ctx = AgentContext(files={"a.ts": "1", "b.ts": "2"})
    with pytest.raises(ToolExecutionError):
        get_tool("rename_file").run({"from": "a.ts", "to": "b.ts"}, ctx)


def test_config_files_cannot_be_deleted():
    ctx = AgentContext(files={"package.json": "{}"})
    with pytest.raises(ToolExecutionError) as exc:
        get_tool("delete_file").run({"path": "package.json"}, ctx)
    assert exc.value.message == "Cannot delete config files"
    assert "package.json" in ctx.files


def test_list_and_read_files():
    ctx = AgentContext(files={"src/a.ts": "A", "src/lib/b.ts": "B", "README.md": "R"})
    assert get_tool("list_files").run({"directory": "src/lib"}, ctx) == "src/lib/b.ts"
    assert get_tool("list_files").run({}, ctx) == "README.md\nsrc/a.ts\nsrc/lib/b.ts"
    assert get_tool("read_file").run({"path": "src/a.ts"}, ctx) == "A"
    assert get_tool("read_file").modifies_state is False
