"""Tool registry the agent executor resolves directives against.

Each tool validates its arguments with a pydantic model, works on an
:class:`AgentContext` (the in-memory working copy of an app's files) and
returns a short textual result. Failures raise ``ToolExecutionError``.
"""
from __future__ import annotations

import json
import posixpath
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..errors import ToolExecutionError

CONSENT_ALWAYS = "always"
CONSENT_ASK = "ask"
CONSENT_NEVER = "never"

PACKAGE_JSON = "package.json"
CONFIG_FILES = {
    PACKAGE_JSON,
    "tsconfig.json",
    "tsconfig.app.json",
    "tsconfig.node.json",
    "vite.config.ts",
    "tailwind.config.ts",
    "tailwind.config.js",
    "postcss.config.js",
    "next.config.js",
    "index.html",
}
BLOCKED_EXTENSIONS = {"sh", "bash", "exe", "bat", "cmd", "ps1"}
EXISTING_CODE_MARKER = "// ... existing code ..."

PRE_INSTALLED = frozenset(
    {
        "react",
        "react-dom",
        "react-router-dom",
        "@tanstack/react-query",
        "zod",
        "react-hook-form",
        "@hookform/resolvers",
        "date-fns",
        "lucide-react",
        "clsx",
        "tailwind-merge",
        "class-variance-authority",
        "sonner",
        "recharts",
        "@radix-ui/react-accordion",
        "@radix-ui/react-alert-dialog",
        "@radix-ui/react-avatar",
        "@radix-ui/react-checkbox",
        "@radix-ui/react-dialog",
        "@radix-ui/react-dropdown-menu",
        "@radix-ui/react-label",
        "@radix-ui/react-popover",
        "@radix-ui/react-progress",
        "@radix-ui/react-select",
        "@radix-ui/react-separator",
        "@radix-ui/react-slot",
        "@radix-ui/react-switch",
        "@radix-ui/react-tabs",
        "@radix-ui/react-toast",
        "@radix-ui/react-tooltip",
    }
)

_PACKAGE_SPEC_RE = re.compile(r"^(@?[^@]+)(?:@(.+))?$")
_VERSION_SUFFIX_RE = re.compile(r"@(?:[\d.^~]+|latest)$")
_IMPORT_RE = re.compile(r"""((?:from|import)\s+)(['"])(\.{1,2}/[^'"]*)\2""")
_SOURCE_EXT_RE = re.compile(r"\.(tsx?|jsx?)$")


@dataclass
class AgentContext:
    """Working state a turn's directives mutate in place."""

    files: Dict[str, str] = field(default_factory=dict)
    package_json: Dict[str, Any] = field(default_factory=dict)
    chat_summary: Optional[str] = None
    conversation_id: Optional[str] = None
    read_only: bool = False

    def dependency_names(self) -> List[str]:
        names: List[str] = []
        for key in ("dependencies", "devDependencies"):
            names.extend((self.package_json.get(key) or {}).keys())
        return names


# ----------------------------------------------------------------------
# Paths
# ----------------------------------------------------------------------
def normalize_path(path: str) -> str:
    """Canonical relative path; rejects absolute paths and escapes above the app root."""
    raw = (path or "").strip().replace("\\", "/")
    if not raw:
        raise ToolExecutionError("filesystem", "File path is required")
    if raw.startswith("/") or re.match(r"^[A-Za-z]:", raw):
        raise ToolExecutionError("filesystem", f"Absolute paths are not allowed: {path}")
    if ".." in raw.split("/"):
        raise ToolExecutionError("filesystem", f"Path traversal not allowed: {path}")
    normalized = posixpath.normpath(raw)
    if normalized in (".", ""):
        raise ToolExecutionError("filesystem", f"Invalid file path: {path}")
    return normalized


def validate_write_path(path: str) -> str:
    normalized = normalize_path(path)
    ext = normalized.rsplit(".", 1)[-1].lower() if "." in posixpath.basename(normalized) else ""
    if ext in BLOCKED_EXTENSIONS:
        raise ToolExecutionError("filesystem", f"Cannot write {ext} files")
    return normalized


def is_config_file(path: str) -> bool:
    return path in CONFIG_FILES


# ----------------------------------------------------------------------
# Argument models
# ----------------------------------------------------------------------
class WriteFileArgs(BaseModel):
    path: str
    content: str = ""
    description: Optional[str] = None


class EditFileArgs(BaseModel):
    path: str
    content: str
    description: Optional[str] = None


class DeleteFileArgs(BaseModel):
    path: str


class RenameFileArgs(BaseModel):
    from_path: str = Field(alias="from")
    to_path: str = Field(alias="to")


class AddDependencyArgs(BaseModel):
    packages: str
    dev: bool = False


class ChatSummaryArgs(BaseModel):
    summary: str


class ReadFileArgs(BaseModel):
    path: str


class ListFilesArgs(BaseModel):
    directory: Optional[str] = None


# ----------------------------------------------------------------------
# Edits
# ----------------------------------------------------------------------
def _squash(line: str) -> str:
    return re.sub(r"\s+", " ", line).strip()


def _similar(a: str, b: str) -> bool:
    left, right = _squash(a), _squash(b)
    if left == right:
        return True
    return len(left) > 5 and len(right) > 5 and (left in right or right in left)


def apply_edit(original: str, edit: str) -> str:
    """Apply an edit whose unchanged regions are elided with ``// ... existing code ...``.

    Each non-empty segment replaces the span of the original running from its
    first to its last line (matched ignoring whitespace). Without markers the
    edit is the whole new file.
    """
    segments = edit.split(EXISTING_CODE_MARKER)
    if len(segments) == 1:
        return edit
    lines = original.split("\n")
    changed = False
    for raw in segments:
        segment = raw.strip("\n")
        meaningful = [l for l in segment.split("\n") if l.strip()]
        if not meaningful:
            continue
        first, last = meaningful[0], meaningful[-1]
        best: Optional[tuple] = None
        for start, line in enumerate(lines):
            if not _similar(line, first):
                continue
            for end in range(start, len(lines)):
                if _similar(lines[end], last):
                    if best is None or end - start > best[1] - best[0]:
                        best = (start, end)
                    break
        if best is None:
            continue
        start, end = best
        indent = re.match(r"^(\s*)", lines[start]).group(1)
        base = min(len(l) - len(l.lstrip()) for l in meaningful)
        replacement = [indent + l[base:] if l.strip() else l for l in segment.split("\n")]
        lines = lines[:start] + replacement + lines[end + 1:]
        changed = True
    if changed:
        return "\n".join(lines)

    loose = "\n\n".join(s.strip() for s in segments if s.strip())
    if not loose:
        raise ToolExecutionError("edit_file", "Could not find matching code to edit")
    for i, line in enumerate(lines):
        if line.strip().startswith("export default"):
            return "\n".join(lines[:i] + ["", loose, ""] + lines[i:])
    return original + "\n\n" + loose


def _rewrite_imports(files: Dict[str, str], old: str, new: str) -> List[str]:
    """Point relative imports of ``old`` at ``new``; returns the paths touched."""
    old_stem = _SOURCE_EXT_RE.sub("", old)
    new_stem = _SOURCE_EXT_RE.sub("", new)
    touched: List[str] = []
    for path, content in list(files.items()):
        if path == new:
            continue
        here = posixpath.dirname(path) or "."

        def swap(m: "re.Match[str]") -> str:
            target = posixpath.normpath(posixpath.join(here, m.group(3)))
            if _SOURCE_EXT_RE.sub("", target) != old_stem:
                return m.group(0)
            rel = posixpath.relpath(new_stem, here)
            if not rel.startswith("."):
                rel = "./" + rel
            return f"{m.group(1)}{m.group(2)}{rel}{m.group(2)}"

        updated = _IMPORT_RE.sub(swap, content)
        if updated != content:
            files[path] = updated
            touched.append(path)
    return touched


# ----------------------------------------------------------------------
# Tool implementations
# ----------------------------------------------------------------------
def _write_file(args: WriteFileArgs, ctx: AgentContext) -> str:
    path = validate_write_path(args.path)
    ctx.files[path] = args.content
    return f"Successfully wrote {path}"


def _edit_file(args: EditFileArgs, ctx: AgentContext) -> str:
    path = validate_write_path(args.path)
    if path not in ctx.files:
        raise ToolExecutionError("edit_file", f"File does not exist: {path}. Use write_file to create new files.")
    ctx.files[path] = apply_edit(ctx.files[path], args.content)
    return f"Successfully edited {path}"


def _delete_file(args: DeleteFileArgs, ctx: AgentContext) -> str:
    path = normalize_path(args.path)
    if is_config_file(path):
        raise ToolExecutionError("delete_file", "Cannot delete config files")
    if path not in ctx.files:
        raise ToolExecutionError("delete_file", f"File does not exist: {path}")
    del ctx.files[path]
    return f"Successfully deleted {path}"


def _rename_file(args: RenameFileArgs, ctx: AgentContext) -> str:
    src = normalize_path(args.from_path)
    dst = validate_write_path(args.to_path)
    if src not in ctx.files:
        raise ToolExecutionError("rename_file", f"Source file does not exist: {src}")
    if dst in ctx.files:
        raise ToolExecutionError("rename_file", f"Destination file already exists: {dst}")
    ctx.files[dst] = ctx.files.pop(src)
    _rewrite_imports(ctx.files, src, dst)
    return f"Successfully renamed {src} to {dst}"


def package_name(spec: str) -> str:
    return _VERSION_SUFFIX_RE.sub("", spec)


def _add_dependency(args: AddDependencyArgs, ctx: AgentContext) -> str:
    requested = args.packages.split()
    if not requested:
        return "No packages specified"
    already = [package_name(p) for p in requested if package_name(p) in PRE_INSTALLED]
    to_add = [p for p in requested if package_name(p) not in PRE_INSTALLED]

    deps = ctx.package_json.setdefault("devDependencies" if args.dev else "dependencies", {})
    for spec in to_add:
        match = _PACKAGE_SPEC_RE.match(spec)
        if match:
            deps[match.group(1)] = match.group(2) or "latest"
    ctx.files[PACKAGE_JSON] = json.dumps(ctx.package_json, indent=2)

    messages = []
    if to_add:
        messages.append(f"Added packages: {', '.join(to_add)}")
    if already:
        messages.append(f"Already installed: {', '.join(already)}")
    return "\n".join(messages)


def _set_chat_summary(args: ChatSummaryArgs, ctx: AgentContext) -> str:
    ctx.chat_summary = args.summary.strip()
    return "Chat summary set"


def _read_file(args: ReadFileArgs, ctx: AgentContext) -> str:
    path = normalize_path(args.path)
    if path not in ctx.files:
        raise ToolExecutionError("read_file", f"File does not exist: {path}")
    return ctx.files[path]


def _list_files(args: ListFilesArgs, ctx: AgentContext) -> str:
    paths = sorted(ctx.files)
    if args.directory:
        prefix = normalize_path(args.directory).rstrip("/") + "/"
        paths = [p for p in paths if p.startswith(prefix)]
    return "\n".join(paths) if paths else "No files found"


# ----------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: Callable[[Any, AgentContext], str]
    modifies_state: bool = True
    default_consent: str = CONSENT_ALWAYS
    preview: Optional[Callable[[Dict[str, Any]], str]] = None

    def parse_args(self, raw: Dict[str, Any]) -> BaseModel:
        try:
            return self.args_model.model_validate(raw)
        except PydanticValidationError as exc:
            missing = ", ".join(".".join(str(p) for p in e["loc"]) for e in exc.errors())
            raise ToolExecutionError(self.name, f"Invalid arguments for {self.name}: {missing}") from exc

    def consent_preview(self, raw: Dict[str, Any]) -> str:
        if self.preview is None:
            return f"Execute {self.name}"
        return self.preview(raw)

    def run(self, raw: Dict[str, Any], ctx: AgentContext) -> str:
        return self.handler(self.parse_args(raw), ctx)


TOOLS: Dict[str, ToolDefinition] = {
    t.name: t
    for t in (
        ToolDefinition(
            "write_file",
            "Create a file or overwrite one completely",
            WriteFileArgs,
            _write_file,
            preview=lambda a: f"Write to {a.get('path')}",
        ),
        ToolDefinition(
            "edit_file",
            "Apply an incremental edit to an existing file",
            EditFileArgs,
            _edit_file,
            preview=lambda a: f"Edit {a.get('path')}",
        ),
        ToolDefinition(
            "delete_file",
            "Delete a file from the codebase",
            DeleteFileArgs,
            _delete_file,
            default_consent=CONSENT_ASK,
            preview=lambda a: f"Delete {a.get('path')}",
        ),
        ToolDefinition(
            "rename_file",
            "Rename or move a file and update relative imports",
            RenameFileArgs,
            _rename_file,
            preview=lambda a: f"Rename {a.get('from')} to {a.get('to')}",
        ),
        ToolDefinition(
            "add_dependency",
            "Add npm packages to package.json",
            AddDependencyArgs,
            _add_dependency,
            preview=lambda a: f"Add packages: {a.get('packages')}",
        ),
        ToolDefinition(
            "set_chat_summary",
            "Set a short human-readable summary of this turn",
            ChatSummaryArgs,
            _set_chat_summary,
        ),
        ToolDefinition("read_file", "Read a file", ReadFileArgs, _read_file, modifies_state=False),
        ToolDefinition("list_files", "List files", ListFilesArgs, _list_files, modifies_state=False),
    )
}

# directive tag name -> tool name
DIRECTIVE_TOOLS = {
    "write": "write_file",
    "edit": "edit_file",
    "delete": "delete_file",
    "rename": "rename_file",
    "add-dependency": "add_dependency",
    "chat-summary": "set_chat_summary",
    "read": "read_file",
    "list-files": "list_files",
}


def get_tool(name: str) -> Optional[ToolDefinition]:
    return TOOLS.get(name)


def directive_arguments(name: str, attrs: Dict[str, str], content: str) -> Dict[str, Any]:
    """Tool arguments for a directive: attributes plus its body under the right key."""
    args: Dict[str, Any] = dict(attrs)
    if name in ("write", "edit"):
        args["content"] = content
    elif name == "chat-summary":
        args["summary"] = content or attrs.get("summary", "")
    elif name == "add-dependency":
        args["packages"] = attrs.get("packages") or content
        args["dev"] = str(attrs.get("dev", "")).lower() == "true"
    return args
