import pytest

from src.scaffolder.agents.directives import (
    DirectiveStreamParser,
    ToolArgumentBuffer,
    parse_directives,
    render_directive,
    strip_directives,
)
from src.scaffolder.errors import ToolExecutionError

REPLY = (
    "Sure, adding a helper.\n"
    '<scaffold-write path="src/a.tsx">\nconst a = 1;\n</scaffold-write>\n'
    '<scaffold-delete path="src/b.tsx" />\n'
    "Done."
)


def test_parse_directives_in_order():
    found = parse_directives(REPLY)
    assert [(d.name, d.get("path"), d.content) for d in found] == [
        ("write", "src/a.tsx", "const a = 1;"),
        ("delete", "src/b.tsx", ""),
    ]


def test_strip_directives_leaves_prose():
    assert strip_directives(REPLY) == "Sure, adding a helper.\n\nDone."


def test_render_escapes_attributes():
    text = render_directive("delete", {"path": 'a&"b".tsx'})
    assert text == '<scaffold-delete path="a&amp;&quot;b&quot;.tsx" />'
    assert parse_directives(text)[0].get("path") == 'a&"b".tsx'


def test_render_with_content():
    text = render_directive("write", {"path": "x.ts"}, "export {};")
    assert text == '<scaffold-write path="x.ts">\nexport {};\n</scaffold-write>'


def test_stream_parser_handles_split_tags():
    parser = DirectiveStreamParser()
    assert parser.feed("Working on it <scaffold-wr") == []
    assert parser.feed('ite path="src/a.ts') == []
    partial = parser.preview()
    assert partial.name == "write"
    assert partial.attrs == {"path": "src/a.ts"}
    assert partial.complete is False

    assert parser.feed('x">\nexport const x') == []
    assert parser.preview().content == "export const x"
    assert parser.preview().attrs == {"path": "src/a.tsx"}

    done = parser.feed(" = 1;\n</scaffold-write> and more")
    assert [(d.name, d.content) for d in done] == [("write", "export const x = 1;")]
    assert parser.preview() is None
    assert len(parser.directives) == 1


def test_stream_parser_close_reports_unterminated():
    parser = DirectiveStreamParser()
    parser.feed('<scaffold-edit path="x.ts">half')
    leftover = parser.close()
    assert leftover.name == "edit"
    assert leftover.get("path") == "x.ts"
    assert parser.preview() is None


def test_tool_argument_buffer_preview_and_parse():
    buf = ToolArgumentBuffer("write_file")
    buf.append('{"path": "a.ts", "content": "hel')
    assert buf.preview() == {"path": "a.ts", "content": "hel"}
    with pytest.raises(ToolExecutionError):
        buf.parse()
    buf.append('lo"}')
    assert buf.parse() == {"path": "a.ts", "content": "hello"}


def test_tool_argument_buffer_requires_object():
    buf = ToolArgumentBuffer("list_files")
    buf.append("[1, 2]")
    with pytest.raises(ToolExecutionError) as exc:
        buf.parse()
    assert exc.value.tool == "list_files"
