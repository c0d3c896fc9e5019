from .consent import ConsentManager, ConsentRequest
from .directives import Directive, DirectiveStreamParser, ToolArgumentBuffer, parse_directives, render_directive
from .executor import AGENT_SYSTEM_PROMPT, AgentExecutor, AgentTurnResult, build_file_context
from .tools import TOOLS, AgentContext, ToolDefinition, get_tool, normalize_path

__all__ = [
    "ConsentManager",
    "ConsentRequest",
    "Directive",
    "DirectiveStreamParser",
    "ToolArgumentBuffer",
    "parse_directives",
    "render_directive",
    "AGENT_SYSTEM_PROMPT",
    "AgentExecutor",
    "AgentTurnResult",
    "build_file_context",
    "TOOLS",
    "AgentContext",
    "ToolDefinition",
    "get_tool",
    "normalize_path",
]
