"""
Tool definitions and implementations for the agent.
Each tool has an Anthropic-compatible schema and an implementation function;
ToolRegistry dispatches calls by name against a Backend.
"""

from tools._common import (  # noqa: F401
    ToolOutput,
    TurnContext,
    current_turn,
    reset_turn_context,
    set_turn_context,
)
from tools.file_ops import (  # noqa: F401
    create_file,
    delete_file,
    edit_lines,
    edit_search,
    mutation_targets,
    read_file,
)
from tools.terminal_ops import run_command, is_dangerous_command  # noqa: F401
from tools.todo_ops import TodoStore  # noqa: F401
from tools.notebook_ops import NotebookStore, NOTEBOOK_RESOURCE  # noqa: F401
from tools.schemas import (  # noqa: F401
    TOOL_DEFINITIONS,
    SAFE_TOOLS,
    FILE_WRITE_TOOLS,
    get_definitions,
)
from tools.dispatch import ToolRegistry, ToolError, UnknownToolError  # noqa: F401
