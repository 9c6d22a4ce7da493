"""Tool schema definitions (Bedrock/Anthropic Messages API) and name groups."""

from typing import Any, Dict, Iterable, List, Optional

from engine.subagents import SubAgentSpec, list_sub_agents

FS_READ = "filesystem-read"
FS_CREATE = "filesystem-create"
FS_EDIT = "filesystem-edit"
FS_EDIT_SEARCH = "filesystem-edit_search"
FS_DELETE = "filesystem-delete"
TERMINAL_EXECUTE = "terminal-execute"
TODO_CREATE = "todo-create"
TODO_GET = "todo-get"
TODO_UPDATE = "todo-update"
TODO_ADD = "todo-add"
TODO_DELETE = "todo-delete"
NOTEBOOK_ADD = "notebook-add"
NOTEBOOK_QUERY = "notebook-query"
NOTEBOOK_UPDATE = "notebook-update"
NOTEBOOK_DELETE = "notebook-delete"

# Tools whose calls change files on disk (snapshotted before running)
FILE_WRITE_TOOLS = frozenset({FS_CREATE, FS_EDIT, FS_EDIT_SEARCH, FS_DELETE})

# Read-only tools, auto-approved when auto_approve_reads is on
SAFE_TOOLS = frozenset({FS_READ, TODO_GET, NOTEBOOK_QUERY})

_PATH_PROP = {
    "description": "File path relative to the working directory, or an array of paths for a batch call",
    "anyOf": [
        {"type": "string"},
        {"type": "array", "items": {"anyOf": [{"type": "string"}, {"type": "object"}]}},
    ],
}

TOOL_DEFINITIONS: List[Dict[str, Any]] = [
    {
        "name": FS_READ,
        "description": "Read a file (or several) with line numbers. Use startLine/endLine to page through large files. Always read a file before editing it.",
        "input_schema": {
            "type": "object",
            "properties": {
                "filePath": _PATH_PROP,
                "startLine": {"type": "integer", "description": "1-based first line to show"},
                "endLine": {"type": "integer", "description": "1-based last line to show (inclusive)"},
            },
            "required": ["filePath"],
        },
    },
    {
        "name": FS_CREATE,
        "description": "Create a new file with the given content. Fails if the file exists unless overwrite is true.",
        "input_schema": {
            "type": "object",
            "properties": {
                "filePath": {"type": "string", "description": "File path relative to the working directory"},
                "content": {"type": "string", "description": "Full file content"},
                "overwrite": {"type": "boolean", "description": "Replace an existing file (default false)"},
            },
            "required": ["filePath", "content"],
        },
    },
    {
        "name": FS_EDIT,
        "description": "Replace a 1-based inclusive line range with new content. Line numbers come from filesystem-read. Accepts an array of {filePath, startLine, endLine, newContent} objects for batch edits.",
        "input_schema": {
            "type": "object",
            "properties": {
                "filePath": _PATH_PROP,
                "startLine": {"type": "integer", "description": "First line to replace"},
                "endLine": {"type": "integer", "description": "Last line to replace (inclusive)"},
                "newContent": {"type": "string", "description": "Replacement text"},
            },
            "required": ["filePath"],
        },
    },
    {
        "name": FS_EDIT_SEARCH,
        "description": "Replace an exact string. searchContent must match exactly once unless occurrence or replaceAll is given. Accepts an array of paths or {filePath, searchContent, replaceContent} objects for batch edits.",
        "input_schema": {
            "type": "object",
            "properties": {
                "filePath": _PATH_PROP,
                "searchContent": {"type": "string", "description": "Exact text to find, including whitespace"},
                "replaceContent": {"type": "string", "description": "Replacement text"},
                "occurrence": {"type": "integer", "description": "1-based match to replace when there are several"},
                "replaceAll": {"type": "boolean", "description": "Replace every match"},
            },
            "required": ["filePath"],
        },
    },
    {
        "name": FS_DELETE,
        "description": "Delete a file, or several files when given an array of paths.",
        "input_schema": {
            "type": "object",
            "properties": {"filePath": _PATH_PROP},
            "required": ["filePath"],
        },
    },
    {
        "name": TERMINAL_EXECUTE,
        "description": "Run a shell command in the working directory and return stdout, stderr and the exit code. Long output is truncated. Commands that run indefinitely (servers, watchers) will hit the timeout.",
        "input_schema": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Shell command to execute"},
                "timeout": {"type": "integer", "description": "Timeout in seconds (default from TERMINAL_TIMEOUT)"},
            },
            "required": ["command"],
        },
    },
    {
        "name": TODO_CREATE,
        "description": "Create the task checklist for this session, replacing any previous list. Use for multi-step work.",
        "input_schema": {
            "type": "object",
            "properties": {
                "todos": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "content": {"type": "string", "description": "One-line description of the task"},
                            "parentId": {"type": "string", "description": "Optional parent todo id"},
                        },
                        "required": ["content"],
                    },
                },
            },
            "required": ["todos"],
        },
    },
    {
        "name": TODO_GET,
        "description": "Get the current task checklist for this session.",
        "input_schema": {"type": "object", "properties": {}, "required": []},
    },
    {
        "name": TODO_UPDATE,
        "description": "Update a todo's status (pending|completed) or content. Mark items completed as soon as they are done.",
        "input_schema": {
            "type": "object",
            "properties": {
                "todoId": {"type": "string"},
                "status": {"type": "string", "enum": ["pending", "completed"]},
                "content": {"type": "string"},
            },
            "required": ["todoId"],
        },
    },
    {
        "name": TODO_ADD,
        "description": "Append a todo, optionally as a child of an existing one.",
        "input_schema": {
            "type": "object",
            "properties": {
                "content": {"type": "string"},
                "parentId": {"type": "string"},
            },
            "required": ["content"],
        },
    },
    {
        "name": TODO_DELETE,
        "description": "Delete a todo and all of its children.",
        "input_schema": {
            "type": "object",
            "properties": {"todoId": {"type": "string"}},
            "required": ["todoId"],
        },
    },
    {
        "name": NOTEBOOK_ADD,
        "description": "Attach a note to a file: fragile code, hidden constraints, things the next edit must not break.",
        "input_schema": {
            "type": "object",
            "properties": {
                "filePath": {"type": "string"},
                "note": {"type": "string"},
            },
            "required": ["filePath", "note"],
        },
    },
    {
        "name": NOTEBOOK_QUERY,
        "description": "List notes whose file path contains the pattern, newest first. Check before editing an unfamiliar file.",
        "input_schema": {
            "type": "object",
            "properties": {
                "filePathPattern": {"type": "string", "description": "Substring of the file path; empty for all notes"},
                "topN": {"type": "integer", "description": "Maximum notes to return (default 10)"},
            },
            "required": [],
        },
    },
    {
        "name": NOTEBOOK_UPDATE,
        "description": "Replace the text of an existing note.",
        "input_schema": {
            "type": "object",
            "properties": {
                "notebookId": {"type": "string"},
                "note": {"type": "string"},
            },
            "required": ["notebookId", "note"],
        },
    },
    {
        "name": NOTEBOOK_DELETE,
        "description": "Delete a note that is no longer accurate.",
        "input_schema": {
            "type": "object",
            "properties": {"notebookId": {"type": "string"}},
            "required": ["notebookId"],
        },
    },
]

_DEFINITIONS_BY_NAME = {d["name"]: d for d in TOOL_DEFINITIONS}


def sub_agent_definition(spec: SubAgentSpec) -> Dict[str, Any]:
    return {
        "name": spec.tool_name,
        "description": f"{spec.name}: {spec.description} Runs in an isolated context and returns its final answer.",
        "input_schema": {
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "description": "Complete, self-contained task for the sub-agent"},
            },
            "required": ["prompt"],
        },
    }


def get_definitions(names: Optional[Iterable[str]] = None,
                    sub_agents: Optional[Iterable[SubAgentSpec]] = None) -> List[Dict[str, Any]]:
    """Definitions for the named tools (all when None), followed by the sub-agent tools."""
    if names is None:
        defs = list(TOOL_DEFINITIONS)
    else:
        defs = [_DEFINITIONS_BY_NAME[n] for n in names if n in _DEFINITIONS_BY_NAME]
    for spec in (sub_agents if sub_agents is not None else list_sub_agents()):
        defs.append(sub_agent_definition(spec))
    return defs
