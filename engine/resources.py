"""
Resource classification for tool-call contention.

Calls that share a resource id run one after another in batch order;
calls with different ids may run concurrently.
"""

import posixpath
from collections import OrderedDict
from typing import Dict, List, Tuple

from engine.events import ToolCall

TODO_RESOURCE = "todo-state"
TERMINAL_RESOURCE = "terminal-execution"

TODO_MUTATING_TOOLS = frozenset({"todo-create", "todo-update", "todo-add", "todo-delete"})
TERMINAL_TOOLS = frozenset({"terminal-execute"})
FILESYSTEM_MUTATING_TOOLS = frozenset({
    "filesystem-create",
    "filesystem-edit",
    "filesystem-edit_search",
    "filesystem-delete",
})


def _normalize_path(path: str) -> str:
    return posixpath.normpath(path.replace("\\", "/"))


def resource_id(call: ToolCall) -> str:
    """Map a tool call to the resource it contends on. Pure and deterministic."""
    if call.name in TODO_MUTATING_TOOLS:
        return TODO_RESOURCE
    if call.name in TERMINAL_TOOLS:
        return TERMINAL_RESOURCE
    if call.name in FILESYSTEM_MUTATING_TOOLS:
        args = call.parsed_arguments()
        target = args.get("filePath", args.get("path"))
        if isinstance(target, str) and target.strip():
            return f"filesystem:{_normalize_path(target.strip())}"
        if isinstance(target, list):
            # batch edits serialize internally
            return f"filesystem-batch:{call.id}"
    return f"independent:{call.id}"


def group_by_resource(calls: List[ToolCall]) -> Dict[str, List[Tuple[int, ToolCall]]]:
    """Group calls by resource id, keeping each call's batch position."""
    groups: Dict[str, List[Tuple[int, ToolCall]]] = OrderedDict()
    for index, call in enumerate(calls):
        groups.setdefault(resource_id(call), []).append((index, call))
    return groups
