"""Tool registry: name -> implementation, with checkpointing and cancellation."""

import asyncio
import json
import logging
import os
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from backend import Backend
from config import notebook_dir, todo_dir
from engine.checkpoints import CheckpointManager
from engine.undo_log import UndoLog
from tools._common import ToolOutput, current_turn
from tools import schemas
from tools.file_ops import create_file, delete_file, edit_lines, edit_search, mutation_targets, read_file
from tools.notebook_ops import (
    NOTEBOOK_RESOURCE, NotebookStore,
    notebook_add, notebook_delete, notebook_query, notebook_update,
)
from tools.terminal_ops import run_command
from tools.todo_ops import TodoStore, todo_add, todo_create, todo_delete, todo_get, todo_update

logger = logging.getLogger(__name__)

# How often a running tool checks the cancel flag
_CANCEL_POLL_SECONDS = 0.1


class ToolError(Exception):
    """A tool call could not be dispatched (bad name or arguments)."""


class UnknownToolError(ToolError):
    pass


class ToolRegistry:
    """Dispatches tool calls for one working directory.

    Stores for todos and notes live under data_dir. When an undo log is
    given the notebook store is registered with it so rollbacks can replay
    notebook changes.
    """

    def __init__(
        self,
        backend: Backend,
        checkpoints: Optional[CheckpointManager] = None,
        undo_log: Optional[UndoLog] = None,
        data_dir: Optional[str] = None,
    ):
        self.backend = backend
        self.checkpoints = checkpoints
        self.undo_log = undo_log
        todos_path = os.path.join(data_dir, "todos") if data_dir else todo_dir()
        notes_dir = os.path.join(data_dir, "notebook") if data_dir else notebook_dir()
        notes_path = os.path.join(notes_dir, "notebook.json")
        self.todo_store = TodoStore(todos_path)
        self.notebook_store = NotebookStore(notes_path, backend.working_directory)
        if undo_log is not None:
            undo_log.register(NOTEBOOK_RESOURCE, self.notebook_store)

        b, notes, todos, log = backend, self.notebook_store, self.todo_store, undo_log
        self._impls: Dict[str, Callable[..., ToolOutput]] = {
            schemas.FS_READ: lambda **kw: read_file(backend=b, **kw),
            schemas.FS_CREATE: lambda **kw: create_file(backend=b, **kw),
            schemas.FS_EDIT: lambda **kw: edit_lines(backend=b, **kw),
            schemas.FS_EDIT_SEARCH: lambda **kw: edit_search(backend=b, **kw),
            schemas.FS_DELETE: lambda **kw: delete_file(backend=b, **kw),
            schemas.TERMINAL_EXECUTE: lambda **kw: run_command(backend=b, **kw),
            schemas.TODO_CREATE: lambda **kw: todo_create(todos, **kw),
            schemas.TODO_GET: lambda **kw: todo_get(todos, **kw),
            schemas.TODO_UPDATE: lambda **kw: todo_update(todos, **kw),
            schemas.TODO_ADD: lambda **kw: todo_add(todos, **kw),
            schemas.TODO_DELETE: lambda **kw: todo_delete(todos, **kw),
            schemas.NOTEBOOK_ADD: lambda **kw: notebook_add(notes, log, **kw),
            schemas.NOTEBOOK_QUERY: lambda **kw: notebook_query(notes, **kw),
            schemas.NOTEBOOK_UPDATE: lambda **kw: notebook_update(notes, log, **kw),
            schemas.NOTEBOOK_DELETE: lambda **kw: notebook_delete(notes, log, **kw),
        }

    def tool_names(self) -> List[str]:
        return list(self._impls)

    def definitions(self, names: Optional[Iterable[str]] = None, sub_agents=None) -> List[Dict[str, Any]]:
        return schemas.get_definitions(names, sub_agents=sub_agents)

    async def invoke(self, name: str, arguments_json: str, cancel: Optional[threading.Event] = None) -> str:
        """Run a tool and return its JSON result text.

        Raises ToolError for an unknown tool or unparseable arguments. Tool
        failures are reported inside the result with success=false.
        """
        impl = self._impls.get(name)
        if impl is None:
            raise UnknownToolError(f"Unknown tool: {name}")
        args = _parse_arguments(name, arguments_json)

        if name in schemas.FILE_WRITE_TOOLS:
            await self._snapshot(args)

        result = await self._run_cancellable(name, impl, args, cancel)
        return result.to_json()

    async def _snapshot(self, args: Dict[str, Any]) -> None:
        turn = current_turn()
        if self.checkpoints is None or turn is None:
            return
        for path in mutation_targets(args):
            # CheckpointError propagates and the mutation does not run
            await self.checkpoints.record_snapshot(turn.session_id, self.backend.resolve_path(path))

    async def _run_cancellable(self, name: str, impl: Callable[..., ToolOutput], args: Dict[str, Any],
                               cancel: Optional[threading.Event]) -> ToolOutput:
        task = asyncio.ensure_future(asyncio.to_thread(self._call, name, impl, args))
        if cancel is None:
            return await task
        killed = False
        while not task.done():
            if cancel.is_set() and not killed:
                killed = True
                if self.backend.cancel_running_command():
                    logger.info(f"Killed running command for {name} after cancel")
            await asyncio.wait({task}, timeout=_CANCEL_POLL_SECONDS)
        return task.result()

    @staticmethod
    def _call(name: str, impl: Callable[..., ToolOutput], args: Dict[str, Any]) -> ToolOutput:
        try:
            return impl(**args)
        except TypeError as e:
            return ToolOutput(success=False, output="", error=f"Invalid arguments for {name}: {e}")
        except Exception as e:
            logger.exception(f"Tool execution error: {name}")
            return ToolOutput(success=False, output="", error=f"Tool error: {e}")


def _parse_arguments(name: str, arguments_json: str) -> Dict[str, Any]:
    if not arguments_json or not arguments_json.strip():
        return {}
    try:
        args = json.loads(arguments_json)
    except json.JSONDecodeError as e:
        raise ToolError(f"Invalid JSON arguments for {name}: {e}")
    if not isinstance(args, dict):
        raise ToolError(f"Arguments for {name} must be a JSON object")
    return args
