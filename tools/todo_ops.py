"""Todo tools: one shared task list per session, stored as JSON."""

import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from tools._common import ToolOutput, _require, current_turn

logger = logging.getLogger(__name__)

STATUSES = ("pending", "completed")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return f"todo-{uuid.uuid4().hex[:12]}"


class TodoStore:
    """Manages {base_dir}/{session_id}.json todo lists."""

    def __init__(self, base_dir: str):
        self.base_dir = base_dir
        self._lock = threading.Lock()

    def _path_for(self, session_id: str) -> str:
        return os.path.join(self.base_dir, f"{session_id}.json")

    def get(self, session_id: str) -> List[Dict[str, Any]]:
        path = self._path_for(session_id)
        if not os.path.exists(path):
            return []
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f).get("todos", [])

    def _save(self, session_id: str, todos: List[Dict[str, Any]]) -> None:
        os.makedirs(self.base_dir, exist_ok=True)
        path = self._path_for(session_id)
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump({"session_id": session_id, "updated_at": _now_iso(), "todos": todos},
                          f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def create(self, session_id: str, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Replace the whole list."""
        now = _now_iso()
        todos = [
            {
                "id": _new_id(),
                "content": str(item.get("content", "")),
                "status": "pending",
                "parentId": item.get("parentId"),
                "createdAt": now,
                "updatedAt": now,
            }
            for item in items
        ]
        with self._lock:
            self._save(session_id, todos)
        return todos

    def add(self, session_id: str, content: str, parent_id: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            todos = self.get(session_id)
            if parent_id and not any(t["id"] == parent_id for t in todos):
                raise KeyError(f"Parent todo not found: {parent_id}")
            now = _now_iso()
            item = {"id": _new_id(), "content": content, "status": "pending",
                    "parentId": parent_id, "createdAt": now, "updatedAt": now}
            todos.append(item)
            self._save(session_id, todos)
        return item

    def update(self, session_id: str, todo_id: str, status: Optional[str] = None,
               content: Optional[str] = None) -> Dict[str, Any]:
        if status is not None and status not in STATUSES:
            raise ValueError(f"status must be one of {', '.join(STATUSES)}")
        with self._lock:
            todos = self.get(session_id)
            for item in todos:
                if item["id"] == todo_id:
                    if status is not None:
                        item["status"] = status
                    if content is not None:
                        item["content"] = content
                    item["updatedAt"] = _now_iso()
                    self._save(session_id, todos)
                    return item
        raise KeyError(f"Todo not found: {todo_id}")

    def delete(self, session_id: str, todo_id: str) -> List[str]:
        """Delete an item and all of its descendants. Returns the removed ids."""
        with self._lock:
            todos = self.get(session_id)
            if not any(t["id"] == todo_id for t in todos):
                raise KeyError(f"Todo not found: {todo_id}")
            doomed = {todo_id}
            grew = True
            while grew:
                grew = False
                for item in todos:
                    if item.get("parentId") in doomed and item["id"] not in doomed:
                        doomed.add(item["id"])
                        grew = True
            self._save(session_id, [t for t in todos if t["id"] not in doomed])
        return sorted(doomed)


def _session_id() -> str:
    turn = current_turn()
    return turn.session_id if turn else "default"


def _render(todos: List[Dict[str, Any]]) -> str:
    if not todos:
        return "No todos."
    by_parent: Dict[Optional[str], List[Dict[str, Any]]] = {}
    for t in todos:
        by_parent.setdefault(t.get("parentId"), []).append(t)
    lines: List[str] = []

    def _walk(parent: Optional[str], depth: int) -> None:
        for t in by_parent.get(parent, []):
            mark = "x" if t["status"] == "completed" else " "
            lines.append(f"{'  ' * depth}[{mark}] {t['content']} ({t['id']})")
            _walk(t["id"], depth + 1)

    _walk(None, 0)
    return "\n".join(lines)


def todo_create(store: TodoStore, todos: Optional[List[Dict[str, Any]]] = None, **kw: Any) -> ToolOutput:
    if not isinstance(todos, list) or not todos:
        return ToolOutput(success=False, output="", error="todos must be a non-empty list")
    created = store.create(_session_id(), todos)
    return ToolOutput(success=True, output=_render(created), data={"todos": created})


def todo_get(store: TodoStore, **kw: Any) -> ToolOutput:
    todos = store.get(_session_id())
    return ToolOutput(success=True, output=_render(todos), data={"todos": todos})


def todo_update(store: TodoStore, todoId: str = "", status: Optional[str] = None,
                content: Optional[str] = None, **kw: Any) -> ToolOutput:
    err = _require(todoId, "todoId")
    if err:
        return err
    try:
        item = store.update(_session_id(), todoId, status=status, content=content)
    except (KeyError, ValueError) as e:
        return ToolOutput(success=False, output="", error=str(e).strip("'\""))
    return ToolOutput(success=True, output=f"Updated {todoId}", data={"todo": item})


def todo_add(store: TodoStore, content: str = "", parentId: Optional[str] = None, **kw: Any) -> ToolOutput:
    err = _require(content, "content")
    if err:
        return err
    try:
        item = store.add(_session_id(), content, parent_id=parentId)
    except KeyError as e:
        return ToolOutput(success=False, output="", error=str(e).strip("'\""))
    return ToolOutput(success=True, output=f"Added {item['id']}", data={"todo": item})


def todo_delete(store: TodoStore, todoId: str = "", **kw: Any) -> ToolOutput:
    err = _require(todoId, "todoId")
    if err:
        return err
    try:
        removed = store.delete(_session_id(), todoId)
    except KeyError as e:
        return ToolOutput(success=False, output="", error=str(e).strip("'\""))
    return ToolOutput(success=True, output=f"Deleted {len(removed)} todo(s)", data={"deleted": removed})
