"""
Notebook tools: short notes attached to project files (fragile code, constraints).

Every mutation made during a turn is written to the undo log so that
rolling the conversation back also rolls the notes back.
"""

import json
import logging
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from engine.undo_log import UndoLog
from tools._common import ToolOutput, _require, current_turn

logger = logging.getLogger(__name__)

NOTEBOOK_RESOURCE = "notebook"
MAX_ENTRIES_PER_FILE = 50


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class NotebookStore:
    """Notes keyed by project-relative file path, newest first. File: {path}."""

    def __init__(self, path: str, working_directory: str = "."):
        self.path = path
        self.working_directory = os.path.abspath(working_directory)
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _read(self) -> Dict[str, List[Dict[str, Any]]]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write(self, data: Dict[str, List[Dict[str, Any]]]) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = self.path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def normalize_path(self, file_path: str) -> str:
        if os.path.isabs(file_path):
            file_path = os.path.relpath(file_path, self.working_directory)
        normalized = file_path.replace("\\", "/")
        if normalized.startswith("./"):
            normalized = normalized[2:]
        return normalized

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def add(self, file_path: str, note: str) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
        """Add a note; returns it with the oldest notes pushed out by the per-file cap."""
        key = self.normalize_path(file_path)
        now = _now_iso()
        entry = {
            "id": f"notebook-{uuid.uuid4().hex[:12]}",
            "filePath": key,
            "note": note,
            "createdAt": now,
            "updatedAt": now,
        }
        with self._lock:
            data = self._read()
            entries = data.setdefault(key, [])
            entries.insert(0, entry)
            evicted = entries[MAX_ENTRIES_PER_FILE:]
            del entries[MAX_ENTRIES_PER_FILE:]
            self._write(data)
        return entry, evicted

    def query(self, pattern: str = "", top_n: int = 10) -> List[Dict[str, Any]]:
        """Entries whose path contains `pattern` (case-insensitive), newest first."""
        needle = self.normalize_path(pattern).lower() if pattern else ""
        with self._lock:
            data = self._read()
        results = [
            entry
            for key, entries in data.items()
            if not needle or needle in key.lower()
            for entry in entries
        ]
        results.sort(key=lambda e: e.get("createdAt", ""), reverse=True)
        return results[:max(1, min(int(top_n), MAX_ENTRIES_PER_FILE))]

    def find(self, entry_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for entries in self._read().values():
                for entry in entries:
                    if entry["id"] == entry_id:
                        return dict(entry)
        return None

    def update(self, entry_id: str, note: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            data = self._read()
            for entries in data.values():
                for entry in entries:
                    if entry["id"] == entry_id:
                        entry["note"] = note
                        entry["updatedAt"] = _now_iso()
                        self._write(data)
                        return dict(entry)
        return None

    def delete(self, entry_id: str) -> Optional[Dict[str, Any]]:
        """Remove an entry; returns the removed record."""
        with self._lock:
            data = self._read()
            for key, entries in data.items():
                for i, entry in enumerate(entries):
                    if entry["id"] == entry_id:
                        removed = entries.pop(i)
                        if not entries:
                            del data[key]
                        self._write(data)
                        return removed
        return None

    # ------------------------------------------------------------------
    # Undo hooks
    # ------------------------------------------------------------------

    def remove(self, target_id: str) -> bool:
        return self.delete(target_id) is not None

    def restore_value(self, target_id: str, prior_value: Any) -> bool:
        return self.update(target_id, str(prior_value)) is not None

    def reinsert(self, record: Dict[str, Any]) -> None:
        with self._lock:
            data = self._read()
            entries = data.setdefault(record["filePath"], [])
            if any(e["id"] == record["id"] for e in entries):
                return
            entries.append(dict(record))
            entries.sort(key=lambda e: e.get("createdAt", ""), reverse=True)
            self._write(data)


def _record(undo_log: Optional[UndoLog], op: str, **kwargs: Any) -> None:
    turn = current_turn()
    if undo_log is None or turn is None:
        return
    if op == "add":
        undo_log.record_add(turn.session_id, turn.message_index, NOTEBOOK_RESOURCE, kwargs["target_id"])
    elif op == "update":
        undo_log.record_update(turn.session_id, turn.message_index, NOTEBOOK_RESOURCE,
                               kwargs["target_id"], kwargs["prior_value"])
    else:
        undo_log.record_delete(turn.session_id, turn.message_index, NOTEBOOK_RESOURCE, kwargs["record"])


def notebook_add(store: NotebookStore, undo_log: Optional[UndoLog] = None,
                 filePath: str = "", note: str = "", **kw: Any) -> ToolOutput:
    err = _require(filePath, "filePath") or _require(note, "note")
    if err:
        return err
    entry, evicted = store.add(filePath, note)
    for old in evicted:
        _record(undo_log, "delete", record=old)
    _record(undo_log, "add", target_id=entry["id"])
    return ToolOutput(success=True, output=f"Note {entry['id']} added for {entry['filePath']}", data={"entry": entry})


def notebook_query(store: NotebookStore, filePathPattern: str = "", topN: int = 10, **kw: Any) -> ToolOutput:
    entries = store.query(filePathPattern or "", topN)
    if not entries:
        return ToolOutput(success=True, output="No notes found.", data={"entries": []})
    lines = [f"{e['filePath']} ({e['id']}): {e['note']}" for e in entries]
    return ToolOutput(success=True, output="\n".join(lines), data={"entries": entries})


def notebook_update(store: NotebookStore, undo_log: Optional[UndoLog] = None,
                    notebookId: str = "", note: str = "", **kw: Any) -> ToolOutput:
    err = _require(notebookId, "notebookId") or _require(note, "note")
    if err:
        return err
    previous = store.find(notebookId)
    if previous is None:
        return ToolOutput(success=False, output="", error=f"Note not found: {notebookId}")
    store.update(notebookId, note)
    _record(undo_log, "update", target_id=notebookId, prior_value=previous["note"])
    return ToolOutput(success=True, output=f"Note {notebookId} updated")


def notebook_delete(store: NotebookStore, undo_log: Optional[UndoLog] = None,
                    notebookId: str = "", **kw: Any) -> ToolOutput:
    err = _require(notebookId, "notebookId")
    if err:
        return err
    removed = store.delete(notebookId)
    if removed is None:
        return ToolOutput(success=False, output="", error=f"Note not found: {notebookId}")
    _record(undo_log, "delete", record=removed)
    return ToolOutput(success=True, output=f"Note {notebookId} deleted")
