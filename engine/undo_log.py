"""
Message-indexed undo log for reversible side effects other than file writes.

Each reversible operation appends one entry keyed by (session_id,
message_index). Rolling back to a message index replays every entry at or
after it, newest first, through the store registered for the entry's
resource, then prunes those entries.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Protocol

from config import undo_log_path

logger = logging.getLogger(__name__)

OP_ADD = "add"
OP_UPDATE = "update"
OP_DELETE = "delete"
_OPS = (OP_ADD, OP_UPDATE, OP_DELETE)


class ReversibleStore(Protocol):
    """What a resource must offer so its operations can be undone."""

    def remove(self, target_id: str) -> bool: ...

    def restore_value(self, target_id: str, prior_value: Any) -> bool: ...

    def reinsert(self, record: Dict[str, Any]) -> None: ...


@dataclass
class UndoLogEntry:
    session_id: str
    message_index: int
    resource: str
    op: str
    target_id: str = ""
    prior_value: Any = None
    record: Optional[Dict[str, Any]] = None
    seq: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class UndoLog:
    """Append-only (until rollback) log of reversible operations."""

    def __init__(self, path: Optional[str] = None):
        self.path = path if path is not None else undo_log_path()
        self._stores: Dict[str, ReversibleStore] = {}
        self._lock = threading.RLock()
        self._entries: List[UndoLogEntry] = self._load()
        self._next_seq = max((e.seq for e in self._entries), default=0) + 1

    def register(self, resource: str, store: ReversibleStore) -> None:
        self._stores[resource] = store

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def append(
        self,
        session_id: str,
        message_index: int,
        resource: str,
        op: str,
        target_id: str = "",
        prior_value: Any = None,
        record: Optional[Dict[str, Any]] = None,
    ) -> UndoLogEntry:
        if op not in _OPS:
            raise ValueError(f"Unknown undo operation: {op}")
        with self._lock:
            entry = UndoLogEntry(
                session_id=session_id,
                message_index=int(message_index),
                resource=resource,
                op=op,
                target_id=target_id,
                prior_value=prior_value,
                record=dict(record) if record is not None else None,
                seq=self._next_seq,
            )
            self._next_seq += 1
            self._entries.append(entry)
            self._save()
        return entry

    def record_add(self, session_id: str, message_index: int, resource: str, target_id: str) -> UndoLogEntry:
        return self.append(session_id, message_index, resource, OP_ADD, target_id=target_id)

    def record_update(self, session_id: str, message_index: int, resource: str,
                      target_id: str, prior_value: Any) -> UndoLogEntry:
        return self.append(session_id, message_index, resource, OP_UPDATE, target_id=target_id,
                           prior_value=prior_value)

    def record_delete(self, session_id: str, message_index: int, resource: str,
                      record: Dict[str, Any]) -> UndoLogEntry:
        return self.append(session_id, message_index, resource, OP_DELETE,
                           target_id=str(record.get("id", "")), record=record)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def entries_from(self, session_id: str, target_message_index: int) -> List[UndoLogEntry]:
        """Entries at or after the index, oldest first."""
        with self._lock:
            return [
                e for e in sorted(self._entries, key=lambda e: e.seq)
                if e.session_id == session_id and e.message_index >= target_message_index
            ]

    def count_from(self, session_id: str, target_message_index: int) -> int:
        return len(self.entries_from(session_id, target_message_index))

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback_to(self, session_id: str, target_message_index: int) -> int:
        """Undo every entry at or after the index, newest first. Returns how many were undone."""
        with self._lock:
            pending = self.entries_from(session_id, target_message_index)
            undone = 0
            for entry in reversed(pending):
                try:
                    self._invert(entry)
                    undone += 1
                except Exception as e:
                    logger.error(f"Failed to undo {entry.op} on {entry.resource} ({entry.target_id}): {e}")

            replayed = {e.seq for e in pending}
            self._entries = [e for e in self._entries if e.seq not in replayed]
            self._save()

        if pending:
            logger.info(f"Undid {undone}/{len(pending)} operations for session {session_id} "
                        f"from message {target_message_index}")
        return undone

    def clear_session(self, session_id: str) -> None:
        with self._lock:
            self._entries = [e for e in self._entries if e.session_id != session_id]
            self._save()

    def _invert(self, entry: UndoLogEntry) -> None:
        store = self._stores.get(entry.resource)
        if store is None:
            raise LookupError(f"No store registered for resource {entry.resource!r}")
        if entry.op == OP_ADD:
            store.remove(entry.target_id)
        elif entry.op == OP_UPDATE:
            if not store.restore_value(entry.target_id, entry.prior_value):
                raise LookupError(f"{entry.target_id} no longer exists")
        elif entry.op == OP_DELETE:
            if not entry.record:
                raise ValueError("delete entry carries no record")
            store.reinsert(entry.record)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> List[UndoLogEntry]:
        if not self.path or not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return [UndoLogEntry(**item) for item in data.get("entries", [])]
        except Exception as e:
            logger.warning(f"Failed to read undo log {self.path}: {e}")
            return []

    def _save(self) -> None:
        if not self.path:
            return
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        tmp_path = self.path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump({"entries": [e.to_dict() for e in self._entries]}, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
