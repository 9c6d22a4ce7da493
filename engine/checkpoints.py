"""
File checkpoints.

One active checkpoint per session, opened at the start of a turn. The tool
layer calls `record_snapshot` right before mutating a file; the first
capture of a path wins. `rollback` puts every captured file back (or
removes files the turn created) and returns the transcript length to cut
back to. `commit` drops the checkpoint and keeps the changes.
"""

import asyncio
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config import checkpoints_dir

logger = logging.getLogger(__name__)


class CheckpointError(Exception):
    """Pre-mutation state could not be captured; the mutation must not run."""
    pass


@dataclass
class FileSnapshot:
    path: str
    prior_content: str
    existed: bool
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "prior_content": self.prior_content,
            "existed": self.existed,
            "timestamp": self.timestamp,
        }


@dataclass
class Checkpoint:
    session_id: str
    message_index: int
    file_snapshots: List[FileSnapshot] = field(default_factory=list)
    created_at: float = 0.0
    # where the turn starts in the current transcript, once compression has moved it
    transcript_index: Optional[int] = None

    def has_snapshot(self, path: str) -> bool:
        return any(s.path == path for s in self.file_snapshots)

    @property
    def transcript_start(self) -> int:
        return self.message_index if self.transcript_index is None else self.transcript_index

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "message_index": self.message_index,
            "file_snapshots": [s.to_dict() for s in self.file_snapshots],
            "created_at": self.created_at,
            "transcript_index": self.transcript_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            session_id=data["session_id"],
            message_index=int(data["message_index"]),
            file_snapshots=[
                FileSnapshot(
                    path=s["path"],
                    prior_content=s.get("prior_content", ""),
                    existed=bool(s.get("existed", False)),
                    timestamp=float(s.get("timestamp", 0.0)),
                )
                for s in data.get("file_snapshots", [])
            ],
            created_at=float(data.get("created_at", 0.0)),
            transcript_index=data.get("transcript_index"),
        )


# surrogateescape keeps non-UTF-8 bytes intact through JSON and back
_ENCODING_KW = {"encoding": "utf-8", "errors": "surrogateescape", "newline": ""}


def _read_text(path: str) -> str:
    with open(path, "r", **_ENCODING_KW) as f:
        return f.read()


def _write_text(path: str, content: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w", **_ENCODING_KW) as f:
        f.write(content)


class CheckpointManager:
    """Manages per-session file checkpoints, persisted as {base_dir}/{session_id}.json."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir or checkpoints_dir()
        self._active: Dict[str, Checkpoint] = {}
        # tool implementations run in worker threads
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create(self, session_id: str, message_index: int) -> Checkpoint:
        """Open a fresh checkpoint for the session, replacing any previous one."""
        return await asyncio.to_thread(self._create_sync, session_id, message_index)

    async def record_snapshot(self, session_id: str, path: str) -> bool:
        """Capture `path` before it is mutated. Returns True if a new snapshot was taken."""
        return await asyncio.to_thread(self.record_snapshot_sync, session_id, path)

    async def rollback(self, session_id: str) -> Optional[int]:
        """Restore every snapshot of the session's checkpoint and delete it.

        Returns the message index to truncate the transcript to, or None when
        there is no checkpoint.
        """
        return await asyncio.to_thread(self._rollback_sync, session_id)

    async def reanchor(self, session_id: str, transcript_index: int) -> None:
        """Record where the turn now starts after the transcript was compressed."""
        await asyncio.to_thread(self._reanchor_sync, session_id, transcript_index)

    async def commit(self, session_id: str) -> None:
        """Discard the checkpoint and keep all file changes."""
        await asyncio.to_thread(self._clear_sync, session_id)

    async def load(self, session_id: str) -> Optional[Checkpoint]:
        return await asyncio.to_thread(self._load_sync, session_id)

    def active(self, session_id: str) -> Optional[Checkpoint]:
        return self._active.get(session_id)

    # ------------------------------------------------------------------
    # Sync implementations
    # ------------------------------------------------------------------

    def _create_sync(self, session_id: str, message_index: int) -> Checkpoint:
        checkpoint = Checkpoint(session_id=session_id, message_index=message_index, created_at=time.time())
        with self._lock:
            self._active[session_id] = checkpoint
            self._save(checkpoint)
        logger.debug(f"Checkpoint opened for {session_id} at message {message_index}")
        return checkpoint

    def record_snapshot_sync(self, session_id: str, path: str) -> bool:
        path = os.path.abspath(path)
        with self._lock:
            checkpoint = self._active.get(session_id)
            if checkpoint is None or checkpoint.has_snapshot(path):
                return False
            try:
                snapshot = FileSnapshot(path=path, prior_content=_read_text(path), existed=True, timestamp=time.time())
            except FileNotFoundError:
                snapshot = FileSnapshot(path=path, prior_content="", existed=False, timestamp=time.time())
            except OSError as e:
                raise CheckpointError(f"Cannot snapshot {path} before modifying it: {e}")
            checkpoint.file_snapshots.append(snapshot)
            self._save(checkpoint)
        return True

    def _rollback_sync(self, session_id: str) -> Optional[int]:
        checkpoint = self._load_sync(session_id) or self._active.get(session_id)
        if checkpoint is None:
            return None

        restored = 0
        for snapshot in checkpoint.file_snapshots:
            try:
                if snapshot.existed:
                    _write_text(snapshot.path, snapshot.prior_content)
                elif os.path.exists(snapshot.path):
                    os.remove(snapshot.path)
                restored += 1
            except Exception as e:
                logger.error(f"Failed to roll back {snapshot.path}: {e}")

        logger.info(f"Rolled back {restored}/{len(checkpoint.file_snapshots)} files for session {session_id}")
        self._clear_sync(session_id)
        return checkpoint.transcript_start

    def _reanchor_sync(self, session_id: str, transcript_index: int) -> None:
        with self._lock:
            checkpoint = self._active.get(session_id)
            if checkpoint is None:
                return
            checkpoint.transcript_index = transcript_index
            self._save(checkpoint)
        logger.debug(f"Checkpoint for {session_id} now starts at transcript index {transcript_index}")

    def _clear_sync(self, session_id: str) -> None:
        with self._lock:
            self._active.pop(session_id, None)
            path = self._path_for(session_id)
            if os.path.exists(path):
                os.remove(path)

    def _load_sync(self, session_id: str) -> Optional[Checkpoint]:
        path = self._path_for(session_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return Checkpoint.from_dict(json.load(f))
        except Exception as e:
            logger.warning(f"Failed to read checkpoint {path}: {e}")
            return None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _path_for(self, session_id: str) -> str:
        return os.path.join(self.base_dir, f"{session_id}.json")

    def _save(self, checkpoint: Checkpoint) -> None:
        os.makedirs(self.base_dir, exist_ok=True)
        path = self._path_for(checkpoint.session_id)
        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(checkpoint.to_dict(), f, indent=2)
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
