"""
Session persistence for toolturn.
Stores conversation transcripts as JSON files so a session can be resumed,
rolled back, or undone to an earlier message.
"""

import hashlib
import json
import logging
import os
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from config import sessions_dir

logger = logging.getLogger(__name__)

SESSION_VERSION = 1


def _empty_usage() -> Dict[str, int]:
    return {"prompt_tokens": 0, "completion_tokens": 0, "cache_read_tokens": 0}


@dataclass
class Session:
    """A persisted agent session."""
    session_id: str = ""
    version: int = SESSION_VERSION
    name: str = "default"
    working_directory: str = ""
    model_id: str = ""
    created_at: str = ""
    updated_at: str = ""
    history: List[Dict[str, Any]] = field(default_factory=list)
    token_usage: Dict[str, int] = field(default_factory=_empty_usage)

    @property
    def message_count(self) -> int:
        """Count user prompts in history."""
        return sum(1 for m in self.history if m.get("role") == "user")

    def add_usage(self, usage: Dict[str, int]) -> None:
        for key, value in usage.items():
            self.token_usage[key] = self.token_usage.get(key, 0) + int(value or 0)


def _slugify(name: str) -> str:
    """Turn a session name into a safe filename component."""
    s = name.lower().strip()
    s = re.sub(r"[^a-z0-9]+", "-", s)
    s = s.strip("-")[:50]
    return s or "default"


def _dir_hash(working_directory: str) -> str:
    """Deterministic short hash of a working directory path."""
    return hashlib.sha256(os.path.abspath(working_directory).encode()).hexdigest()[:12]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def auto_name(first_task: str) -> str:
    """Generate a session name from the first user task."""
    words = first_task.strip().split()[:6]
    name = " ".join(words)
    if len(first_task.strip().split()) > 6:
        name += "..."
    return name or "default"


class SessionStore:
    """
    Manages session files on disk.

    File layout:  {base_dir}/{dir_hash}_{slug}.json
    """

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = base_dir or sessions_dir()
        os.makedirs(self.base_dir, exist_ok=True)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def save(self, session: Session) -> str:
        """Save a session to disk. Returns the file path."""
        if not session.session_id:
            session.session_id = self._make_id(session.working_directory, session.name)
        session.updated_at = _now_iso()
        if not session.created_at:
            session.created_at = session.updated_at

        path = self._path_for(session.session_id)
        data = asdict(session)

        tmp_path = path + ".tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, path)
            logger.info(f"Session saved: {path}")
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        return path

    def load(self, session_id: str) -> Optional[Session]:
        """Load a session by ID."""
        path = self._path_for(session_id)
        if not os.path.exists(path):
            return None
        return self._read_file(path)

    def delete(self, session_id: str) -> bool:
        """Delete a session file. Returns True if deleted."""
        path = self._path_for(session_id)
        if os.path.exists(path):
            os.remove(path)
            logger.info(f"Session deleted: {path}")
            return True
        return False

    def list_sessions(self, working_directory: Optional[str] = None) -> List[Session]:
        """List sessions (for one working directory when given), newest first."""
        prefix = _dir_hash(working_directory) + "_" if working_directory else ""
        sessions: List[Session] = []

        for fname in os.listdir(self.base_dir):
            if fname.startswith(prefix) and fname.endswith(".json"):
                sess = self._read_file(os.path.join(self.base_dir, fname))
                if sess:
                    sessions.append(sess)

        sessions.sort(key=lambda s: s.updated_at or "", reverse=True)
        return sessions

    def truncate(self, session_id: str, index: int) -> Session:
        """Drop every message at or after `index` and save. Raises KeyError for an unknown session."""
        session = self.load(session_id)
        if session is None:
            raise KeyError(f"Session not found: {session_id}")
        if index < 0 or index > len(session.history):
            raise ValueError(f"Message index {index} out of range (0..{len(session.history)})")
        session.history = session.history[:index]
        self.save(session)
        return session

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def create_session(
        self,
        working_directory: str,
        model_id: str,
        name: str = "default",
    ) -> Session:
        """Create a new empty session (not yet saved)."""
        return Session(
            session_id=self._make_id(working_directory, name),
            name=name,
            working_directory=os.path.abspath(working_directory),
            model_id=model_id,
            created_at=_now_iso(),
            updated_at=_now_iso(),
        )

    def get_or_create(self, working_directory: str, model_id: str, name: str = "default") -> Session:
        """Load the named session for a working directory, or create it (not yet saved)."""
        existing = self.load(self._make_id(working_directory, name))
        if existing is not None:
            return existing
        return self.create_session(working_directory, model_id, name)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _make_id(self, working_directory: str, name: str) -> str:
        return f"{_dir_hash(working_directory)}_{_slugify(name)}"

    def _path_for(self, session_id: str) -> str:
        return os.path.join(self.base_dir, f"{session_id}.json")

    def _read_file(self, path: str) -> Optional[Session]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return Session(
                session_id=data.get("session_id", ""),
                version=data.get("version", 1),
                name=data.get("name", "default"),
                working_directory=data.get("working_directory", ""),
                model_id=data.get("model_id", ""),
                created_at=data.get("created_at", ""),
                updated_at=data.get("updated_at", ""),
                history=data.get("history", []),
                token_usage=data.get("token_usage", _empty_usage()),
            )
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read session {path}: {e}")
            return None
