"""Shared types and state for the tools package."""

import contextvars
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class TurnContext:
    """Which session and transcript position the running tool call belongs to."""
    session_id: str
    message_index: int


# Set by the turn coordinator before tools run; copied into worker threads by asyncio.to_thread
_current_turn_ctx: contextvars.ContextVar[Optional[TurnContext]] = contextvars.ContextVar("current_turn", default=None)


def set_turn_context(session_id: str, message_index: int) -> contextvars.Token:
    return _current_turn_ctx.set(TurnContext(session_id=session_id, message_index=message_index))


def reset_turn_context(token: contextvars.Token) -> None:
    _current_turn_ctx.reset(token)


def current_turn() -> Optional[TurnContext]:
    return _current_turn_ctx.get()


@dataclass
class ToolOutput:
    """Result from executing a tool"""
    success: bool
    output: str
    error: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    def to_json(self) -> str:
        payload: Dict[str, Any] = {"success": self.success}
        if self.output:
            payload["result"] = self.output
        if self.error:
            payload["error"] = self.error
        if self.data is not None:
            payload["data"] = self.data
        return json.dumps(payload, ensure_ascii=False)


def _require(value: Any, name: str) -> Optional[ToolOutput]:
    """Return an error ToolOutput if a required string argument is empty; else None."""
    if not isinstance(value, str) or not value.strip():
        return ToolOutput(success=False, output="", error=f"{name} is required")
    return None
