"""
Turn event and tool-call data types.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional


@dataclass
class AgentEvent:
    """Event emitted during a turn"""
    type: str  # text, tool_call, tool_result, confirmation, compression, rollback, error, done, etc.
    content: str = ""
    data: Optional[Dict[str, Any]] = None


class ToolCallKind(str, Enum):
    DIRECT = "direct"
    SUB_AGENT = "sub_agent"


SUB_AGENT_PREFIX = "subagent-"


@dataclass(frozen=True)
class ToolCall:
    """A model-requested tool invocation. `arguments` is the raw JSON string."""
    id: str
    name: str
    arguments: str = "{}"

    @property
    def kind(self) -> ToolCallKind:
        if self.name.startswith(SUB_AGENT_PREFIX):
            return ToolCallKind.SUB_AGENT
        return ToolCallKind.DIRECT

    def parsed_arguments(self) -> Dict[str, Any]:
        """Decode the arguments; malformed or non-object JSON yields {}."""
        try:
            args = json.loads(self.arguments or "{}")
        except (TypeError, ValueError):
            return {}
        return args if isinstance(args, dict) else {}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ToolCall":
        """Build from the transcript shape {id, function: {name, arguments}}."""
        fn = raw.get("function") or {}
        arguments = fn.get("arguments", raw.get("arguments", "{}"))
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        return cls(
            id=raw.get("id", ""),
            name=fn.get("name", raw.get("name", "")),
            arguments=arguments,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ToolResult:
    """Outcome of one tool call; produced even when the call failed."""
    tool_call_id: str
    content: str
    is_error: bool = False

    def to_message(self) -> Dict[str, Any]:
        return {"role": "tool", "tool_call_id": self.tool_call_id, "content": self.content}


@dataclass
class PermissionDecision:
    """Permission gate decision for one tool call"""
    needs_confirmation: bool
    is_sensitive: bool = False
    matched_rule: Optional[Any] = None  # SensitiveCommand


class ConfirmationOutcome(str, Enum):
    APPROVE = "approve"
    APPROVE_ALWAYS = "approve_always"
    REJECT = "reject"
    REJECT_WITH_REASON = "reject_with_reason"


@dataclass
class Confirmation:
    """User answer to a confirmation request"""
    outcome: ConfirmationOutcome
    reason: str = ""

    @property
    def approved(self) -> bool:
        return self.outcome in (ConfirmationOutcome.APPROVE, ConfirmationOutcome.APPROVE_ALWAYS)


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cache_read_tokens: int = 0

    def add(self, usage: Dict[str, Any]) -> None:
        self.prompt_tokens += int(usage.get("prompt_tokens", 0) or 0)
        self.completion_tokens += int(usage.get("completion_tokens", 0) or 0)
        self.cache_read_tokens += int(usage.get("cache_read_tokens", 0) or 0)

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "cache_read_tokens": self.cache_read_tokens,
        }


@dataclass
class TurnResult:
    """What a finished (or stopped) turn hands back to its caller"""
    messages: List[Dict[str, Any]]
    status: str  # completed, rejected, aborted, max_iterations, error
    final_text: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    compressions: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"
