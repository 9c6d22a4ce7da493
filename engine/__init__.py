"""
Engine package - the tool-execution and state-recovery core.

Modules, leaves first:
- events: ToolCall, ToolResult, PermissionDecision, TurnResult and friends
- resources: resource ids used to serialize contending tool calls
- sensitive_commands: sensitive shell-command rules and their JSON store
- permissions: permission gate for attended and unattended (YOLO) mode
- scheduler: concurrent-by-resource batch execution
- checkpoints: per-turn file snapshots and rollback
- undo_log: message-indexed log of reversible side effects
- compression: two-phase context compression
- subagents: sub-agent definitions and tool allowlists
- coordinator: TurnCoordinator, which ties the above together for one turn
"""

from .events import (
    AgentEvent,
    Confirmation,
    ConfirmationOutcome,
    PermissionDecision,
    TokenUsage,
    ToolCall,
    ToolCallKind,
    ToolResult,
    TurnResult,
)
from .resources import resource_id, group_by_resource
from .sensitive_commands import SensitiveCommand, SensitiveCommandStore, match_sensitive_command
from .permissions import ApprovalMemory, check_permission, filter_by_sensitivity
from .scheduler import ExecutionContext, execute_batch, execute_call
from .checkpoints import Checkpoint, CheckpointError, CheckpointManager, FileSnapshot
from .undo_log import ReversibleStore, UndoLog, UndoLogEntry
from .compression import (
    CompressionPhase,
    CompressionResult,
    ContextCompressor,
    main_compressor,
    sub_agent_compressor,
)
from .subagents import SubAgentSpec, get_sub_agent, list_sub_agents
from .coordinator import TurnCoordinator, TurnCancelled
