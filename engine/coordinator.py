"""
Turn coordinator.

Drives one conversational turn: model call, permission gate, user
confirmation, batch execution, transcript merge and the compression check
before the next model call. Sub-agent tool calls re-enter the same loop
against an isolated message list.
"""

import asyncio
import json
import logging
import threading
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple

from config import app_config, model_config, get_context_window
from engine.checkpoints import CheckpointManager
from engine.compression import ContextCompressor, main_compressor, sub_agent_compressor
from engine.events import (
    AgentEvent,
    Confirmation,
    ConfirmationOutcome,
    PermissionDecision,
    TokenUsage,
    ToolCall,
    ToolResult,
    TurnResult,
)
from engine.permissions import ApprovalMemory, filter_by_sensitivity
from engine.scheduler import ExecutionContext, execute_batch
from engine.sensitive_commands import SensitiveCommand
from engine.subagents import (
    SubAgentSpec,
    agent_id_from_tool_name,
    filter_tools,
    get_sub_agent,
    list_sub_agents,
)
from engine.undo_log import UndoLog
from tools._common import reset_turn_context, set_turn_context
from tools.schemas import SAFE_TOOLS

logger = logging.getLogger(__name__)

# request_confirmation(call, decision, sibling_calls) -> Confirmation
RequestConfirmation = Callable[[ToolCall, PermissionDecision, List[ToolCall]], Awaitable[Confirmation]]
OnEvent = Callable[[AgentEvent], Awaitable[None]]

STATUS_COMPLETED = "completed"
STATUS_REJECTED = "rejected"
STATUS_ABORTED = "aborted"
STATUS_MAX_ITERATIONS = "max_iterations"
STATUS_ERROR = "error"

REJECTED_MESSAGE = "Error: Tool call rejected by user"
SKIPPED_MESSAGE = "Error: Tool call not executed because another call in the batch was rejected"

DEFAULT_SYSTEM_PROMPT = (
    "You are a coding assistant working in the user's project directory. Use the tools to "
    "read, create and edit files and to run commands. Independent tool calls may be issued "
    "together in one response. Read a file before editing it. When the task is done, reply "
    "with a short summary of what changed."
)


class TurnCancelled(Exception):
    """The cancel signal was set while the turn was running."""


def _check_cancel(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise TurnCancelled()


class TurnCoordinator:
    """Runs turns for one session.

    `stream_completion(model, messages, cancel, tools=...)` is the model,
    `registry` executes direct tool calls, and `request_confirmation` is
    the single confirmation surface shared by the main loop and every
    sub-agent loop.
    """

    def __init__(
        self,
        stream_completion: Optional[Callable[..., Any]],
        registry: Any,
        request_confirmation: RequestConfirmation,
        checkpoints: Optional[CheckpointManager] = None,
        undo_log: Optional[UndoLog] = None,
        session_id: str = "default",
        model: Optional[str] = None,
        unattended: Optional[bool] = None,
        system_prompt: Optional[str] = DEFAULT_SYSTEM_PROMPT,
        compact_model: Optional[str] = None,
        max_iterations: Optional[int] = None,
        sub_agent_max_iterations: Optional[int] = None,
        auto_approve_reads: Optional[bool] = None,
        rules: Optional[List[SensitiveCommand]] = None,
        custom_sub_agents: Optional[Iterable[SubAgentSpec]] = None,
        compressor: Optional[ContextCompressor] = None,
        sub_compressor: Optional[ContextCompressor] = None,
    ):
        self.stream_completion = stream_completion
        self.registry = registry
        self.request_confirmation = request_confirmation
        self.checkpoints = checkpoints
        self.undo_log = undo_log
        self.session_id = session_id
        self.model = model or model_config.model_id
        self.compact_model = compact_model or model_config.compact_model_id or self.model
        self.unattended = app_config.unattended_mode if unattended is None else unattended
        self.system_prompt = system_prompt
        self.max_iterations = max_iterations or app_config.max_tool_iterations
        self.sub_agent_max_iterations = sub_agent_max_iterations or app_config.sub_agent_max_iterations
        self.rules = rules
        self.custom_sub_agents = list(custom_sub_agents or [])

        compression_settings = dict(
            threshold=app_config.compress_threshold,
            keep_recent_rounds=app_config.keep_recent_rounds,
            min_truncation_length=app_config.min_truncation_length,
        )
        self.compressor = compressor or main_compressor(**compression_settings)
        self.sub_compressor = sub_compressor or sub_agent_compressor(**compression_settings)

        if auto_approve_reads is None:
            auto_approve_reads = app_config.auto_approve_reads
        self.approvals = ApprovalMemory(SAFE_TOOLS if auto_approve_reads else (), rules)
        # one prompt at a time across the main loop and concurrent sub-agents
        self._confirm_lock: Optional[asyncio.Lock] = None

    # ------------------------------------------------------------------
    # Turn entry points
    # ------------------------------------------------------------------

    async def run_turn(
        self,
        history: List[Dict[str, Any]],
        user_input: str,
        cancel: Optional[threading.Event] = None,
        on_event: Optional[OnEvent] = None,
    ) -> TurnResult:
        """Run one user turn against a copy of `history`.

        The file checkpoint is opened at the index of the new user message
        and committed only when the turn completes. On any other outcome it
        stays in place so the caller can roll the turn back.
        """
        messages = list(history)
        if self.system_prompt and not (messages and messages[0].get("role") == "system"):
            messages.insert(0, {"role": "system", "content": self.system_prompt})
        message_index = len(messages)

        if self.checkpoints is not None:
            await self.checkpoints.create(self.session_id, message_index)
        messages.append({"role": "user", "content": user_input})

        self._confirm_lock = asyncio.Lock()
        token = set_turn_context(self.session_id, message_index)
        try:
            result = await self.run_loop(
                messages,
                tool_names=self.registry.tool_names(),
                sub_agents=list_sub_agents(self.custom_sub_agents),
                compressor=self.compressor,
                max_iterations=self.max_iterations,
                cancel=cancel,
                on_event=on_event,
                turn_start=message_index,
            )
        finally:
            reset_turn_context(token)

        if result.status == STATUS_COMPLETED and self.checkpoints is not None:
            await self.checkpoints.commit(self.session_id)
        logger.info(f"Turn finished for {self.session_id}: {result.status}")
        return result

    async def run_loop(
        self,
        messages: List[Dict[str, Any]],
        tool_names: Iterable[str],
        sub_agents: Iterable[SubAgentSpec] = (),
        compressor: Optional[ContextCompressor] = None,
        max_iterations: Optional[int] = None,
        cancel: Optional[threading.Event] = None,
        on_event: Optional[OnEvent] = None,
        agent: Optional[SubAgentSpec] = None,
        turn_start: Optional[int] = None,
    ) -> TurnResult:
        """Model/tool loop shared by the main turn and sub-agents.

        Works on its own copy of `messages`; the final transcript is in the
        returned TurnResult. `turn_start` is the index of the user message
        that opened the turn; compression never summarizes past it and the
        checkpoint follows it when earlier messages are folded away.
        """
        messages = list(messages)
        compressor = compressor or self.compressor
        tool_names = list(tool_names)
        sub_agents = list(sub_agents)
        allowed: Set[str] = set(tool_names) | {spec.tool_name for spec in sub_agents}
        definitions = self.registry.definitions(tool_names, sub_agents=sub_agents)

        usage = TokenUsage()
        compressions: List[str] = []
        latest_prompt_tokens = 0
        final_text = ""

        def _result(status: str, error: Optional[str] = None) -> TurnResult:
            return TurnResult(messages=messages, status=status, final_text=final_text,
                              usage=usage, compressions=compressions, error=error)

        try:
            for iteration in range(max_iterations or self.max_iterations):
                _check_cancel(cancel)

                if latest_prompt_tokens:
                    compression = await compressor.compress(
                        messages, latest_prompt_tokens, get_context_window(self.model),
                        self.stream_completion, self.compact_model, cancel, protect_from=turn_start,
                    )
                    _check_cancel(cancel)
                    if compression.compressed:
                        turn_message = messages[turn_start] if turn_start is not None else None
                        messages = compression.messages
                        if turn_message is not None:
                            turn_start = await self._reanchor_turn(messages, turn_message, turn_start)
                        latest_prompt_tokens = compression.after_tokens_estimate
                        compressions.append(compression.phase.value)
                        await self._emit(on_event, agent, "compression", compression.phase.value, {
                            "before_tokens": compression.before_tokens,
                            "after_tokens_estimate": compression.after_tokens_estimate,
                        })

                text, raw_calls, call_usage = await self._call_model(messages, definitions, cancel, on_event, agent)
                usage.add(call_usage)
                latest_prompt_tokens = int(call_usage.get("prompt_tokens", 0) or 0) or latest_prompt_tokens
                _check_cancel(cancel)

                calls = [ToolCall.from_dict(raw) for raw in raw_calls]
                if not calls:
                    final_text = text
                    messages.append({"role": "assistant", "content": text})
                    return _result(STATUS_COMPLETED)

                messages.append({
                    "role": "assistant",
                    "content": text,
                    "tool_calls": [call.to_dict() for call in calls],
                })
                if text:
                    final_text = text

                results, rejected = await self._handle_calls(calls, allowed, cancel, on_event, agent)
                messages.extend(result.to_message() for result in results)
                if rejected:
                    await self._emit(on_event, agent, "rejected", "Tool call rejected, turn ended")
                    return _result(STATUS_REJECTED)
                _check_cancel(cancel)

            logger.warning(f"Reached max tool iterations ({max_iterations or self.max_iterations})")
            return _result(STATUS_MAX_ITERATIONS)

        except TurnCancelled:
            logger.info("Turn cancelled")
            return _result(STATUS_ABORTED, "Cancelled by user")
        except Exception as e:
            logger.exception(f"Turn failed: {e}")
            return _result(STATUS_ERROR, str(e))

    # ------------------------------------------------------------------
    # Loop steps
    # ------------------------------------------------------------------

    async def _call_model(
        self,
        messages: List[Dict[str, Any]],
        definitions: List[Dict[str, Any]],
        cancel: Optional[threading.Event],
        on_event: Optional[OnEvent],
        agent: Optional[SubAgentSpec],
    ) -> Tuple[str, List[Dict[str, Any]], Dict[str, Any]]:
        text = ""
        raw_calls: List[Dict[str, Any]] = []
        call_usage: Dict[str, Any] = {}
        async for chunk in self.stream_completion(self.model, messages, cancel, tools=definitions):
            chunk_type = chunk.get("type")
            if chunk_type == "content":
                content = chunk.get("content") or ""
                text += content
                await self._emit(on_event, agent, "text", content)
            elif chunk_type == "tool_calls":
                raw_calls.extend(chunk.get("tool_calls") or [])
            elif chunk_type == "usage":
                call_usage = chunk.get("usage") or {}
        return text, raw_calls, call_usage

    async def _handle_calls(
        self,
        calls: List[ToolCall],
        allowed: Set[str],
        cancel: Optional[threading.Event],
        on_event: Optional[OnEvent],
        agent: Optional[SubAgentSpec],
    ) -> Tuple[List[ToolResult], bool]:
        """Gate, confirm and execute one batch. Returns (results in call order, rejected)."""
        results: List[Optional[ToolResult]] = [None] * len(calls)

        for i, call in enumerate(calls):
            await self._emit(on_event, agent, "tool_call", call.name, {"id": call.id, "arguments": call.arguments})
            if call.name not in allowed:
                owner = agent.name if agent else "this agent"
                results[i] = ToolResult(call.id, f"Error: Tool {call.name} is not available to {owner}", is_error=True)

        pending = [(i, call) for i, call in enumerate(calls) if results[i] is None]
        rejected = await self._confirm(pending, results)
        if rejected:
            return [
                r if r is not None else ToolResult(calls[i].id, SKIPPED_MESSAGE, is_error=True)
                for i, r in enumerate(results)
            ], True

        runnable = [(i, call) for i, call in pending if results[i] is None]

        async def _on_result(call: ToolCall, result: ToolResult) -> None:
            await self._emit(on_event, agent, "tool_result", result.content,
                             {"id": call.id, "name": call.name, "is_error": result.is_error})

        ctx = ExecutionContext(
            invoke_tool=self.registry.invoke,
            run_sub_agent=lambda call, c: self.run_sub_agent(call, c, on_event),
            cancel=cancel,
            on_result=_on_result,
        )
        executed = await execute_batch([call for _, call in runnable], ctx)
        for (i, _), result in zip(runnable, executed):
            results[i] = result
        return [r for r in results if r is not None], False

    async def _confirm(self, pending: List[Tuple[int, ToolCall]], results: List[Optional[ToolResult]]) -> bool:
        if self._confirm_lock is None:
            self._confirm_lock = asyncio.Lock()
        async with self._confirm_lock:
            return await self._confirm_batch(pending, results)

    async def _confirm_batch(self, pending: List[Tuple[int, ToolCall]],
                             results: List[Optional[ToolResult]]) -> bool:
        """Ask the user about every call that needs it. Returns True on a plain reject.

        Sensitive calls are confirmed one at a time; the remaining calls that
        need confirmation are confirmed together. A reject-with-reason fills
        in that call's result and the batch goes on without it.
        """
        sensitive, _ = filter_by_sensitivity([call for _, call in pending], self.unattended, self.rules)
        sensitive_by_call = {id(call): decision for call, decision in sensitive}

        prompts: List[Tuple[List[Tuple[int, ToolCall]], PermissionDecision]] = []
        grouped: List[Tuple[int, ToolCall]] = []
        for i, call in pending:
            decision = sensitive_by_call.get(id(call))
            if decision is None:
                decision = PermissionDecision(needs_confirmation=not self.unattended)
            if not decision.needs_confirmation or self.approvals.covers(call, decision):
                continue
            if decision.is_sensitive:
                prompts.append(([(i, call)], decision))
            else:
                grouped.append((i, call))
        if grouped:
            prompts.append((grouped, PermissionDecision(needs_confirmation=True)))

        for members, decision in prompts:
            first = members[0][1]
            siblings = [call for _, call in members[1:]]
            confirmation = await self.request_confirmation(first, decision, siblings)
            if confirmation.outcome == ConfirmationOutcome.REJECT:
                for i, call in members:
                    results[i] = ToolResult(call.id, REJECTED_MESSAGE, is_error=True)
                logger.info(f"User rejected {first.name}")
                return True
            if confirmation.outcome == ConfirmationOutcome.REJECT_WITH_REASON:
                for i, call in members:
                    content = f"{REJECTED_MESSAGE}: {confirmation.reason}" if confirmation.reason else REJECTED_MESSAGE
                    results[i] = ToolResult(call.id, content, is_error=True)
            elif confirmation.outcome == ConfirmationOutcome.APPROVE_ALWAYS:
                for _, call in members:
                    self.approvals.remember(call.name)
        return False

    async def _reanchor_turn(self, messages: List[Dict[str, Any]], turn_message: Dict[str, Any],
                             turn_start: int) -> int:
        new_start = next((i for i, m in enumerate(messages) if m is turn_message), turn_start)
        if new_start != turn_start and self.checkpoints is not None:
            await self.checkpoints.reanchor(self.session_id, new_start)
        return new_start

    # ------------------------------------------------------------------
    # Sub-agents
    # ------------------------------------------------------------------

    async def run_sub_agent(
        self,
        call: ToolCall,
        cancel: Optional[threading.Event] = None,
        on_event: Optional[OnEvent] = None,
    ) -> str:
        """Run a sub-agent call to completion and return its JSON result.

        Raises when the agent is unknown, the prompt is missing, or the
        sub-agent loop does not complete; the scheduler turns that into an
        error result for the parent.
        """
        agent_id = agent_id_from_tool_name(call.name)
        spec = get_sub_agent(agent_id, self.custom_sub_agents)
        if spec is None:
            raise ValueError(f"Unknown sub-agent: {agent_id}")
        prompt = call.parsed_arguments().get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("prompt is required")

        await self._emit(on_event, spec, "sub_agent_start", spec.name)
        result = await self.run_loop(
            [{"role": "user", "content": spec.build_prompt(prompt)}],
            tool_names=filter_tools(spec, self.registry.tool_names()),
            compressor=self.sub_compressor,
            max_iterations=self.sub_agent_max_iterations,
            cancel=cancel,
            on_event=on_event,
            agent=spec,
        )
        await self._emit(on_event, spec, "sub_agent_done", result.status, {"usage": result.usage.to_dict()})
        if result.status != STATUS_COMPLETED:
            raise RuntimeError(result.error or f"{spec.name} stopped: {result.status}")
        return json.dumps({"success": True, "result": result.final_text}, ensure_ascii=False)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback(self, history: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Undo the latest turn: restore its files, replay its undo-log entries, truncate the transcript."""
        if self.checkpoints is None:
            return list(history)
        checkpoint = await self.checkpoints.load(self.session_id) or self.checkpoints.active(self.session_id)
        cut = await self.checkpoints.rollback(self.session_id)
        if checkpoint is None or cut is None:
            logger.info(f"No checkpoint to roll back for {self.session_id}")
            return list(history)
        if self.undo_log is not None:
            # undo entries keep the index the turn started with
            await asyncio.to_thread(self.undo_log.rollback_to, self.session_id, checkpoint.message_index)
        return list(history[:cut])

    async def rollback_to(self, history: List[Dict[str, Any]], target_index: int) -> List[Dict[str, Any]]:
        """Return the transcript to `target_index` and undo every recorded effect from there on.

        The undo log covers any earlier point. Files can only be restored
        when the target is at or before the start of the latest turn.
        """
        if target_index < 0 or target_index > len(history):
            raise ValueError(f"Message index {target_index} out of range (0..{len(history)})")
        if self.undo_log is not None:
            undone = await asyncio.to_thread(self.undo_log.rollback_to, self.session_id, target_index)
            logger.info(f"Undid {undone} recorded operations for {self.session_id}")
        if self.checkpoints is not None:
            checkpoint = await self.checkpoints.load(self.session_id)
            if checkpoint is not None and checkpoint.transcript_start >= target_index:
                await self.checkpoints.rollback(self.session_id)
        return list(history[:target_index])

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    @staticmethod
    async def _emit(on_event: Optional[OnEvent], agent: Optional[SubAgentSpec], event_type: str,
                    content: str = "", data: Optional[Dict[str, Any]] = None) -> None:
        if on_event is None:
            return
        if agent is not None:
            data = dict(data or {}, agent_id=agent.id, agent_name=agent.name)
        await on_event(AgentEvent(type=event_type, content=content, data=data))
