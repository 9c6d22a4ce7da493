"""
Tool call scheduler.

Calls are grouped by resource id. Groups run concurrently; calls inside a
group run one at a time in batch order. Every call yields exactly one
ToolResult and results come back in the order the calls were given.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple

from engine.events import ToolCall, ToolCallKind, ToolResult
from engine.resources import group_by_resource

logger = logging.getLogger(__name__)

# invoke_tool(name, arguments_json, cancel) -> result text (JSON)
InvokeTool = Callable[[str, str, Optional[threading.Event]], Awaitable[str]]
# run_sub_agent(call, cancel) -> result text (JSON)
RunSubAgent = Callable[[ToolCall, Optional[threading.Event]], Awaitable[str]]
OnResult = Callable[[ToolCall, ToolResult], Awaitable[None]]

ABORTED_MESSAGE = "Error: Tool execution aborted by user"


@dataclass
class ExecutionContext:
    invoke_tool: InvokeTool
    run_sub_agent: Optional[RunSubAgent] = None
    cancel: Optional[threading.Event] = None
    on_result: Optional[OnResult] = None


def _error_result(call: ToolCall, message: str) -> ToolResult:
    return ToolResult(tool_call_id=call.id, content=f"Error: {message}", is_error=True)


async def execute_call(call: ToolCall, ctx: ExecutionContext) -> ToolResult:
    """Run one call. Never raises; failures become error results."""
    if ctx.cancel is not None and ctx.cancel.is_set():
        return ToolResult(tool_call_id=call.id, content=ABORTED_MESSAGE, is_error=True)
    try:
        if call.kind == ToolCallKind.SUB_AGENT:
            if ctx.run_sub_agent is None:
                raise RuntimeError(f"Sub-agent calls are not available here: {call.name}")
            content = await ctx.run_sub_agent(call, ctx.cancel)
        else:
            content = await ctx.invoke_tool(call.name, call.arguments, ctx.cancel)
        return ToolResult(tool_call_id=call.id, content=content)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.warning(f"Tool call {call.name} ({call.id}) failed: {e}")
        return _error_result(call, str(e) or type(e).__name__)


async def execute_batch(calls: List[ToolCall], ctx: ExecutionContext) -> List[ToolResult]:
    """Execute a batch of tool calls and return results in request order."""
    if not calls:
        return []

    results: List[Optional[ToolResult]] = [None] * len(calls)
    groups = group_by_resource(calls)

    async def _run_group(members: List[Tuple[int, ToolCall]]) -> None:
        for index, call in members:
            result = await execute_call(call, ctx)
            results[index] = result
            if ctx.on_result is not None:
                try:
                    await ctx.on_result(call, result)
                except Exception as e:
                    logger.debug(f"on_result callback failed for {call.id}: {e}")

    if len(groups) > 1:
        logger.debug(f"Executing {len(calls)} tool calls across {len(groups)} resource groups")
    await asyncio.gather(*[_run_group(members) for members in groups.values()])

    return [
        result if result is not None else _error_result(calls[i], "no result produced")
        for i, result in enumerate(results)
    ]
