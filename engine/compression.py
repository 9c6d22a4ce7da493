"""
Two-phase context compression.

Phase 1 replaces large tool results outside the most recent rounds with a
short placeholder. If the estimated context use is still at or above the
threshold, Phase 2 asks the model to summarize everything before the
recent rounds and replaces that region with one summary message. A failed
summary falls back to the Phase 1 transcript.

A "round" is one assistant message with tool calls plus the tool results
that follow it.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

COMPRESS_THRESHOLD = 70
KEEP_RECENT_ROUNDS = 3
MIN_TRUNCATION_LENGTH = 500
TRANSCRIPT_RESULT_LIMIT = 300
TRANSCRIPT_ARGS_LIMIT = 500

# stream_completion(model, messages, cancel) -> async iterator of {"type", "content"} chunks
StreamCompletion = Callable[[str, List[Dict[str, Any]], Optional[threading.Event]], AsyncIterator[Dict[str, Any]]]


class CompressionPhase(str, Enum):
    NONE = "none"
    TRUNCATION = "truncation"
    AI_SUMMARY = "ai_summary"


@dataclass
class CompressionResult:
    compressed: bool
    phase: CompressionPhase
    messages: List[Dict[str, Any]]
    before_tokens: Optional[int] = None
    after_tokens_estimate: Optional[int] = None
    notes: List[str] = field(default_factory=list)


MAIN_SYSTEM_INSTRUCTION = (
    "You are a context compression system. You compress a coding assistant's "
    "conversation history into a structured summary that lets the assistant "
    "continue the work without the original messages."
)

MAIN_SUMMARY_PROMPT = """**YOUR ONLY TASK: Compress the conversation history above into a structured summary. Do not ask questions and do not address the user.**

Create a detailed summary with these sections:

## Current Task & Goals
- The main task, its objectives and current progress

## Technical Context
- Technologies, file paths, function names and code locations involved
- Configuration and environment details

## Key Decisions & Approaches
- Decisions made, approaches chosen, problems solved

## Completed Work
- Changes made, fixes applied, tests run and their results

## Pending & In-Progress Work
- Unfinished tasks, known issues, planned next steps

## Critical Information
- Exact values, IDs, error messages and user constraints needed to continue

Be specific. Preserve exact names, paths and technical terms."""

SUB_AGENT_SYSTEM_INSTRUCTION = (
    "You are a technical summarization assistant. Your job is to compress a "
    "tool-using AI agent's conversation history into a concise but complete summary."
)

SUB_AGENT_SUMMARY_PROMPT = """**TASK: Summarize the sub-agent conversation above into a concise handover document.**

You are summarizing a tool-using AI agent's work session. Preserve:

1. **Task objective**: what the agent was asked to do
2. **Key findings**: information discovered via tool calls (file paths, code snippets, search results)
3. **Actions taken**: files read or modified, commands run, tool outcomes
4. **Current progress**: what is done and what remains
5. **Critical context**: exact file paths, function names, error messages, variable values

Preserve exact technical terms, paths and identifiers. Use a structured format.

**Output the summary now.**"""

SUMMARY_HEADER = "## Previous Context (Auto-Compressed Summary)"
SUMMARY_FOOTER = (
    "*The above is a compressed summary of earlier conversation. Continue the task "
    "based on this context and the recent tool interactions below.*"
)


def _content_length(message: Dict[str, Any]) -> int:
    content = message.get("content")
    if not content:
        return 0
    if isinstance(content, str):
        return len(content)
    return len(json.dumps(content, ensure_ascii=False))


def _total_chars(messages: List[Dict[str, Any]]) -> int:
    return sum(_content_length(m) for m in messages)


def _has_tool_calls(message: Dict[str, Any]) -> bool:
    return message.get("role") == "assistant" and bool(message.get("tool_calls"))


def context_percentage(latest_prompt_tokens: int, max_context_tokens: int) -> float:
    if not max_context_tokens or max_context_tokens <= 0:
        return 0.0
    return min(100.0, latest_prompt_tokens / max_context_tokens * 100)


def find_recent_rounds_start(messages: List[Dict[str, Any]], keep_rounds: int) -> int:
    """Index where the preserved region (the last `keep_rounds` rounds) begins."""
    rounds = 0
    i = len(messages) - 1
    while i >= 0 and rounds < keep_rounds:
        if messages[i].get("role") == "tool":
            while i >= 0 and messages[i].get("role") == "tool":
                i -= 1
            if i >= 0 and _has_tool_calls(messages[i]):
                rounds += 1
                i -= 1
        else:
            i -= 1
    return max(0, i + 1)


def _originating_tool_name(messages: List[Dict[str, Any]], index: int) -> str:
    tool_call_id = messages[index].get("tool_call_id")
    for j in range(index - 1, -1, -1):
        prev = messages[j]
        if _has_tool_calls(prev):
            for call in prev["tool_calls"]:
                if call.get("id") == tool_call_id:
                    return (call.get("function") or {}).get("name") or call.get("name") or "unknown"
        if prev.get("role") != "tool":
            break
    return "unknown"


def truncate_tool_results(
    messages: List[Dict[str, Any]],
    keep_recent_rounds: int = KEEP_RECENT_ROUNDS,
    min_length: int = MIN_TRUNCATION_LENGTH,
) -> List[Dict[str, Any]]:
    """Phase 1. Returns a new list; messages in the preserved region are the same objects."""
    boundary = find_recent_rounds_start(messages, keep_recent_rounds)
    result: List[Dict[str, Any]] = []
    for i, msg in enumerate(messages):
        if i < boundary and msg.get("role") == "tool" and _content_length(msg) > min_length:
            name = _originating_tool_name(messages, i)
            result.append({
                **msg,
                "content": f"[Tool result truncated: {name}, original {_content_length(msg)} chars]",
            })
        else:
            result.append(msg)
    return result


def _format_for_transcript(msg: Dict[str, Any], result_limit: int) -> Optional[str]:
    role = msg.get("role")
    if role == "system":
        return None

    content = msg.get("content") or ""
    if not isinstance(content, str):
        content = json.dumps(content, ensure_ascii=False)

    if role == "tool":
        if len(content) > result_limit:
            content = content[:result_limit] + f"... [truncated, {len(content)} chars total]"
        return f"[Tool Result ({msg.get('tool_call_id') or 'unknown'})]\n{content}"

    label = "[User]" if role == "user" else "[Assistant]"
    if _has_tool_calls(msg):
        parts = [f"{label}\n{content}" if content else label]
        for call in msg["tool_calls"]:
            fn = call.get("function") or {}
            name = fn.get("name") or "unknown"
            args = fn.get("arguments") or "{}"
            if len(args) > TRANSCRIPT_ARGS_LIMIT:
                args = args[:TRANSCRIPT_ARGS_LIMIT] + "..."
            parts.append(f"  -> Tool Call: {name}({args})")
        return "\n".join(parts)

    return f"{label}\n{content}" if content else None


class ContextCompressor:
    """Compression policy for one conversation kind (main or sub-agent)."""

    def __init__(
        self,
        summary_prompt: str,
        system_instruction: str,
        threshold: int = COMPRESS_THRESHOLD,
        keep_recent_rounds: int = KEEP_RECENT_ROUNDS,
        min_truncation_length: int = MIN_TRUNCATION_LENGTH,
        transcript_result_limit: int = TRANSCRIPT_RESULT_LIMIT,
        history_title: str = "Conversation History to Compress",
    ):
        self.summary_prompt = summary_prompt
        self.system_instruction = system_instruction
        self.threshold = threshold
        self.keep_recent_rounds = keep_recent_rounds
        self.min_truncation_length = min_truncation_length
        self.transcript_result_limit = transcript_result_limit
        self.history_title = history_title

    def should_compress(self, latest_prompt_tokens: int, max_context_tokens: int) -> bool:
        return context_percentage(latest_prompt_tokens, max_context_tokens) >= self.threshold

    def render_transcript(self, messages: List[Dict[str, Any]]) -> str:
        parts = [_format_for_transcript(m, self.transcript_result_limit) for m in messages]
        return "\n\n---\n\n".join(p for p in parts if p)

    def build_summary_request(self, messages: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [
            {"role": "system", "content": self.system_instruction},
            {"role": "user", "content": f"## {self.history_title}\n\n{self.render_transcript(messages)}"},
            {"role": "user", "content": self.summary_prompt},
        ]

    async def summarize(
        self,
        messages: List[Dict[str, Any]],
        stream_completion: StreamCompletion,
        model: str,
        cancel: Optional[threading.Event] = None,
    ) -> str:
        summary = ""
        async for chunk in stream_completion(model, self.build_summary_request(messages), cancel):
            if chunk.get("type") == "content" and chunk.get("content"):
                summary += chunk["content"]
        return summary.strip()

    async def compress(
        self,
        messages: List[Dict[str, Any]],
        latest_prompt_tokens: int,
        max_context_tokens: int,
        stream_completion: StreamCompletion,
        model: str,
        cancel: Optional[threading.Event] = None,
        protect_from: Optional[int] = None,
    ) -> CompressionResult:
        """Compress `messages` if context use is at or above the threshold. Never mutates the input.

        Messages at or after `protect_from` are never folded into the
        summary, so a turn in progress keeps its own messages intact.
        """
        if not self.should_compress(latest_prompt_tokens, max_context_tokens):
            return CompressionResult(compressed=False, phase=CompressionPhase.NONE, messages=messages)

        original_chars = _total_chars(messages)

        def _estimate(candidate: List[Dict[str, Any]]) -> int:
            ratio = _total_chars(candidate) / original_chars if original_chars > 0 else 1
            return round(latest_prompt_tokens * ratio)

        truncated = truncate_tool_results(messages, self.keep_recent_rounds, self.min_truncation_length)
        truncated_tokens = _estimate(truncated)
        phase1 = CompressionResult(
            compressed=True,
            phase=CompressionPhase.TRUNCATION,
            messages=truncated,
            before_tokens=latest_prompt_tokens,
            after_tokens_estimate=truncated_tokens,
        )
        if context_percentage(truncated_tokens, max_context_tokens) < self.threshold:
            logger.info(f"Context compressed by truncation: ~{latest_prompt_tokens} -> ~{truncated_tokens} tokens")
            return phase1

        boundary = find_recent_rounds_start(truncated, self.keep_recent_rounds)
        if protect_from is not None:
            boundary = min(boundary, max(0, protect_from))
        if not any(m.get("role") != "system" for m in truncated[:boundary]):
            phase1.notes.append("nothing older than the recent rounds to summarize")
            return phase1

        to_summarize = truncated[:boundary]
        preserved = truncated[boundary:]
        try:
            summary = await self.summarize(to_summarize, stream_completion, model, cancel)
        except Exception as e:
            logger.warning(f"Summary compression failed, keeping truncated transcript: {e}")
            phase1.notes.append(f"summary failed: {e}")
            return phase1
        # a cancelled stream ends quietly with partial text
        if cancel is not None and cancel.is_set():
            logger.info("Summary compression cancelled, keeping truncated transcript")
            phase1.notes.append("summary cancelled")
            return phase1
        if not summary:
            logger.warning("Summary compression returned an empty summary, keeping truncated transcript")
            phase1.notes.append("summary was empty")
            return phase1

        leading_system = []
        for msg in to_summarize:
            if msg.get("role") != "system":
                break
            leading_system.append(msg)

        summary_message = {
            "role": "user",
            "content": f"{SUMMARY_HEADER}\n\n{summary}\n\n---\n\n{SUMMARY_FOOTER}",
        }
        compressed = leading_system + [summary_message] + preserved
        after = _estimate(compressed)
        logger.info(f"Context compressed by summary: ~{latest_prompt_tokens} -> ~{after} tokens, "
                    f"{len(to_summarize)} messages summarized")
        return CompressionResult(
            compressed=True,
            phase=CompressionPhase.AI_SUMMARY,
            messages=compressed,
            before_tokens=latest_prompt_tokens,
            after_tokens_estimate=after,
        )


def main_compressor(**overrides: Any) -> ContextCompressor:
    return ContextCompressor(MAIN_SUMMARY_PROMPT, MAIN_SYSTEM_INSTRUCTION, **overrides)


def sub_agent_compressor(**overrides: Any) -> ContextCompressor:
    return ContextCompressor(
        SUB_AGENT_SUMMARY_PROMPT,
        SUB_AGENT_SYSTEM_INSTRUCTION,
        history_title="Sub-Agent Conversation History to Compress",
        **overrides,
    )
