"""
Amazon Bedrock service module.
Handles all interactions with the AWS Bedrock runtime: message formatting,
streaming generation, and an async streaming-completion adapter for the engine.
"""

import asyncio
import boto3
import json
import logging
import queue
import threading
from typing import AsyncIterator, Generator, List, Dict, Optional, Any
from botocore.exceptions import ClientError, NoCredentialsError
from dataclasses import dataclass
from config import (
    aws_config,
    model_config,
    get_max_output_tokens,
)


logger = logging.getLogger(__name__)

# How often the async reader wakes up to check the cancel flag
_QUEUE_POLL_SECONDS = 0.2


class BedrockError(Exception):
    """Custom exception for Bedrock service errors"""
    pass


@dataclass
class GenerationConfig:
    """Configuration for a single generation request"""
    max_tokens: int = model_config.max_tokens
    temperature: Optional[float] = model_config.temperature
    stop_sequences: Optional[List[str]] = None
    # Throughput settings
    throughput_mode: str = "cross-region"


def _ensure_non_empty_content(content: Any) -> Any:
    """API requires non-empty content for all messages except optional final assistant."""
    if isinstance(content, str):
        return content if content.strip() else "(no content)"
    if isinstance(content, list):
        out = []
        for b in content:
            if isinstance(b, dict) and b.get("type") == "text" and not (b.get("text") or "").strip():
                continue
            out.append(b)
        return out if out else [{"type": "text", "text": "(no content)"}]
    return "(no content)"


def _as_blocks(content: Any) -> List[Dict[str, Any]]:
    if isinstance(content, list):
        return list(content)
    if isinstance(content, str) and content.strip():
        return [{"type": "text", "text": content}]
    return []


def format_messages(messages: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Convert chat-completion style messages into the Anthropic Messages shape.

    System messages are pulled out into a single system prompt. Assistant
    `tool_calls` become `tool_use` blocks and `tool` messages become
    `tool_result` blocks on a user turn. Consecutive messages with the same
    role are merged so roles alternate.

    Returns {"system": str or None, "messages": [...]}.
    """
    system_parts: List[str] = []
    formatted: List[Dict[str, Any]] = []

    def _append(role: str, blocks: List[Dict[str, Any]]) -> None:
        if formatted and formatted[-1]["role"] == role:
            formatted[-1]["content"].extend(blocks)
        else:
            formatted.append({"role": role, "content": blocks})

    for msg in messages:
        role = msg.get("role")
        content = msg.get("content")
        if role == "system":
            if isinstance(content, str) and content.strip():
                system_parts.append(content)
            continue
        if role == "tool":
            _append("user", [{
                "type": "tool_result",
                "tool_use_id": msg.get("tool_call_id", ""),
                "content": content if isinstance(content, str) and content else "(no content)",
            }])
            continue
        if role == "assistant":
            blocks = _as_blocks(content)
            for tc in msg.get("tool_calls") or []:
                fn = tc.get("function", {})
                raw_args = fn.get("arguments") or "{}"
                try:
                    tool_input = json.loads(raw_args) if isinstance(raw_args, str) else raw_args
                except json.JSONDecodeError:
                    tool_input = {}
                if not isinstance(tool_input, dict):
                    tool_input = {}
                blocks.append({
                    "type": "tool_use",
                    "id": tc.get("id", ""),
                    "name": fn.get("name", ""),
                    "input": tool_input,
                })
            _append("assistant", blocks)
            continue
        _append("user", _as_blocks(content))

    for msg in formatted:
        msg["content"] = _ensure_non_empty_content(msg["content"])

    return {"system": "\n\n".join(system_parts) or None, "messages": formatted}


class BedrockService:
    """
    Service class for Amazon Bedrock interactions.
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None,
        client: Any = None,
    ):
        self.model_id = model_id or model_config.model_id
        self.region = region or aws_config.region

        self.client = client if client is not None else self._create_client()
        logger.info(f"BedrockService initialized with model: {self.model_id}")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        try:
            session_kwargs = {"region_name": self.region}

            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")

        except NoCredentialsError:
            raise BedrockError("AWS credentials not configured.")
        except Exception as e:
            raise BedrockError(f"Failed to initialize Bedrock client: {e}")

    def _get_model_identifier(self, model_id: str, config: GenerationConfig) -> str:
        """Get the appropriate model identifier based on throughput mode"""
        if config.throughput_mode == "cross-region" and model_id.startswith("anthropic."):
            region_prefix = "eu" if self.region.startswith("eu-") else "us"
            return f"{region_prefix}.{model_id}"
        return model_id

    def format_messages(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        return format_messages(messages)

    def _format_request_body(
        self,
        messages: List[Dict],
        system_prompt: Optional[str],
        model_id: str,
        config: GenerationConfig,
        tools: Optional[List[Dict]] = None
    ) -> Dict[str, Any]:
        """Format the request body (Anthropic-only since all models are Claude)"""
        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": min(config.max_tokens, get_max_output_tokens(model_id)),
            "messages": messages,
        }
        if config.temperature is not None:
            body["temperature"] = config.temperature
        if config.stop_sequences:
            body["stop_sequences"] = config.stop_sequences
        if system_prompt:
            body["system"] = system_prompt
        if tools:
            body["tools"] = tools
        return body

    def generate_response_stream(
        self,
        messages: List[Dict],
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
        tools: Optional[List[Dict]] = None
    ) -> Generator[Dict[str, Any], None, None]:
        """
        Generate a streaming response using Amazon Bedrock.
        `messages` must already be in Anthropic shape.
        Yields dictionaries with 'type' and 'content'.
        Types: text_start, text, text_end, tool_use_start, tool_use_delta,
               tool_use_end, usage_start, message_end
        """
        current_model = model_id or self.model_id
        gen_config = config or GenerationConfig()

        try:
            model_identifier = self._get_model_identifier(current_model, gen_config)
            request_body = self._format_request_body(
                messages, system_prompt, current_model, gen_config, tools=tools
            )

            logger.info(f"Streaming from model: {model_identifier}")

            response = self.client.invoke_model_with_response_stream(
                modelId=model_identifier,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json"
            )

            current_block_type = "text"

            for event in response["body"]:
                chunk = json.loads(event["chunk"]["bytes"])
                event_type = chunk.get("type", "")

                if event_type == "content_block_start":
                    block = chunk.get("content_block", {})
                    current_block_type = block.get("type", "text")

                    if current_block_type == "text":
                        yield {"type": "text_start", "content": ""}
                    elif current_block_type == "tool_use":
                        yield {
                            "type": "tool_use_start",
                            "content": "",
                            "data": {
                                "id": block.get("id", ""),
                                "name": block.get("name", ""),
                            }
                        }

                elif event_type == "content_block_delta":
                    delta = chunk.get("delta", {})
                    delta_type = delta.get("type", "")

                    if delta_type == "text_delta":
                        text = delta.get("text", "")
                        if text:
                            yield {"type": "text", "content": text}
                    elif delta_type == "input_json_delta":
                        partial = delta.get("partial_json", "")
                        if partial:
                            yield {"type": "tool_use_delta", "content": partial}

                elif event_type == "content_block_stop":
                    if current_block_type == "text":
                        yield {"type": "text_end", "content": ""}
                    elif current_block_type == "tool_use":
                        yield {"type": "tool_use_end", "content": ""}

                elif event_type == "message_start":
                    # Input token usage (including cache metrics) arrives on message_start
                    msg_usage = chunk.get("message", {}).get("usage", {})
                    if msg_usage:
                        yield {
                            "type": "usage_start",
                            "content": "",
                            "usage": msg_usage,
                        }

                elif event_type == "message_delta":
                    yield {
                        "type": "message_end",
                        "content": "",
                        "usage": chunk.get("usage", {}),
                        "stop_reason": chunk.get("delta", {}).get("stop_reason")
                    }

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            error_message = e.response.get('Error', {}).get('Message', str(e))
            logger.error(f"Bedrock streaming error: {error_code} - {error_message}")
            if error_code in ['ExpiredTokenException', 'InvalidSignatureException']:
                raise BedrockError("AWS credentials expired. Please refresh.")
            raise BedrockError(f"Streaming error: {error_message}")

    async def stream_completion(
        self,
        model: Optional[str],
        messages: List[Dict[str, Any]],
        cancel: Optional[threading.Event] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Async streaming completion over chat-completion style messages.

        Yields {"type": "content", "content": text} as text arrives, then one
        {"type": "tool_calls", "tool_calls": [...]} if the model called tools,
        then {"type": "usage", "usage": {...}}. Stops quietly when `cancel`
        is set.
        """
        request = format_messages(messages)
        q: queue.Queue = queue.Queue()
        stop = threading.Event()

        def _producer():
            try:
                for chunk in self.generate_response_stream(
                    messages=request["messages"],
                    system_prompt=request["system"],
                    model_id=model or self.model_id,
                    tools=tools,
                ):
                    if stop.is_set():
                        break
                    q.put(chunk)
            except Exception as e:
                q.put(e)
            finally:
                q.put(None)

        t = threading.Thread(target=_producer, daemon=True)
        t.start()

        loop = asyncio.get_running_loop()
        tool_calls: List[Dict[str, Any]] = []
        current_tool: Optional[Dict[str, Any]] = None
        usage = {"prompt_tokens": 0, "completion_tokens": 0, "cache_read_tokens": 0}

        try:
            while True:
                if cancel is not None and cancel.is_set():
                    logger.info("Streaming completion cancelled")
                    return
                try:
                    chunk = await loop.run_in_executor(None, q.get, True, _QUEUE_POLL_SECONDS)
                except queue.Empty:
                    continue
                if chunk is None:
                    break
                if isinstance(chunk, Exception):
                    if isinstance(chunk, BedrockError):
                        raise chunk
                    raise BedrockError(str(chunk)) from chunk

                ct = chunk.get("type", "")
                if ct == "text":
                    yield {"type": "content", "content": chunk["content"]}
                elif ct == "tool_use_start":
                    current_tool = {"id": chunk["data"]["id"], "name": chunk["data"]["name"], "arguments": ""}
                elif ct == "tool_use_delta" and current_tool is not None:
                    current_tool["arguments"] += chunk["content"]
                elif ct == "tool_use_end" and current_tool is not None:
                    tool_calls.append({
                        "id": current_tool["id"],
                        "type": "function",
                        "function": {
                            "name": current_tool["name"],
                            "arguments": current_tool["arguments"] or "{}",
                        },
                    })
                    current_tool = None
                elif ct == "usage_start":
                    u = chunk.get("usage", {})
                    cache_read = int(u.get("cache_read_input_tokens", 0) or 0)
                    # Everything the model saw this call counts against the context window
                    usage["prompt_tokens"] = (int(u.get("input_tokens", 0) or 0) + cache_read
                                              + int(u.get("cache_creation_input_tokens", 0) or 0))
                    usage["cache_read_tokens"] = cache_read
                elif ct == "message_end":
                    usage["completion_tokens"] = int(chunk.get("usage", {}).get("output_tokens", 0) or 0)
        finally:
            stop.set()

        if tool_calls:
            yield {"type": "tool_calls", "tool_calls": tool_calls}
        yield {"type": "usage", "usage": usage}
