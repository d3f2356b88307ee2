"""Messages API (client protocol) transformer.

Parses inbound Messages API request bodies into InboundRequest values and
renders responses back in the client's shape, both as complete JSON
bodies and as SSE events.

Messages API Reference:
- Request: POST /v1/messages with {model, messages, system, tools, tool_choice, max_tokens, stream}
- Response: {id, type, role, content, model, stop_reason, usage}
- Streaming: SSE events (message_start, content_block_start/delta/stop, message_delta, message_stop)
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from .types import (
    ContentBlock,
    ImageBlock,
    InboundRequest,
    InternalResponse,
    Message,
    TextBlock,
    TokenUsage,
    ToolChoice,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)


def generate_message_id(prefix: str = "msg") -> str:
    """Generate a message ID in the client's format."""
    return f"{prefix}_{int(time.time() * 1000)}"


def format_sse_event(data: dict[str, Any]) -> bytes:
    """Format an event dict as an SSE frame named after its ``type``."""
    json_data = json.dumps(data, separators=(",", ":"))
    return f"event: {data['type']}\ndata: {json_data}\n\n".encode()


def message_start_event(message_id: str, model: str, input_tokens: int = 0) -> dict[str, Any]:
    return {
        "type": "message_start",
        "message": {
            "id": message_id,
            "type": "message",
            "role": "assistant",
            "content": [],
            "model": model,
            "stop_reason": None,
            "stop_sequence": None,
            "usage": {"input_tokens": input_tokens, "output_tokens": 0},
        },
    }


def content_block_start_event(index: int, content_block: dict[str, Any]) -> dict[str, Any]:
    return {"type": "content_block_start", "index": index, "content_block": content_block}


def text_delta_event(index: int, text: str) -> dict[str, Any]:
    return {
        "type": "content_block_delta",
        "index": index,
        "delta": {"type": "text_delta", "text": text},
    }


def input_json_delta_event(index: int, partial_json: str) -> dict[str, Any]:
    return {
        "type": "content_block_delta",
        "index": index,
        "delta": {"type": "input_json_delta", "partial_json": partial_json},
    }


def content_block_stop_event(index: int) -> dict[str, Any]:
    return {"type": "content_block_stop", "index": index}


def message_delta_event(stop_reason: str, usage: TokenUsage | None = None) -> dict[str, Any]:
    usage = usage or TokenUsage(input_tokens=0, output_tokens=0)
    return {
        "type": "message_delta",
        "delta": {"stop_reason": stop_reason, "stop_sequence": None},
        "usage": {
            "input_tokens": usage.input_tokens,
            "cache_creation_input_tokens": 0,
            "cache_read_input_tokens": 0,
            "output_tokens": usage.output_tokens,
        },
    }


def message_stop_event() -> dict[str, Any]:
    return {"type": "message_stop"}


def error_body(error_type: str, message: str) -> dict[str, Any]:
    """Client-format error payload."""
    return {"type": "error", "error": {"type": error_type, "message": message}}


def empty_message(message_id: str, model: str) -> dict[str, Any]:
    """A complete reply with no content, used for blocked or failed requests."""
    return {
        "id": message_id,
        "type": "message",
        "role": "assistant",
        "content": [],
        "model": model,
        "stop_reason": "end_turn",
        "stop_sequence": None,
        "usage": {"input_tokens": 0, "output_tokens": 0},
    }


def empty_message_events(message_id: str, model: str) -> list[dict[str, Any]]:
    """Streamed equivalent of :func:`empty_message`."""
    return [
        message_start_event(message_id, model),
        message_delta_event("end_turn"),
        message_stop_event(),
    ]


@dataclass
class AnthropicTransformer:
    """Transforms Messages API bodies to/from the internal types."""

    def to_internal(self, body: dict[str, Any]) -> InboundRequest:
        """Convert a validated Messages API request body to an InboundRequest.

        Args:
            body: Request body with model, messages, max_tokens, etc.

        Returns:
            Immutable InboundRequest
        """
        messages = tuple(self._parse_message(msg) for msg in body.get("messages", []))

        tools = tuple(
            ToolSpec(
                name=tool["name"],
                input_schema=tool.get("input_schema") or {},
                description=tool.get("description"),
            )
            for tool in body.get("tools") or []
        )

        system = body.get("system")
        if isinstance(system, list):
            system = tuple(
                block.get("text", "") for block in system if block.get("type", "text") == "text"
            )

        tool_choice = None
        if body.get("tool_choice"):
            tool_choice = ToolChoice(
                type=body["tool_choice"].get("type", "auto"),
                name=body["tool_choice"].get("name"),
            )

        stop_sequences = body.get("stop_sequences")

        return InboundRequest(
            model=body.get("model", ""),
            messages=messages,
            system=system,
            tools=tools,
            tool_choice=tool_choice,
            stream=bool(body.get("stream", False)),
            max_tokens=body.get("max_tokens", 4096),
            temperature=body.get("temperature"),
            top_p=body.get("top_p"),
            top_k=body.get("top_k"),
            stop_sequences=tuple(stop_sequences) if stop_sequences else None,
        )

    def _parse_message(self, msg: dict[str, Any]) -> Message:
        content = msg.get("content")
        if content is None:
            return Message(role=msg["role"], content="")
        if isinstance(content, str):
            return Message(role=msg["role"], content=content)

        blocks: list[ContentBlock] = []
        for block in content:
            parsed = self._parse_block(block)
            if parsed is not None:
                blocks.append(parsed)
        return Message(role=msg["role"], content=tuple(blocks))

    def _parse_block(self, block: dict[str, Any]) -> ContentBlock | None:
        """Parse one content block. Types with no backend meaning are skipped."""
        block_type = block.get("type")

        if block_type == "text":
            return TextBlock(text=block.get("text") or "")

        if block_type == "tool_use":
            return ToolUseBlock(
                id=block["id"],
                name=block["name"],
                input=block.get("input") or {},
            )

        if block_type == "tool_result":
            return ToolResultBlock(
                tool_use_id=block["tool_use_id"],
                content=block.get("content", ""),
                is_error=bool(block.get("is_error", False)),
            )

        if block_type == "image":
            source = block.get("source") or {}
            if source.get("type") == "url":
                return ImageBlock(
                    media_type=source.get("media_type", ""),
                    data="",
                    url=source.get("url"),
                )
            return ImageBlock(
                media_type=source.get("media_type", "image/png"),
                data=source.get("data", ""),
            )

        logger.debug("Skipping unsupported content block type: %s", block_type)
        return None

    def from_internal(self, response: InternalResponse, model: str) -> dict[str, Any]:
        """Convert an internal response to a Messages API response body.

        Args:
            response: Parsed backend response
            model: Model name reported to the client

        Returns:
            Messages API response dict
        """
        content: list[dict[str, Any]] = []

        if response.content:
            content.append({"type": "text", "text": response.content})

        for tool_call in response.tool_calls:
            content.append(
                {
                    "type": "tool_use",
                    "id": tool_call.id,
                    "name": tool_call.name,
                    "input": tool_call.input,
                }
            )

        usage = response.usage or TokenUsage(input_tokens=0, output_tokens=0)

        return {
            "id": response.id or generate_message_id(),
            "type": "message",
            "role": "assistant",
            "content": content,
            "model": model,
            "stop_reason": response.stop_reason,
            "stop_sequence": None,
            "usage": {
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
            },
        }
