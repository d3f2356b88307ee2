"""Chat Completions API (backend protocol) transformer.

Converts InboundRequest values into Chat Completions request bodies and
parses non-streaming Chat Completions responses into InternalResponse.

Chat Completions API Reference:
- Request: POST /chat/completions with {model, messages, tools, tool_choice, stream, max_tokens, temperature}
- Messages: [{role, content, tool_calls?, tool_call_id?}], role in system/user/assistant/tool
- Streaming: SSE with data: {"choices": [{"delta": {...}}]} and a final data: [DONE]
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

from .types import (
    ImageBlock,
    InboundRequest,
    InternalResponse,
    Message,
    RoutingDecision,
    TextBlock,
    TokenUsage,
    ToolChoice,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
)

logger = logging.getLogger(__name__)

# Model family token -> backend model id. First match wins.
DEFAULT_MODEL_FAMILIES: tuple[tuple[str, str], ...] = (
    ("opus", "claude-opus-4"),
    ("sonnet", "claude-sonnet-4.5"),
    ("haiku", "claude-haiku-4.5"),
)

DEFAULT_FREE_MODEL = "gpt-4.1"

FINISH_REASON_MAP = {
    "stop": "end_turn",
    "length": "max_tokens",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "content_filter": "end_turn",
}

WEB_SEARCH_TOOL = ToolSpec(
    name="web_search",
    description=(
        "Search the web for current information. Use this when you need up-to-date "
        "information that may not be in your training data."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "The search query"},
        },
        "required": ["query"],
    },
)

# Categories whose requests are retargeted to the free model
FREE_MODEL_DECISIONS = frozenset(
    {RoutingDecision.SYNTHETIC_UTILITY, RoutingDecision.SUGGESTION_STUB}
)


def map_model(
    model: str,
    families: tuple[tuple[str, str], ...] = DEFAULT_MODEL_FAMILIES,
) -> str:
    """Map a client model name to a backend model id by family token.

    Unknown names pass through unchanged so the backend reports the error.
    """
    lowered = model.lower()
    for token, backend_model in families:
        if token in lowered:
            return backend_model
    return model


def map_finish_reason(reason: str | None) -> str:
    """Map a backend finish reason to the client's stop reason.

    Unrecognized reasons fall back to end_turn.
    """
    if reason in FINISH_REASON_MAP:
        return FINISH_REASON_MAP[reason]
    logger.info("Unrecognized finish_reason %r, mapping to end_turn", reason)
    return "end_turn"


def stringify_tool_result(content: Any) -> str:
    """Serialize tool_result content for the backend's string-only tool message.

    All-text block lists are joined; any other shape is JSON-encoded rather
    than dropped.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list) and all(
        isinstance(b, dict) and b.get("type") == "text" for b in content
    ):
        return "\n".join(b.get("text", "") for b in content)
    return json.dumps(content, default=str)


@dataclass
class OpenAITransformer:
    """Transforms internal requests to Chat Completions and parses replies."""

    model_families: tuple[tuple[str, str], ...] = DEFAULT_MODEL_FAMILIES
    free_model: str = DEFAULT_FREE_MODEL
    web_search_tool: ToolSpec | None = None  # Injected for agent/user traffic when set

    def target_model(self, request: InboundRequest, decision: RoutingDecision) -> str:
        """Backend model for a request in the given category."""
        if decision in FREE_MODEL_DECISIONS:
            return self.free_model
        return map_model(request.model, self.model_families)

    def to_upstream(
        self,
        request: InboundRequest,
        decision: RoutingDecision,
    ) -> dict[str, Any]:
        """Convert an inbound request to a Chat Completions request body.

        Args:
            request: Parsed inbound request
            decision: Routing category, selects model and tool injection

        Returns:
            Request dict ready for /chat/completions
        """
        messages: list[dict[str, Any]] = []

        if request.system:
            system_text = (
                request.system if isinstance(request.system, str) else "\n".join(request.system)
            )
            messages.append({"role": "system", "content": system_text})

        for msg in request.messages:
            messages.extend(self._convert_message(msg))

        result: dict[str, Any] = {
            "model": self.target_model(request, decision),
            "messages": messages,
            "max_tokens": request.max_tokens,
            "stream": request.stream,
        }
        if request.temperature is not None:
            result["temperature"] = request.temperature
        if request.top_p is not None:
            result["top_p"] = request.top_p
        if request.stop_sequences:
            result["stop"] = list(request.stop_sequences)

        tools = list(request.tools)
        if (
            self.web_search_tool is not None
            and decision
            in (RoutingDecision.DIRECT_USER_TURN, RoutingDecision.AGENT_CONTINUATION)
            and not any(t.name == self.web_search_tool.name for t in tools)
        ):
            tools.append(self.web_search_tool)

        if tools:
            result["tools"] = [self._convert_tool(tool) for tool in tools]
            tool_choice = self._convert_tool_choice(request.tool_choice)
            if tool_choice is not None:
                result["tool_choice"] = tool_choice

        # Request stream_options for usage in streaming mode
        if request.stream:
            result["stream_options"] = {"include_usage": True}

        return result

    def _convert_message(self, msg: Message) -> list[dict[str, Any]]:
        """Convert one inbound message into one or more backend messages."""
        if msg.role == "user":
            return self._convert_user_message(msg)
        return [self._convert_assistant_message(msg)]

    def _convert_user_message(self, msg: Message) -> list[dict[str, Any]]:
        if isinstance(msg.content, str):
            return [{"role": "user", "content": msg.content}]

        # Tool results become separate tool-role messages, in block order,
        # ahead of whatever other content the message carries.
        converted: list[dict[str, Any]] = []
        rest: list[TextBlock | ImageBlock] = []
        for block in msg.content:
            if isinstance(block, ToolResultBlock):
                converted.append(
                    {
                        "role": "tool",
                        "tool_call_id": block.tool_use_id,
                        "content": stringify_tool_result(block.content),
                    }
                )
            elif isinstance(block, (TextBlock, ImageBlock)):
                rest.append(block)

        if rest or not converted:
            converted.append({"role": "user", "content": self._convert_user_content(rest)})
        return converted

    def _convert_user_content(
        self, blocks: list[TextBlock | ImageBlock]
    ) -> str | list[dict[str, Any]]:
        if not any(isinstance(b, ImageBlock) for b in blocks):
            return "".join(b.text for b in blocks if isinstance(b, TextBlock))

        parts: list[dict[str, Any]] = []
        for block in blocks:
            if isinstance(block, TextBlock):
                parts.append({"type": "text", "text": block.text})
            else:
                parts.append({"type": "image_url", "image_url": {"url": block.image_url}})
        return parts

    def _convert_assistant_message(self, msg: Message) -> dict[str, Any]:
        if isinstance(msg.content, str):
            return {"role": "assistant", "content": msg.content}

        text = "".join(b.text for b in msg.content if isinstance(b, TextBlock))
        tool_calls = [
            {
                "id": block.id,
                "type": "function",
                "function": {
                    "name": block.name,
                    "arguments": json.dumps(block.input),
                },
            }
            for block in msg.content
            if isinstance(block, ToolUseBlock)
        ]

        # No text is encoded as null, never as an empty string
        msg_dict: dict[str, Any] = {"role": "assistant", "content": text or None}
        if tool_calls:
            msg_dict["tool_calls"] = tool_calls
        return msg_dict

    def _convert_tool(self, tool: ToolSpec) -> dict[str, Any]:
        function: dict[str, Any] = {"name": tool.name, "parameters": tool.input_schema}
        if tool.description is not None:
            function["description"] = tool.description
        return {"type": "function", "function": function}

    def _convert_tool_choice(self, choice: ToolChoice | None) -> Any:
        if choice is None:
            return None
        if choice.type == "auto":
            return "auto"
        if choice.type == "any":
            return "required"
        if choice.type == "none":
            return "none"
        if choice.type == "tool" and choice.name:
            return {"type": "function", "function": {"name": choice.name}}
        return "auto"

    def from_upstream(self, response: dict[str, Any]) -> InternalResponse:
        """Convert a non-streaming Chat Completions response to internal format.

        Args:
            response: Chat Completions response dict

        Returns:
            InternalResponse with parsed content
        """
        choices = response.get("choices") or [{}]
        choice = choices[0]
        message = choice.get("message") or {}

        content = message.get("content") or ""
        tool_calls: list[ToolUseBlock] = []

        for tc in message.get("tool_calls") or []:
            function = tc.get("function", {})
            raw_arguments = function.get("arguments") or "{}"
            try:
                arguments = json.loads(raw_arguments)
            except json.JSONDecodeError:
                logger.warning(
                    "Unparseable arguments for tool call %s: %.200s", tc.get("id"), raw_arguments
                )
                arguments = {}
            if not isinstance(arguments, dict):
                arguments = {"value": arguments}

            tool_calls.append(
                ToolUseBlock(
                    id=tc.get("id", ""),
                    name=function.get("name", ""),
                    input=arguments,
                )
            )

        usage = None
        if response.get("usage"):
            usage = TokenUsage(
                input_tokens=response["usage"].get("prompt_tokens", 0) or 0,
                output_tokens=response["usage"].get("completion_tokens", 0) or 0,
            )

        return InternalResponse(
            content=content,
            tool_calls=tuple(tool_calls),
            stop_reason=map_finish_reason(choice.get("finish_reason") or "stop"),  # type: ignore[arg-type]
            usage=usage,
            id=response.get("id"),
            model=response.get("model"),
        )
