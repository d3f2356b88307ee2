"""Protocol transformers for the Copilot proxy.

Converts between the Messages API spoken by the client and the Chat
Completions API spoken by the backend, using a provider-agnostic internal
representation. Streaming replies go through StreamTranscoder.
"""

from .anthropic import AnthropicTransformer, format_sse_event
from .openai import OpenAITransformer, map_finish_reason, map_model
from .streaming import StreamTranscoder
from .types import (
    Classification,
    ContentBlock,
    ImageBlock,
    InboundRequest,
    InternalResponse,
    Message,
    RoutingDecision,
    StreamPhase,
    StreamState,
    TextBlock,
    TokenUsage,
    ToolChoice,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
)
from .validation import MessagesRequest, validate_request

__all__ = [
    # Transformers
    "AnthropicTransformer",
    "OpenAITransformer",
    "StreamTranscoder",
    "format_sse_event",
    "map_finish_reason",
    "map_model",
    # Types
    "Classification",
    "ContentBlock",
    "ImageBlock",
    "InboundRequest",
    "InternalResponse",
    "Message",
    "RoutingDecision",
    "StreamPhase",
    "StreamState",
    "TextBlock",
    "TokenUsage",
    "ToolChoice",
    "ToolResultBlock",
    "ToolSpec",
    "ToolUseBlock",
    # Validation
    "MessagesRequest",
    "validate_request",
]
