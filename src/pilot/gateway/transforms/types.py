"""Types for the protocol transcoding engine.

These are the provider-agnostic value types shared by the classifier,
the request/response transformers and the streaming transcoder.
Everything here is immutable except StreamState, which lives for the
duration of a single streamed response.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class TextBlock:
    """Plain text content."""

    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    """A tool invocation issued by the assistant."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass(frozen=True)
class ToolResultBlock:
    """Result of a tool invocation, sent back in a user message.

    ``content`` is kept in whatever shape the client sent it (a string or a
    list of raw block dicts) so nothing is lost on the way to the backend.
    """

    tool_use_id: str
    content: Any = ""
    is_error: bool = False


@dataclass(frozen=True)
class ImageBlock:
    """Image content, inline base64 or a remote URL."""

    media_type: str
    data: str
    url: str | None = None

    @property
    def image_url(self) -> str:
        if self.url:
            return self.url
        return f"data:{self.media_type};base64,{self.data}"


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, ImageBlock]


@dataclass(frozen=True)
class Message:
    """A conversation message. Block order is significant."""

    role: Role
    content: str | tuple[ContentBlock, ...]

    @property
    def blocks(self) -> tuple[ContentBlock, ...]:
        """Content as a block tuple, wrapping plain strings in a TextBlock."""
        if isinstance(self.content, str):
            return (TextBlock(self.content),) if self.content else ()
        return self.content

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        if isinstance(self.content, str):
            return self.content
        return "".join(b.text for b in self.content if isinstance(b, TextBlock))

    def has_tool_result(self) -> bool:
        return any(isinstance(b, ToolResultBlock) for b in self.blocks)

    def has_tool_use(self) -> bool:
        return any(isinstance(b, ToolUseBlock) for b in self.blocks)

    def has_image(self) -> bool:
        return any(isinstance(b, ImageBlock) for b in self.blocks)


@dataclass(frozen=True)
class ToolSpec:
    """Definition of an available tool. The schema is passed through opaquely."""

    name: str
    input_schema: dict[str, Any]
    description: str | None = None


@dataclass(frozen=True)
class ToolChoice:
    """Client tool-choice directive."""

    type: Literal["auto", "any", "tool", "none"] | str
    name: str | None = None


@dataclass(frozen=True)
class InboundRequest:
    """A decoded client request in the block-based protocol."""

    model: str
    messages: tuple[Message, ...]
    system: str | tuple[str, ...] | None = None
    tools: tuple[ToolSpec, ...] = ()
    tool_choice: ToolChoice | None = None
    stream: bool = False
    max_tokens: int = 4096
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop_sequences: tuple[str, ...] | None = None

    @property
    def system_text(self) -> str:
        """System prompt as one string, blocks concatenated without separator."""
        if self.system is None:
            return ""
        if isinstance(self.system, str):
            return self.system
        return "".join(self.system)

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def has_image(self) -> bool:
        return any(m.has_image() for m in self.messages)

    def tool_names(self) -> list[str]:
        return [t.name for t in self.tools]


class RoutingDecision(str, Enum):
    """Routing/billing category of an inbound request."""

    DIRECT_USER_TURN = "direct_user_turn"
    AGENT_CONTINUATION = "agent_continuation"
    SYNTHETIC_UTILITY = "synthetic_utility"
    SUGGESTION_STUB = "suggestion_stub"
    DEDICATED_TOOL_EXECUTION = "dedicated_tool_execution"

    @property
    def chargeable(self) -> bool:
        """Only a direct human turn is billed."""
        return self is RoutingDecision.DIRECT_USER_TURN

    @property
    def initiator(self) -> Literal["user", "agent"]:
        """Value of the billing side-channel header."""
        return "user" if self.chargeable else "agent"


@dataclass(frozen=True)
class Classification:
    """Result of classifying a request."""

    decision: RoutingDecision
    payload: str | None = None  # Extracted query for DEDICATED_TOOL_EXECUTION


@dataclass(frozen=True)
class TokenUsage:
    """Token usage statistics."""

    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class InternalResponse:
    """Non-streaming backend reply, before it is shaped for the client."""

    content: str
    tool_calls: tuple[ToolUseBlock, ...] = ()
    stop_reason: Literal["end_turn", "max_tokens", "tool_use"] = "end_turn"
    usage: TokenUsage | None = None
    id: str | None = None
    model: str | None = None


class BlockKind(str, Enum):
    TEXT = "text"
    TOOL = "tool"


class StreamPhase(str, Enum):
    """Named states of the streaming transcoder."""

    PENDING = "pending"  # stream-open not yet emitted
    NO_BLOCK_OPEN = "no_block_open"
    TEXT_OPEN = "text_open"
    TOOL_OPEN = "tool_open"
    CLOSED = "closed"


@dataclass
class PendingToolCall:
    """A tool call being assembled from backend fragments."""

    id: str
    name: str
    block_index: int
    arguments: str = ""


@dataclass
class StreamState:
    """Mutable state of one streamed response.

    Owned by a single transcoder; never shared between requests.
    """

    message_id: str
    model: str
    input_token_estimate: int = 0
    open_block_index: int | None = None
    open_block_kind: BlockKind | None = None
    next_block_index: int = 0
    pending_tool_calls: dict[int, PendingToolCall] = field(default_factory=dict)
    output_tokens: int = 0
    output_chars: int = 0  # Fallback estimate until the backend reports usage
    usage_reported: bool = False
    started: bool = False
    terminal_event_emitted: bool = False

    @property
    def phase(self) -> StreamPhase:
        if self.terminal_event_emitted:
            return StreamPhase.CLOSED
        if not self.started:
            return StreamPhase.PENDING
        if self.open_block_kind is BlockKind.TEXT:
            return StreamPhase.TEXT_OPEN
        if self.open_block_kind is BlockKind.TOOL:
            return StreamPhase.TOOL_OPEN
        return StreamPhase.NO_BLOCK_OPEN
