"""Pydantic models for inbound Messages API request validation.

These models validate incoming requests before classification and
transformation. Unknown fields are allowed so newer client versions
keep working.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator


class ImageSource(BaseModel):
    """Image source for image content blocks."""

    model_config = ConfigDict(extra="allow")

    type: Literal["base64", "url"] | str = "base64"
    media_type: str | None = None
    data: str | None = None
    url: str | None = None

    @model_validator(mode="after")
    def validate_payload(self) -> "ImageSource":
        if self.type == "base64" and not self.data:
            raise ValueError("base64 image source requires data")
        if self.type == "url" and not self.url:
            raise ValueError("url image source requires url")
        return self


class ContentBlock(BaseModel):
    """Content block within a message.

    Only text, tool_use, tool_result and image carry meaning downstream;
    other types (thinking, documents) are accepted and ignored.
    """

    model_config = ConfigDict(extra="allow")

    type: str

    # text
    text: str | None = None

    # tool_use
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] | None = None

    # tool_result
    tool_use_id: str | None = None
    content: Any = None
    is_error: bool | None = None

    # image
    source: ImageSource | None = None

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if not v:
            raise ValueError("content block type cannot be empty")
        return v

    @model_validator(mode="after")
    def validate_required_fields(self) -> "ContentBlock":
        if self.type == "tool_use" and not (self.id and self.name):
            raise ValueError("tool_use block requires id and name")
        if self.type == "tool_result" and not self.tool_use_id:
            raise ValueError("tool_result block requires tool_use_id")
        if self.type == "image" and self.source is None:
            raise ValueError("image block requires source")
        return self


class Message(BaseModel):
    """A message in the conversation."""

    model_config = ConfigDict(extra="allow")

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]


class ToolDefinition(BaseModel):
    """Definition of an available tool."""

    model_config = ConfigDict(extra="allow")

    name: str
    description: str | None = None
    input_schema: dict[str, Any] = {}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("tool name cannot be empty")
        return v


class ToolChoice(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    name: str | None = None


class SystemContentBlock(BaseModel):
    """Content block for the system prompt (text with optional cache control)."""

    model_config = ConfigDict(extra="allow")

    type: Literal["text"] = "text"
    text: str
    cache_control: dict[str, Any] | None = None


class MessagesRequest(BaseModel):
    """Messages API request body."""

    model_config = ConfigDict(extra="allow")

    model: str
    messages: list[Message]
    max_tokens: int = 4096
    system: str | list[SystemContentBlock] | None = None
    tools: list[ToolDefinition] | None = None
    tool_choice: ToolChoice | None = None
    stream: bool = False
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop_sequences: list[str] | None = None
    metadata: dict[str, Any] | None = None

    @field_validator("messages")
    @classmethod
    def validate_messages(cls, v: list[Message]) -> list[Message]:
        if not v:
            raise ValueError("messages list cannot be empty")
        return v

    @field_validator("max_tokens")
    @classmethod
    def validate_max_tokens(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("max_tokens must be positive")
        return v

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float | None) -> float | None:
        if v is not None and (v < 0 or v > 2):
            raise ValueError("temperature must be between 0 and 2")
        return v


def validate_request(body: Any) -> list[str]:
    """Validate a Messages API request body.

    Args:
        body: The decoded request body

    Returns:
        List of validation error messages (empty if valid)
    """
    if not isinstance(body, dict):
        return ["request body must be a JSON object"]

    try:
        MessagesRequest.model_validate(body)
    except ValidationError as e:
        return [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
    return []
