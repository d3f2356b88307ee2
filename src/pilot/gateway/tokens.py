"""Rough token estimation.

The backend reports real usage only at the end of a response, and the
client wants an input token count up front. These helpers estimate it at
4 characters per token, which is close enough for display and budgeting.
"""

import json
import math

from pilot.gateway.transforms.openai import stringify_tool_result
from pilot.gateway.transforms.types import (
    InboundRequest,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def count_request_chars(request: InboundRequest) -> int:
    """Count the characters of a request that the backend will tokenize.

    Counts the system prompt, text blocks, tool_use inputs (as JSON),
    tool_result content and tool definitions (as JSON). Images are ignored.
    """
    total = len(request.system_text)

    for message in request.messages:
        if isinstance(message.content, str):
            total += len(message.content)
            continue
        for block in message.content:
            if isinstance(block, TextBlock):
                total += len(block.text)
            elif isinstance(block, ToolUseBlock):
                total += len(json.dumps(block.input))
            elif isinstance(block, ToolResultBlock):
                total += len(stringify_tool_result(block.content))

    if request.tools:
        tools = [
            {"name": t.name, "description": t.description, "input_schema": t.input_schema}
            for t in request.tools
        ]
        total += len(json.dumps(tools))

    return total


def estimate_input_tokens(request: InboundRequest) -> int:
    """Estimated input tokens for message_start and count_tokens."""
    return math.ceil(count_request_chars(request) / CHARS_PER_TOKEN)
