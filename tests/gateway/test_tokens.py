"""Tests for input token estimation."""

import json

from pilot.gateway.tokens import count_request_chars, estimate_input_tokens, estimate_tokens
from pilot.gateway.transforms.types import (
    ImageBlock,
    InboundRequest,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolSpec,
    ToolUseBlock,
)


class TestEstimateTokens:
    def test_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abc") == 1
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2


class TestCountRequestChars:
    def test_system_and_text(self):
        request = InboundRequest(
            model="m",
            system=("ab", "cd"),
            messages=(Message(role="user", content="hello"),),
        )
        assert count_request_chars(request) == 4 + 5

    def test_blocks(self):
        request = InboundRequest(
            model="m",
            messages=(
                Message(
                    role="assistant",
                    content=(
                        TextBlock("hi"),
                        ToolUseBlock(id="t1", name="ls", input={"path": "."}),
                    ),
                ),
                Message(
                    role="user",
                    content=(
                        ToolResultBlock(tool_use_id="t1", content="a.txt"),
                        ImageBlock("image/png", "x" * 1000),
                    ),
                ),
            ),
        )

        expected = len("hi") + len(json.dumps({"path": "."})) + len("a.txt")
        assert count_request_chars(request) == expected

    def test_tools_counted_as_json(self):
        tool = ToolSpec(name="search", input_schema={"type": "object"}, description="Find")
        request = InboundRequest(model="m", messages=(), tools=(tool,))

        expected = len(
            json.dumps(
                [{"name": "search", "description": "Find", "input_schema": {"type": "object"}}]
            )
        )
        assert count_request_chars(request) == expected


class TestEstimateInputTokens:
    def test_quarter_of_chars(self):
        request = InboundRequest(
            model="m",
            messages=(Message(role="user", content="x" * 401),),
        )
        assert estimate_input_tokens(request) == 101

    def test_empty_request(self):
        assert estimate_input_tokens(InboundRequest(model="m", messages=())) == 0
