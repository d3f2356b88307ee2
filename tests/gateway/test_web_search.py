"""Tests for canned web search replies."""

import json

from pilot.gateway.web_search import (
    SEARCH_REPLY_OUTPUT_TOKENS,
    WebSearchResult,
    WebSearchSource,
    build_search_events,
    build_search_message,
    format_as_tool_result,
)

RESULT = WebSearchResult(
    query="python asyncio",
    summary="asyncio is a library to write concurrent code.",
    sources=(
        WebSearchSource(title="asyncio docs", url="https://docs.python.org/3/library/asyncio.html"),
        WebSearchSource(title="Real Python", url="https://realpython.com/async-io-python/"),
    ),
)


class TestFormatting:
    def test_markdown_with_sources(self):
        text = format_as_tool_result(RESULT)

        assert text.startswith('# Web Search Results for: "python asyncio"')
        assert "asyncio is a library" in text
        assert "- [Real Python](https://realpython.com/async-io-python/)" in text

    def test_no_sources_section_when_empty(self):
        text = format_as_tool_result(WebSearchResult(query="q", summary="nothing"))
        assert "Sources" not in text


class TestSearchReplies:
    def test_streamed_block_sequence(self):
        events = build_search_events("msg_1", "claude-sonnet-4-5", RESULT)

        assert [e["type"] for e in events] == [
            "message_start",
            "content_block_start",
            "content_block_delta",
            "content_block_stop",
            "content_block_start",
            "content_block_stop",
            "content_block_start",
            "content_block_delta",
            "content_block_stop",
            "message_delta",
            "message_stop",
        ]
        starts = [e for e in events if e["type"] == "content_block_start"]
        assert [s["index"] for s in starts] == [0, 1, 2]
        assert [s["content_block"]["type"] for s in starts] == [
            "server_tool_use",
            "web_search_tool_result",
            "text",
        ]

    def test_streamed_ids_and_payloads(self):
        events = build_search_events("msg_1", "m", RESULT)

        tool_use = events[1]["content_block"]
        search_result = events[4]["content_block"]
        assert tool_use["id"].startswith("srvtoolu_")
        assert search_result["tool_use_id"] == tool_use["id"]
        assert json.loads(events[2]["delta"]["partial_json"]) == {"query": "python asyncio"}
        assert len(search_result["content"]) == 2
        assert search_result["content"][0]["encrypted_content"] == "encrypted"
        assert events[9]["usage"]["output_tokens"] == SEARCH_REPLY_OUTPUT_TOKENS

    def test_message_shape(self):
        message = build_search_message("msg_2", "m", RESULT)

        assert message["id"] == "msg_2"
        assert message["stop_reason"] == "end_turn"
        assert [b["type"] for b in message["content"]] == [
            "server_tool_use",
            "web_search_tool_result",
            "text",
        ]
        assert message["content"][0]["input"] == {"query": "python asyncio"}
        assert message["content"][1]["tool_use_id"] == message["content"][0]["id"]
        assert message["content"][2]["text"] == format_as_tool_result(RESULT)
