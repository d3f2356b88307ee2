"""Web search collaborator and canned replies.

The client sends its web search tool as a dedicated sub-request. The proxy
answers that request itself: it asks a WebSearchProvider for a summary and
sources, then returns a reply shaped like a server-side search:

    server_tool_use -> web_search_tool_result -> text

How the provider obtains results is its own business; only the
WebSearchResult shape crosses this boundary.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from pilot.gateway.transforms.anthropic import (
    content_block_start_event,
    content_block_stop_event,
    input_json_delta_event,
    message_delta_event,
    message_start_event,
    message_stop_event,
    text_delta_event,
)
from pilot.gateway.transforms.types import TokenUsage

# Reported output tokens for a canned search reply
SEARCH_REPLY_OUTPUT_TOKENS = 100


@dataclass(frozen=True)
class WebSearchSource:
    title: str
    url: str


@dataclass(frozen=True)
class WebSearchResult:
    """Summary and sources returned by a search helper."""

    query: str
    summary: str
    sources: tuple[WebSearchSource, ...] = field(default_factory=tuple)


class WebSearchProvider(Protocol):
    """Performs a web search on behalf of the proxy."""

    async def search(self, query: str) -> WebSearchResult:
        """Run a search.

        Raises:
            WebSearchError: If the search cannot be completed.
        """
        ...


def format_as_tool_result(result: WebSearchResult) -> str:
    """Render a search result as markdown text for the reply."""
    text = f'# Web Search Results for: "{result.query}"\n\n{result.summary}'
    if result.sources:
        links = "\n".join(f"- [{s.title}]({s.url})" for s in result.sources)
        text += f"\n\n**Sources:**\n{links}"
    return text


def generate_server_tool_use_id() -> str:
    return f"srvtoolu_{int(time.time() * 1000)}"


def _result_items(result: WebSearchResult) -> list[dict[str, Any]]:
    return [
        {
            "type": "web_search_result",
            "title": source.title,
            "url": source.url,
            "encrypted_content": "encrypted",
            "page_age": "recent",
        }
        for source in result.sources
    ]


def build_search_events(
    message_id: str,
    model: str,
    result: WebSearchResult,
) -> list[dict[str, Any]]:
    """Streamed canned reply for a dedicated search request."""
    tool_use_id = generate_server_tool_use_id()
    return [
        message_start_event(message_id, model),
        content_block_start_event(
            0,
            {"type": "server_tool_use", "id": tool_use_id, "name": "web_search", "input": {}},
        ),
        input_json_delta_event(0, json.dumps({"query": result.query})),
        content_block_stop_event(0),
        content_block_start_event(
            1,
            {
                "type": "web_search_tool_result",
                "tool_use_id": tool_use_id,
                "content": _result_items(result),
            },
        ),
        content_block_stop_event(1),
        content_block_start_event(2, {"type": "text", "text": ""}),
        text_delta_event(2, format_as_tool_result(result)),
        content_block_stop_event(2),
        message_delta_event(
            "end_turn",
            TokenUsage(input_tokens=0, output_tokens=SEARCH_REPLY_OUTPUT_TOKENS),
        ),
        message_stop_event(),
    ]


def build_search_message(
    message_id: str,
    model: str,
    result: WebSearchResult,
) -> dict[str, Any]:
    """Non-streamed canned reply for a dedicated search request."""
    tool_use_id = generate_server_tool_use_id()
    return {
        "id": message_id,
        "type": "message",
        "role": "assistant",
        "content": [
            {
                "type": "server_tool_use",
                "id": tool_use_id,
                "name": "web_search",
                "input": {"query": result.query},
            },
            {
                "type": "web_search_tool_result",
                "tool_use_id": tool_use_id,
                "content": _result_items(result),
            },
            {"type": "text", "text": format_as_tool_result(result)},
        ],
        "model": model,
        "stop_reason": "end_turn",
        "stop_sequence": None,
        "usage": {"input_tokens": 0, "output_tokens": SEARCH_REPLY_OUTPUT_TOKENS},
    }
