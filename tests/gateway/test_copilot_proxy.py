"""End-to-end tests for CopilotProxyServer (Messages API -> Copilot Chat Completions)."""

import json
from contextlib import aclosing

import aiohttp
import pytest
from aioresponses import aioresponses
from yarl import URL

from pilot.gateway.auth import StaticTokenProvider
from pilot.gateway.copilot_proxy import (
    ClientDisconnected,
    CopilotProxyConfig,
    CopilotProxyServer,
)
from pilot.gateway.errors import WebSearchError
from pilot.gateway.web_search import WebSearchResult, WebSearchSource

BACKEND_URL = "https://api.test.copilot.com"
COMPLETIONS_URL = f"{BACKEND_URL}/chat/completions"
SEARCH_SYSTEM = "You are an assistant for performing a web search tool use"


class FakeWebSearch:
    """Search helper returning a canned result, or failing on demand."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.queries: list[str] = []

    async def search(self, query: str) -> WebSearchResult:
        self.queries.append(query)
        if self.fail:
            raise WebSearchError("search helper unavailable")
        return WebSearchResult(
            query=query,
            summary="Results summary.",
            sources=(WebSearchSource(title="Example", url="https://example.com"),),
        )


class RecordingRequestLog:
    def __init__(self):
        self.entries = []

    def record(self, entry):
        self.entries.append(entry)


def parse_sse(raw: bytes) -> list[dict]:
    """Decode an SSE body into its data payloads, checking event names match."""
    events = []
    for frame in raw.decode("utf-8").split("\n\n"):
        if not frame.strip():
            continue
        event_line, data_line = frame.split("\n")
        data = json.loads(data_line[len("data: "):])
        assert event_line == f"event: {data['type']}"
        events.append(data)
    return events


def backend_calls(m):
    return m.requests.get(("POST", URL(COMPLETIONS_URL)), [])


def messages_body(content="Hello", **overrides):
    body = {
        "model": "claude-sonnet-4-5-20250929",
        "max_tokens": 100,
        "messages": [{"role": "user", "content": content}],
    }
    body.update(overrides)
    return body


@pytest.fixture
def proxy_config():
    return CopilotProxyConfig(
        host="127.0.0.1",
        port=0,  # Let OS pick a port
        base_url=BACKEND_URL,
        max_retries=0,
    )


@pytest.fixture
def request_log():
    return RecordingRequestLog()


@pytest.fixture
def web_search():
    return FakeWebSearch()


@pytest.fixture
async def running_proxy(proxy_config, request_log, web_search):
    """Start a proxy server on a free port."""
    server = CopilotProxyServer(
        config=proxy_config,
        token_provider=StaticTokenProvider("ghu_test"),
        web_search=web_search,
        request_log=request_log,
    )
    await server.start()

    yield server, f"http://127.0.0.1:{server.bound_port}"

    await server.stop()


async def post_messages(base_url, body):
    async with (
        aiohttp.ClientSession() as session,
        session.post(f"{base_url}/v1/messages", json=body) as resp,
    ):
        raw = await resp.read()
        return resp, raw


class TestEndpoints:
    """Health, token counting and request validation."""

    async def test_health_check(self, running_proxy):
        server, base_url = running_proxy

        async with aiohttp.ClientSession() as session:
            async with session.get(f"{base_url}/health") as resp:
                assert resp.status == 200
                data = await resp.json()
                assert data["status"] == "ok"

    async def test_shutdown_sets_event(self, running_proxy):
        server, base_url = running_proxy

        async with aiohttp.ClientSession() as session:
            async with session.post(f"{base_url}/api/shutdown") as resp:
                assert resp.status == 200
                assert (await resp.json())["success"] is True

        assert server._shutdown_event.is_set()

    async def test_count_tokens(self, running_proxy):
        server, base_url = running_proxy

        async with (
            aiohttp.ClientSession() as session,
            session.post(
                f"{base_url}/v1/messages/count_tokens",
                json=messages_body("x" * 40, system="y" * 8),
            ) as resp,
        ):
            assert resp.status == 200
            assert await resp.json() == {"input_tokens": 12}

    async def test_content_type_validation(self, running_proxy):
        server, base_url = running_proxy

        async with (
            aiohttp.ClientSession() as session,
            session.post(
                f"{base_url}/v1/messages",
                data="not json",
                headers={"Content-Type": "text/plain"},
            ) as resp,
        ):
            assert resp.status == 400
            data = await resp.json()
            assert data["type"] == "error"
            assert data["error"]["type"] == "invalid_request_error"
            assert "Content-Type" in data["error"]["message"]

    async def test_json_validation(self, running_proxy):
        server, base_url = running_proxy

        async with (
            aiohttp.ClientSession() as session,
            session.post(
                f"{base_url}/v1/messages",
                data="{not valid json",
                headers={"Content-Type": "application/json"},
            ) as resp,
        ):
            assert resp.status == 400
            data = await resp.json()
            assert "JSON" in data["error"]["message"]

    async def test_request_validation(self, running_proxy):
        server, base_url = running_proxy

        resp, raw = await post_messages(base_url, {"max_tokens": 1024})

        assert resp.status == 400
        assert json.loads(raw)["error"]["type"] == "invalid_request_error"


class TestNonStreaming:
    """Complete JSON replies."""

    async def test_text_reply_and_billing_header(self, running_proxy, request_log):
        server, base_url = running_proxy

        with aioresponses(passthrough=[base_url]) as m:
            m.post(
                COMPLETIONS_URL,
                payload={
                    "id": "chatcmpl-1",
                    "choices": [
                        {"message": {"content": "Hello from Copilot!"}, "finish_reason": "stop"}
                    ],
                    "usage": {"prompt_tokens": 10, "completion_tokens": 5},
                },
            )

            resp, raw = await post_messages(base_url, messages_body())

            assert resp.status == 200
            data = json.loads(raw)
            assert data["type"] == "message"
            assert data["model"] == "claude-sonnet-4-5-20250929"
            assert data["content"] == [{"type": "text", "text": "Hello from Copilot!"}]
            assert data["usage"] == {"input_tokens": 10, "output_tokens": 5}

            call = backend_calls(m)[0]
            assert call.kwargs["headers"]["X-Initiator"] == "user"
            assert call.kwargs["headers"]["Authorization"] == "Bearer ghu_test"
            assert call.kwargs["json"]["model"] == "claude-sonnet-4.5"

        request_entry, response_entry = request_log.entries
        assert request_entry.type == "request"
        assert request_entry.decision == "direct_user_turn"
        assert request_entry.charged is True
        assert response_entry.status_code == 200

    async def test_tool_result_is_agent_traffic(self, running_proxy):
        server, base_url = running_proxy
        body = messages_body()
        body["messages"] = [
            {"role": "user", "content": "List files"},
            {
                "role": "assistant",
                "content": [{"type": "tool_use", "id": "toolu_1", "name": "ls", "input": {}}],
            },
            {
                "role": "user",
                "content": [{"type": "tool_result", "tool_use_id": "toolu_1", "content": "a.txt"}],
            },
        ]

        with aioresponses(passthrough=[base_url]) as m:
            m.post(COMPLETIONS_URL, payload={"choices": [{"message": {"content": "Done"}}]})

            resp, _ = await post_messages(base_url, body)

            assert resp.status == 200
            call = backend_calls(m)[0]
            assert call.kwargs["headers"]["X-Initiator"] == "agent"
            tool_message = call.kwargs["json"]["messages"][2]
            assert tool_message == {"role": "tool", "tool_call_id": "toolu_1", "content": "a.txt"}

    async def test_utility_request_uses_free_model(self, running_proxy):
        server, base_url = running_proxy

        with aioresponses(passthrough=[base_url]) as m:
            m.post(COMPLETIONS_URL, payload={"choices": [{"message": {"content": "Title"}}]})

            await post_messages(
                base_url, messages_body(system="Please write a 5-10 word title for this")
            )

            call = backend_calls(m)[0]
            assert call.kwargs["json"]["model"] == "gpt-4.1"
            assert call.kwargs["headers"]["X-Initiator"] == "agent"
            assert "tools" not in call.kwargs["json"]

    async def test_search_tool_offered_when_helper_configured(self, running_proxy):
        server, base_url = running_proxy

        with aioresponses(passthrough=[base_url]) as m:
            m.post(COMPLETIONS_URL, payload={"choices": [{"message": {"content": "ok"}}]})

            await post_messages(base_url, messages_body())

            tools = backend_calls(m)[0].kwargs["json"]["tools"]
            assert [t["function"]["name"] for t in tools] == ["web_search"]

    async def test_search_tool_not_offered_without_helper(self, proxy_config):
        """A search call could never be answered, so the tool is not advertised."""
        server = CopilotProxyServer(
            config=proxy_config, token_provider=StaticTokenProvider("ghu_test")
        )
        await server.start()
        base_url = f"http://127.0.0.1:{server.bound_port}"

        try:
            with aioresponses(passthrough=[base_url]) as m:
                m.post(COMPLETIONS_URL, payload={"choices": [{"message": {"content": "ok"}}]})

                resp, _ = await post_messages(base_url, messages_body())

                assert resp.status == 200
                assert "tools" not in backend_calls(m)[0].kwargs["json"]
        finally:
            await server.stop()

    async def test_tool_call_ids_preserved(self, running_proxy):
        server, base_url = running_proxy

        with aioresponses(passthrough=[base_url]) as m:
            m.post(
                COMPLETIONS_URL,
                payload={
                    "choices": [
                        {
                            "message": {
                                "content": None,
                                "tool_calls": [
                                    {
                                        "id": "call_abc123",
                                        "type": "function",
                                        "function": {
                                            "name": "get_weather",
                                            "arguments": '{"location":"NYC"}',
                                        },
                                    }
                                ],
                            },
                            "finish_reason": "tool_calls",
                        }
                    ],
                },
            )

            resp, raw = await post_messages(base_url, messages_body("Weather in NYC?"))

            data = json.loads(raw)
            assert data["stop_reason"] == "tool_use"
            assert data["content"] == [
                {
                    "type": "tool_use",
                    "id": "call_abc123",
                    "name": "get_weather",
                    "input": {"location": "NYC"},
                }
            ]

    async def test_backend_error_mapped(self, running_proxy, request_log):
        server, base_url = running_proxy

        with aioresponses(passthrough=[base_url]) as m:
            m.post(COMPLETIONS_URL, status=401, body="Unauthorized")

            resp, raw = await post_messages(base_url, messages_body())

            assert resp.status == 401
            data = json.loads(raw)
            assert data["type"] == "error"
            assert data["error"]["type"] == "authentication_error"

        assert request_log.entries[-1].type == "error"
        assert request_log.entries[-1].status_code == 401


class TestStreaming:
    """SSE replies through the stream transcoder."""

    async def test_text_stream(self, running_proxy):
        server, base_url = running_proxy
        sse_response = (
            b'data: {"choices":[{"delta":{"role":"assistant","content":"Hel"}}]}\n\n'
            b'data: {"choices":[{"delta":{"content":"lo"}}]}\n\n'
            b'data: {"choices":[{"delta":{},"finish_reason":"stop"}]}\n\n'
            b'data: {"choices":[],"usage":{"prompt_tokens":9,"completion_tokens":2}}\n\n'
            b"data: [DONE]\n\n"
        )

        with aioresponses(passthrough=[base_url]) as m:
            m.post(COMPLETIONS_URL, body=sse_response, headers={"Content-Type": "text/event-stream"})

            resp, raw = await post_messages(base_url, messages_body(stream=True))

            assert resp.status == 200
            assert "text/event-stream" in resp.headers["Content-Type"]
            events = parse_sse(raw)
            assert [e["type"] for e in events] == [
                "message_start",
                "content_block_start",
                "content_block_delta",
                "content_block_delta",
                "content_block_stop",
                "message_delta",
                "message_stop",
            ]
            text = "".join(e["delta"]["text"] for e in events if e["type"] == "content_block_delta")
            assert text == "Hello"
            assert events[5]["delta"]["stop_reason"] == "end_turn"

            backend_request = backend_calls(m)[0].kwargs["json"]
            assert backend_request["stream"] is True
            assert backend_request["stream_options"] == {"include_usage": True}

    async def test_tool_stream(self, running_proxy):
        server, base_url = running_proxy
        sse_response = (
            b'data: {"choices":[{"delta":{"tool_calls":[{"index":0,"id":"c1","type":"function",'
            b'"function":{"name":"search","arguments":""}}]}}]}\n\n'
            b'data: {"choices":[{"delta":{"tool_calls":[{"index":0,'
            b'"function":{"arguments":"{\\"q\\":"}}]}}]}\n\n'
            b'data: {"choices":[{"delta":{"tool_calls":[{"index":0,'
            b'"function":{"arguments":"\\"x\\"}"}}]}}]}\n\n'
            b'data: {"choices":[{"delta":{},"finish_reason":"tool_calls"}]}\n\n'
            b"data: [DONE]\n\n"
        )

        with aioresponses(passthrough=[base_url]) as m:
            m.post(COMPLETIONS_URL, body=sse_response)

            _, raw = await post_messages(base_url, messages_body(stream=True))

        events = parse_sse(raw)
        start = events[1]
        assert start["content_block"] == {"type": "tool_use", "id": "c1", "name": "search", "input": {}}
        partial = "".join(
            e["delta"]["partial_json"] for e in events if e["type"] == "content_block_delta"
        )
        assert json.loads(partial) == {"q": "x"}
        assert events[-2]["delta"]["stop_reason"] == "tool_use"
        assert [e["type"] for e in events].count("message_stop") == 1

    async def test_backend_error_closes_stream(self, running_proxy, request_log):
        """A backend failure after the SSE response started still ends with a terminal pair."""
        server, base_url = running_proxy

        with aioresponses(passthrough=[base_url]) as m:
            m.post(COMPLETIONS_URL, status=500, body="boom")

            resp, raw = await post_messages(base_url, messages_body(stream=True))

        assert resp.status == 200
        events = parse_sse(raw)
        assert [e["type"] for e in events] == ["message_start", "message_delta", "message_stop"]
        assert events[1]["delta"]["stop_reason"] == "end_turn"
        assert events[1]["usage"]["output_tokens"] == 0
        assert request_log.entries[-1].type == "error"
        assert request_log.entries[-1].status_code == 500

    async def test_truncated_backend_stream_closed(self, running_proxy):
        server, base_url = running_proxy
        sse_response = b'data: {"choices":[{"delta":{"content":"partial"}}]}\n\n'

        with aioresponses(passthrough=[base_url]) as m:
            m.post(COMPLETIONS_URL, body=sse_response)

            _, raw = await post_messages(base_url, messages_body(stream=True))

        types = [e["type"] for e in parse_sse(raw)]
        assert types[-3:] == ["content_block_stop", "message_delta", "message_stop"]
        assert types.count("content_block_start") == types.count("content_block_stop")

    async def test_client_disconnect_closes_backend_stream(
        self, running_proxy, request_log, monkeypatch
    ):
        server, base_url = running_proxy
        sse_response = (
            b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
            b'data: {"choices":[{"delta":{"content":"lo"}}]}\n\n'
            b'data: {"choices":[{"delta":{},"finish_reason":"stop"}]}\n\n'
        )
        backend_closed = []
        real_stream = server._client.stream

        async def tracked_stream(*args, **kwargs):
            try:
                async with aclosing(real_stream(*args, **kwargs)) as chunks:
                    async for chunk in chunks:
                        yield chunk
            finally:
                backend_closed.append(True)

        async def disconnected_write(response, events):
            raise ClientDisconnected("Cannot write to closing transport")

        monkeypatch.setattr(server._client, "stream", tracked_stream)
        monkeypatch.setattr(server, "_write_events", disconnected_write)

        with aioresponses(passthrough=[base_url]) as m:
            m.post(COMPLETIONS_URL, body=sse_response)

            await post_messages(base_url, messages_body(stream=True))

            assert len(backend_calls(m)) == 1

        assert backend_closed == [True]
        entry = request_log.entries[-1]
        assert entry.type == "error"
        assert entry.status_code == 499
        assert entry.error == "client disconnected"


class TestShortCircuitReplies:
    """Requests answered without calling the backend."""

    async def test_web_search_streamed(self, running_proxy, web_search, request_log):
        server, base_url = running_proxy
        body = messages_body(
            "Perform a web search for the query: aiohttp streaming",
            system=SEARCH_SYSTEM,
            stream=True,
        )

        with aioresponses(passthrough=[base_url]) as m:
            _, raw = await post_messages(base_url, body)
            assert backend_calls(m) == []

        assert web_search.queries == ["aiohttp streaming"]
        events = parse_sse(raw)
        blocks = [e["content_block"]["type"] for e in events if e["type"] == "content_block_start"]
        assert blocks == ["server_tool_use", "web_search_tool_result", "text"]
        assert request_log.entries[-1].web_search is True
        assert request_log.entries[-1].source_count == 1

    async def test_web_search_json(self, running_proxy):
        server, base_url = running_proxy
        body = messages_body("Perform a web search for the query: news", system=SEARCH_SYSTEM)

        _, raw = await post_messages(base_url, body)

        data = json.loads(raw)
        assert data["content"][0]["input"] == {"query": "news"}

    async def test_web_search_failure_returns_empty_reply(self, running_proxy, web_search):
        server, base_url = running_proxy
        web_search.fail = True
        body = messages_body("Perform a web search for the query: news", system=SEARCH_SYSTEM)

        resp, raw = await post_messages(base_url, body)

        assert resp.status == 200
        data = json.loads(raw)
        assert data["content"] == []
        assert data["stop_reason"] == "end_turn"

    async def test_blocked_suggestion(self, proxy_config, request_log):
        proxy_config.suggestion_mode = "block"
        server = CopilotProxyServer(
            config=proxy_config,
            token_provider=StaticTokenProvider("ghu_test"),
            request_log=request_log,
        )
        await server.start()
        base_url = f"http://127.0.0.1:{server.bound_port}"

        try:
            with aioresponses(passthrough=[base_url]) as m:
                _, raw = await post_messages(
                    base_url, messages_body("[SUGGESTION MODE: next prompt]", stream=True)
                )
                assert backend_calls(m) == []
        finally:
            await server.stop()

        events = parse_sse(raw)
        assert [e["type"] for e in events] == ["message_start", "message_delta", "message_stop"]
        assert request_log.entries[-1].blocked is True

    async def test_search_not_detected_without_helper(self, proxy_config):
        """With no search helper configured the request goes to the backend."""
        server = CopilotProxyServer(
            config=proxy_config, token_provider=StaticTokenProvider("ghu_test")
        )
        await server.start()
        base_url = f"http://127.0.0.1:{server.bound_port}"

        try:
            with aioresponses(passthrough=[base_url]) as m:
                m.post(COMPLETIONS_URL, payload={"choices": [{"message": {"content": "ok"}}]})
                body = messages_body(
                    "Perform a web search for the query: news", system=SEARCH_SYSTEM
                )

                resp, _ = await post_messages(base_url, body)

                assert resp.status == 200
                assert len(backend_calls(m)) == 1
        finally:
            await server.stop()


class TestConfig:
    def test_rejects_unknown_suggestion_mode(self):
        with pytest.raises(ValueError):
            CopilotProxyConfig(suggestion_mode="ignore")
