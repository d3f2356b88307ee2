"""Copilot proxy server.

Exposes a Messages API endpoint (/v1/messages) and forwards each request
to the Copilot Chat Completions backend:

1. Validate and parse the client request
2. Classify it (billing header, target model, short-circuit replies)
3. Transform to Chat Completions and call the backend
4. Transcode the reply back, streaming it as it arrives

Dedicated web search requests and blocked suggestion requests are answered
locally without a backend call.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Literal

import aiohttp
from aiohttp import web

from pilot.gateway.auth import TokenProvider
from pilot.gateway.classifier import DEFAULT_SENTINELS, SentinelTable, classify
from pilot.gateway.clients.llm_client import (
    DEFAULT_BASE_URL,
    DEFAULT_EDITOR_HEADERS,
    CircuitOpenError,
    CircuitState,
    LLMClient,
    LLMClientConfig,
    UpstreamError,
)
from pilot.gateway.errors import ERROR_TYPE_MAP
from pilot.gateway.request_log import (
    LoggerRequestLog,
    RequestLog,
    RequestLogEntry,
    request_entry,
)
from pilot.gateway.tokens import estimate_input_tokens
from pilot.gateway.tracing import RequestTracer
from pilot.gateway.transforms.anthropic import (
    AnthropicTransformer,
    empty_message,
    empty_message_events,
    error_body,
    format_sse_event,
    generate_message_id,
)
from pilot.gateway.transforms.openai import (
    DEFAULT_FREE_MODEL,
    DEFAULT_MODEL_FAMILIES,
    WEB_SEARCH_TOOL,
    OpenAITransformer,
)
from pilot.gateway.transforms.streaming import StreamTranscoder
from pilot.gateway.transforms.types import InboundRequest, RoutingDecision
from pilot.gateway.transforms.validation import validate_request
from pilot.gateway.web_search import (
    WebSearchProvider,
    build_search_events,
    build_search_message,
)

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class ClientDisconnected(Exception):
    """The client went away while we were writing to it."""


@dataclass
class CopilotProxyConfig:
    """Configuration for the Copilot proxy server."""

    host: str = "127.0.0.1"
    port: int = 8080

    # Backend
    base_url: str = DEFAULT_BASE_URL
    model_families: tuple[tuple[str, str], ...] = DEFAULT_MODEL_FAMILIES
    free_model: str = DEFAULT_FREE_MODEL
    extra_headers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_EDITOR_HEADERS))

    # Features
    web_search_enabled: bool = True
    suggestion_mode: Literal["free_model", "block"] = "free_model"

    # Client configuration
    connect_timeout: float = 10.0
    read_timeout: float = 300.0
    max_retries: int = 3

    # Request limits
    max_body_size: int = 100 * 1024 * 1024  # 100MB

    # Debug
    debug_dir: str | None = None  # e.g., "/tmp/pilot-debug"
    log_full_requests: bool = False
    strict_stream: bool = False  # Raise on transcoder invariant violations

    def __post_init__(self) -> None:
        if self.suggestion_mode not in ("free_model", "block"):
            raise ValueError(f"Unknown suggestion_mode: {self.suggestion_mode!r}")


@dataclass
class CopilotProxyServer:
    """Accepts Messages API requests and proxies them to Copilot.

    Example:
        >>> server = CopilotProxyServer(
        ...     config=CopilotProxyConfig(port=8080),
        ...     token_provider=StaticTokenProvider("ghu_..."),
        ... )
        >>> await server.serve()
    """

    config: CopilotProxyConfig
    token_provider: TokenProvider
    web_search: WebSearchProvider | None = None
    request_log: RequestLog = field(default_factory=LoggerRequestLog)
    sentinels: SentinelTable = DEFAULT_SENTINELS
    _app: web.Application | None = None
    _runner: web.AppRunner | None = None
    _client: LLMClient | None = None
    _shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    _tracer: RequestTracer = field(init=False)
    _anthropic: AnthropicTransformer = field(init=False)
    _openai: OpenAITransformer = field(init=False)
    bound_port: int | None = None

    def __post_init__(self) -> None:
        self._tracer = RequestTracer(debug_dir=self.config.debug_dir)
        self._anthropic = AnthropicTransformer()
        self._openai = OpenAITransformer(
            model_families=self.config.model_families,
            free_model=self.config.free_model,
            web_search_tool=(
                WEB_SEARCH_TOOL
                if self.config.web_search_enabled and self.web_search is not None
                else None
            ),
        )

    def build_app(self) -> web.Application:
        app = web.Application(client_max_size=self.config.max_body_size)
        app.router.add_post("/v1/messages", self._handle_messages)
        app.router.add_post("/v1/messages/count_tokens", self._handle_count_tokens)
        app.router.add_get("/health", self._handle_health)
        app.router.add_post("/api/shutdown", self._handle_shutdown)
        return app

    async def start(self) -> None:
        """Connect the backend client and start listening."""
        self._client = LLMClient(
            config=LLMClientConfig(
                base_url=self.config.base_url,
                extra_headers=self.config.extra_headers,
                connect_timeout=self.config.connect_timeout,
                read_timeout=self.config.read_timeout,
                max_retries=self.config.max_retries,
            ),
            token_provider=self.token_provider,
        )
        await self._client.connect()

        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        self.bound_port = site._server.sockets[0].getsockname()[1]  # type: ignore[union-attr]
        logger.info(
            "Copilot proxy listening on %s:%s -> %s",
            self.config.host,
            self.bound_port,
            self.config.base_url,
        )

    async def serve(self) -> None:
        """Start the proxy server and block until shutdown is requested."""
        await self.start()
        try:
            await self._shutdown_event.wait()
            logger.info("Copilot proxy shutdown requested")
        finally:
            await self.stop()

    async def stop(self) -> None:
        if self._client:
            await self._client.close()
            self._client = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    # ------------------------------------------------------------------
    # Request parsing
    # ------------------------------------------------------------------

    async def _read_request(
        self, request: web.Request
    ) -> tuple[dict[str, Any] | None, web.Response | None]:
        """Decode and validate a Messages API body, or build the 400 reply."""
        content_type = request.headers.get("Content-Type", "")
        if "application/json" not in content_type:
            return None, self._error_response(
                "invalid_request_error",
                f"Content-Type must be application/json, got: {content_type}",
                400,
            )

        try:
            body = await request.json()
        except json.JSONDecodeError as e:
            return None, self._error_response("invalid_request_error", f"Invalid JSON: {e}", 400)

        validation_errors = validate_request(body)
        if validation_errors:
            return None, self._error_response(
                "invalid_request_error", "; ".join(validation_errors), 400
            )
        return body, None

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_messages(self, request: web.Request) -> web.StreamResponse:
        """Handle POST /v1/messages - main proxy endpoint."""
        start_time = time.monotonic()
        body, error = await self._read_request(request)
        if error is not None:
            return error
        assert body is not None

        trace_id = self._tracer.generate_trace_id(body)
        self._tracer.save_debug(trace_id, "1_client_request.json", body)

        inbound = self._anthropic.to_internal(body)
        classification = classify(
            inbound,
            self.sentinels,
            detect_tool_execution=self.web_search is not None,
        )
        decision = classification.decision
        mapped_model = self._openai.target_model(inbound, decision)

        self._tracer.log_request(
            trace_id,
            request.path,
            request.content_length or 0,
            decision.value,
            decision.initiator,
        )
        logger.info(
            "[%s] Request: model=%s -> %s, messages=%d, stream=%s, decision=%s, initiator=%s",
            trace_id,
            inbound.model,
            mapped_model,
            len(inbound.messages),
            inbound.stream,
            decision.value,
            decision.initiator,
        )
        self.request_log.record(
            request_entry(
                trace_id,
                inbound,
                mapped_model=mapped_model,
                decision=decision.value,
                x_initiator=decision.initiator,
                charged=decision.chargeable,
                full_request=body if self.config.log_full_requests else None,
            )
        )

        if decision is RoutingDecision.DEDICATED_TOOL_EXECUTION:
            assert classification.payload is not None
            return await self._handle_web_search(
                request, inbound, classification.payload, trace_id, start_time
            )

        if decision is RoutingDecision.SUGGESTION_STUB and self.config.suggestion_mode == "block":
            logger.info("[%s] Blocking suggestion request", trace_id)
            self._record_result(
                trace_id, decision, start_time, blocked=True, reason="suggestion_mode"
            )
            return await self._empty_reply(request, inbound)

        upstream_request = self._openai.to_upstream(inbound, decision)
        self._tracer.save_debug(trace_id, "2_backend_request.json", upstream_request)

        if inbound.stream:
            return await self._handle_streaming(
                request, inbound, decision, upstream_request, trace_id, start_time
            )
        return await self._handle_non_streaming(
            inbound, decision, upstream_request, trace_id, start_time
        )

    async def _handle_streaming(
        self,
        request: web.Request,
        inbound: InboundRequest,
        decision: RoutingDecision,
        upstream_request: dict[str, Any],
        trace_id: str,
        start_time: float,
    ) -> web.StreamResponse:
        """Stream the backend reply through a StreamTranscoder."""
        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)

        transcoder = StreamTranscoder(
            model=inbound.model,
            input_token_estimate=estimate_input_tokens(inbound),
            strict=self.config.strict_stream,
            trace_id=trace_id,
        )
        failure: Exception | None = None

        try:
            if not self._client:
                raise CircuitOpenError("Backend client not initialized")

            chunks = self._client.stream(
                upstream_request,
                initiator=decision.initiator,
                vision=inbound.has_image(),
                trace_id=trace_id,
            )
            async with aclosing(chunks):
                async for chunk in chunks:
                    events = transcoder.feed(chunk)
                    if events:
                        await self._write_events(response, events)
            await self._write_events(response, transcoder.finish())

        except ClientDisconnected:
            # Leaving the aclosing block has already closed the backend response
            logger.info("[%s] Client disconnected during streaming", trace_id)
            self._record_result(
                trace_id, decision, start_time, status_code=499, error="client disconnected"
            )
            return response
        except CircuitOpenError as e:
            logger.warning("[%s] Circuit breaker is open", trace_id)
            failure = e
        except UpstreamError as e:
            logger.error("[%s] Backend error: %s", trace_id, e)
            failure = e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("[%s] Backend connection failed: %s", trace_id, e)
            failure = e
        except Exception as e:
            if self.config.strict_stream:
                raise
            logger.exception("[%s] Unexpected error during streaming", trace_id)
            failure = e

        if failure is not None:
            try:
                await self._write_events(response, transcoder.abort())
            except ClientDisconnected:
                logger.debug("[%s] Client gone before synthetic close", trace_id)
            self._record_result(
                trace_id,
                decision,
                start_time,
                status_code=getattr(failure, "status_code", 502),
                error=str(failure) or type(failure).__name__,
            )
        else:
            self._record_result(trace_id, decision, start_time, status_code=200)

        try:
            await response.write_eof()
        except ConnectionResetError:
            logger.debug("[%s] Client already disconnected", trace_id)

        return response

    async def _handle_non_streaming(
        self,
        inbound: InboundRequest,
        decision: RoutingDecision,
        upstream_request: dict[str, Any],
        trace_id: str,
        start_time: float,
    ) -> web.Response:
        if not self._client:
            return self._error_response("api_error", "Backend client not initialized", 503)

        try:
            upstream_response = await self._client.send(
                upstream_request,
                initiator=decision.initiator,
                vision=inbound.has_image(),
                trace_id=trace_id,
            )
        except CircuitOpenError:
            self._record_result(trace_id, decision, start_time, status_code=503, error="circuit open")
            return self._error_response(
                "overloaded_error",
                "Service temporarily unavailable (circuit breaker open)",
                503,
            )
        except UpstreamError as e:
            self._record_result(trace_id, decision, start_time, status_code=e.status_code, error=str(e))
            error_type = ERROR_TYPE_MAP.get(e.status_code, "api_error")
            return self._error_response(error_type, str(e), e.status_code)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("[%s] Backend connection failed: %s", trace_id, e)
            self._record_result(trace_id, decision, start_time, status_code=502, error=str(e))
            return self._error_response("api_error", f"Backend unreachable: {e}", 502)

        self._tracer.save_debug(trace_id, "3_backend_response.json", upstream_response)

        internal = self._openai.from_upstream(upstream_response)
        client_response = self._anthropic.from_internal(internal, inbound.model)

        usage = client_response["usage"]
        logger.info(
            "[%s] Response complete: input_tokens=%s, output_tokens=%s",
            trace_id,
            usage["input_tokens"],
            usage["output_tokens"],
        )
        self._record_result(trace_id, decision, start_time, status_code=200)
        return web.json_response(client_response)

    async def _handle_web_search(
        self,
        request: web.Request,
        inbound: InboundRequest,
        query: str,
        trace_id: str,
        start_time: float,
    ) -> web.StreamResponse:
        """Answer a dedicated web search request with the search helper."""
        assert self.web_search is not None
        decision = RoutingDecision.DEDICATED_TOOL_EXECUTION
        logger.info("[%s] Web search: %s", trace_id, query)

        try:
            result = await self.web_search.search(query)
        except Exception as e:
            logger.warning("[%s] Web search failed: %s", trace_id, e)
            self._record_result(
                trace_id, decision, start_time, web_search=True, query=query, error=str(e)
            )
            return await self._empty_reply(request, inbound)

        self._record_result(
            trace_id,
            decision,
            start_time,
            web_search=True,
            query=query,
            source_count=len(result.sources),
        )

        message_id = generate_message_id()
        if not inbound.stream:
            return web.json_response(build_search_message(message_id, inbound.model, result))

        return await self._send_events(
            request, build_search_events(message_id, inbound.model, result), trace_id
        )

    async def _handle_count_tokens(self, request: web.Request) -> web.Response:
        """Handle POST /v1/messages/count_tokens."""
        body, error = await self._read_request(request)
        if error is not None:
            return error
        assert body is not None

        inbound = self._anthropic.to_internal(body)
        return web.json_response({"input_tokens": estimate_input_tokens(inbound)})

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /health."""
        health: dict[str, Any] = {"status": "ok"}

        if self._client:
            circuit_state = self._client.circuit_state
            if circuit_state == CircuitState.OPEN:
                health["status"] = "degraded"
                health["upstream"] = "circuit_open"
                return web.json_response(health, status=503)
            if circuit_state == CircuitState.HALF_OPEN:
                health["upstream"] = "recovering"

        return web.json_response(health)

    async def _handle_shutdown(self, request: web.Request) -> web.Response:
        """Handle POST /api/shutdown."""
        self._shutdown_event.set()
        return web.json_response({"success": True, "message": "Shutdown initiated"})

    # ------------------------------------------------------------------
    # Replies
    # ------------------------------------------------------------------

    async def _empty_reply(
        self, request: web.Request, inbound: InboundRequest
    ) -> web.StreamResponse:
        """Well-formed reply with no content (end_turn, zero usage)."""
        message_id = generate_message_id()
        if not inbound.stream:
            return web.json_response(empty_message(message_id, inbound.model))
        return await self._send_events(
            request, empty_message_events(message_id, inbound.model), "-"
        )

    async def _send_events(
        self,
        request: web.Request,
        events: list[dict[str, Any]],
        trace_id: str,
    ) -> web.StreamResponse:
        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)
        try:
            await self._write_events(response, events)
            await response.write_eof()
        except (ClientDisconnected, ConnectionResetError):
            logger.debug("[%s] Client disconnected before reply was sent", trace_id)
        return response

    async def _write_events(
        self, response: web.StreamResponse, events: list[dict[str, Any]]
    ) -> None:
        if not events:
            return
        try:
            await response.write(b"".join(format_sse_event(e) for e in events))
        except (ConnectionResetError, BrokenPipeError) as e:
            raise ClientDisconnected(str(e)) from e

    def _error_response(self, error_type: str, message: str, status: int) -> web.Response:
        """Return a client-format error response."""
        return web.json_response(error_body(error_type, message), status=status)

    def _record_result(
        self,
        trace_id: str,
        decision: RoutingDecision,
        start_time: float,
        *,
        status_code: int = 200,
        error: str | None = None,
        **fields: Any,
    ) -> None:
        duration = time.monotonic() - start_time
        self._tracer.log_response(trace_id, status_code, duration, error=error)
        self.request_log.record(
            RequestLogEntry(
                request_id=trace_id,
                type="error" if error else "response",
                decision=decision.value,
                status_code=status_code,
                response_time_ms=round(duration * 1000, 1),
                error=error,
                **fields,
            )
        )
