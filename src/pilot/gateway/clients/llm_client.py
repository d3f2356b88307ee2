"""Backend client for the Copilot Chat Completions API.

Uses aiohttp.ClientSession for the backend connection.

Features:
- Per-request bearer token from a TokenProvider
- Billing (X-Initiator) and vision headers per request
- Circuit breaker for fault tolerance
- Retry with exponential backoff
- Both streaming (raw bytes) and non-streaming requests
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

import aiohttp

from pilot.gateway.auth import TokenProvider

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.githubcopilot.com"

DEFAULT_EDITOR_HEADERS = {
    "editor-version": "vscode/1.95.0",
    "editor-plugin-version": "copilot-chat/0.22.4",
    "Openai-Intent": "conversation-edits",
}


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = auto()  # Normal operation
    OPEN = auto()  # Failing, reject requests
    HALF_OPEN = auto()  # Testing recovery


class CircuitOpenError(Exception):
    """Raised when circuit breaker is open."""


class UpstreamError(Exception):
    """Raised when the backend returns a non-2xx status."""

    def __init__(self, message: str, status_code: int, response_body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


@dataclass
class LLMClientConfig:
    """Configuration for the backend client."""

    base_url: str = DEFAULT_BASE_URL
    extra_headers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_EDITOR_HEADERS))

    # Timeouts (seconds)
    connect_timeout: float = 10.0
    read_timeout: float = 300.0

    # Retry configuration
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retryable_status_codes: frozenset[int] = frozenset({429, 500, 502, 503, 504})

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_recovery_timeout: float = 30.0

    @property
    def completions_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/chat/completions"


@dataclass
class CircuitBreaker:
    """Simple circuit breaker for backend resilience.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: Too many failures, requests are rejected immediately
    - HALF_OPEN: Testing if the backend recovered, requests allowed
    """

    failure_threshold: int
    recovery_timeout: float
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: float = 0.0

    def record_success(self) -> None:
        self.failure_count = 0
        self.state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.warning("Circuit breaker opened after %d failures", self.failure_count)
            self.state = CircuitState.OPEN

    def can_execute(self) -> bool:
        if self.state == CircuitState.CLOSED:
            return True

        if self.state == CircuitState.OPEN:
            if time.time() - self.last_failure_time > self.recovery_timeout:
                logger.info("Circuit breaker entering half-open state")
                self.state = CircuitState.HALF_OPEN
                return True
            return False

        return True


@dataclass
class LLMClient:
    """HTTP client for the Chat Completions backend.

    Example:
        >>> client = LLMClient(LLMClientConfig(), token_provider=StaticTokenProvider("tok"))
        >>> await client.connect()
        >>> async for chunk in client.stream(body, initiator="user"):
        ...     transcoder.feed(chunk)
    """

    config: LLMClientConfig
    token_provider: TokenProvider
    _session: aiohttp.ClientSession | None = None
    _circuit: CircuitBreaker = field(default_factory=lambda: CircuitBreaker(5, 30.0))

    @property
    def circuit_state(self) -> CircuitState:
        return self._circuit.state

    async def connect(self) -> None:
        """Initialize HTTP session and circuit breaker."""
        timeout = aiohttp.ClientTimeout(
            sock_connect=self.config.connect_timeout,
            total=self.config.read_timeout,
        )
        self._session = aiohttp.ClientSession(
            headers={"Content-Type": "application/json", **self.config.extra_headers},
            timeout=timeout,
        )
        self._circuit = CircuitBreaker(
            failure_threshold=self.config.circuit_failure_threshold,
            recovery_timeout=self.config.circuit_recovery_timeout,
        )

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def _request_headers(
        self, initiator: str, vision: bool, trace_id: str = "-"
    ) -> dict[str, str]:
        credential = await self.token_provider.get_credential()
        if credential.expired(leeway=0):
            logger.warning("[%s] Backend credential has expired", trace_id)
        headers = {
            "Authorization": f"Bearer {credential.token}",
            "X-Initiator": initiator,
        }
        if vision:
            headers["Copilot-Vision-Request"] = "true"
        return headers

    def _backoff(self, attempt: int) -> float:
        return min(
            self.config.retry_base_delay * (2**attempt),
            self.config.retry_max_delay,
        )

    async def send(
        self,
        request_body: dict[str, Any],
        *,
        initiator: str,
        vision: bool = False,
        trace_id: str = "-",
    ) -> dict[str, Any]:
        """Non-streaming request.

        Args:
            request_body: Chat Completions request body
            initiator: X-Initiator header value ("user" or "agent")
            vision: Whether the request carries images
            trace_id: Trace ID for log correlation

        Returns:
            Parsed Chat Completions response body

        Raises:
            CircuitOpenError: If circuit breaker is open
            UpstreamError: If the backend returns an error
        """
        if not self._circuit.can_execute():
            raise CircuitOpenError("Circuit breaker is open")

        request_body = {**request_body, "stream": False}
        request_body.pop("stream_options", None)

        try:
            response_data = await self._execute_with_retry(
                request_body, initiator, vision, trace_id
            )
        except Exception:
            self._circuit.record_failure()
            raise

        self._circuit.record_success()
        return response_data

    async def stream(
        self,
        request_body: dict[str, Any],
        *,
        initiator: str,
        vision: bool = False,
        trace_id: str = "-",
    ) -> AsyncIterator[bytes]:
        """Streaming request, yielding raw response bytes as they arrive.

        Chunks follow transport boundaries, not SSE line boundaries.
        Closing the iterator early closes the backend response.

        Raises:
            CircuitOpenError: If circuit breaker is open
            UpstreamError: If the backend returns an error
        """
        if not self._circuit.can_execute():
            raise CircuitOpenError("Circuit breaker is open")

        request_body = {**request_body, "stream": True}

        try:
            async with aclosing(
                self._stream_with_retry(request_body, initiator, vision, trace_id)
            ) as chunks:
                async for chunk in chunks:
                    yield chunk
        except Exception:
            self._circuit.record_failure()
            raise

        self._circuit.record_success()

    async def _execute_with_retry(
        self,
        request_body: dict[str, Any],
        initiator: str,
        vision: bool,
        trace_id: str,
    ) -> dict[str, Any]:
        last_error: Exception | None = None
        url = self.config.completions_url

        for attempt in range(self.config.max_retries + 1):
            if self._session is None:
                raise RuntimeError("Client not connected. Call connect() first.")

            headers = await self._request_headers(initiator, vision, trace_id)
            try:
                async with self._session.post(url, json=request_body, headers=headers) as response:
                    if response.status == 200:
                        return await response.json(content_type=None)

                    error_body = await response.text()
                    if (
                        response.status in self.config.retryable_status_codes
                        and attempt < self.config.max_retries
                    ):
                        last_error = UpstreamError(
                            f"Upstream returned {response.status}",
                            response.status,
                            error_body,
                        )
                        delay = self._backoff(attempt)
                        logger.warning(
                            "[%s] Backend returned %d, retrying in %.1fs (attempt %d/%d)",
                            trace_id,
                            response.status,
                            delay,
                            attempt + 1,
                            self.config.max_retries,
                        )
                        await asyncio.sleep(delay)
                        continue

                    raise UpstreamError(
                        f"Upstream returned {response.status}: {error_body[:500]}",
                        response.status,
                        error_body,
                    )

            except aiohttp.ClientError as e:
                last_error = e
                if attempt < self.config.max_retries:
                    delay = self._backoff(attempt)
                    logger.warning(
                        "[%s] Backend request failed with %s, retrying in %.1fs (attempt %d/%d)",
                        trace_id,
                        type(e).__name__,
                        delay,
                        attempt + 1,
                        self.config.max_retries,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise

        if last_error:
            raise last_error
        raise RuntimeError("Retry loop exited without result or error")

    async def _stream_with_retry(
        self,
        request_body: dict[str, Any],
        initiator: str,
        vision: bool,
        trace_id: str,
    ) -> AsyncIterator[bytes]:
        """Stream response bytes with retry logic.

        Retries only cover failures before the first byte is yielded.
        Once streaming starts, we cannot retry mid-stream.
        """
        last_error: Exception | None = None
        url = self.config.completions_url

        for attempt in range(self.config.max_retries + 1):
            if self._session is None:
                raise RuntimeError("Client not connected. Call connect() first.")

            headers = await self._request_headers(initiator, vision, trace_id)
            started = False
            try:
                async with self._session.post(url, json=request_body, headers=headers) as response:
                    if response.status != 200:
                        error_body = await response.text()
                        logger.error(
                            "[%s] Backend error %d: %s",
                            trace_id,
                            response.status,
                            error_body[:500],
                        )
                        if (
                            response.status in self.config.retryable_status_codes
                            and attempt < self.config.max_retries
                        ):
                            last_error = UpstreamError(
                                f"Upstream returned {response.status}",
                                response.status,
                                error_body,
                            )
                            delay = self._backoff(attempt)
                            logger.warning(
                                "[%s] Stream failed with %d, retrying in %.1fs",
                                trace_id,
                                response.status,
                                delay,
                            )
                            await asyncio.sleep(delay)
                            continue
                        raise UpstreamError(
                            f"Upstream returned {response.status}: {error_body[:500]}",
                            response.status,
                            error_body,
                        )

                    logger.debug("[%s] Receiving backend stream", trace_id)
                    byte_count = 0
                    async for chunk in response.content.iter_any():
                        started = True
                        byte_count += len(chunk)
                        yield chunk

                    logger.debug("[%s] Backend stream complete, %d bytes", trace_id, byte_count)
                    return

            except aiohttp.ClientError as e:
                last_error = e
                if not started and attempt < self.config.max_retries:
                    delay = self._backoff(attempt)
                    logger.warning(
                        "[%s] Stream failed with %s, retrying in %.1fs",
                        trace_id,
                        type(e).__name__,
                        delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                raise

        if last_error:
            raise last_error
