"""Backend HTTP clients."""

from .llm_client import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    LLMClient,
    LLMClientConfig,
    UpstreamError,
)

__all__ = [
    "CircuitBreaker",
    "CircuitOpenError",
    "CircuitState",
    "LLMClient",
    "LLMClientConfig",
    "UpstreamError",
]
