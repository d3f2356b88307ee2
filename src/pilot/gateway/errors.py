"""Shared error definitions for the gateway.

Error type mapping from backend status to client error type, plus the
exceptions raised inside the transcoding engine.
"""

# Error type mapping from backend status to client error type
ERROR_TYPE_MAP = {
    400: "invalid_request_error",
    401: "authentication_error",
    403: "permission_error",
    404: "not_found_error",
    413: "request_too_large",
    429: "rate_limit_error",
    500: "api_error",
    502: "api_error",
    503: "overloaded_error",
    504: "api_error",
}


class ProtocolInvariantError(RuntimeError):
    """The transcoder was about to emit an out-of-order event.

    Only raised in strict mode; otherwise the transcoder repairs the
    sequence and logs the violation.
    """


class WebSearchError(Exception):
    """Raised by a web search provider when a search cannot be completed."""
