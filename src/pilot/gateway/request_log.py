"""Structured request log.

Every proxied request produces a ``request`` entry and then a ``response``
or ``error`` entry. Entries go to a RequestLog sink. The default sink emits
them as records on the ``pilot.requests`` logger, so they land wherever
logging is configured to write (JSON lines with ``PILOT_LOG_FORMAT=json``).

Recording is fire-and-forget: a failing sink never affects the request.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

from pilot.gateway.transforms.types import InboundRequest, Message, TextBlock

logger = logging.getLogger(__name__)

MESSAGE_PREVIEW_CHARS = 200
SYSTEM_PREVIEW_CHARS = 500


@dataclass
class MessageSummary:
    role: str
    content_preview: str
    content_length: int
    has_tool_use: bool = False
    has_tool_result: bool = False


@dataclass
class RequestLogEntry:
    """One structured log entry. Unset fields are omitted on output."""

    request_id: str
    type: Literal["request", "response", "error"]
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    # Request info
    model: str | None = None
    mapped_model: str | None = None
    decision: str | None = None
    x_initiator: str | None = None
    charged: bool | None = None
    stream: bool | None = None
    message_count: int | None = None
    tool_names: list[str] | None = None
    messages: list[MessageSummary] | None = None
    system_preview: str | None = None
    system_length: int | None = None

    # Short-circuit replies
    web_search: bool | None = None
    query: str | None = None
    source_count: int | None = None
    blocked: bool | None = None
    reason: str | None = None

    # Response info
    status_code: int | None = None
    response_time_ms: float | None = None
    error: str | None = None

    full_request: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class RequestLog(Protocol):
    """Sink for request log entries."""

    def record(self, entry: RequestLogEntry) -> None:
        """Record an entry. Must not block or raise."""
        ...


class LoggerRequestLog:
    """Writes entries as records on a standard logger."""

    def __init__(self, logger_name: str = "pilot.requests"):
        self._logger = logging.getLogger(logger_name)

    def record(self, entry: RequestLogEntry) -> None:
        try:
            data = entry.to_dict()
            self._logger.info(
                "[%s] %s decision=%s status=%s",
                entry.request_id,
                entry.type,
                entry.decision or "-",
                entry.status_code if entry.status_code is not None else "-",
                extra={"entry": data},
            )
        except Exception as e:
            logger.warning("[%s] Failed to record log entry: %s", entry.request_id, e)


def summarize_message(message: Message) -> MessageSummary:
    """Short preview of a message for the request log."""
    if isinstance(message.content, str):
        preview = message.content[:MESSAGE_PREVIEW_CHARS]
        length = len(message.content)
    else:
        texts = [b.text[:100] for b in message.content if isinstance(b, TextBlock) and b.text]
        preview = " ".join(texts)[:MESSAGE_PREVIEW_CHARS]
        length = len(json.dumps([asdict(b) for b in message.content], default=str))

    if len(preview) >= MESSAGE_PREVIEW_CHARS:
        preview += "..."

    return MessageSummary(
        role=message.role,
        content_preview=preview,
        content_length=length,
        has_tool_use=message.has_tool_use(),
        has_tool_result=message.has_tool_result(),
    )


def request_entry(
    request_id: str,
    request: InboundRequest,
    **fields: Any,
) -> RequestLogEntry:
    """Build the ``request`` entry for an inbound request."""
    system_text = request.system_text
    return RequestLogEntry(
        request_id=request_id,
        type="request",
        model=request.model,
        stream=request.stream,
        message_count=len(request.messages),
        tool_names=request.tool_names() or None,
        messages=[summarize_message(m) for m in request.messages],
        system_preview=system_text[:SYSTEM_PREVIEW_CHARS] if system_text else None,
        system_length=len(system_text) if system_text else None,
        **fields,
    )
