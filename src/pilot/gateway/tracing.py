"""Request tracing for the proxy.

Provides human-readable trace IDs, optional per-request debug dumps and
start/finish log lines.
"""

from __future__ import annotations

import json
import logging
import re
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_CONTEXT_CHARS = re.compile(r"[^A-Za-z0-9_]")


class RequestTracer:
    """Generates trace IDs and saves debug data for proxied requests.

    Debug files are saved to: {debug_dir}/logs/{session_id}/{trace_id}/

    Example:
        tracer = RequestTracer(debug_dir="/tmp/pilot-debug")
        trace_id = tracer.generate_trace_id(body)
        tracer.save_debug(trace_id, "1_client_request.json", body)
    """

    def __init__(self, debug_dir: str | Path | None = None):
        self._request_counter = 0
        self._session_id: str | None = None
        self._debug_dir_config = debug_dir

    @property
    def debug_dir(self) -> Path | None:
        """Session debug directory, or None when debug dumps are off."""
        if not self._debug_dir_config:
            return None

        if self._session_id is None:
            self._session_id = time.strftime("%Y-%m-%d_%H-%M-%S")

        return Path(self._debug_dir_config) / "logs" / self._session_id

    def generate_trace_id(self, body: dict[str, Any]) -> str:
        """Generate a trace ID with sequence number and context.

        Format: {counter}_{hhmmss}_{num_messages}msgs_{context}
        Example: 00001_031333_1msgs_Please_write_a
        """
        self._request_counter += 1
        timestamp = time.strftime("%H%M%S")

        messages = body.get("messages") or []
        context = _last_user_words(messages)
        context = _CONTEXT_CHARS.sub("", context) or "request"

        return f"{self._request_counter:05d}_{timestamp}_{len(messages)}msgs_{context}"

    def save_debug(self, trace_id: str, filename: str, data: Any) -> None:
        """Save debug data to a JSON file if debug_dir is configured."""
        if not self.debug_dir:
            return

        try:
            trace_path = self.debug_dir / trace_id
            trace_path.mkdir(parents=True, exist_ok=True)

            filepath = trace_path / filename
            with open(filepath, "w") as f:
                json.dump(data, f, indent=2, default=str)
            logger.debug("[%s] Saved debug file: %s", trace_id, filepath)
        except OSError as e:
            logger.warning("[%s] Failed to save debug file %s: %s", trace_id, filename, e)

    def log_request(
        self,
        trace_id: str,
        path: str,
        body_size: int,
        decision: str,
        initiator: str,
    ) -> None:
        logger.debug(
            "[%s] request_start: path=%s, body_size=%d, decision=%s, initiator=%s",
            trace_id,
            path,
            body_size,
            decision,
            initiator,
        )

    def log_response(
        self,
        trace_id: str,
        status_code: int,
        duration_s: float,
        error: str | None = None,
    ) -> None:
        if error:
            logger.warning(
                "[%s] request_failed: status=%d, error=%s (%.2fs)",
                trace_id,
                status_code,
                error[:100],
                duration_s,
            )
        else:
            logger.debug(
                "[%s] request_complete: status=%d (%.2fs)",
                trace_id,
                status_code,
                duration_s,
            )


def _last_user_words(messages: list[Any]) -> str:
    """First words of the last user message with real text (tool_result-only turns skipped)."""
    for message in reversed(messages):
        if not isinstance(message, dict) or message.get("role") != "user":
            continue
        content = message.get("content", "")

        texts: list[str] = []
        if isinstance(content, str):
            texts = [content]
        elif isinstance(content, list):
            texts = [
                b.get("text", "")
                for b in content
                if isinstance(b, dict) and b.get("type") == "text"
            ]

        for text in texts:
            if text.strip():
                words = [w[:8] for w in text.split()[:3] if not w.startswith("<")]
                return "_".join(words)[:20]
    return "empty"
