"""Streaming transcoder: Chat Completions deltas -> Messages API block events.

A forward-only state machine fed with raw backend bytes. Transport chunks
may split or merge SSE lines arbitrarily, so a partial trailing line is
carried over between feeds and only complete lines are acted on.

Phases::

    PENDING -> NO_BLOCK_OPEN <-> TEXT_OPEN / TOOL_OPEN -> CLOSED

At most one content block is open at any time. Exactly one
message_delta/message_stop pair is emitted per stream, however it ends.
"""

import codecs
import json
import logging
import math
from typing import Any

from pilot.gateway.errors import ProtocolInvariantError

from .anthropic import (
    content_block_start_event,
    content_block_stop_event,
    format_sse_event,
    generate_message_id,
    input_json_delta_event,
    message_delta_event,
    message_start_event,
    message_stop_event,
    text_delta_event,
)
from .openai import map_finish_reason
from .types import BlockKind, PendingToolCall, StreamPhase, StreamState, TokenUsage

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


class StreamTranscoder:
    """Incrementally rewrites a backend delta stream into client events.

    Example:
        >>> transcoder = StreamTranscoder(model="claude-sonnet-4.5")
        >>> events = transcoder.feed(b'data: {"choices":[{"delta":{"content":"Hi"}}]}\\n')
        >>> events += transcoder.finish()
    """

    def __init__(
        self,
        model: str,
        input_token_estimate: int = 0,
        *,
        message_id: str | None = None,
        strict: bool = False,
        trace_id: str = "-",
    ):
        """Create a transcoder for one response.

        Args:
            model: Model name reported in message_start.
            input_token_estimate: Used until the backend reports prompt tokens.
            message_id: Message ID for message_start (generated if omitted).
            strict: Raise ProtocolInvariantError instead of repairing.
            trace_id: Request trace ID for log correlation.
        """
        self.state = StreamState(
            message_id=message_id or generate_message_id(),
            model=model,
            input_token_estimate=input_token_estimate,
        )
        self.strict = strict
        self.trace_id = trace_id
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.skipped_lines = 0

    @property
    def phase(self) -> StreamPhase:
        return self.state.phase

    @property
    def closed(self) -> bool:
        return self.state.terminal_event_emitted

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def feed(self, chunk: bytes) -> list[dict[str, Any]]:
        """Consume one transport chunk and return the events it completes."""
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()

        events: list[dict[str, Any]] = []
        for line in lines:
            self._process_line(line, events)
        return events

    def feed_sse(self, chunk: bytes) -> bytes:
        """Like :meth:`feed`, but returns the events as encoded SSE frames."""
        return b"".join(format_sse_event(e) for e in self.feed(chunk))

    def finish(self) -> list[dict[str, Any]]:
        """Signal end of the backend stream.

        Any unterminated trailing line is processed, then a synthetic
        terminal pair is emitted if the backend never sent one.
        """
        self._buffer += self._decoder.decode(b"", final=True)
        events: list[dict[str, Any]] = []
        if self._buffer:
            line, self._buffer = self._buffer, ""
            self._process_line(line, events)
        self._ensure_terminal(events)
        return events

    def abort(self) -> list[dict[str, Any]]:
        """Signal that the backend failed; close the client stream cleanly.

        Buffered partial input is discarded.
        """
        self._buffer = ""
        events: list[dict[str, Any]] = []
        self._ensure_terminal(events)
        return events

    # ------------------------------------------------------------------
    # Line handling
    # ------------------------------------------------------------------

    def _process_line(self, raw_line: str, events: list[dict[str, Any]]) -> None:
        line = raw_line.strip()
        if not line or not line.startswith("data:"):
            # Blank separators, comments, event: lines
            return

        data_str = line[5:].strip()

        if data_str == DONE_SENTINEL:
            self._on_done(events)
            return

        if self.closed:
            logger.debug("[%s] Ignoring delta after stream close", self.trace_id)
            return

        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            self.skipped_lines += 1
            logger.warning("[%s] Skipping malformed stream line: %.200s", self.trace_id, data_str)
            return

        if not isinstance(data, dict):
            self._skip("non-object stream line", data_str)
            return

        self._on_delta(data, events)

    def _skip(self, what: str, value: Any) -> None:
        self.skipped_lines += 1
        logger.warning("[%s] Skipping malformed %s: %.200r", self.trace_id, what, value)

    def _on_delta(self, data: dict[str, Any], events: list[dict[str, Any]]) -> None:
        usage = data.get("usage") or None
        if usage is not None and not isinstance(usage, dict):
            self._skip("usage", usage)
            usage = None

        if not self.state.started:
            if usage and usage.get("prompt_tokens"):
                self.state.input_token_estimate = usage["prompt_tokens"]
            self._start(events)

        if usage:
            self._record_usage(usage)

        choices = data.get("choices") or []
        if not isinstance(choices, list):
            self._skip("choices", choices)
            return
        if not choices:
            # Usage-only delta
            return

        choice = choices[0]
        if not isinstance(choice, dict):
            self._skip("choice", choice)
            return

        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            self._skip("delta", delta)
            delta = {}

        content = delta.get("content")
        if isinstance(content, str) and content:
            self._on_text(content, events)
        elif content:
            self._skip("content", content)

        tool_calls = delta.get("tool_calls") or []
        if not isinstance(tool_calls, list):
            self._skip("tool_calls", tool_calls)
            tool_calls = []
        for tool_call in tool_calls:
            if isinstance(tool_call, dict):
                self._on_tool_fragment(tool_call, events)
            else:
                self._skip("tool call fragment", tool_call)

        finish_reason = choice.get("finish_reason")
        if finish_reason:
            self._on_finish(str(finish_reason), usage, events)

    def _on_text(self, text: str, events: list[dict[str, Any]]) -> None:
        if self.state.open_block_kind is not BlockKind.TEXT:
            self._close_block(events)
            self._open_block(BlockKind.TEXT, {"type": "text", "text": ""}, events)

        assert self.state.open_block_index is not None
        events.append(text_delta_event(self.state.open_block_index, text))
        self._count_output(text)

    def _on_tool_fragment(self, fragment: dict[str, Any], events: list[dict[str, Any]]) -> None:
        call_index = fragment.get("index", 0)
        function = fragment.get("function") or {}
        if not isinstance(function, dict):
            self._skip("tool call function", function)
            return
        pending = self.state.pending_tool_calls.get(call_index)

        if pending is None:
            call_id = fragment.get("id")
            name = function.get("name")
            if not (call_id and name):
                logger.warning(
                    "[%s] Dropping fragment for unannounced tool call index %s",
                    self.trace_id,
                    call_index,
                )
                return

            self._close_block(events)
            block_index = self._open_block(
                BlockKind.TOOL,
                {"type": "tool_use", "id": call_id, "name": name, "input": {}},
                events,
            )
            pending = PendingToolCall(id=call_id, name=name, block_index=block_index)
            self.state.pending_tool_calls[call_index] = pending

        arguments = function.get("arguments")
        if not arguments:
            return

        pending.arguments += arguments
        if self.state.open_block_index != pending.block_index:
            # Fragment for a tool block that was already closed; the client
            # protocol has no way to reopen it.
            logger.warning(
                "[%s] Arguments for closed tool block %d (call %s) not forwarded",
                self.trace_id,
                pending.block_index,
                pending.id,
            )
            return

        events.append(input_json_delta_event(pending.block_index, arguments))
        self._count_output(arguments)

    def _on_finish(
        self,
        finish_reason: str,
        usage: dict[str, Any] | None,
        events: list[dict[str, Any]],
    ) -> None:
        self._close_block(events)

        input_tokens = self.state.input_token_estimate
        output_tokens = self.state.output_tokens
        if usage:
            input_tokens = usage.get("prompt_tokens") or input_tokens
            output_tokens = usage.get("completion_tokens") or output_tokens

        self._emit_terminal(
            map_finish_reason(finish_reason),
            TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
            events,
        )

    def _on_done(self, events: list[dict[str, Any]]) -> None:
        if self.closed:
            # finish_reason already closed the stream
            return
        logger.debug("[%s] [DONE] without finish_reason, closing stream", self.trace_id)
        if not self.state.started:
            self._start(events)
        self._close_block(events)
        self._emit_terminal(
            "end_turn",
            TokenUsage(
                input_tokens=self.state.input_token_estimate,
                output_tokens=self.state.output_tokens,
            ),
            events,
        )

    # ------------------------------------------------------------------
    # Event emission
    # ------------------------------------------------------------------

    def _start(self, events: list[dict[str, Any]]) -> None:
        events.append(
            message_start_event(
                self.state.message_id,
                self.state.model,
                self.state.input_token_estimate,
            )
        )
        self.state.started = True

    def _open_block(
        self,
        kind: BlockKind,
        content_block: dict[str, Any],
        events: list[dict[str, Any]],
    ) -> int:
        if self.state.open_block_index is not None:
            message = (
                f"content_block_start while block {self.state.open_block_index} is still open"
            )
            if self.strict:
                raise ProtocolInvariantError(message)
            logger.error("[%s] %s; force-closing it", self.trace_id, message)
            self._close_block(events)

        index = self.state.next_block_index
        self.state.next_block_index += 1
        self.state.open_block_index = index
        self.state.open_block_kind = kind
        events.append(content_block_start_event(index, content_block))
        return index

    def _close_block(self, events: list[dict[str, Any]]) -> None:
        if self.state.open_block_index is None:
            return
        events.append(content_block_stop_event(self.state.open_block_index))
        self.state.open_block_index = None
        self.state.open_block_kind = None

    def _emit_terminal(
        self,
        stop_reason: str,
        usage: TokenUsage,
        events: list[dict[str, Any]],
    ) -> None:
        if self.state.terminal_event_emitted:
            if self.strict:
                raise ProtocolInvariantError("terminal event pair already emitted")
            logger.error("[%s] Suppressed duplicate terminal event pair", self.trace_id)
            return
        if self.state.open_block_index is not None:
            if self.strict:
                raise ProtocolInvariantError("message_delta while a content block is open")
            self._close_block(events)

        events.append(message_delta_event(stop_reason, usage))
        events.append(message_stop_event())
        self.state.terminal_event_emitted = True

    def _ensure_terminal(self, events: list[dict[str, Any]]) -> None:
        """Emit a synthetic end_turn close if the stream never terminated."""
        if self.closed:
            return
        logger.warning(
            "[%s] Backend stream ended without a terminal event, closing synthetically",
            self.trace_id,
        )
        if not self.state.started:
            self._start(events)
        self._close_block(events)
        self._emit_terminal("end_turn", TokenUsage(input_tokens=0, output_tokens=0), events)

    # ------------------------------------------------------------------
    # Usage tracking
    # ------------------------------------------------------------------

    def _record_usage(self, usage: dict[str, Any]) -> None:
        completion_tokens = usage.get("completion_tokens")
        if completion_tokens is not None:
            self.state.output_tokens = completion_tokens
            self.state.usage_reported = True
        if usage.get("prompt_tokens"):
            self.state.input_token_estimate = usage["prompt_tokens"]

    def _count_output(self, fragment: str) -> None:
        self.state.output_chars += len(fragment)
        if not self.state.usage_reported:
            self.state.output_tokens = math.ceil(self.state.output_chars / 4)
