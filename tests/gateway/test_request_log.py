"""Tests for the structured request log."""

import logging

from pilot.gateway.request_log import (
    LoggerRequestLog,
    RequestLogEntry,
    request_entry,
    summarize_message,
)
from pilot.gateway.transforms.types import (
    InboundRequest,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolSpec,
)


class TestRequestLogEntry:
    def test_to_dict_drops_unset_fields(self):
        entry = RequestLogEntry(request_id="r1", type="response", status_code=200)

        data = entry.to_dict()

        assert data["request_id"] == "r1"
        assert data["status_code"] == 200
        assert "timestamp" in data
        assert "error" not in data
        assert "model" not in data

    def test_false_values_kept(self):
        entry = RequestLogEntry(request_id="r1", type="request", charged=False)
        assert entry.to_dict()["charged"] is False


class TestSummarizeMessage:
    def test_string_content(self):
        summary = summarize_message(Message(role="user", content="hello"))

        assert summary.content_preview == "hello"
        assert summary.content_length == 5
        assert not summary.has_tool_result

    def test_long_content_truncated(self):
        summary = summarize_message(Message(role="user", content="x" * 500))

        assert summary.content_preview == "x" * 200 + "..."
        assert summary.content_length == 500

    def test_block_content(self):
        message = Message(
            role="user",
            content=(ToolResultBlock(tool_use_id="t1", content="ok"), TextBlock("next")),
        )

        summary = summarize_message(message)

        assert summary.content_preview == "next"
        assert summary.has_tool_result
        assert summary.content_length > len("next")


class TestRequestEntry:
    def test_fields_from_request(self):
        request = InboundRequest(
            model="claude-sonnet-4-5",
            system="Be brief.",
            messages=(Message(role="user", content="hi"),),
            tools=(ToolSpec(name="ls", input_schema={}),),
            stream=True,
        )

        entry = request_entry("r1", request, decision="direct_user_turn", charged=True)

        assert entry.type == "request"
        assert entry.model == "claude-sonnet-4-5"
        assert entry.stream is True
        assert entry.message_count == 1
        assert entry.tool_names == ["ls"]
        assert entry.system_preview == "Be brief."
        assert entry.system_length == 9
        assert entry.decision == "direct_user_turn"
        assert entry.charged is True


class TestLoggerRequestLog:
    def test_records_on_logger(self, caplog):
        sink = LoggerRequestLog(logger_name="pilot.requests.test")

        with caplog.at_level(logging.INFO, logger="pilot.requests.test"):
            sink.record(
                RequestLogEntry(
                    request_id="r1",
                    type="response",
                    decision="agent_continuation",
                    status_code=200,
                )
            )

        record = caplog.records[-1]
        assert record.getMessage() == "[r1] response decision=agent_continuation status=200"
        assert record.entry["status_code"] == 200
