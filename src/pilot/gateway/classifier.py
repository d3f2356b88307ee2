"""Request classifier.

Assigns every inbound request one RoutingDecision. The decision selects the
backend model and the value of the X-Initiator billing header.

All detection strings are owned by the client tooling, not by us, so they
live in one SentinelTable that can be swapped without touching the
transformers or the streaming transcoder.

Rules are evaluated in a fixed order, first match wins:

1. DEDICATED_TOOL_EXECUTION: web search helper prompt with a single message
2. SUGGESTION_STUB: suggestion marker in the last message
3. SYNTHETIC_UTILITY: sidecar marker in the system prompt
4. AGENT_CONTINUATION: tool_result in the last user message, or sub-agent marker
5. DIRECT_USER_TURN: last message is a plain user turn
6. AGENT_CONTINUATION: anything else (never over-charge)
"""

import logging
import re
from dataclasses import dataclass

from pilot.gateway.transforms.types import Classification, InboundRequest, RoutingDecision

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SentinelTable:
    """Detection strings for each routing category.

    Attributes:
        tool_execution_system: Substring of the system prompt used by the
            client's dedicated web search sub-request.
        tool_execution_message: Regex over that request's only message; group 1
            is the payload (the search query).
        suggestion: Marker in the last message of a prompt-suggestion request.
        sidecar: System prompt markers of utility requests the client
            synthesizes itself (titles, topic detection, file tracking).
        subagent: System prompt markers of reasoning sub-agents.
    """

    tool_execution_system: str = "performing a web search tool use"
    tool_execution_message: re.Pattern[str] = re.compile(
        r"Perform a web search for the query:\s*(.+)", re.IGNORECASE
    )
    suggestion: str = "[SUGGESTION MODE:"
    sidecar: tuple[str, ...] = (
        "Please write a 5-10 word title",
        "Analyze if this message indicates a new conversation topic",
        "Extract any file paths that this command reads or modifies",
        "Your task is to process Bash commands",
        "You are a helpful AI assistant tasked with summarizing conversations",
    )
    subagent: tuple[str, ...] = (
        "You are a file search specialist",
        "You are an agent for Claude Code",
        "You are a software architect and planning specialist",
    )


DEFAULT_SENTINELS = SentinelTable()


def extract_tool_execution_payload(
    request: InboundRequest,
    sentinels: SentinelTable = DEFAULT_SENTINELS,
) -> str | None:
    """Return the search query of a dedicated web search request, else None."""
    if sentinels.tool_execution_system not in request.system_text:
        return None

    if len(request.messages) != 1:
        return None

    match = sentinels.tool_execution_message.search(request.messages[0].text)
    if not match:
        return None
    return match.group(1).strip()


def is_suggestion_request(
    request: InboundRequest,
    sentinels: SentinelTable = DEFAULT_SENTINELS,
) -> bool:
    last = request.last_message
    return last is not None and sentinels.suggestion in last.text


def is_sidecar_request(
    request: InboundRequest,
    sentinels: SentinelTable = DEFAULT_SENTINELS,
) -> bool:
    system_text = request.system_text
    return any(marker in system_text for marker in sentinels.sidecar)


def is_subagent_request(
    request: InboundRequest,
    sentinels: SentinelTable = DEFAULT_SENTINELS,
) -> bool:
    system_text = request.system_text
    return any(marker in system_text for marker in sentinels.subagent)


def classify(
    request: InboundRequest,
    sentinels: SentinelTable = DEFAULT_SENTINELS,
    *,
    detect_tool_execution: bool = True,
) -> Classification:
    """Assign a routing decision to a request.

    Pure and total: never raises, never does I/O, and only looks at the
    system prompt and the last message.

    Args:
        request: Parsed inbound request.
        sentinels: Detection strings to match against.
        detect_tool_execution: When False, rule 1 is skipped (used when no
            search helper is available to serve such a request).

    Returns:
        Classification with the decision, plus the extracted query for
        DEDICATED_TOOL_EXECUTION.
    """
    if detect_tool_execution:
        payload = extract_tool_execution_payload(request, sentinels)
        if payload:
            return Classification(RoutingDecision.DEDICATED_TOOL_EXECUTION, payload)

    if is_suggestion_request(request, sentinels):
        return Classification(RoutingDecision.SUGGESTION_STUB)

    if is_sidecar_request(request, sentinels):
        return Classification(RoutingDecision.SYNTHETIC_UTILITY)

    last = request.last_message
    if last is not None and last.role == "user" and last.has_tool_result():
        return Classification(RoutingDecision.AGENT_CONTINUATION)

    if is_subagent_request(request, sentinels):
        return Classification(RoutingDecision.AGENT_CONTINUATION)

    if last is not None and last.role == "user":
        return Classification(RoutingDecision.DIRECT_USER_TURN)

    return Classification(RoutingDecision.AGENT_CONTINUATION)
