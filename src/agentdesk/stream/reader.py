"""
Client side of the streaming chat protocol.

:class:`SSEDecoder` turns arbitrarily chunked ``text/event-stream`` text back into typed
:class:`AgentStreamEvent` objects.  ``ui`` and ``section`` payloads are validated against the
output contract and silently dropped when malformed; unknown events are ignored.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import (
    Any,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
)

from pydantic import (
    TypeAdapter,
    ValidationError,
)

from agentdesk.core.schema import (
    AgentAction,
    AgentSection,
    AgentUiBlock,
    NavigateAction,
    OpenModalAction,
)

logger = logging.getLogger(__name__)

_UI_BLOCK = TypeAdapter(AgentUiBlock)
_SECTION = TypeAdapter(AgentSection)
_ACTIONS = TypeAdapter(List[AgentAction])


@dataclass
class AgentStreamEvent:
    """One decoded protocol event; only the field matching *type* is set."""

    type: str
    delta: str = ""
    block: Optional[AgentUiBlock] = None
    section: Optional[AgentSection] = None
    response: Optional[Dict[str, Any]] = None
    error: str = ""


def _parse_block(raw_block: str) -> tuple[str, str] | None:
    lines = [line.rstrip() for line in raw_block.split("\n") if line.strip()]
    if not lines:
        return None
    event = "message"
    data_lines = []
    for line in lines:
        if line.startswith("event:"):
            event = line[len("event:") :].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:") :].strip())
    return event, "\n".join(data_lines)


def _decode_event(event: str, data: str) -> AgentStreamEvent | None:
    try:
        payload = json.loads(data) if data else None
    except json.JSONDecodeError:
        payload = None
    if not isinstance(payload, dict):
        payload = None

    if event == "text_delta":
        delta = payload.get("delta") if payload else None
        if isinstance(delta, str) and delta:
            return AgentStreamEvent(type=event, delta=delta)
        return None
    if event == "ui":
        try:
            block = _UI_BLOCK.validate_python((payload or {}).get("block"))
            return AgentStreamEvent(type=event, block=block)
        except ValidationError:
            logger.debug("Dropping malformed ui event: %s", data)
            return None
    if event == "section":
        try:
            return AgentStreamEvent(
                type=event, section=_SECTION.validate_python((payload or {}).get("section"))
            )
        except ValidationError:
            logger.debug("Dropping malformed section event: %s", data)
            return None
    if event in ("message_start", "actions", "done") and payload is not None:
        return AgentStreamEvent(type=event, response=payload)
    if event == "error":
        message = payload.get("error") if payload else None
        return AgentStreamEvent(
            type=event, error=message if isinstance(message, str) else "Agent stream failed"
        )
    return None


class SSEDecoder:
    """Incremental decoder; feed it text chunks in arrival order."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> List[AgentStreamEvent]:
        self._buffer += chunk.replace("\r\n", "\n")
        events: List[AgentStreamEvent] = []
        boundary = self._buffer.find("\n\n")
        while boundary >= 0:
            raw_block = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + 2 :]
            boundary = self._buffer.find("\n\n")
            parsed = _parse_block(raw_block)
            if parsed is None:
                continue
            decoded = _decode_event(*parsed)
            if decoded is not None:
                events.append(decoded)
        return events


def iter_agent_stream(chunks: Iterable[str]) -> Iterator[AgentStreamEvent]:
    """Decode a whole stream of text chunks, e.g. ``httpx.Response.iter_text()``."""
    decoder = SSEDecoder()
    for chunk in chunks:
        yield from decoder.feed(chunk)


def merge_actions(response: Dict[str, Any]) -> List[AgentAction]:
    """Actions of a terminal payload, completed from ``navigateTo`` and ``openModalId``."""
    try:
        actions = _ACTIONS.validate_python(response.get("actions") or [])
    except ValidationError:
        actions = []
    if response.get("navigateTo") and not any(a.type == "navigate" for a in actions):
        actions.append(NavigateAction(to=response["navigateTo"]))
    if response.get("openModalId") and not any(a.type == "open_modal" for a in actions):
        actions.append(OpenModalAction(id=response["openModalId"]))
    return actions
