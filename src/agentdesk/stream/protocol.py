"""
Server side of the streaming chat protocol.

A :class:`StreamSession` runs one orchestration in a background task (the producer) and hands
wire events to the HTTP response (the consumer) through an :class:`asyncio.Queue`.  The wire
sequence is::

    message_start -> (text_delta | ui | section)* -> actions -> done
                  \\-> error  (at any point, in place of the rest)

Per request the session moves through ``START -> STREAMING_TEXT <-> STREAMING_TOOLS -> FINALIZING ->
DONE``; ``ERROR`` is reachable from every state.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import json
import logging
import re
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    FrozenSet,
    Mapping,
)

from agentdesk.agent.agent_loop import Orchestrator
from agentdesk.agent.events import (
    LoopEvent,
    TextDelta,
    ToolCallsStarted,
    TurnStarted,
)
from agentdesk.core.schema import (
    AgentInput,
    AgentOutput,
)

logger = logging.getLogger(__name__)

MAX_WITHHELD_CHARS = 256
_CONTROL_TAG = re.compile(r"<<(?:NAVIGATE|OPEN_MODAL):[^>\n]+>>", re.IGNORECASE)


class StreamState(str, enum.Enum):
    START = "start"
    STREAMING_TEXT = "streaming_text"
    STREAMING_TOOLS = "streaming_tools"
    FINALIZING = "finalizing"
    DONE = "done"
    ERROR = "error"


_TRANSITIONS: Dict[StreamState, FrozenSet[StreamState]] = {
    StreamState.START: frozenset({StreamState.STREAMING_TEXT}),
    StreamState.STREAMING_TEXT: frozenset(
        {StreamState.STREAMING_TEXT, StreamState.STREAMING_TOOLS, StreamState.FINALIZING}
    ),
    StreamState.STREAMING_TOOLS: frozenset({StreamState.STREAMING_TEXT, StreamState.FINALIZING}),
    StreamState.FINALIZING: frozenset({StreamState.DONE}),
    StreamState.DONE: frozenset(),
    StreamState.ERROR: frozenset(),
}


@dataclass(frozen=True)
class WireEvent:
    event: str
    data: Mapping[str, Any]


def encode_sse(event: str, data: Mapping[str, Any]) -> str:
    """Render one Server-Sent-Events block."""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


class ControlTagFilter:
    """
    Withholds ``<<NAVIGATE:...>>`` / ``<<OPEN_MODAL:...>>`` spans from streamed text.

    Text after a ``<<`` is held back until the span closes; recognised control tags are dropped
    and anything else is released unchanged.  The final answer is sanitised separately by the
    normalizer.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, text: str) -> str:
        buffer = self._pending + text
        self._pending = ""
        out = []
        while buffer:
            start = buffer.find("<<")
            if start < 0:
                if buffer.endswith("<"):
                    out.append(buffer[:-1])
                    self._pending = "<"
                else:
                    out.append(buffer)
                break
            out.append(buffer[:start])
            rest = buffer[start:]
            end = rest.find(">>")
            newline = rest.find("\n")
            if end >= 0 and (newline < 0 or newline > end):
                span = rest[: end + 2]
                if not _CONTROL_TAG.fullmatch(span):
                    out.append(span)
                buffer = rest[end + 2 :]
            elif newline >= 0 or len(rest) > MAX_WITHHELD_CHARS:
                cut = newline + 1 if newline >= 0 else len(rest)
                out.append(rest[:cut])
                buffer = rest[cut:]
            else:
                self._pending = rest
                break
        return "".join(out)

    def flush(self) -> str:
        """Release whatever is still held back; an unterminated span is plain text."""
        pending, self._pending = self._pending, ""
        return pending

    def discard(self) -> None:
        self._pending = ""


class StreamSession:
    """
    Producer/consumer hand-off for one streaming chat request.

    *extra* fields (e.g. ``sessionId``) are merged into ``message_start``, ``actions`` and ``done``.
    *on_complete* is called with the final output before the terminal events are queued; the mapping
    it returns is merged into ``done`` (e.g. ``historyCount``).
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        agent_input: AgentInput,
        *,
        extra: Mapping[str, Any] | None = None,
        on_complete: Callable[[AgentOutput], Mapping[str, Any]] | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._input = agent_input
        self._extra = dict(extra or {})
        self._on_complete = on_complete
        self._queue: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._tags = ControlTagFilter()
        self.state = StreamState.START

    def _transition(self, target: StreamState) -> None:
        if target is StreamState.ERROR or target in _TRANSITIONS[self.state]:
            logger.debug("Stream state %s -> %s", self.state.value, target.value)
            self.state = target
        else:
            logger.warning("Ignoring stream transition %s -> %s", self.state.value, target.value)

    async def _put(self, event: str, data: Mapping[str, Any]) -> None:
        await self._queue.put(WireEvent(event=event, data=data))

    async def _on_loop_event(self, event: LoopEvent) -> None:
        if isinstance(event, TurnStarted):
            self._transition(StreamState.STREAMING_TEXT)
        elif isinstance(event, TextDelta):
            visible = self._tags.feed(event.delta)
            if visible:
                await self._put("text_delta", {"delta": visible})
        elif isinstance(event, ToolCallsStarted):
            self._tags.discard()
            self._transition(StreamState.STREAMING_TOOLS)

    async def _produce(self) -> None:
        try:
            output = await self._orchestrator.run(
                self._input, stream=True, emit=self._on_loop_event
            )
            tail = self._tags.flush()
            if tail:
                await self._put("text_delta", {"delta": tail})
            self._transition(StreamState.FINALIZING)
            completion = dict(self._on_complete(output)) if self._on_complete else {}

            wire = output.to_wire()
            for block in wire["ui"]:
                await self._put("ui", {"block": block})
            for section in wire["sections"]:
                await self._put("section", {"section": section})
            await self._put("actions", {**self._extra, **wire})
            await self._put("done", {**self._extra, **wire, **completion})
            self._transition(StreamState.DONE)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Streaming chat failed")
            self._transition(StreamState.ERROR)
            await self._put("error", {"error": str(exc) or exc.__class__.__name__})
        finally:
            await self._queue.put(None)

    async def events(self) -> AsyncIterator[WireEvent]:
        """Yield wire events in order; closing the iterator cancels the running orchestration."""
        yield WireEvent(event="message_start", data=dict(self._extra))
        producer = asyncio.create_task(self._produce())
        try:
            while True:
                item = await self._queue.get()
                if item is None:
                    break
                yield item
        finally:
            if not producer.done():
                producer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await producer

    async def sse(self) -> AsyncIterator[str]:
        async for wire_event in self.events():
            yield encode_sse(wire_event.event, wire_event.data)
