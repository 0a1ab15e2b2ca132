"""Internal events the orchestration loop reports while it runs."""

from dataclasses import dataclass
from typing import (
    Awaitable,
    Callable,
    Union,
)


@dataclass(frozen=True)
class TurnStarted:
    turn: int


@dataclass(frozen=True)
class TextDelta:
    """Visible reply text, forwarded only until the turn shows a tool call."""

    delta: str


@dataclass(frozen=True)
class ToolCallsStarted:
    turn: int


@dataclass(frozen=True)
class ToolExecuted:
    turn: int
    tool_name: str
    ok: bool


LoopEvent = Union[TurnStarted, TextDelta, ToolCallsStarted, ToolExecuted]
EventSink = Callable[[LoopEvent], Awaitable[None]]
