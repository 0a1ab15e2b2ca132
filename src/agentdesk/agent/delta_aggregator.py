"""Reassembles streamed tool-call fragments into complete :class:`ToolCallRequest` objects."""

from __future__ import annotations

import logging
import time
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Callable,
    Dict,
    List,
)

from agentdesk.core.schema import (
    ToolCallFragment,
    ToolCallRequest,
)

logger = logging.getLogger(__name__)


@dataclass
class _PendingCall:
    call_id: str = ""
    name: List[str] = field(default_factory=list)
    arguments: List[str] = field(default_factory=list)


class DeltaAggregator:
    """
    Accumulates :class:`ToolCallFragment` objects keyed by call index.

    Fragments may split any field at any character boundary; names and arguments are appended in
    arrival order and only interpreted once :meth:`finalize` is called.  A call that never received
    an id gets ``call_<epoch-ms>_<index>``; a call whose name is still empty is discarded.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time
        self._pending: Dict[int, _PendingCall] = {}

    def __bool__(self) -> bool:
        return bool(self._pending)

    def add(self, fragment: ToolCallFragment) -> None:
        """Fold one fragment into the call at ``fragment.index``."""
        pending = self._pending.setdefault(fragment.index, _PendingCall())
        if fragment.id_fragment:
            pending.call_id += fragment.id_fragment
        if fragment.name_fragment:
            pending.name.append(fragment.name_fragment)
        if fragment.argument_fragment:
            pending.arguments.append(fragment.argument_fragment)

    def finalize(self) -> List[ToolCallRequest]:
        """Return the completed calls ordered by index and reset the aggregator."""
        stamp = int(self._clock() * 1000)
        calls: List[ToolCallRequest] = []
        for index in sorted(self._pending):
            pending = self._pending[index]
            name = "".join(pending.name).strip()
            if not name:
                logger.warning("Discarding streamed tool call #%d without a name", index)
                continue
            calls.append(
                ToolCallRequest(
                    call_id=pending.call_id or f"call_{stamp}_{index}",
                    tool_name=name,
                    raw_arguments="".join(pending.arguments),
                )
            )
        self._pending.clear()
        return calls
