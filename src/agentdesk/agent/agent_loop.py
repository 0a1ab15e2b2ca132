"""Main orchestration loop for agentdesk."""

from __future__ import annotations

import json
import logging
import time
from typing import (
    Callable,
    List,
    Sequence,
    Tuple,
)

from agentdesk.agent.delta_aggregator import DeltaAggregator
from agentdesk.agent.events import (
    EventSink,
    LoopEvent,
    TextDelta,
    ToolCallsStarted,
    ToolExecuted,
    TurnStarted,
)
from agentdesk.agent.model_backend import BaseModelBackend
from agentdesk.agent.normalizer import finalize
from agentdesk.agent.prompts import build_system_prompt
from agentdesk.agent.tool_executor import execute_tool
from agentdesk.agent.ui_inference import infer_ui_blocks
from agentdesk.config import settings
from agentdesk.core.schema import (
    FALLBACK_ANSWER,
    AgentInput,
    AgentOutput,
    ContextMessage,
    ModelReply,
    TerminalAnswer,
    ToolCallBatch,
    ToolCallFragment,
    ToolResult,
    ToolSpec,
)
from agentdesk.finance.client import FinanceClient
from agentdesk.tools import (
    ToolContext,
    get_tool_schemas,
)

logger = logging.getLogger(__name__)


def build_context(agent_input: AgentInput) -> List[ContextMessage]:
    """System instructions, then prior turns, then the new user message."""
    context = [
        ContextMessage(
            role="system",
            content=build_system_prompt(
                agent_input.available_routes, agent_input.available_modals, agent_input.locale
            ),
        )
    ]
    context.extend(
        ContextMessage(role=turn.role, content=turn.content) for turn in agent_input.history
    )
    context.append(ContextMessage(role="user", content=agent_input.message))
    return context


class Orchestrator:
    """
    Bounded request / tool-execute / re-prompt cycle against one model backend.

    Each turn sends the accumulated context and the tool catalog to the backend.  Tool-call replies
    are executed sequentially and their results appended before the next turn; the first non-empty
    text reply ends the run.  Running out of turns, or an empty reply, ends the run with the
    fallback answer.  Every path goes through :func:`finalize` before returning.

    Tool failures never end the run; backend failures propagate to the caller.
    """

    def __init__(
        self,
        backend: BaseModelBackend,
        *,
        finance: FinanceClient | None = None,
        max_turns: int | None = None,
        infer_ui: bool | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._backend = backend
        self._finance = finance or FinanceClient.from_settings()
        self._max_turns = max_turns or settings.MAX_TURNS
        self._infer_ui = settings.INFER_UI_FROM_TEXT if infer_ui is None else infer_ui
        self._clock = clock or time.time

    async def run(
        self, agent_input: AgentInput, *, stream: bool = False, emit: EventSink | None = None
    ) -> AgentOutput:
        """
        Drive the loop for *agent_input* and return the normalized output.

        With *stream* the backend is read fragment by fragment and visible text is reported through
        *emit* as it arrives; otherwise one complete reply is requested per turn.  Both modes build
        the same conversation and produce the same output.
        """
        context = build_context(agent_input)
        catalog = get_tool_schemas()
        tool_ctx = ToolContext(
            timezone=agent_input.timezone, locale=agent_input.locale, finance=self._finance
        )
        used_tools: List[str] = []
        tool_results: List[Tuple[str, ToolResult]] = []
        candidate: TerminalAnswer | None = None

        for turn in range(1, self._max_turns + 1):
            await self._emit(emit, TurnStarted(turn=turn))
            if stream:
                reply = await self._streamed_reply(turn, context, catalog, emit)
            else:
                reply = await self._backend.generate(context, catalog)

            calls = reply.calls if isinstance(reply, ToolCallBatch) else []
            if calls:
                logger.info(
                    "Turn %d/%d: backend requested %d tool call(s): %s",
                    turn,
                    self._max_turns,
                    len(calls),
                    [call.tool_name for call in calls],
                )
                context.append(ContextMessage(role="model", content=reply.text, tool_calls=calls))
                for call in calls:
                    if call.tool_name not in used_tools:
                        used_tools.append(call.tool_name)
                    result = await execute_tool(call.tool_name, call.raw_arguments, tool_ctx)
                    tool_results.append((call.tool_name, result))
                    context.append(
                        ContextMessage(
                            role="tool",
                            content=json.dumps(result, ensure_ascii=False, default=str),
                            tool_call_id=call.call_id,
                            tool_name=call.tool_name,
                        )
                    )
                    await self._emit(
                        emit,
                        ToolExecuted(turn=turn, tool_name=call.tool_name, ok="error" not in result),
                    )
                continue

            if reply.text.strip():
                if isinstance(reply, TerminalAnswer):
                    candidate = reply
                else:
                    candidate = TerminalAnswer(text=reply.text)
            else:
                logger.warning("Turn %d: backend returned neither text nor tool calls", turn)
            break
        else:
            logger.warning("Turn budget of %d exhausted without a final answer", self._max_turns)

        return self._finalize(agent_input, candidate, used_tools, tool_results)

    async def _streamed_reply(
        self,
        turn: int,
        context: Sequence[ContextMessage],
        catalog: Sequence[ToolSpec],
        emit: EventSink | None,
    ) -> ModelReply:
        aggregator = DeltaAggregator(clock=self._clock)
        text_parts: List[str] = []
        tool_mode = False
        async for fragment in self._backend.stream(context, catalog):
            if isinstance(fragment, ToolCallFragment):
                if not tool_mode:
                    tool_mode = True
                    await self._emit(emit, ToolCallsStarted(turn=turn))
                aggregator.add(fragment)
                continue
            if not fragment.text:
                continue
            text_parts.append(fragment.text)
            if not tool_mode:
                await self._emit(emit, TextDelta(delta=fragment.text))

        text = "".join(text_parts)
        calls = aggregator.finalize()
        if calls:
            return ToolCallBatch(calls=calls, text=text)
        return TerminalAnswer(text=text)

    def _finalize(
        self,
        agent_input: AgentInput,
        candidate: TerminalAnswer | None,
        used_tools: List[str],
        tool_results: List[Tuple[str, ToolResult]],
    ) -> AgentOutput:
        answer = candidate.text if candidate is not None else FALLBACK_ANSWER
        structured = (candidate.structured if candidate is not None else None) or {}
        ui = structured.get("ui") or []
        if self._infer_ui and not ui:
            ui = infer_ui_blocks(answer, tool_results)
        return finalize(
            answer,
            used_tools,
            agent_input.available_routes,
            agent_input.available_modals,
            actions=structured.get("actions"),
            ui=ui,
            sections=structured.get("sections"),
            navigate_to=structured.get("navigate_to"),
            open_modal_id=structured.get("open_modal_id"),
            clock=self._clock,
        )

    @staticmethod
    async def _emit(emit: EventSink | None, event: LoopEvent) -> None:
        if emit is not None:
            await emit(event)
