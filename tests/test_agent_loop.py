"""
Tests for the orchestration loop with a scripted model backend.

Run with:
$ pytest -q tests/test_agent_loop.py
"""

import json

import pytest

from agentdesk.agent.agent_loop import (
    Orchestrator,
    build_context,
)
from agentdesk.agent.events import (
    TextDelta,
    ToolCallsStarted,
    ToolExecuted,
    TurnStarted,
)
from agentdesk.agent.model_backend import ModelBackendError
from agentdesk.core.schema import (
    FALLBACK_ANSWER,
    AgentInput,
    ChatTurn,
    NavigateAction,
    TerminalAnswer,
    TextFragment,
    ToolCallBatch,
    ToolCallFragment,
    ToolCallRequest,
)


def _call(name: str, arguments: str = "{}", call_id: str = "c1") -> ToolCallBatch:
    call = ToolCallRequest(call_id=call_id, tool_name=name, raw_arguments=arguments)
    return ToolCallBatch(calls=[call])


def _orchestrator(backend, finance_service, **kwargs) -> Orchestrator:
    return Orchestrator(backend, finance=finance_service.client(), clock=lambda: 1.0, **kwargs)


def test_build_context_orders_system_history_user() -> None:
    """The system prompt comes first, then stored turns, then the new message."""

    agent_input = AgentInput(
        message="And now?",
        history=[ChatTurn(role="user", content="Hi"), ChatTurn(role="model", content="Hello")],
        available_routes=["/docs"],
        available_modals=["support-contact"],
    )

    context = build_context(agent_input)

    assert [message.role for message in context] == ["system", "user", "model", "user"]
    assert "/docs" in context[0].content
    assert "support-contact" in context[0].content
    assert context[-1].content == "And now?"


@pytest.mark.asyncio
async def test_direct_answer(scripted_backend, finance_service) -> None:
    """A text reply on the first turn ends the run and goes through the normalizer."""

    backend = scripted_backend(replies=[TerminalAnswer(text="Sure. <<NAVIGATE:/pricing>>")])

    out = await _orchestrator(backend, finance_service).run(AgentInput(message="show pricing"))

    assert out.answer == "Sure."
    assert out.navigate_to == "/pricing"
    assert out.used_tools == []
    assert len(backend.contexts) == 1
    assert {spec.name for spec in backend.catalogs[0]} >= {"calculate", "getDateTime"}


@pytest.mark.asyncio
async def test_tool_round_trip(scripted_backend, finance_service) -> None:
    """Tool results are appended to the context, linked to their call id, before the next turn."""

    backend = scripted_backend(
        replies=[
            _call("calculate", '{"expression": "2 + 3"}'),
            TerminalAnswer(text="It is 5."),
        ]
    )

    out = await _orchestrator(backend, finance_service).run(AgentInput(message="2+3?"))

    assert out.answer == "It is 5."
    assert out.used_tools == ["calculate"]
    second_turn = backend.contexts[1]
    placeholder, result = second_turn[-2], second_turn[-1]
    assert placeholder.role == "model"
    assert placeholder.tool_calls[0].call_id == "c1"
    assert result.role == "tool"
    assert result.tool_call_id == "c1"
    assert result.tool_name == "calculate"
    assert json.loads(result.content) == {"expression": "2 + 3", "result": 5}


@pytest.mark.asyncio
async def test_tool_errors_are_fed_back(scripted_backend, finance_service) -> None:
    """A failing tool does not end the run; the model sees the error message."""

    backend = scripted_backend(
        replies=[_call("noSuchTool"), TerminalAnswer(text="Sorry, I could not do that.")]
    )

    out = await _orchestrator(backend, finance_service).run(AgentInput(message="do it"))

    assert out.answer == "Sorry, I could not do that."
    assert out.used_tools == ["noSuchTool"]
    assert json.loads(backend.contexts[1][-1].content) == {"error": "Unknown tool: noSuchTool"}


@pytest.mark.asyncio
async def test_turn_cap_returns_fallback(scripted_backend, finance_service) -> None:
    """Five tool-only turns exhaust the budget; the answer is the fallback and tools are unique."""

    faq = _call("lookupFaq", '{"topic": "auth"}')
    calc = _call("calculate", '{"expression": "1 + 1"}')
    backend = scripted_backend(replies=[faq, calc, faq, calc, faq, calc, faq, calc])

    out = await _orchestrator(backend, finance_service).run(AgentInput(message="loop forever"))

    assert out.answer == FALLBACK_ANSWER
    assert out.used_tools == ["lookupFaq", "calculate"]
    assert len(backend.contexts) == 5
    assert len(backend.replies) == 3


@pytest.mark.asyncio
async def test_custom_turn_budget(scripted_backend, finance_service) -> None:
    backend = scripted_backend(replies=[_call("lookupFaq", '{"topic": "auth"}')] * 3)

    out = await _orchestrator(backend, finance_service, max_turns=2).run(AgentInput(message="hi"))

    assert out.answer == FALLBACK_ANSWER
    assert len(backend.contexts) == 2


@pytest.mark.asyncio
async def test_empty_reply_returns_fallback(scripted_backend, finance_service) -> None:
    backend = scripted_backend(replies=[TerminalAnswer(text="   ")])

    out = await _orchestrator(backend, finance_service).run(AgentInput(message="hello"))

    assert out.answer == FALLBACK_ANSWER
    assert len(backend.contexts) == 1


@pytest.mark.asyncio
async def test_backend_errors_propagate(scripted_backend, finance_service) -> None:
    backend = scripted_backend(replies=[ModelBackendError("upstream down")])

    with pytest.raises(ModelBackendError):
        await _orchestrator(backend, finance_service).run(AgentInput(message="hello"))


@pytest.mark.asyncio
async def test_structured_answer_fields_are_normalized(scripted_backend, finance_service) -> None:
    """Structured actions and UI blocks go through the same allow-lists and filters."""

    structured = {
        "answer": "Here is the overview.",
        "actions": [{"type": "navigate", "to": "/docs"}, {"type": "navigate", "to": "/admin"}],
        "ui": [{"type": "asset_donut", "items": [{"label": "Cash", "amount": 10}]}],
        "sections": [],
        "navigate_to": None,
        "open_modal_id": "support-contact",
    }
    backend = scripted_backend(
        replies=[TerminalAnswer(text=structured["answer"], structured=structured)]
    )

    out = await _orchestrator(backend, finance_service).run(AgentInput(message="overview"))

    assert out.navigate_to == "/docs"
    assert out.open_modal_id == "support-contact"
    assert out.actions[0] == NavigateAction(to="/docs")
    assert len(out.actions) == 2
    assert out.ui[0].type == "asset_donut"


@pytest.mark.asyncio
async def test_ui_inferred_from_finance_overview(scripted_backend, finance_service) -> None:
    """Keywords in the answer turn the fetched overview into chart blocks."""

    backend = scripted_backend(
        replies=[
            _call("getFinanceOverview", '{"rangeDays": 7}'),
            TerminalAnswer(text="Here is your asset distribution and the trend of the last week."),
        ]
    )

    out = await _orchestrator(backend, finance_service, infer_ui=True).run(
        AgentInput(message="show my assets")
    )

    assert [block.type for block in out.ui] == ["asset_donut", "finance_trend_line"]
    assert [item.label for item in out.ui[0].items] == ["Cash", "Stocks"]
    assert len(out.ui[1].points) == 7
    assert out.used_tools == ["getFinanceOverview"]


@pytest.mark.asyncio
async def test_ui_inference_can_be_disabled(scripted_backend, finance_service) -> None:
    backend = scripted_backend(
        replies=[
            _call("getFinanceOverview"),
            TerminalAnswer(text="Here is your asset distribution."),
        ]
    )

    out = await _orchestrator(backend, finance_service, infer_ui=False).run(
        AgentInput(message="show my assets")
    )

    assert out.ui == []


@pytest.mark.asyncio
async def test_streaming_run(scripted_backend, finance_service) -> None:
    """Streamed fragments are reassembled into calls; only pre-tool text is reported as deltas."""

    backend = scripted_backend(
        streams=[
            [
                TextFragment(text="Let me check"),
                ToolCallFragment(index=0, id_fragment="c1", name_fragment="calc"),
                ToolCallFragment(index=0, name_fragment="ulate", argument_fragment='{"expre'),
                ToolCallFragment(index=0, argument_fragment='ssion": "6 * 7"}'),
                TextFragment(text=" (hidden)"),
            ],
            [
                TextFragment(text="The answer "),
                TextFragment(text="is 42. <<OPEN_MODAL:docs-quickstart>>"),
            ],
        ]
    )
    events = []

    async def collect(event) -> None:
        events.append(event)

    out = await _orchestrator(backend, finance_service).run(
        AgentInput(message="6*7?"), stream=True, emit=collect
    )

    assert out.answer == "The answer is 42."
    assert out.open_modal_id == "docs-quickstart"
    assert out.used_tools == ["calculate"]
    assert events == [
        TurnStarted(turn=1),
        TextDelta(delta="Let me check"),
        ToolCallsStarted(turn=1),
        ToolExecuted(turn=1, tool_name="calculate", ok=True),
        TurnStarted(turn=2),
        TextDelta(delta="The answer "),
        TextDelta(delta="is 42. <<OPEN_MODAL:docs-quickstart>>"),
    ]
    tool_message = backend.contexts[1][-1]
    assert json.loads(tool_message.content)["result"] == 42


@pytest.mark.asyncio
async def test_streaming_and_blocking_runs_agree(scripted_backend, finance_service) -> None:
    """Both modes produce the same output for the same model behaviour."""

    blocking = scripted_backend(
        replies=[_call("lookupFaq", '{"topic": "deploy"}'), TerminalAnswer(text="Use Cloud Run.")]
    )
    streaming = scripted_backend(
        streams=[
            [
                ToolCallFragment(
                    index=0,
                    id_fragment="c1",
                    name_fragment="lookupFaq",
                    argument_fragment='{"topic": "deploy"}',
                )
            ],
            [TextFragment(text="Use Cloud Run.")],
        ]
    )
    agent_input = AgentInput(message="how to deploy?")

    first = await _orchestrator(blocking, finance_service).run(agent_input)
    second = await _orchestrator(streaming, finance_service).run(agent_input, stream=True)

    assert first == second
    assert blocking.contexts[1][-1].content == streaming.contexts[1][-1].content
