"""
Schema definitions for request <-> orchestration loop <-> model backend <-> tool messages.

These data models serve as the contract between the HTTP surface, the orchestration loop, the model
backends and individual tools.  We keep them separate from runtime logic so they can be imported
anywhere without side-effects.  Wire names are camelCase (``usedTools``, ``navigateTo``...), Python
attribute names are snake_case.
"""

from typing import (
    Annotated,
    Any,
    Dict,
    List,
    Literal,
    Optional,
    Union,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)
from pydantic.alias_generators import to_camel

DEFAULT_TIMEZONE = "Asia/Taipei"
DEFAULT_LOCALE = "zh-TW"
DEFAULT_AVAILABLE_ROUTES = ["/", "/pricing", "/docs", "/support"]
DEFAULT_AVAILABLE_MODALS = ["pricing-comparison", "docs-quickstart", "support-contact"]
SECTION_SLOT = "after-b"
FALLBACK_ANSWER = "No reply is available right now, please try again."

ToolResult = Dict[str, Any]
"""Structured tool output, or ``{"error": message}`` when the tool failed."""


class CamelModel(BaseModel):
    """Base model serialising to camelCase while accepting either spelling on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Conversation history
# ---------------------------------------------------------------------------
class ChatTurn(CamelModel):
    """One stored exchange half; immutable once appended to a session."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    role: Literal["user", "model"]
    content: str = Field(..., min_length=1)


class AgentInput(CamelModel):
    """Everything a single orchestration run needs."""

    message: str = Field(..., min_length=1)
    history: List[ChatTurn] = Field(default_factory=list)
    timezone: str = DEFAULT_TIMEZONE
    locale: str = DEFAULT_LOCALE
    available_routes: List[str] = Field(default_factory=lambda: list(DEFAULT_AVAILABLE_ROUTES))
    available_modals: List[str] = Field(default_factory=lambda: list(DEFAULT_AVAILABLE_MODALS))


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------
class ToolCallRequest(CamelModel):
    """A call the model backend wants the loop to execute."""

    call_id: str
    tool_name: str
    raw_arguments: str = ""


# ---------------------------------------------------------------------------
# Actions and UI blocks
# ---------------------------------------------------------------------------
class NavigateAction(CamelModel):
    type: Literal["navigate"] = "navigate"
    to: str


class OpenModalAction(CamelModel):
    type: Literal["open_modal"] = "open_modal"
    id: str


AgentAction = Annotated[Union[NavigateAction, OpenModalAction], Field(discriminator="type")]


class DonutSlice(CamelModel):
    label: str = Field(..., min_length=1, max_length=40)
    amount: float = Field(..., ge=0)


class TrendPoint(CamelModel):
    label: str = Field(..., min_length=1, max_length=40)
    assets: float = Field(..., ge=0)
    liabilities: float = Field(..., ge=0)


class AssetDonutBlock(CamelModel):
    type: Literal["asset_donut"] = "asset_donut"
    title: Optional[str] = None
    items: List[DonutSlice] = Field(..., min_length=1, max_length=12)


class FinanceTrendLineBlock(CamelModel):
    type: Literal["finance_trend_line"] = "finance_trend_line"
    title: Optional[str] = None
    points: List[TrendPoint] = Field(..., min_length=2, max_length=60)


AgentUiBlock = Annotated[
    Union[AssetDonutBlock, FinanceTrendLineBlock], Field(discriminator="type")
]


class AgentSection(CamelModel):
    """A transient, client-only page region created by the model."""

    id: str = Field(..., min_length=1)
    slot: Literal["after-b"] = SECTION_SLOT
    mode: Literal["ephemeral"] = "ephemeral"
    title: Optional[str] = None
    blocks: List[AgentUiBlock] = Field(..., min_length=1, max_length=6)


class AgentOutput(CamelModel):
    """The single result contract every model backend must ultimately satisfy."""

    answer: str
    used_tools: List[str] = Field(default_factory=list)
    actions: List[AgentAction] = Field(default_factory=list)
    ui: List[AgentUiBlock] = Field(default_factory=list)
    sections: List[AgentSection] = Field(default_factory=list, max_length=3)
    navigate_to: Optional[str] = None
    open_modal_id: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        """Serialise with camelCase keys, omitting absent optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Provider-neutral model context and replies
# ---------------------------------------------------------------------------
class ContextMessage(CamelModel):
    """One message of the conversation sent to a model backend."""

    role: Literal["system", "user", "model", "tool"]
    content: str = ""
    tool_calls: List[ToolCallRequest] = Field(default_factory=list)
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None


class ToolSpec(CamelModel):
    """Catalog entry describing one tool to the model backend."""

    name: str
    description: str
    parameters: Dict[str, Any]


class TerminalAnswer(CamelModel):
    """The model produced a reply without requesting tools."""

    kind: Literal["answer"] = "answer"
    text: str = ""
    structured: Optional[Dict[str, Any]] = None


class ToolCallBatch(CamelModel):
    """The model requested one or more tool calls."""

    kind: Literal["tool_calls"] = "tool_calls"
    calls: List[ToolCallRequest] = Field(default_factory=list)
    text: str = ""


ModelReply = Union[TerminalAnswer, ToolCallBatch]


class TextFragment(CamelModel):
    """A piece of visible reply text received while a response streams in."""

    text: str


class ToolCallFragment(CamelModel):
    """A partial tool call; fields accumulate per ``index`` in arrival order."""

    index: int
    id_fragment: Optional[str] = None
    name_fragment: Optional[str] = None
    argument_fragment: Optional[str] = None


StreamFragment = Union[TextFragment, ToolCallFragment]
