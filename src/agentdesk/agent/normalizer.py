"""
Action / UI normalizer.

This module is the only place where model-originated strings are allowed to become navigation or UI
state.  Everything here is pure: no I/O, and given identical inputs (including the optional *clock*
used to synthesise section ids) the result is identical.  Values that fail validation are dropped
silently so that a slightly malformed model reply degrades instead of failing the whole response.
"""

from __future__ import annotations

import math
import re
import time
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Sequence,
)

from pydantic import BaseModel

from agentdesk.core.schema import (
    DEFAULT_AVAILABLE_MODALS,
    DEFAULT_AVAILABLE_ROUTES,
    FALLBACK_ANSWER,
    SECTION_SLOT,
    AgentAction,
    AgentOutput,
    AgentSection,
    AgentUiBlock,
    AssetDonutBlock,
    DonutSlice,
    FinanceTrendLineBlock,
    NavigateAction,
    OpenModalAction,
    TrendPoint,
)

MAX_DONUT_ITEMS = 12
MAX_TREND_POINTS = 60
MIN_TREND_POINTS = 2
MAX_SECTIONS = 3
MAX_SECTION_BLOCKS = 6
MAX_LABEL_LENGTH = 40
MAX_TITLE_LENGTH = 80
MAX_SECTION_ID_LENGTH = 48

_NAVIGATE_TAG = re.compile(r"<<NAVIGATE:([^>\n]+)>>", re.IGNORECASE)
_OPEN_MODAL_TAG = re.compile(r"<<OPEN_MODAL:([^>\n]+)>>", re.IGNORECASE)
_ROUTE_RE = re.compile(r"^/[A-Za-z0-9/_-]*$")
_MODAL_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_MULTI_SPACE = re.compile(r"\s{2,}")


# ---------------------------------------------------------------------------
# Scalar normalisers
# ---------------------------------------------------------------------------
def normalize_route(route: Any) -> str | None:
    """Return the trimmed route when it is a single-slash path of safe characters."""
    if not isinstance(route, str):
        return None
    trimmed = route.strip()
    if not trimmed.startswith("/") or trimmed.startswith("//"):
        return None
    if not _ROUTE_RE.match(trimmed):
        return None
    return trimmed


def normalize_modal_id(modal_id: Any) -> str | None:
    if not isinstance(modal_id, str):
        return None
    trimmed = modal_id.strip()
    if not _MODAL_RE.match(trimmed):
        return None
    return trimmed


def normalize_section_id(value: Any) -> str | None:
    """Lower-case *value* and collapse every run of unsafe characters into a single dash."""
    if not isinstance(value, str):
        return None
    lowered = value.strip().lower()
    collapsed = re.sub(r"[^a-z0-9_-]+", "-", lowered)
    collapsed = re.sub(r"-+", "-", collapsed).strip("-")
    # slicing can expose a trailing dash again
    collapsed = collapsed[:MAX_SECTION_ID_LENGTH].strip("-")
    return collapsed or None


def _normalize_text(value: Any, limit: int) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()[:limit].strip()
    return trimmed or None


def _finite_non_negative(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value


def normalize_allowed_routes(routes: Iterable[str] | None) -> List[str]:
    """Syntactically valid, de-duplicated routes; the built-in defaults when none survive."""
    normalized = _unique(normalize_route(route) for route in routes or [])
    return normalized or list(DEFAULT_AVAILABLE_ROUTES)


def normalize_allowed_modals(modals: Iterable[str] | None) -> List[str]:
    normalized = _unique(normalize_modal_id(modal_id) for modal_id in modals or [])
    return normalized or list(DEFAULT_AVAILABLE_MODALS)


def _unique(values: Iterable[str | None]) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values:
        if value and value not in seen:
            seen[value] = None
    return list(seen)


def _as_mapping(value: Any) -> Mapping[str, Any] | None:
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, Mapping):
        return value
    return None


# ---------------------------------------------------------------------------
# Inline control tags
# ---------------------------------------------------------------------------
def parse_action_tags(text: str) -> tuple[str, List[str], List[str]]:
    """
    Extract ``<<NAVIGATE:path>>`` / ``<<OPEN_MODAL:id>>`` tags from *text*.

    Returns the visible answer with every tag removed and whitespace runs collapsed, plus the
    syntactically valid routes and modal ids in order of appearance.  Stripping repeats until no
    tag is left, so removing one tag cannot splice a new one together.
    """
    routes: List[str] = []
    modal_ids: List[str] = []
    while True:
        routes.extend(
            route
            for route in (normalize_route(m.group(1)) for m in _NAVIGATE_TAG.finditer(text))
            if route
        )
        modal_ids.extend(
            modal_id
            for modal_id in (
                normalize_modal_id(m.group(1)) for m in _OPEN_MODAL_TAG.finditer(text)
            )
            if modal_id
        )
        stripped = _OPEN_MODAL_TAG.sub("", _NAVIGATE_TAG.sub("", text))
        if stripped == text:
            break
        text = stripped
    return _MULTI_SPACE.sub(" ", text).strip(), routes, modal_ids


# ---------------------------------------------------------------------------
# UI blocks and sections
# ---------------------------------------------------------------------------
def _normalize_donut(block: Mapping[str, Any]) -> AssetDonutBlock | None:
    items: List[DonutSlice] = []
    for raw in block.get("items") or []:
        item = _as_mapping(raw)
        if item is None:
            continue
        label = _normalize_text(item.get("label"), MAX_LABEL_LENGTH)
        amount = _finite_non_negative(item.get("amount"))
        if label is None or amount is None:
            continue
        items.append(DonutSlice(label=label, amount=amount))
    items = items[:MAX_DONUT_ITEMS]
    if not items:
        return None
    return AssetDonutBlock(title=_normalize_text(block.get("title"), MAX_TITLE_LENGTH), items=items)


def _normalize_trend(block: Mapping[str, Any]) -> FinanceTrendLineBlock | None:
    points: List[TrendPoint] = []
    for raw in block.get("points") or []:
        point = _as_mapping(raw)
        if point is None:
            continue
        label = _normalize_text(point.get("label"), MAX_LABEL_LENGTH)
        assets = _finite_non_negative(point.get("assets"))
        liabilities = _finite_non_negative(point.get("liabilities"))
        if label is None or assets is None or liabilities is None:
            continue
        points.append(TrendPoint(label=label, assets=assets, liabilities=liabilities))
    points = points[:MAX_TREND_POINTS]
    if len(points) < MIN_TREND_POINTS:
        return None
    return FinanceTrendLineBlock(
        title=_normalize_text(block.get("title"), MAX_TITLE_LENGTH), points=points
    )


def normalize_ui_blocks(blocks: Sequence[Any] | None) -> List[AgentUiBlock]:
    """Filter chart blocks item by item; blocks left without enough data are dropped."""
    normalized: List[AgentUiBlock] = []
    for raw in blocks or []:
        block = _as_mapping(raw)
        if block is None:
            continue
        kind = block.get("type")
        result: AgentUiBlock | None = None
        if kind == "asset_donut":
            result = _normalize_donut(block)
        elif kind == "finance_trend_line":
            result = _normalize_trend(block)
        if result is not None:
            normalized.append(result)
    return normalized


def normalize_sections(
    sections: Sequence[Any] | None, clock: Callable[[], float] | None = None
) -> List[AgentSection]:
    """Accept sections for the single supported slot, at most three of them."""
    clock = clock or time.time
    normalized: List[AgentSection] = []
    for index, raw in enumerate(sections or []):
        section = _as_mapping(raw)
        if section is None or section.get("slot") != SECTION_SLOT:
            continue
        blocks = normalize_ui_blocks(section.get("blocks"))[:MAX_SECTION_BLOCKS]
        if not blocks:
            continue
        section_id = normalize_section_id(section.get("id"))
        if section_id is None:
            section_id = f"section-c-{int(clock() * 1000)}-{index + 1}"
        normalized.append(
            AgentSection(
                id=section_id,
                title=_normalize_text(section.get("title"), MAX_TITLE_LENGTH),
                blocks=blocks,
            )
        )
    return normalized[:MAX_SECTIONS]


# ---------------------------------------------------------------------------
# Public entry point
# ---------------------------------------------------------------------------
def _action_values(actions: Sequence[Any] | None, kind: str, key: str) -> List[Any]:
    values = []
    for raw in actions or []:
        action = _as_mapping(raw)
        if action is not None and action.get("type") == kind:
            values.append(action.get(key))
    return values


def finalize(
    answer: str,
    used_tools: Iterable[str],
    allowed_routes: Iterable[str] | None,
    allowed_modals: Iterable[str] | None,
    actions: Sequence[Any] | None = None,
    ui: Sequence[Any] | None = None,
    sections: Sequence[Any] | None = None,
    navigate_to: str | None = None,
    open_modal_id: str | None = None,
    *,
    clock: Callable[[], float] | None = None,
) -> AgentOutput:
    """
    Sanitise a candidate reply into an :class:`AgentOutput`.

    Candidate routes and modal ids are merged from the explicit top-level fields, the structured
    *actions* and the inline tags of *answer*, in that priority order.  Only literal members of the
    allow-lists survive; the first survivor of each kind becomes ``navigate_to`` or
    ``open_modal_id``.
    """
    routes_allowed = set(normalize_allowed_routes(allowed_routes))
    modals_allowed = set(normalize_allowed_modals(allowed_modals))
    visible, tag_routes, tag_modal_ids = parse_action_tags(answer or "")

    candidate_routes = [
        normalize_route(navigate_to),
        *(normalize_route(v) for v in _action_values(actions, "navigate", "to")),
        *tag_routes,
    ]
    candidate_modals = [
        normalize_modal_id(open_modal_id),
        *(normalize_modal_id(v) for v in _action_values(actions, "open_modal", "id")),
        *tag_modal_ids,
    ]
    valid_routes = [route for route in _unique(candidate_routes) if route in routes_allowed]
    valid_modals = [modal for modal in _unique(candidate_modals) if modal in modals_allowed]

    normalized_actions: List[AgentAction] = [NavigateAction(to=route) for route in valid_routes]
    normalized_actions.extend(OpenModalAction(id=modal_id) for modal_id in valid_modals)

    return AgentOutput(
        answer=visible or FALLBACK_ANSWER,
        used_tools=_unique(used_tools),
        actions=normalized_actions,
        ui=normalize_ui_blocks(ui),
        sections=normalize_sections(sections, clock=clock),
        navigate_to=valid_routes[0] if valid_routes else None,
        open_modal_id=valid_modals[0] if valid_modals else None,
    )
