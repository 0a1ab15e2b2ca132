"""
Optional post-processing stage: derive chart blocks from keywords in the answer.

Runs only when the model did not supply UI blocks itself and a finance overview was fetched during
the run.  The blocks it produces are raw candidates; they still go through the normalizer.
"""

from typing import (
    Any,
    Dict,
    List,
    Sequence,
    Tuple,
)

from agentdesk.core.schema import ToolResult

OVERVIEW_TOOL = "getFinanceOverview"

DISTRIBUTION_KEYWORDS = (
    "chart",
    "distribution",
    "breakdown",
    "allocation",
    "donut",
    "pie",
    "圖",
    "分布",
    "分佈",
    "占比",
    "佔比",
)
TREND_KEYWORDS = ("trend", "over time", "趨勢", "走勢")


def _latest_overview(tool_results: Sequence[Tuple[str, ToolResult]]) -> Dict[str, Any] | None:
    for name, result in reversed(tool_results):
        if name == OVERVIEW_TOOL and "error" not in result:
            return result
    return None


def infer_ui_blocks(
    answer: str, tool_results: Sequence[Tuple[str, ToolResult]]
) -> List[Dict[str, Any]]:
    """Return raw ``asset_donut`` / ``finance_trend_line`` candidates for *answer*."""
    overview = _latest_overview(tool_results)
    if overview is None:
        return []

    lowered = answer.lower()
    blocks: List[Dict[str, Any]] = []
    if any(keyword in lowered for keyword in DISTRIBUTION_KEYWORDS):
        summary = overview.get("summary") or {}
        items = [
            {"label": entry.get("label"), "amount": entry.get("amount")}
            for entry in summary.get("assets") or []
            if isinstance(entry, dict)
        ]
        blocks.append({"type": "asset_donut", "title": "Asset distribution", "items": items})
    if any(keyword in lowered for keyword in TREND_KEYWORDS):
        blocks.append(
            {
                "type": "finance_trend_line",
                "title": "Assets vs liabilities",
                "points": list(overview.get("trend") or []),
            }
        )
    return blocks
