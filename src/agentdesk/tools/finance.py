"""Finance tools backed by the Finance Data Service."""

import asyncio
import logging
import math
from datetime import (
    date,
    datetime,
    timedelta,
)
from typing import (
    Any,
    Dict,
    List,
    Literal,
    Mapping,
    Sequence,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)

from agentdesk.tools import (
    ToolContext,
    register_tool,
)

logger = logging.getLogger(__name__)

RECENT_ITEMS_LIMIT = 200


class FinanceOverviewArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    range_days: int = Field(7, ge=3, le=30, alias="rangeDays", description="Days of trend data")


class CreateFinanceItemArgs(BaseModel):
    kind: Literal["asset", "liability"]
    category: str = Field(..., description="Category label, e.g. MyFinances")
    amount: float = Field(..., description="Non-negative amount")


def _parse_created_at(value: Any) -> date | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
    except ValueError:
        return None


def _amount(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        return 0.0
    return float(value)


def build_trend(
    totals: Mapping[str, Any], items: Sequence[Mapping[str, Any]], range_days: int, today: date
) -> List[Dict[str, Any]]:
    """
    Daily assets/liabilities points for the last *range_days* days, oldest first.

    The last point equals the current *totals*; each earlier point removes the items created after
    that day.  Items without a parsable ``createdAt`` only count towards the current totals.
    """
    current = {
        "asset": _amount(totals.get("assets")),
        "liability": _amount(totals.get("liabilities")),
    }
    points: List[Dict[str, Any]] = []
    for offset in range(range_days - 1, -1, -1):
        day = today - timedelta(days=offset)
        later = {"asset": 0.0, "liability": 0.0}
        for item in items:
            created = _parse_created_at(item.get("createdAt"))
            kind = item.get("kind")
            if created is not None and created > day and kind in later:
                later[kind] += _amount(item.get("amount"))
        points.append(
            {
                "label": day.strftime("%m-%d"),
                "assets": round(max(current["asset"] - later["asset"], 0.0), 2),
                "liabilities": round(max(current["liability"] - later["liability"], 0.0), 2),
            }
        )
    return points


@register_tool("getFinanceOverview", args_model=FinanceOverviewArgs)
async def get_finance_overview(args: FinanceOverviewArgs, ctx: ToolContext) -> Dict[str, Any]:
    """
    Get finance summary and recent asset/liability trend points. Use for chart, distribution, trend,
    breakdown questions.
    """
    summary, items = await asyncio.gather(
        ctx.finance.get_summary(), ctx.finance.list_items(limit=RECENT_ITEMS_LIMIT)
    )
    totals = summary.get("totals") or {}
    trend = build_trend(totals, items, args.range_days, ctx.now().date())
    logger.debug("Finance overview: %d items, %d trend points", len(items), len(trend))
    return {"summary": summary, "trend": trend, "baseUrl": ctx.finance.base_url}


@register_tool("createFinanceItem", args_model=CreateFinanceItemArgs)
async def create_finance_item(args: CreateFinanceItemArgs, ctx: ToolContext) -> Dict[str, Any]:
    """
    Create a finance item in the website data store. Use when user asks to add asset/liability data.
    """
    if not math.isfinite(args.amount) or args.amount < 0:
        raise ValueError("amount must be a finite, non-negative number")
    category = args.category.strip()
    if not category:
        raise ValueError("category is required")
    item = await ctx.finance.create_item(args.kind, category, args.amount)
    return {"item": item, "baseUrl": ctx.finance.base_url}
