"""Current date/time lookup."""

from typing import (
    Any,
    Dict,
    Optional,
)
from zoneinfo import (
    ZoneInfo,
    ZoneInfoNotFoundError,
)

from pydantic import (
    BaseModel,
    Field,
)

from agentdesk.tools import (
    ToolContext,
    register_tool,
)


class DateTimeArgs(BaseModel):
    timezone: Optional[str] = Field(None, description="IANA timezone, e.g. Asia/Taipei")
    locale: Optional[str] = Field(None, description="BCP 47 locale, e.g. zh-TW")


@register_tool("getDateTime", args_model=DateTimeArgs)
def get_date_time(args: DateTimeArgs, ctx: ToolContext) -> Dict[str, Any]:
    """
    Get current date and time for a specific timezone. Use when user asks about time/date/deadline.
    """
    tz_name = (args.timezone or ctx.timezone).strip()
    try:
        zone = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {tz_name}") from exc

    now = ctx.now()
    local = now.astimezone(zone)
    return {
        "iso": now.isoformat().replace("+00:00", "Z"),
        "local": local.strftime("%A, %Y-%m-%d %H:%M:%S %Z"),
        "timezone": tz_name,
        "locale": args.locale or ctx.locale,
    }
