"""Local FAQ lookup for setup and architecture questions."""

from typing import (
    Dict,
    Mapping,
)

from pydantic import BaseModel

from agentdesk.tools import (
    ToolContext,
    register_tool,
)

FAQ_SOURCE = "local-faq"

FAQ_ENTRIES: Mapping[str, str] = {
    "tech stack": (
        "Backend uses Python + FastAPI, with a provider-agnostic tool-calling agent loop."
    ),
    "deploy": "You can containerize and deploy to Cloud Run, Render, Fly.io, or Railway.",
    "auth": "Start with API key auth at edge and move to OAuth/JWT for user-level access.",
}


class FaqArgs(BaseModel):
    topic: str


@register_tool("lookupFaq", args_model=FaqArgs)
def lookup_faq(
    args: FaqArgs, ctx: ToolContext  # pylint: disable=unused-argument
) -> Dict[str, str]:
    """Lookup known project FAQ entries for setup or architecture questions."""
    hit = FAQ_ENTRIES.get(args.topic.strip().lower())
    if hit is None:
        return {
            "topic": args.topic,
            "answer": "No exact FAQ hit. Ask more specific keywords.",
            "source": FAQ_SOURCE,
        }
    return {"topic": args.topic, "answer": hit, "source": FAQ_SOURCE}
