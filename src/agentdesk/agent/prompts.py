"""System instructions sent at the start of every conversation."""

from typing import Iterable

from agentdesk.agent.normalizer import (
    normalize_allowed_modals,
    normalize_allowed_routes,
)


def build_system_prompt(
    available_routes: Iterable[str], available_modals: Iterable[str], locale: str
) -> str:
    """Describe the agent's role, tool usage and the allow-listed routes / modal ids."""
    routes = ", ".join(normalize_allowed_routes(available_routes))
    modals = ", ".join(normalize_allowed_modals(available_modals))
    return " ".join(
        [
            "You are a practical AI agent for developers.",
            f"Answer in the language of locale {locale} unless the user asks otherwise.",
            "Use tools when they improve accuracy.",
            "When user asks to add finance data, use createFinanceItem with kind/category/amount.",
            "When user asks for finance distribution or trend visualization, "
            "call getFinanceOverview first.",
            f"Allowed website routes: {routes}.",
            f"Allowed modal ids: {modals}.",
            "When user clearly asks to go/open/navigate to a page, append one tag exactly like "
            "<<NAVIGATE:/route>> at the end of your answer.",
            "When user asks to open a modal/dialog/popup, append one tag like "
            "<<OPEN_MODAL:modal-id>>.",
            "Only use allowed routes.",
            "Only use allowed modal ids.",
        ]
    )


STRUCTURED_ANSWER_INSTRUCTIONS = """\
When you give your final answer (no more tool calls), respond with one JSON object and nothing
else:
{"answer": "<reply to user>",
 "actions": [{"type": "navigate", "to": "/route"}, {"type": "open_modal", "id": "modal-id"}],
 "ui": [{"type": "asset_donut", "title": "...", "items": [{"label": "...", "amount": 0}]},
        {"type": "finance_trend_line", "title": "...",
         "points": [{"label": "...", "assets": 0, "liabilities": 0}]}],
 "sections": [{"id": "...", "slot": "after-b", "title": "...", "blocks": [<ui blocks>]}]}
Only "answer" is required. Include "ui" when the user asks for a chart or data distribution, and
"sections" with slot "after-b" when the user asks to add a new page section, canvas or module.
"""
