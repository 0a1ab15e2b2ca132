"""Shared fakes: a scripted model backend and an in-memory Finance Data Service."""

import json
from datetime import (
    datetime,
    timezone,
)
from typing import (
    Any,
    Dict,
    List,
)

import httpx
import pytest

from agentdesk.agent.model_backend import BaseModelBackend
from agentdesk.core.schema import TerminalAnswer
from agentdesk.finance.client import FinanceClient

FINANCE_BASE_URL = "http://finance.test/api/data"
FIXED_NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


class ScriptedBackend(BaseModelBackend):
    """Replays prepared replies (``generate``) or fragment lists (``stream``), one per turn."""

    name = "scripted"

    def __init__(self, replies=None, streams=None) -> None:
        self.replies = list(replies or [])
        self.streams = list(streams or [])
        self.contexts: List[list] = []
        self.catalogs: List[list] = []

    async def generate(self, context, catalog):
        self.contexts.append(list(context))
        self.catalogs.append(list(catalog))
        if not self.replies:
            return TerminalAnswer(text="")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def stream(self, context, catalog):
        self.contexts.append(list(context))
        self.catalogs.append(list(catalog))
        fragments = self.streams.pop(0) if self.streams else []
        for fragment in fragments:
            if isinstance(fragment, Exception):
                raise fragment
            yield fragment


class FakeFinanceService:
    """Just enough of the Finance Data Service for the finance tools."""

    def __init__(self) -> None:
        self.items: List[Dict[str, Any]] = [
            {
                "id": "i2",
                "kind": "liability",
                "category": "Loan",
                "amount": 100,
                "createdAt": "2026-03-10T08:00:00.000Z",
            },
            {
                "id": "i1",
                "kind": "asset",
                "category": "Stocks",
                "amount": 500,
                "createdAt": "2026-03-09T08:00:00.000Z",
            },
        ]
        self.summary = {
            "totals": {"assets": 1500, "liabilities": 300, "netWorth": 1200},
            "assets": [
                {"label": "Cash", "amount": 1000, "tone": "green", "width": 67},
                {"label": "Stocks", "amount": 500, "tone": "blue", "width": 33},
            ],
            "liabilities": [{"label": "Loan", "amount": 300, "tone": "red", "width": 100}],
        }
        self.requests: List[httpx.Request] = []
        self.fail_with: tuple[int, Dict[str, Any]] | None = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            status, body = self.fail_with
            return httpx.Response(status, json=body)
        if request.url.path.endswith("/summary"):
            return httpx.Response(200, json=self.summary)
        if request.url.path.endswith("/items") and request.method == "GET":
            return httpx.Response(200, json={"items": self.items})
        if request.url.path.endswith("/items") and request.method == "POST":
            body = json.loads(request.content)
            item = {
                "id": f"i{len(self.items) + 1}",
                **body,
                "createdAt": "2026-03-10T12:00:00.000Z",
            }
            self.items.insert(0, item)
            return httpx.Response(201, json={"item": item})
        return httpx.Response(404, json={"error": "Not found"})

    def client(self) -> FinanceClient:
        return FinanceClient(FINANCE_BASE_URL, transport=httpx.MockTransport(self.handler))


@pytest.fixture
def finance_service() -> FakeFinanceService:
    return FakeFinanceService()


@pytest.fixture
def scripted_backend():
    """Factory for :class:`ScriptedBackend` instances."""
    return ScriptedBackend


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW
