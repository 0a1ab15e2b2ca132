"""
HTTP client for the Finance Data Service.

The service owns the finance items and the dashboard summary; tools reach it exclusively through
this client:

- ``POST /items {kind, category, amount}`` -> ``{item}``
- ``GET /summary`` -> ``{totals, assets, liabilities}``
- ``GET /items?limit=n`` -> ``{items}``

Failures are raised as :class:`FinanceServiceError` carrying the service's status code and error
text verbatim.  Retries are not attempted here.
"""

from __future__ import annotations

import logging
from typing import (
    Any,
    Dict,
    List,
)

import httpx

from agentdesk.config import settings

logger = logging.getLogger(__name__)


class FinanceServiceError(RuntimeError):
    """Raised when the Finance Data Service is unreachable or answers with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(payload, dict) and isinstance(payload.get("error"), str):
        return payload["error"]
    return response.text.strip()


class FinanceClient:
    """Thin async wrapper around the Finance Data Service REST API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "FinanceClient":
        return cls(settings.FINANCE_API_BASE_URL, timeout=settings.FINANCE_API_TIMEOUT)

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.HTTPError as exc:
                logger.error("Finance service request %s %s failed: %s", method, url, exc)
                raise FinanceServiceError(f"Finance service unreachable: {exc}") from exc

        if response.is_error:
            message = _error_text(response)
            logger.warning(
                "Finance service %s %s returned %d: %s", method, url, response.status_code, message
            )
            raise FinanceServiceError(
                f"Finance service returned {response.status_code}: {message}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise FinanceServiceError(
                "Finance service returned invalid JSON", status_code=response.status_code
            ) from exc
        if not isinstance(payload, dict):
            raise FinanceServiceError(
                "Finance service returned an unexpected payload", status_code=response.status_code
            )
        return payload

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    async def create_item(self, kind: str, category: str, amount: float) -> Dict[str, Any]:
        """Create one finance item and return it."""
        payload = await self._request(
            "POST", "/items", json={"kind": kind, "category": category, "amount": amount}
        )
        return payload.get("item") or {}

    async def get_summary(self) -> Dict[str, Any]:
        """Return ``{totals, assets, liabilities}``."""
        return await self._request("GET", "/summary")

    async def list_items(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Return the most recent items, newest first."""
        payload = await self._request("GET", "/items", params={"limit": limit})
        items = payload.get("items")
        return items if isinstance(items, list) else []
