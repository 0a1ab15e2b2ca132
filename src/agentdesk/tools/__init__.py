"""
Tool registry for agentdesk.

This module provides a decorator to register tools and a registry to look them up by name.  Every
tool declares a pydantic model for its arguments; the model doubles as the JSON schema advertised to
the model backend and as the validator applied before the tool runs.
"""

import logging
from dataclasses import (
    dataclass,
    field,
)
from datetime import (
    datetime,
    timezone,
)
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Type,
)

from pydantic import BaseModel

from agentdesk.config import settings
from agentdesk.core.schema import ToolSpec
from agentdesk.finance.client import FinanceClient

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """Per-request values a tool may rely on besides its own arguments."""

    timezone: str = settings.DEFAULT_TIMEZONE
    locale: str = settings.DEFAULT_LOCALE
    finance: FinanceClient = field(default_factory=FinanceClient.from_settings)
    now: Callable[[], datetime] = field(default=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class RegisteredTool:
    """A tool function together with its argument model and description."""

    name: str
    fn: Callable[..., Any]
    args_model: Type[BaseModel]
    description: str


TOOL_REGISTRY: Dict[str, RegisteredTool] = {}
"""Global registry of tool functions."""


def register_tool(
    name: str, args_model: Type[BaseModel], description: str | None = None
) -> Callable:
    """
    Register a tool function under *name*.

    The function is called as ``fn(args, ctx)`` where *args* is an instance of *args_model* and
    *ctx* is the :class:`ToolContext` of the running request.  It may be a plain function or a
    coroutine function and must return a JSON-serialisable mapping.  Raise an exception with a
    descriptive message to report a failure back to the model.

        @register_tool("calculate", args_model=CalculateArgs)
        def calculate(args, ctx):
            ...

    Parameters
    ----------
    name: str
        The name of the tool, as seen by the model.  Must be unique.
    args_model:
        Pydantic model validating the decoded JSON arguments.
    description:
        Catalog description; defaults to the function docstring.

    Raises
    ------
    ValueError
        If a function with the same name is already registered.
    """
    if name in TOOL_REGISTRY:
        raise ValueError(f"Tool '{name}' is already registered.")
    logger.debug("Registering tool '%s'", name)

    def wrapper(fn: Callable) -> Callable:
        TOOL_REGISTRY[name] = RegisteredTool(
            name=name,
            fn=fn,
            args_model=args_model,
            description=(description or fn.__doc__ or "").strip(),
        )
        return fn

    return wrapper


def get_tool_schemas() -> List[ToolSpec]:
    """Describe every registered tool for the model backend."""
    return [
        ToolSpec(
            name=name,
            description=tool.description,
            parameters=tool.args_model.model_json_schema(),
        )
        for name, tool in TOOL_REGISTRY.items()
    ]


# Importing the tool modules registers them.
from agentdesk.tools import (  # noqa: E402  pylint: disable=wrong-import-position
    calculator,
    clock,
    faq,
    finance,
)

__all__ = [
    "TOOL_REGISTRY",
    "RegisteredTool",
    "ToolContext",
    "calculator",
    "clock",
    "faq",
    "finance",
    "get_tool_schemas",
    "register_tool",
]
