"""Dispatches tool calls registered in ``agentdesk.tools`` and wraps errors."""

import inspect
import json
import logging
from typing import (
    Any,
    Dict,
    Mapping,
)

from pydantic import ValidationError

from agentdesk.core.schema import ToolResult
from agentdesk.tools import (
    TOOL_REGISTRY,
    ToolContext,
)

logger = logging.getLogger(__name__)


class ToolExecutionError(RuntimeError):
    """Raised when a requested tool cannot run or fails."""


def decode_arguments(raw_arguments: str | None) -> Dict[str, Any]:
    """
    Best-effort decoding of the JSON argument text produced by the model.

    Anything that is not a JSON object (empty text, malformed JSON, arrays, scalars) decodes to an
    empty mapping; the tool's own argument model then reports what is missing.
    """
    if not raw_arguments or not raw_arguments.strip():
        return {}
    try:
        parsed = json.loads(raw_arguments)
    except json.JSONDecodeError:
        logger.warning("Malformed tool arguments, using {}: %r", raw_arguments[:200])
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Tool arguments are not a JSON object, using {}: %r", raw_arguments[:200])
        return {}
    return parsed


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ())) or "arguments"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)


async def invoke_tool(name: str, args: Mapping[str, Any], ctx: ToolContext) -> Any:
    """
    Look up *name* in the registry, validate *args* and invoke the tool.

    Raises
    ------
    ToolExecutionError
        If the tool is missing, its arguments are invalid or its invocation raises an exception.
    """
    tool = TOOL_REGISTRY.get(name)
    if tool is None:
        raise ToolExecutionError(f"Unknown tool: {name}")

    try:
        parsed = tool.args_model.model_validate(dict(args))
    except ValidationError as exc:
        raise ToolExecutionError(
            f"Invalid arguments for tool '{name}': {_describe_validation_error(exc)}"
        ) from exc

    logger.debug("Executing tool '%s' with args=%s", name, parsed)
    try:
        result = tool.fn(parsed, ctx)
        if inspect.isawaitable(result):
            result = await result
    except Exception as exc:  # noqa: BLE001
        logger.warning("Tool '%s' failed: %s", name, exc)
        raise ToolExecutionError(str(exc) or f"Tool '{name}' failed") from exc
    return result


async def execute_tool(name: str, raw_arguments: str | None, ctx: ToolContext) -> ToolResult:
    """
    Run one tool call and always return a result mapping.

    Failures never propagate: they come back as ``{"error": message}`` so the model can read the
    message on its next turn and correct itself.
    """
    try:
        result = await invoke_tool(name, decode_arguments(raw_arguments), ctx)
    except ToolExecutionError as exc:
        return {"error": str(exc)}
    if isinstance(result, dict):
        return result
    return {"result": result}
