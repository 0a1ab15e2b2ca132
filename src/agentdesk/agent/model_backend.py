"""
Model backend interface for agentdesk.

This module is the only place that *directly* calls an LLM.  Everything else (orchestration loop,
tools, normalizer) stays provider-agnostic and talks to a :class:`BaseModelBackend`:

- ``generate(context, catalog)`` returns one complete reply, either a :class:`TerminalAnswer` or a
  :class:`ToolCallBatch`;
- ``stream(context, catalog)`` yields :class:`TextFragment` / :class:`ToolCallFragment` pieces of
  the same reply as they arrive.

We support two back-ends out of the box:

1. **OpenAI** Chat Completions with native function calling.
2. **Anthropic** Messages with tool use; the final answer is requested as an AgentOutput-shaped JSON
   object and falls back to free text when the model does not comply.

Additional providers can be added by subclassing :class:`BaseModelBackend` and registering via
:func:`register_backend`.
"""

import json
import logging
import re
from abc import (
    ABC,
    abstractmethod,
)
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Type,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
)
from pydantic.alias_generators import to_camel

from agentdesk.agent.prompts import STRUCTURED_ANSWER_INSTRUCTIONS
from agentdesk.agent.tool_executor import decode_arguments
from agentdesk.config import settings
from agentdesk.core.schema import (
    ContextMessage,
    ModelReply,
    StreamFragment,
    TerminalAnswer,
    TextFragment,
    ToolCallBatch,
    ToolCallFragment,
    ToolCallRequest,
    ToolSpec,
)

logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """The deployment is missing credentials or names an unknown backend."""


class ModelBackendError(RuntimeError):
    """The model provider failed to answer."""


# ---------------------------------------------------------------------------
# Registry helpers
# ---------------------------------------------------------------------------
_BACKEND_REGISTRY: dict[str, Type["BaseModelBackend"]] = {}


def register_backend(name: str) -> Callable:
    """Decorator to register a backend class under *name*."""

    def wrapper(cls: Type["BaseModelBackend"]) -> Type["BaseModelBackend"]:
        _BACKEND_REGISTRY[name] = cls
        return cls

    return wrapper


def resolve_backend_name(name: str | None = None) -> str:
    """
    Pick the backend to use.

    Fallback order:
    1. *name* arg
    2. ``settings.MODEL_BACKEND``
    3. whichever provider has an API key configured, OpenAI first
    """
    target = name or settings.MODEL_BACKEND
    if target:
        return target.lower()
    if settings.OPENAI_API_KEY:
        return "openai"
    if settings.ANTHROPIC_API_KEY:
        return "anthropic"
    raise ConfigurationError(
        "Missing API key. Please set OPENAI_API_KEY or ANTHROPIC_API_KEY in .env"
    )


def load_backend(name: str | None = None) -> "BaseModelBackend":
    """Factory that returns an instantiated backend; raises :class:`ConfigurationError`."""
    target = resolve_backend_name(name)
    cls = _BACKEND_REGISTRY.get(target)
    if cls is None:
        raise ConfigurationError(f"Model backend '{target}' is not registered.")
    return cls()


# ---------------------------------------------------------------------------
# Base class
# ---------------------------------------------------------------------------
class BaseModelBackend(ABC):
    """Abstract backend that turns a conversation into a terminal answer or tool-call requests."""

    name: str = "base"

    @abstractmethod
    async def generate(
        self, context: Sequence[ContextMessage], catalog: Sequence[ToolSpec]
    ) -> ModelReply:
        """Return the complete reply for *context*."""

    @abstractmethod
    def stream(
        self, context: Sequence[ContextMessage], catalog: Sequence[ToolSpec]
    ) -> AsyncIterator[StreamFragment]:
        """Yield the reply for *context* fragment by fragment."""


# ---------------------------------------------------------------------------
# Structured answers
# ---------------------------------------------------------------------------
class StructuredAnswer(BaseModel):
    """Loose shape of an AgentOutput-like JSON answer; the normalizer does the real validation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    answer: str
    actions: List[Any] = Field(default_factory=list)
    ui: List[Any] = Field(default_factory=list)
    sections: List[Any] = Field(default_factory=list)
    navigate_to: Optional[str] = None
    open_modal_id: Optional[str] = None


def _sanitize_json_string(content: str) -> str:
    """Clean up JSON strings returned by LLMs."""
    # Strip markdown code fences if present
    if "```" in content:
        match = re.search(r"```(?:json)?\s*(.+?)```", content, re.DOTALL)
        if match:
            content = match.group(1).strip()

    # Remove control characters except whitespace
    content = "".join(ch for ch in content if ch >= " " or ch in "\n\r\t")

    # Keep only the outermost object, skipping braces inside strings
    open_idx = content.find("{")
    if open_idx < 0:
        return content
    depth = 0
    in_string = False
    escaped = False
    for i in range(open_idx, len(content)):
        ch = content[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return content[open_idx : i + 1]
    return content


def parse_structured_answer(content: str) -> Dict[str, Any] | None:
    """Return the structured answer fields, or *None* when *content* is not such an object."""
    if "{" not in content:
        return None
    try:
        parsed = StructuredAnswer.model_validate_json(_sanitize_json_string(content))
    except ValidationError as exc:
        logger.debug("Answer is not a structured object: %s", exc)
        return None
    if not parsed.answer.strip():
        return None
    return parsed.model_dump()


# ---------------------------------------------------------------------------
# Concrete backends
# ---------------------------------------------------------------------------
@register_backend("openai")
class OpenAIBackend(BaseModelBackend):
    """OpenAI Chat Completions backend; one request per orchestration turn."""

    name = "openai"

    def __init__(self, client: Any | None = None, model: str | None = None) -> None:
        if client is None:
            if not settings.OPENAI_API_KEY:
                raise ConfigurationError("Missing API key. Please set OPENAI_API_KEY in .env")
            import openai  # pylint: disable=import-outside-toplevel

            client = openai.AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY, base_url=settings.OPENAI_BASE_URL
            )
        self._client = client
        self._model = model or settings.OPENAI_MODEL

    @staticmethod
    def _messages(context: Sequence[ContextMessage]) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        for message in context:
            if message.role == "model":
                entry: Dict[str, Any] = {"role": "assistant", "content": message.content}
                if message.tool_calls:
                    entry["tool_calls"] = [
                        {
                            "id": call.call_id,
                            "type": "function",
                            "function": {"name": call.tool_name, "arguments": call.raw_arguments},
                        }
                        for call in message.tool_calls
                    ]
                messages.append(entry)
            elif message.role == "tool":
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": message.tool_call_id,
                        "content": message.content,
                    }
                )
            else:
                messages.append({"role": message.role, "content": message.content})
        return messages

    @staticmethod
    def _tools(catalog: Sequence[ToolSpec]) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": spec.name,
                    "description": spec.description,
                    "parameters": spec.parameters,
                },
            }
            for spec in catalog
        ]

    async def generate(
        self, context: Sequence[ContextMessage], catalog: Sequence[ToolSpec]
    ) -> ModelReply:
        try:
            completion = await self._client.chat.completions.create(
                model=self._model,
                messages=self._messages(context),
                tools=self._tools(catalog),
                tool_choice="auto",
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("OpenAI request error: %s", exc)
            raise ModelBackendError(f"Error calling OpenAI: {exc}") from exc

        if not completion.choices:
            return TerminalAnswer(text="")
        message = completion.choices[0].message
        calls = [
            ToolCallRequest(
                call_id=call.id,
                tool_name=call.function.name,
                raw_arguments=call.function.arguments or "",
            )
            for call in message.tool_calls or []
            if getattr(call, "type", "function") == "function"
        ]
        logger.debug("OpenAI reply: %d tool call(s), content=%r", len(calls), message.content)
        if calls:
            return ToolCallBatch(calls=calls, text=message.content or "")
        return TerminalAnswer(text=message.content or "")

    async def stream(
        self, context: Sequence[ContextMessage], catalog: Sequence[ToolSpec]
    ) -> AsyncIterator[StreamFragment]:
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=self._messages(context),
                tools=self._tools(catalog),
                tool_choice="auto",
                stream=True,
            )
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    yield TextFragment(text=delta.content)
                for call in delta.tool_calls or []:
                    function = call.function
                    yield ToolCallFragment(
                        index=call.index,
                        id_fragment=call.id,
                        name_fragment=function.name if function else None,
                        argument_fragment=function.arguments if function else None,
                    )
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("OpenAI stream error: %s", exc)
            raise ModelBackendError(f"Error streaming from OpenAI: {exc}") from exc


@register_backend("anthropic")
class AnthropicBackend(BaseModelBackend):
    """Anthropic Messages backend with tool use and JSON-shaped final answers."""

    name = "anthropic"

    def __init__(
        self, client: Any | None = None, model: str | None = None, structured: bool = True
    ) -> None:
        if client is None:
            if not settings.ANTHROPIC_API_KEY:
                raise ConfigurationError("Missing API key. Please set ANTHROPIC_API_KEY in .env")
            import anthropic  # pylint: disable=import-outside-toplevel

            client = anthropic.AsyncAnthropic(api_key=settings.ANTHROPIC_API_KEY)
        self._client = client
        self._model = model or settings.ANTHROPIC_MODEL
        self._structured = structured

    @staticmethod
    def _system(context: Sequence[ContextMessage], suffix: str = "") -> str:
        parts = [message.content for message in context if message.role == "system"]
        if suffix:
            parts.append(suffix)
        return "\n\n".join(parts)

    @staticmethod
    def _messages(context: Sequence[ContextMessage]) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        for message in context:
            if message.role == "system":
                continue
            if message.role == "model":
                blocks: List[Dict[str, Any]] = []
                if message.content.strip():
                    blocks.append({"type": "text", "text": message.content})
                blocks.extend(
                    {
                        "type": "tool_use",
                        "id": call.call_id,
                        "name": call.tool_name,
                        "input": decode_arguments(call.raw_arguments),
                    }
                    for call in message.tool_calls
                )
                messages.append({"role": "assistant", "content": blocks or message.content})
            elif message.role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": message.tool_call_id,
                    "content": message.content,
                }
                # consecutive results belong to one user turn
                previous = messages[-1] if messages else None
                if (
                    previous is not None
                    and previous["role"] == "user"
                    and isinstance(previous["content"], list)
                ):
                    previous["content"].append(block)
                else:
                    messages.append({"role": "user", "content": [block]})
            else:
                messages.append({"role": "user", "content": message.content})
        return messages

    @staticmethod
    def _tools(catalog: Sequence[ToolSpec]) -> List[Dict[str, Any]]:
        return [
            {"name": spec.name, "description": spec.description, "input_schema": spec.parameters}
            for spec in catalog
        ]

    async def generate(
        self, context: Sequence[ContextMessage], catalog: Sequence[ToolSpec]
    ) -> ModelReply:
        suffix = STRUCTURED_ANSWER_INSTRUCTIONS if self._structured else ""
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=settings.ANTHROPIC_MAX_TOKENS,
                system=self._system(context, suffix),
                messages=self._messages(context),
                tools=self._tools(catalog),
                temperature=0.2,
            )
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Anthropic request error: %s", exc)
            raise ModelBackendError(f"Error calling Anthropic: {exc}") from exc

        text = "".join(block.text for block in response.content if block.type == "text")
        calls = [
            ToolCallRequest(
                call_id=block.id,
                tool_name=block.name,
                raw_arguments=json.dumps(block.input, ensure_ascii=False),
            )
            for block in response.content
            if block.type == "tool_use"
        ]
        logger.debug("Anthropic reply: %d tool call(s), text=%r", len(calls), text)
        if calls:
            return ToolCallBatch(calls=calls, text=text)

        structured = parse_structured_answer(text) if self._structured else None
        if structured is not None:
            return TerminalAnswer(text=structured["answer"], structured=structured)
        return TerminalAnswer(text=text)

    async def stream(
        self, context: Sequence[ContextMessage], catalog: Sequence[ToolSpec]
    ) -> AsyncIterator[StreamFragment]:
        # Streamed text is shown as it arrives, so no JSON-shaped answer is requested here.
        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=settings.ANTHROPIC_MAX_TOKENS,
                system=self._system(context),
                messages=self._messages(context),
                tools=self._tools(catalog),
                temperature=0.2,
                stream=True,
            )
            async for event in response:
                if event.type == "content_block_start" and event.content_block.type == "tool_use":
                    yield ToolCallFragment(
                        index=event.index,
                        id_fragment=event.content_block.id,
                        name_fragment=event.content_block.name,
                    )
                elif event.type == "content_block_delta":
                    if event.delta.type == "text_delta":
                        yield TextFragment(text=event.delta.text)
                    elif event.delta.type == "input_json_delta":
                        yield ToolCallFragment(
                            index=event.index, argument_fragment=event.delta.partial_json
                        )
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Anthropic stream error: %s", exc)
            raise ModelBackendError(f"Error streaming from Anthropic: {exc}") from exc
