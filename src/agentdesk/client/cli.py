"""CLI client for the agentdesk streaming chat API."""

from __future__ import annotations

import logging
import time
import uuid
from typing import (
    Any,
    Dict,
    Iterable,
    Optional,
    Tuple,
)

import httpx

from agentdesk.common import (
    AnsiColors,
    colored_print,
)
from agentdesk.config import settings
from agentdesk.core.schema import (
    AssetDonutBlock,
    FinanceTrendLineBlock,
)
from agentdesk.stream.reader import (
    iter_agent_stream,
    merge_actions,
)

logger = logging.getLogger(__name__)

STREAM_ENDPOINT = "/api/agent/chat/stream"


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------
def _describe_block(block: AssetDonutBlock | FinanceTrendLineBlock) -> str:
    if isinstance(block, AssetDonutBlock):
        slices = ", ".join(f"{item.label} {item.amount:g}" for item in block.items)
        return f"[donut] {block.title or 'Assets'}: {slices}"
    first, last = block.points[0], block.points[-1]
    return (
        f"[trend] {block.title or 'Trend'}: {first.label} {first.assets - first.liabilities:g} -> "
        f"{last.label} {last.assets - last.liabilities:g} (net)"
    )


def render_stream(chunks: Iterable[str]) -> Optional[Dict[str, Any]]:
    """
    Print a streamed reply as it arrives.

    Returns:
        The terminal ``done`` payload, or *None* when the stream ended with an error or early.
    """
    printed_text = False
    for event in iter_agent_stream(chunks):
        if event.type == "text_delta":
            colored_print(event.delta, AnsiColors.YELLOW, end="", flush=True)
            printed_text = True
        elif event.type == "ui" and event.block is not None:
            colored_print(f"\n{_describe_block(event.block)}", AnsiColors.GREEN)
        elif event.type == "section" and event.section is not None:
            for block in event.section.blocks:
                colored_print(f"\n<{event.section.id}> {_describe_block(block)}", AnsiColors.GREEN)
        elif event.type == "error":
            colored_print(f"\n⚠️ {event.error}", AnsiColors.RED)
            return None
        elif event.type == "done" and event.response is not None:
            if not printed_text:
                colored_print(event.response.get("answer", ""), AnsiColors.YELLOW, end="")
            print()
            for action in merge_actions(event.response):
                target = action.to if action.type == "navigate" else action.id
                colored_print(f"-> {action.type} {target}", AnsiColors.BLUE)
            tools = event.response.get("usedTools") or []
            if tools:
                colored_print(f"(tools: {', '.join(tools)})", AnsiColors.GREY)
            return event.response
    return None


# ---------------------------------------------------------------------------
# CLI Client
# ---------------------------------------------------------------------------
def get_user_message() -> Tuple[str, bool]:
    """
    Get a message from the user via standard input.

    Returns:
        Tuple of (user_input, success_flag)
        The success_flag is False if input couldn't be read (e.g., Ctrl+C)
    """
    try:
        return input().strip(), True
    except (EOFError, KeyboardInterrupt):
        return "", False


def _error_message(response: httpx.Response) -> str:
    try:
        return f"API error ({response.status_code}): {response.json()['error']}"
    except (ValueError, KeyError, TypeError):
        return f"API error ({response.status_code})"


def stream_chat(session_id: str, message: str, max_retries: int = 5) -> Optional[Dict[str, Any]]:
    """POST one message to the streaming endpoint and render the reply as it arrives."""
    api_url = f"http://localhost:{settings.API_PORT}{STREAM_ENDPOINT}"
    payload = {"sessionId": session_id, "message": message}

    for attempt in range(max_retries):
        try:
            with httpx.Client(timeout=60.0) as client:
                with client.stream("POST", api_url, json=payload) as response:
                    if response.status_code != 200:
                        response.read()
                        colored_print(_error_message(response), AnsiColors.RED)
                        return None
                    return render_stream(response.iter_text())
        except httpx.ConnectError:
            if attempt == max_retries - 1:
                break
            retry_delay = 0.5 * (2**attempt)  # exponential backoff: 0.5s, 1s, 2s, 4s...
            logger.info(
                "API not ready yet, retrying in %.1f seconds (attempt %d/%d)...",
                retry_delay,
                attempt + 1,
                max_retries,
            )
            time.sleep(retry_delay)
        except httpx.HTTPError as exc:
            logger.error("API request error: %s", exc)
            colored_print(f"Error connecting to API: {exc}", AnsiColors.RED)
            return None

    colored_print(f"Failed to connect to API after {max_retries} attempts", AnsiColors.RED)
    return None


def run_cli() -> None:
    """Run the CLI client that communicates with the API."""
    session_id = f"cli-{uuid.uuid4().hex[:12]}"

    colored_print(
        "\n🧭 agentdesk shell - type 'exit' or 'quit' (or Ctrl+C) to exit", AnsiColors.GREEN
    )
    while True:
        colored_print("\n🧑 You: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break
        if not user_msg:
            continue
        if user_msg.lower() in {"exit", "quit"}:
            break

        colored_print("🤖 ", AnsiColors.YELLOW, end="")
        stream_chat(session_id, user_msg)


if __name__ == "__main__":
    run_cli()
