"""CLI client for the agentflow API."""

from __future__ import annotations

import json
import logging
import time
from typing import (
    Any,
    Dict,
    Iterator,
    Tuple,
)

import httpx

from agentflow.common import (
    AnsiColors,
    colored_print,
)
from agentflow.config import settings

logger = logging.getLogger(__name__)


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
    import signal  # pylint: disable=import-outside-toplevel

    # Ensure SIGINT breaks out of slow system calls such as read()
    signal.siginterrupt(signal.SIGINT, True)

    try:
        user_input = input().strip()
        return user_input, True
    except (EOFError, KeyboardInterrupt):
        return "", False


def iter_sse(lines: Iterator[str]) -> Iterator[Tuple[str, Dict[str, Any]]]:
    """Parse ``event:``/``data:`` frames into ``(event, data)`` pairs."""
    event, data = "message", []
    for line in lines:
        if not line:
            if data:
                yield event, json.loads("\n".join(data))
            event, data = "message", []
        elif line.startswith("event:"):
            event = line[6:].strip()
        elif line.startswith("data:"):
            data.append(line[5:].lstrip())
    if data:
        yield event, json.loads("\n".join(data))


def stream_query(
    message: str, user_id: str, thread_id: str | None, max_retries: int = 5
) -> Iterator[Tuple[str, Dict[str, Any]]]:
    """POST *message* to ``/query`` and yield its events, retrying while the API starts."""
    api_url = f"http://localhost:{settings.API_PORT}/query"
    payload = {"message": message, "user_id": user_id, "thread_id": thread_id}

    for attempt in range(max_retries):
        try:
            with httpx.Client(timeout=None) as client:
                with client.stream("POST", api_url, json=payload) as response:
                    response.raise_for_status()
                    yield from iter_sse(response.iter_lines())
            return
        except httpx.ConnectError:
            # On connection refused, retry with exponential backoff
            if attempt < max_retries - 1:
                retry_delay = 0.5 * (2**attempt)  # 0.5s, 1s, 2s, 4s...
                logger.info(
                    "API not ready yet, retrying in %.1f seconds (attempt %d/%d)...",
                    retry_delay,
                    attempt + 1,
                    max_retries,
                )
                time.sleep(retry_delay)
                continue
            yield "error", {"message": f"Failed to connect to API after {max_retries} attempts"}
            return
        except httpx.HTTPError as e:
            logger.error("API request error: %s", str(e))
            yield "error", {"message": f"Error connecting to API: {str(e)}"}
            return


def render_event(event: str, data: Dict[str, Any]) -> None:
    """Print one event; text streams inline, everything else on its own line."""
    if event == "text_chunk":
        colored_print(data.get("delta", ""), AnsiColors.YELLOW, end="", flush=True)
    elif event == "intent_process":
        colored_print(f"\n> {data.get('subquery')}: {data.get('actionPlan')}", AnsiColors.BLUE)
    elif event == "thinking_process":
        colored_print(f"\n> {data.get('title')}: {data.get('description')}", AnsiColors.BLUE)
    elif event == "tool_start":
        colored_print(
            f"[{data.get('protocol')}] {data.get('toolName')} {json.dumps(data.get('toolArgs'))}",
            AnsiColors.GREEN,
        )
    elif event == "tool_output":
        colored_print(f"[{data.get('toolName')}] {data.get('result')}", AnsiColors.GREEN)
    elif event == "task_status":
        colored_print(f"[task {data.get('taskId')}] {data.get('state')}", AnsiColors.GREEN)
    elif event == "error":
        colored_print(f"\nError ({data.get('kind', 'internal')}): {data.get('message')}", AnsiColors.RED)


def run_cli(user_id: str = "cli") -> None:
    """Run the CLI client that communicates with the API."""
    thread_id: str | None = None

    colored_print("\nagentflow shell - type 'exit' or 'quit' (or Ctrl+C) to exit", AnsiColors.GREEN)
    while True:
        colored_print("\nYou: ", AnsiColors.BLUE, end="")
        user_msg, ok = get_user_message()
        if not ok:
            break  # Exit if user input couldn't be retrieved (e.g., Ctrl+C)
        if user_msg.lower() in {"exit", "quit"}:
            break
        if not user_msg:
            continue

        for event, data in stream_query(user_msg, user_id, thread_id):
            if event == "thread_id":
                thread_id = data.get("threadId")
                colored_print(f"[{data.get('title')}]", AnsiColors.BLUE)
                continue
            render_event(event, data)
        print()


if __name__ == "__main__":
    run_cli()
