"""Common utility functions for the project."""

import re
from datetime import date
from enum import Enum
from typing import Any


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text in color.

    Args:
        text: The text to print
        color: The color to use (AnsiColors enum)
        args: Additional positional arguments for print
        kwargs: Additional keyword arguments for print
    """
    print(f"{color.value}{text}\033[0m", *args, **kwargs)  # ANSI reset at the end


def today_line() -> str:
    """Opening line shared by every system prompt."""
    return f"Today is {date.today().strftime('%m/%d/%Y')}."


def extract_json(content: str) -> str:
    """
    Cut the first JSON document out of a model answer.

    Models wrap JSON in markdown fences or surround it with prose.  The fence is stripped first,
    then the outermost balanced ``{...}`` or ``[...]`` block is returned.  If no block is found the
    stripped input is returned unchanged and the caller's parser reports the error.
    """
    if "```" in content:
        match = re.search(r"```(?:json)?\s*(.+?)```", content, re.DOTALL)
        if match:
            content = match.group(1)
    content = content.strip()

    starts = [idx for idx in (content.find("{"), content.find("[")) if idx >= 0]
    if not starts:
        return content
    open_idx = min(starts)
    opener = content[open_idx]
    closer = "}" if opener == "{" else "]"

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
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return content[open_idx : i + 1]
    return content[open_idx:]
