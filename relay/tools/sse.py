from __future__ import annotations

import re


DONE = "[DONE]"
ERROR_PREFIX = "[ERROR]"

# Every line ending an SSE parser recognizes.
LINE_BREAK = re.compile(r"\r\n|\r|\n")


def format_event(text: str) -> str:
    # Multi-line text becomes one data field per line.
    lines = LINE_BREAK.split(text)
    return "".join(f"data: {line}\n" for line in lines) + "\n"


def done_event() -> str:
    return format_event(DONE)


def error_event(message: str) -> str:
    return format_event(f"{ERROR_PREFIX} {message}")
