from __future__ import annotations

from typing import Iterable

from relay.core.memory import Turn


SYSTEM_PROMPT = (
    "You are a friendly, helpful assistant chatting with a user through a "
    "web terminal. Answer clearly and keep the conversation going naturally."
)

TURN_START = "<|im_start|>"
TURN_END = "<|im_end|>"


def format_turn(role: str, content: str) -> str:
    return f"{TURN_START}{role}\n{content}\n{TURN_END}"


def build_prompt(turns: Iterable[Turn], system_prompt: str = SYSTEM_PROMPT) -> str:
    """Render history as a ChatML prompt ending in an open assistant block.

    Content is inserted verbatim; text that looks like a turn marker is not
    escaped.
    """
    blocks = [format_turn("system", system_prompt)]
    blocks.extend(format_turn(turn.role, turn.content) for turn in turns)
    blocks.append(f"{TURN_START}assistant")
    return "\n".join(blocks)
