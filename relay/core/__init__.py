from relay.core.memory import Session, SessionStore, Turn
from relay.core.prompt import SYSTEM_PROMPT, build_prompt

__all__ = ["Session", "SessionStore", "Turn", "SYSTEM_PROMPT", "build_prompt"]
