from __future__ import annotations

import enum
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional

from config.settings import Settings
from relay.core.memory import SessionStore
from relay.core.prompt import build_prompt
from relay.tools.retry_client import RetryClient, describe_error
from relay.tools.sse import done_event, error_event, format_event


logger = logging.getLogger("ollama_gateway.relay")


class RelayState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_BACKEND = "awaiting_backend"
    STREAMING = "streaming"
    DONE = "done"
    ERRORED = "errored"


class BackendStatusError(RuntimeError):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"API error: {status_code}")
        self.status_code = status_code


@dataclass
class RequestContext:
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:7])
    start: float = field(default_factory=time.perf_counter)
    marks: Dict[str, float] = field(default_factory=dict)
    state: RelayState = RelayState.IDLE

    def mark(self, name: str) -> None:
        self.marks[name] = time.perf_counter()

    def elapsed_ms(self, name: str = "end") -> float:
        return (self.marks.get(name, time.perf_counter()) - self.start) * 1000


async def split_lines(chunks: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield complete NDJSON lines, carrying a partial tail to the next chunk.

    Only a newline ends a line. JSON strings may hold other raw line
    separators such as U+0085 or U+2028.
    """
    pending = ""
    async for chunk in chunks:
        pending += chunk
        *lines, pending = pending.split("\n")
        for line in lines:
            yield line
    if pending:
        yield pending


def parse_line(line: str, request_id: str = "-") -> Optional[str]:
    """Return the ``response`` text of one NDJSON line, or None to skip it."""
    line = line.strip()
    if not line:
        return None
    try:
        payload = json.loads(line)
    except json.JSONDecodeError as exc:
        logger.error("[%s] Parse error: %s", request_id, exc)
        return None
    if not isinstance(payload, dict):
        logger.error("[%s] Parse error: expected an object, got %s", request_id, type(payload).__name__)
        return None
    text = payload.get("response")
    if not isinstance(text, str) or not text:
        return None
    return text


class ChatRelay:
    """Runs one chat exchange per call: history -> prompt -> backend -> SSE."""

    def __init__(self, settings: Settings, store: SessionStore, client: RetryClient) -> None:
        self.settings = settings
        self.store = store
        self.client = client

    @property
    def generate_url(self) -> str:
        return f"{self.settings.ollama_url}/api/generate"

    async def stream_chat(
        self,
        session_id: str,
        message: str,
        ctx: Optional[RequestContext] = None,
    ) -> AsyncIterator[str]:
        ctx = ctx or RequestContext()
        logger.info(
            "[%s] Incoming chat: session=%s message_len=%s",
            ctx.request_id,
            session_id,
            len(message),
        )
        async with self.store.lock(session_id):
            committed = False
            try:
                ctx.mark("context_build")
                session = self.store.append_user_turn(session_id, message)
                prompt = build_prompt(session.turns, self.settings.system_prompt)

                reply = []
                chunks = self._generate(prompt, ctx)
                try:
                    async for text in chunks:
                        reply.append(text)
                        yield format_event(text)
                except Exception as exc:
                    ctx.state = RelayState.ERRORED
                    ctx.mark("end")
                    logger.exception("[%s] Error: %s", ctx.request_id, describe_error(exc))
                    yield error_event(describe_error(exc))
                    return
                finally:
                    await chunks.aclose()

                self.store.append_assistant_turn(session_id, "".join(reply))
                committed = True
                ctx.state = RelayState.DONE
                ctx.mark("end")
                logger.info(
                    "[%s] Request completed in %.1fms (%s chars)",
                    ctx.request_id,
                    ctx.elapsed_ms(),
                    sum(len(part) for part in reply),
                )
                yield done_event()
            finally:
                if not committed:
                    self.store.discard_pending_user_turn(session_id)

    async def _generate(self, prompt: str, ctx: RequestContext) -> AsyncIterator[str]:
        ctx.state = RelayState.AWAITING_BACKEND
        ctx.mark("request_start")
        payload = {"model": self.settings.model, "prompt": prompt, "stream": True}
        response = await self.client.send(
            "POST",
            self.generate_url,
            headers={"Content-Type": "application/json"},
            json=payload,
            stream=True,
        )
        try:
            ctx.mark("stream_start")
            if not response.is_success:
                raise BackendStatusError(response.status_code)
            ctx.state = RelayState.STREAMING
            async for line in split_lines(response.aiter_text()):
                text = parse_line(line, ctx.request_id)
                if text:
                    yield text
        finally:
            await response.aclose()
