from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field

from config.settings import Settings, get_settings
from relay.core.memory import SessionStore, run_sweeper
from relay.relay import ChatRelay, RequestContext
from relay.tools.retry_client import RetryClient, describe_error


logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="[%(asctime)s] %(levelname)s - %(message)s",
)
logger = logging.getLogger("ollama_gateway")

DEFAULT_SESSION_ID = "default"
STATUS_CHECK_FAILED = "Ollama status check failed"


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(
        default=None,
        alias="sessionId",
        description="Conversation identifier; requests without one share the default session",
    )
    message: str = Field(..., min_length=1, description="User's latest message")


async def probe_backend(client: RetryClient, settings: Settings) -> bool:
    try:
        response = await client.get(f"{settings.ollama_url}/", attempts=1)
    except (httpx.HTTPError, asyncio.TimeoutError) as exc:
        logger.warning("Ollama health check failed (%s), but continuing startup...", describe_error(exc))
        return False
    if response.status_code != 200:
        logger.warning("Ollama health check returned %s, but continuing startup...", response.status_code)
        return False
    return True


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    store: Optional[SessionStore] = None,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = RetryClient(
            max_retries=settings.max_retries,
            base_delay=settings.retry_delay,
            timeout=settings.request_timeout,
            max_connections=settings.max_connections,
            keepalive_expiry=settings.keepalive_expiry,
            transport=transport,
        )
        sessions = store
        if sessions is None:
            sessions = SessionStore(settings.history_length, settings.session_timeout)
        app.state.client = client
        app.state.store = sessions
        app.state.relay = ChatRelay(settings, sessions, client)

        await probe_backend(client, settings)
        sweeper = asyncio.create_task(run_sweeper(sessions, settings.session_timeout))
        logger.info("Server running at http://%s:%s", settings.host, settings.port)
        logger.info("Connected to Ollama at: %s (model=%s)", settings.ollama_url, settings.model)
        try:
            yield
        finally:
            logger.info("Shutting down, releasing connection pool...")
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            await client.aclose()

    app = FastAPI(title="Ollama Chat Gateway", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/ollama-status")
    async def ollama_status(request: Request) -> Response:
        client: RetryClient = request.app.state.client
        try:
            response = await client.get(f"{settings.ollama_url}/", attempts=1)
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            logger.error("Error fetching Ollama status: %s", describe_error(exc))
            return PlainTextResponse(STATUS_CHECK_FAILED, status_code=500)
        return Response(
            content=response.content,
            status_code=response.status_code,
            media_type=response.headers.get("content-type"),
        )

    @app.post("/chat")
    async def chat(req: ChatRequest, request: Request) -> StreamingResponse:
        relay: ChatRelay = request.app.state.relay
        ctx = RequestContext()
        return StreamingResponse(
            relay.stream_chat(req.session_id or DEFAULT_SESSION_ID, req.message, ctx),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"status": "ok"}

    static_dir = Path(settings.static_dir)
    if static_dir.is_dir():
        app.mount("/", StaticFiles(directory=static_dir, html=True), name="static")
    else:
        logger.info("Static directory %s not found; client UI disabled", static_dir)

    return app


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


app = create_app()
