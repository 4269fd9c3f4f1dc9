from __future__ import annotations

import pytest

from config.settings import Settings
from relay.core.memory import SessionStore
from relay.relay import ChatRelay
from relay.tools.retry_client import RetryClient
from tests.fakes import FakeOllama


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ollama_url="http://ollama.test",
        model="test-model",
        system_prompt="You are a test assistant.",
        max_retries=3,
        retry_delay=0,
        request_timeout=5,
        history_length=10,
        session_timeout=3600,
        static_dir="does-not-exist",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(settings: Settings, clock: FakeClock) -> SessionStore:
    return SessionStore(settings.history_length, settings.session_timeout, clock=clock)


@pytest.fixture
def fake_ollama() -> FakeOllama:
    return FakeOllama()


@pytest.fixture
def make_relay(settings: Settings, store: SessionStore):
    def factory(backend: FakeOllama) -> ChatRelay:
        client = RetryClient(
            max_retries=settings.max_retries,
            base_delay=settings.retry_delay,
            timeout=settings.request_timeout,
            transport=backend.transport,
        )
        return ChatRelay(settings, store, client)

    return factory
