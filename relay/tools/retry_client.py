from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)


logger = logging.getLogger("ollama_gateway.client")

RETRYABLE_ERRORS = (httpx.TransportError, asyncio.TimeoutError)


class RetryClient:
    """HTTP client with exponential backoff over a shared connection pool.

    Attempt 0 fires at once; attempt ``i`` waits ``base_delay * 2**i`` first.
    Only transport faults and per-attempt deadlines are retried: an HTTP
    error status is returned to the caller like any other response.
    """

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 2.0,
        timeout: float = 30.0,
        max_connections: int = 50,
        keepalive_expiry: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.timeout = timeout
        self._sleep = sleep
        self._client = httpx.AsyncClient(
            timeout=timeout,
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_connections,
                keepalive_expiry=keepalive_expiry,
            ),
            transport=transport,
        )

    async def send(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
        timeout: Optional[float] = None,
        stream: bool = False,
        attempts: Optional[int] = None,
    ) -> httpx.Response:
        """Send a request, retrying transport failures.

        With ``stream=True`` the body is left unread and the caller must
        ``aclose()`` the response. Re-raises the last error once every
        attempt has failed.
        """
        attempts = attempts or self.max_retries
        deadline = self.timeout if timeout is None else timeout

        def log_failure(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.error(
                "Attempt %s/%s failed: %s",
                state.attempt_number,
                attempts,
                describe_error(exc),
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            # tenacity counts from 1 and waits multiplier * 2**(n - 1) after
            # attempt n, so the delay before attempt index i is base * 2**i.
            wait=wait_exponential(multiplier=self.base_delay * 2, exp_base=2),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            after=log_failure,
            sleep=self._sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                request = self._client.build_request(method, url, headers=headers, json=json)
                return await asyncio.wait_for(
                    self._client.send(request, stream=stream), timeout=deadline
                )
        raise AssertionError("unreachable")  # pragma: no cover

    async def get(self, url: str, attempts: Optional[int] = None, **kwargs: Any) -> httpx.Response:
        return await self.send("GET", url, attempts=attempts, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()


def describe_error(exc: Optional[BaseException]) -> str:
    if exc is None:
        return "unknown error"
    if isinstance(exc, asyncio.TimeoutError):
        return "Request timed out"
    return str(exc) or type(exc).__name__
