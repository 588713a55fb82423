"""Shared fixtures: scripted upstream, recording observer, fake sleep, app client."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

from relay.clients.openrouter import OpenRouterClient
from relay.clients.scopestack import ScopeStackClient
from relay.config import OpenRouterConfig, RelayConfig, RetryPolicy, ScopeStackConfig

Reply = httpx.Response | Exception | Callable[[httpx.Request], Any]


class Upstream:
    """Scripted third-party API behind ``httpx.MockTransport``.

    Queued replies are served in order; once the queue is empty ``default``
    is served. A reply may be a response, an exception to raise, or a
    (sync or async) callable taking the request.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._queue: list[Reply] = []
        self.default: Reply | None = None

    def queue(self, *replies: Reply) -> None:
        self._queue.extend(replies)

    def _handle(self, request: httpx.Request):
        self.requests.append(request)
        reply = self._queue.pop(0) if self._queue else self.default
        if reply is None:
            raise AssertionError(f"Unexpected upstream call: {request.method} {request.url}")
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        return reply

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]

    @staticmethod
    def completion(content: str, usage: dict | None = None) -> httpx.Response:
        """An OpenRouter chat-completion response."""
        return httpx.Response(
            200,
            json={
                "id": "gen-1",
                "choices": [{"message": {"role": "assistant", "content": content}}],
                "usage": usage or {"prompt_tokens": 5, "completion_tokens": 3, "total_tokens": 8},
            },
        )


class RecordingObserver:
    """Collects attempt events instead of logging them."""

    def __init__(self) -> None:
        self.events: list[tuple] = []

    def on_attempt(self, name, attempt, max_attempts, context):
        self.events.append(("attempt", name, attempt))

    def on_success(self, name, attempt, context):
        self.events.append(("success", name, attempt))

    def on_failure(self, name, attempt, error, delay, context):
        self.events.append(("failure", name, attempt, error, delay))

    @property
    def attempts(self) -> int:
        return sum(1 for e in self.events if e[0] == "attempt")


class FakeSleep:
    """Stands in for ``asyncio.sleep``; records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def config() -> RelayConfig:
    return RelayConfig(
        openrouter=OpenRouterConfig(api_key="sk-or-test", timeout_seconds=1.0),
        scopestack=ScopeStackConfig(
            api_token="ss-token-1234567890",
            api_url="https://api.scopestack.test",
            account_slug="acme",
        ),
        retry=RetryPolicy(max_attempts=3, backoff="none"),
    )


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def openrouter(config, upstream, observer, fake_sleep) -> OpenRouterClient:
    http = httpx.AsyncClient(transport=upstream.transport)
    return OpenRouterClient(config.openrouter, config.retry, http, observer=observer, sleep=fake_sleep)


@pytest.fixture
def scopestack(config, upstream, observer, fake_sleep) -> ScopeStackClient:
    http = httpx.AsyncClient(transport=upstream.transport)
    return ScopeStackClient(config.scopestack, config.retry, http, observer=observer, sleep=fake_sleep)


@pytest.fixture
def make_client(upstream, observer, fake_sleep):
    """Factory for a ``TestClient`` around an app built from a given config."""
    from relay.main import create_app

    clients: list[TestClient] = []

    def _make(cfg: RelayConfig) -> TestClient:
        app = create_app(cfg, transport=upstream.transport, observer=observer, sleep=fake_sleep)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def api(make_client, config) -> TestClient:
    return make_client(config)


@asynccontextmanager
async def slow_http_server(delay: float, payload: dict) -> AsyncIterator[str]:
    """A real local HTTP/1.1 server that waits ``delay`` seconds before answering.

    ``httpx.MockTransport`` never enforces timeouts, so timeout handling is
    checked against actual sockets. Yields the server's base URL.
    """
    handlers: list[asyncio.Task] = []

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        handlers.append(asyncio.current_task())
        try:
            head = await reader.readuntil(b"\r\n\r\n")
            length = 0
            for line in head.decode("latin-1").split("\r\n")[1:]:
                name, _, value = line.partition(":")
                if name.strip().lower() == "content-length":
                    length = int(value)
            if length:
                await reader.readexactly(length)
            await asyncio.sleep(delay)
            body = json.dumps(payload).encode()
            writer.write(
                b"HTTP/1.1 200 OK\r\n"
                b"Content-Type: application/json\r\n"
                + f"Content-Length: {len(body)}\r\n".encode()
                + b"Connection: close\r\n\r\n"
                + body
            )
            await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError):
            pass  # client gave up first
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        server.close()
        await asyncio.gather(*handlers, return_exceptions=True)
        await server.wait_closed()


@pytest.fixture
def slow_server():
    return slow_http_server
