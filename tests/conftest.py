"""Global pytest fixtures for deterministic test environment."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable, Iterable, List

import httpx
import pytest
import pytest_asyncio

from resume_sync.client import RequestClient
from resume_sync.config import ENV_PREFIX, SyncConfig

API_BASE = "https://api.test/api"


@pytest.fixture(autouse=True)
def _isolate_runtime_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Clear local runtime env that can leak into tests on developer machines."""
    import os

    for key in list(os.environ):
        if key.startswith(ENV_PREFIX):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def sync_config(tmp_path) -> SyncConfig:
    return SyncConfig(api_base=API_BASE, storage_path=str(tmp_path / "storage.json"))


@pytest_asyncio.fixture
async def client_factory(sync_config: SyncConfig):
    """Build RequestClients over an httpx MockTransport; closed after the test."""
    clients: List[RequestClient] = []

    def _make(handler, token: str = "token-1", config: SyncConfig = None, **kwargs) -> RequestClient:
        client = RequestClient(config or sync_config, transport=httpx.MockTransport(handler), **kwargs)
        if token:
            client.token_storage.store_access_token(token)
        clients.append(client)
        return client

    yield _make

    for client in clients:
        await client.aclose()


@pytest.fixture
def wait_for() -> Callable:
    """Poll a predicate until it holds (fails the test after ``timeout`` seconds)."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.005)

    return _wait


@pytest.fixture
def event_stream() -> Callable:
    """Streaming response body built from text parts.

    With ``hold=True`` the body never ends after the last part, like a live
    subscription that stays open.
    """

    def _make(parts: Iterable[str], hold: bool = False) -> httpx.Response:
        async def body() -> AsyncIterator[bytes]:
            for part in parts:
                yield part.encode("utf-8")
                await asyncio.sleep(0)
            if hold:
                await asyncio.Event().wait()

        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())

    return _make
