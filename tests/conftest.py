"""
Shared fixtures: in-memory store, fake clock, recorded sleeps and a scripted
HTTP server behind httpx.MockTransport.
"""

import asyncio
import inspect
from typing import Any, Callable

import httpx
import pytest
import pytest_asyncio

from carelink.datastore.store import MemoryStore
from carelink.services.auth import AuthCoordinator
from carelink.services.cache import CacheStore
from carelink.services.executor import RequestExecutor
from carelink.services.network import ManualConnectivitySource, NetworkMonitor, NetworkState
from carelink.services.transport import HttpTransport

BASE_URL = "http://api.test"

ONLINE = NetworkState(connected=True, reachable=True, kind="wifi")


class FakeClock:
    """Manually advanced wall clock (seconds)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeServer:
    """
    Scripted responses per (method, path).

    Each route holds a list of responses consumed in order; the last one
    repeats. An item may be an httpx.Response, an exception instance, or a
    (possibly async) callable taking the request.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list[Any]] = {}
        self.calls: list[httpx.Request] = []

    def add(self, method: str, path: str, *responses: Any) -> None:
        self.routes[(method.upper(), path)] = list(responses)

    def requests_to(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.calls if r.method == method and r.url.path == path]

    def count(self, method: str, path: str) -> int:
        return len(self.requests_to(method, path))

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": "No such route"})

        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        if callable(item):
            item = item(request)
            if inspect.isawaitable(item):
                item = await item
        return item


async def wait_until(predicate: Callable[[], bool], rounds: int = 200) -> None:
    """Yield to the loop until `predicate()` holds."""
    for _ in range(rounds):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest_asyncio.fixture
async def transport(server):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(server.handler))
    transport = HttpTransport(BASE_URL, client=http_client)
    yield transport
    await http_client.aclose()


@pytest.fixture
def source() -> ManualConnectivitySource:
    return ManualConnectivitySource(ONLINE)


@pytest.fixture
def cache(store) -> CacheStore:
    return CacheStore(store)


@pytest.fixture
def auth(store, transport, sleep) -> AuthCoordinator:
    return AuthCoordinator(store, transport, sleep=sleep)


@pytest_asyncio.fixture
async def network(store, source):
    monitor = NetworkMonitor(store, source)
    yield monitor
    await monitor.stop()


@pytest_asyncio.fixture
async def executor(transport, auth, network, cache, sleep):
    executor = RequestExecutor(transport, auth, network, cache, sleep=sleep)
    await network.start()
    yield executor
    await executor.close()
