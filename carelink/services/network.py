"""
NetworkMonitor - connectivity tracking and the persisted offline queue.

Features:
- One subscription to a ConnectivitySource, every change logged
- `is_online()` only when connected and reachability is confirmed
- FIFO offline queue, bounded (oldest evicted), persisted across restarts
- Queue drained through a replay handler on every offline -> online transition
"""

import asyncio
import inspect
import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from carelink.datastore.store import PersistentStore

if TYPE_CHECKING:
    from carelink.services.executor import RequestDescriptor

PENDING_REQUESTS_KEY = "pending_requests"
DEFAULT_QUEUE_CAPACITY = 100


@dataclass(frozen=True)
class NetworkState:
    """Connectivity snapshot. `reachable` is None when unknown."""

    connected: bool
    reachable: bool | None
    kind: str = "unknown"

    @property
    def online(self) -> bool:
        return self.connected and self.reachable is True


OFFLINE = NetworkState(connected=False, reachable=False, kind="none")


class PendingRequest(BaseModel):
    """A request deferred while offline."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    method: str
    url: str
    params: dict[str, Any] | None = None
    payload: Any = None
    headers: dict[str, str] | None = None
    enqueued_at: datetime = Field(default_factory=datetime.now)


StateCallback = Callable[[NetworkState], Any]
ReplayHandler = Callable[[PendingRequest], Awaitable[bool]]
EvictionHandler = Callable[[PendingRequest, str], Any]


class ConnectivitySource:
    """Base connectivity source: pushes NetworkState changes to subscribers."""

    def __init__(self, initial: NetworkState = OFFLINE):
        self._state = initial
        self._subscribers: list[StateCallback] = []

    async def fetch(self) -> NetworkState:
        return self._state

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, state: NetworkState) -> None:
        self._state = state
        for callback in list(self._subscribers):
            callback(state)


class ManualConnectivitySource(ConnectivitySource):
    """
    Source driven by the host (platform bridge, tests).

    Usage:
        source = ManualConnectivitySource()
        source.emit(NetworkState(connected=True, reachable=True, kind="wifi"))
    """

    def emit(self, state: NetworkState) -> None:
        self._publish(state)

    def set_online(self, kind: str = "wifi") -> None:
        self._publish(NetworkState(connected=True, reachable=True, kind=kind))

    def set_offline(self) -> None:
        self._publish(OFFLINE)


class ProbeConnectivitySource(ConnectivitySource):
    """Polls a health URL; any HTTP response counts as reachable."""

    def __init__(
        self,
        probe_url: str,
        interval: float = 15.0,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        super().__init__(NetworkState(connected=True, reachable=None, kind="probe"))
        self._probe_url = probe_url
        self._interval = interval
        self._timeout = timeout
        self._client = client
        self._task: asyncio.Task[None] | None = None

    async def probe(self) -> NetworkState:
        client = self._client or httpx.AsyncClient()
        try:
            await client.head(self._probe_url, timeout=self._timeout)
            state = NetworkState(connected=True, reachable=True, kind="probe")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.debug(f"Connectivity probe failed: {e!r}")
            state = NetworkState(connected=False, reachable=False, kind="probe")
        finally:
            if self._client is None:
                await client.aclose()
        if state != self._state:
            self._publish(state)
        return state

    async def fetch(self) -> NetworkState:
        return await self.probe()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.probe()


class NetworkMonitor:
    """
    Tracks connectivity and owns the offline queue.

    Usage:
        monitor = NetworkMonitor(store, source)
        monitor.set_replay_handler(executor.replay, on_evict=executor.release)
        await monitor.start()
    """

    def __init__(
        self,
        store: PersistentStore,
        source: ConnectivitySource,
        capacity: int = DEFAULT_QUEUE_CAPACITY,
    ):
        self._store = store
        self._source = source
        self._capacity = capacity
        self._state = OFFLINE
        self._queue: list[PendingRequest] = []
        self._unsubscribe: Callable[[], None] | None = None
        self._replay: ReplayHandler | None = None
        self._on_evict: EvictionHandler | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._drain_again = False

    @property
    def state(self) -> NetworkState:
        return self._state

    def set_replay_handler(
        self,
        handler: ReplayHandler,
        on_evict: EvictionHandler | None = None,
    ) -> None:
        """
        Register the queue consumer.

        `handler` returns True when the request is settled (sent, or failed
        for good) and False when it should go back to the tail of the queue.
        """
        self._replay = handler
        self._on_evict = on_evict

    async def start(self) -> None:
        """Restore the persisted queue, read the initial state and subscribe."""
        await self._load_queue()
        self._state = await self._source.fetch()
        logger.info(f"Network state: {self._describe(self._state)}")
        if self._unsubscribe is None:
            self._unsubscribe = self._source.subscribe(self._on_state_change)
        if self.is_online() and self._queue:
            self._schedule_drain()

    async def stop(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._drain_task and not self._drain_task.done():
            await self._drain_task
        self._drain_task = None

    def is_online(self) -> bool:
        return self._state.online

    def get_connection_kind(self) -> str:
        return self._state.kind

    def _on_state_change(self, state: NetworkState) -> None:
        was_online = self.is_online()
        self._state = state
        logger.info(f"Network state changed: {self._describe(state)}")

        if not was_online and self.is_online():
            self._schedule_drain()

    async def add_pending_request(self, descriptor: "RequestDescriptor") -> PendingRequest:
        """Enqueue a request for replay; evicts the oldest entry past capacity."""
        pending = PendingRequest(
            method=descriptor.method,
            url=descriptor.url,
            params=descriptor.params,
            payload=descriptor.payload,
            headers=descriptor.headers,
        )
        self._queue.append(pending)
        logger.info(f"Added request to offline queue: {pending.method} {pending.url}")

        await self._enforce_capacity()
        await self._persist()
        return pending

    def get_pending_requests(self) -> list[PendingRequest]:
        return list(self._queue)

    async def clear_pending_requests(self) -> None:
        cleared, self._queue = self._queue, []
        for pending in cleared:
            await self._notify_evicted(pending, "Offline queue was cleared")
        try:
            await self._store.remove(PENDING_REQUESTS_KEY)
        except Exception as e:
            logger.error(f"Failed to remove persisted offline queue: {e}")

    def _schedule_drain(self) -> None:
        if self._drain_task and not self._drain_task.done():
            self._drain_again = True
            return
        self._drain_task = asyncio.create_task(self.drain())

    async def wait_for_drain(self) -> None:
        """Wait for a running drain (if any) to finish."""
        while self._drain_task is not None and not self._drain_task.done():
            await self._drain_task

    async def drain(self) -> None:
        """Replay queued requests in FIFO order until none are settled-able."""
        while True:
            self._drain_again = False
            await self._drain_pass()
            if not (self._drain_again and self.is_online() and self._queue):
                return

    async def _drain_pass(self) -> None:
        if self._replay is None or not self._queue or not self.is_online():
            return

        logger.info(f"Processing offline queue: {len(self._queue)} requests")
        snapshot, self._queue = self._queue, []
        retained: list[PendingRequest] = []

        for index, pending in enumerate(snapshot):
            if not self.is_online():
                retained.extend(snapshot[index:])
                break
            try:
                settled = await self._replay(pending)
            except Exception as e:
                logger.error(f"Failed to process pending request {pending.id}: {e}")
                settled = False
            if not settled:
                retained.append(pending)

        # Requests enqueued during the pass stay behind the retained ones
        self._queue = retained + self._queue
        await self._enforce_capacity()
        await self._persist()
        if retained:
            logger.warning(f"{len(retained)} pending requests re-queued")

    async def _enforce_capacity(self) -> None:
        """Evict the oldest entries past capacity."""
        while len(self._queue) > self._capacity:
            evicted = self._queue.pop(0)
            logger.warning(
                f"Offline queue full ({self._capacity}), dropped oldest: "
                f"{evicted.method} {evicted.url}"
            )
            await self._notify_evicted(evicted, "Dropped from a full offline queue")

    async def _notify_evicted(self, pending: PendingRequest, reason: str) -> None:
        if self._on_evict is None:
            return
        result = self._on_evict(pending, reason)
        if inspect.isawaitable(result):
            await result

    async def _persist(self) -> None:
        try:
            payload = json.dumps([p.model_dump(mode="json") for p in self._queue])
            await self._store.set(PENDING_REQUESTS_KEY, payload)
        except Exception as e:
            logger.error(f"Failed to persist offline queue: {e}")

    async def _load_queue(self) -> None:
        try:
            raw = await self._store.get(PENDING_REQUESTS_KEY)
            if raw:
                restored = [PendingRequest.model_validate(p) for p in json.loads(raw)]
                self._queue = restored + self._queue
                logger.info(f"Restored {len(restored)} pending requests")
        except Exception as e:
            logger.error(f"Failed to restore offline queue: {e}")

    @staticmethod
    def _describe(state: NetworkState) -> str:
        return (
            f"connected={state.connected}, reachable={state.reachable}, "
            f"kind={state.kind}"
        )
