"""
RequestExecutor - issues one logical API request with resilience patterns.

Combines:
- AuthCoordinator for the bearer header and 401 recovery
- Retry with exponential backoff for network / 5xx / 429 failures
- NetworkMonitor offline queueing (callers suspend until the replay settles)
- CacheStore read-before / write-through for keyed GETs
- RequestCoalescer for identical concurrent GETs
"""

import asyncio
import json
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Awaitable, Callable

from loguru import logger

from carelink.services.auth import AuthCoordinator
from carelink.services.cache import CacheEntry, CacheStore
from carelink.services.cancellation import CancellationToken, guarded
from carelink.services.coalescer import RequestCoalescer
from carelink.services.errors import (
    REQUEST_CANCELLED,
    ApiError,
    network_error,
    normalize_error,
)
from carelink.services.network import NetworkMonitor, PendingRequest
from carelink.services.transport import HttpTransport, response_data

DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0  # seconds, doubled on each retry


@dataclass(frozen=True)
class RequestDescriptor:
    """One request attempt. Immutable: retries produce a new descriptor."""

    method: str
    url: str
    params: dict[str, Any] | None = None
    payload: Any = None
    headers: dict[str, str] | None = None
    cache_key: str | None = None
    cache_duration: timedelta | None = None
    force_refresh: bool = False
    write_cache: bool = True
    retries: int = DEFAULT_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    timeout: float | None = None
    cancellation: CancellationToken | None = field(default=None, compare=False)
    auth_retried: bool = False  # Set on the replay after a token refresh

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())
        # CacheStore.set rejects non-positive TTLs; fail before anything is sent
        if self.cache_duration is not None and self.cache_duration.total_seconds() <= 0:
            raise ValueError(f"Cache duration must be positive, got {self.cache_duration}")

    @property
    def is_cache_servable(self) -> bool:
        return self.method == "GET" and bool(self.cache_key)

    def next_attempt(self) -> "RequestDescriptor":
        return replace(self, retries=self.retries - 1, retry_delay=self.retry_delay * 2)

    def for_auth_replay(self) -> "RequestDescriptor":
        return replace(self, auth_retried=True)

    def request_key(self) -> str:
        params = json.dumps(self.params, sort_keys=True, default=str) if self.params else ""
        return f"{self.method}_{self.url}_{params}"


@dataclass
class ApiResponse:
    """Successful response (from the wire or from cache)."""

    data: Any
    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    from_cache: bool = False
    cache_entry: CacheEntry | None = None


def should_retry(error: ApiError) -> bool:
    """Retry pure network failures, 5xx and 429. Never cancellations."""
    if error.code == REQUEST_CANCELLED:
        return False
    status = error.status
    return not status or status >= 500 or status == 429


class RequestExecutor:
    """
    Executes RequestDescriptors.

    Usage:
        executor = RequestExecutor(transport, auth, network, cache)

        response = await executor.execute(
            RequestDescriptor("GET", "/profile", cache_key="profile")
        )
        data = await executor.post("/appointments", payload={...})
    """

    def __init__(
        self,
        transport: HttpTransport,
        auth: AuthCoordinator,
        network: NetworkMonitor,
        cache: CacheStore | None = None,
        coalesce_gets: bool = True,
        default_retries: int = DEFAULT_RETRIES,
        default_retry_delay: float = DEFAULT_RETRY_DELAY,
        default_timeout: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        debug: bool = False,
    ):
        self._transport = transport
        self._auth = auth
        self._network = network
        self._cache = cache
        self._coalesce_gets = coalesce_gets
        self._default_retries = default_retries
        self._default_retry_delay = default_retry_delay
        self._default_timeout = default_timeout
        self._sleep = sleep
        self._debug = debug
        self._coalescer = RequestCoalescer(debug=debug)

        # Callers suspended on offline-queued requests, by pending id
        self._waiters: dict[str, asyncio.Future[ApiResponse]] = {}
        self._queued: dict[str, RequestDescriptor] = {}

        network.set_replay_handler(self.replay, on_evict=self.release)

    @property
    def coalescer(self) -> RequestCoalescer:
        return self._coalescer

    def descriptor(self, method: str, url: str, **kwargs: Any) -> RequestDescriptor:
        """Build a descriptor with this executor's defaults."""
        kwargs.setdefault("retries", self._default_retries)
        kwargs.setdefault("retry_delay", self._default_retry_delay)
        kwargs.setdefault("timeout", self._default_timeout)
        return RequestDescriptor(method=method, url=url, **kwargs)

    async def execute(self, descriptor: RequestDescriptor) -> ApiResponse:
        """
        Execute one logical request.

        Returns:
            ApiResponse with decoded data

        Raises:
            ApiError: every terminal failure, already normalized
        """
        token = descriptor.cancellation
        try:
            if token is not None:
                token.raise_if_cancelled()

            if descriptor.is_cache_servable and not descriptor.force_refresh:
                cached = await self._read_cache(descriptor)
                if cached is not None:
                    return cached

            if not self._network.is_online():
                return await self._execute_offline(descriptor)

            if self._coalesce_gets and descriptor.method == "GET":
                shared = replace(descriptor, cancellation=None)
                response = await self._coalescer.run(
                    descriptor.request_key(),
                    lambda: self._send_with_retries(shared),
                    token,
                )
            else:
                response = await self._send_with_retries(descriptor)

            await self._write_cache(descriptor, response)
            return response

        except ApiError as error:
            self._log_failure(descriptor, error)
            raise
        except Exception as e:
            error = normalize_error(e)
            self._log_failure(descriptor, error)
            raise error from e

    async def _send_with_retries(self, descriptor: RequestDescriptor) -> ApiResponse:
        current = descriptor
        while True:
            if current.cancellation is not None:
                current.cancellation.raise_if_cancelled()

            try:
                return await self._send(current)
            except ApiError as error:
                if error.status == 401 and not current.auth_retried:
                    current = await self._recover_auth(current, error)
                    continue

                if current.retries > 0 and should_retry(error):
                    logger.warning(
                        f"{current.method} {current.url} failed ({error.code}), "
                        f"retrying in {current.retry_delay}s "
                        f"({current.retries} retries left)"
                    )
                    await self._sleep(current.retry_delay)
                    current = current.next_attempt()
                    continue

                raise

    async def _recover_auth(
        self, descriptor: RequestDescriptor, error: ApiError
    ) -> RequestDescriptor:
        """Refresh the token once; returns the descriptor to replay."""
        logger.info(f"401 on {descriptor.method} {descriptor.url}, refreshing token")
        new_token = await guarded(descriptor.cancellation, self._auth.refresh())
        if not new_token:
            raise error
        return descriptor.for_auth_replay()

    async def _send(self, descriptor: RequestDescriptor) -> ApiResponse:
        headers = {**(descriptor.headers or {}), **self._auth.auth_headers()}
        try:
            response = await guarded(
                descriptor.cancellation,
                self._transport.send(
                    descriptor.method,
                    descriptor.url,
                    params=descriptor.params,
                    json_data=descriptor.payload,
                    headers=headers,
                    timeout=descriptor.timeout,
                ),
            )
        except ApiError:
            raise
        except Exception as e:
            raise normalize_error(e) from e

        return ApiResponse(
            data=response_data(response),
            status=response.status_code,
            headers=dict(response.headers),
        )

    async def _execute_offline(self, descriptor: RequestDescriptor) -> ApiResponse:
        if descriptor.is_cache_servable:
            cached = await self._read_cache(descriptor)
            if cached is not None:
                return cached
            raise network_error("No internet connection and no cached data")

        pending = await self._network.add_pending_request(descriptor)
        future: asyncio.Future[ApiResponse] = asyncio.get_running_loop().create_future()
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._waiters[pending.id] = future
        self._queued[pending.id] = descriptor
        return await guarded(descriptor.cancellation, asyncio.shield(future))

    async def replay(self, pending: PendingRequest) -> bool:
        """
        Replay a queued request (called by NetworkMonitor while draining).

        Returns True when the request is settled, False to re-queue it.
        """
        descriptor = self._queued.get(pending.id) or self.descriptor(
            pending.method,
            pending.url,
            params=pending.params,
            payload=pending.payload,
            headers=pending.headers,
        )

        try:
            response = await self._send_with_retries(descriptor)
        except ApiError as error:
            if should_retry(error):
                logger.warning(
                    f"Replay of {pending.method} {pending.url} failed again, re-queueing"
                )
                return False
            logger.error(
                f"Replay of {pending.method} {pending.url} failed: {error.code}"
            )
            self._settle(pending.id, error=error)
            return True

        await self._write_cache(descriptor, response)
        logger.info(f"Replayed pending request {pending.method} {pending.url}")
        self._settle(pending.id, response=response)
        return True

    def release(self, pending: PendingRequest, reason: str) -> None:
        """Fail the caller waiting on an evicted or cleared queue entry."""
        self._settle(pending.id, error=network_error(reason))

    def _settle(
        self,
        pending_id: str,
        response: ApiResponse | None = None,
        error: ApiError | None = None,
    ) -> None:
        self._queued.pop(pending_id, None)
        future = self._waiters.pop(pending_id, None)
        if future is None or future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(response)

    async def _read_cache(self, descriptor: RequestDescriptor) -> ApiResponse | None:
        if self._cache is None or not descriptor.cache_key:
            return None
        entry = await self._cache.get_entry(descriptor.cache_key)
        if entry is None:
            return None
        self._log(f"Serving {descriptor.url} from cache '{descriptor.cache_key}'")
        return ApiResponse(data=entry.data, from_cache=True, cache_entry=entry)

    async def _write_cache(self, descriptor: RequestDescriptor, response: ApiResponse) -> None:
        if (
            self._cache is None
            or not descriptor.cache_key
            or not descriptor.write_cache
            or response.from_cache
        ):
            return
        await self._cache.set(descriptor.cache_key, response.data, descriptor.cache_duration)

    def _log_failure(self, descriptor: RequestDescriptor, error: ApiError) -> None:
        if error.code == REQUEST_CANCELLED:
            self._log(f"Cancelled: {descriptor.method} {descriptor.url}")
            return
        logger.error(
            f"API error: {descriptor.method} {descriptor.url} -> "
            f"{error.status} {error.code}: {error.message}"
        )

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[RequestExecutor] {message}")

    # Convenience verbs

    async def get(self, url: str, **kwargs: Any) -> Any:
        return (await self.execute(self.descriptor("GET", url, **kwargs))).data

    async def post(self, url: str, payload: Any = None, **kwargs: Any) -> Any:
        return (await self.execute(self.descriptor("POST", url, payload=payload, **kwargs))).data

    async def put(self, url: str, payload: Any = None, **kwargs: Any) -> Any:
        return (await self.execute(self.descriptor("PUT", url, payload=payload, **kwargs))).data

    async def delete(self, url: str, **kwargs: Any) -> Any:
        return (await self.execute(self.descriptor("DELETE", url, **kwargs))).data

    async def batch_get(self, requests: list[tuple[str, dict[str, Any]]]) -> list[Any]:
        """Run several GETs concurrently; the first failure is raised."""
        return list(
            await asyncio.gather(*(self.get(url, **kwargs) for url, kwargs in requests))
        )

    async def close(self) -> None:
        await self._coalescer.cancel_all()
        for pending_id in list(self._waiters):
            self._settle(pending_id, error=network_error("Client closed"))
