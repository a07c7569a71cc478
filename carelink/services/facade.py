"""
RequestFacade - stateful per-query wrapper used by screens.

Exposes status / data / error / updated_at / cache_info for one logical
query, applies a cache strategy around the RequestExecutor, and cancels
superseded calls.

Strategies:
- cache-first: cached value if present, else network
- network-first (default): always network; held value when offline
- cache-only: cached value or CACHE_MISS, never network
- network-only: no cache read, result still written unless suppressed
"""

import asyncio
import inspect
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

from loguru import logger

from carelink.services.cache import DEFAULT_TTL, CacheEntry, CacheStore
from carelink.services.cancellation import CancellationToken
from carelink.services.errors import (
    CACHE_MISS,
    REQUEST_CANCELLED,
    ApiError,
    ErrorKind,
    normalize_error,
)
from carelink.services.executor import (
    DEFAULT_RETRIES,
    DEFAULT_RETRY_DELAY,
    RequestExecutor,
)
from carelink.services.network import NetworkMonitor


class CacheStrategy(str, Enum):
    CACHE_FIRST = "cache-first"
    NETWORK_FIRST = "network-first"
    CACHE_ONLY = "cache-only"
    NETWORK_ONLY = "network-only"


class RequestStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class QueryConfig:
    """Configuration for one query."""

    url: str | Callable[[Any], str]
    method: str = "GET"
    strategy: CacheStrategy = CacheStrategy.NETWORK_FIRST
    ttl: timedelta = DEFAULT_TTL
    retries: int = DEFAULT_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    auto_load: bool = True
    cache_key: str | None = None
    force_refresh: bool = False
    write_cache: bool = True
    skip_loading_check: bool = False
    initial_data: Any = None
    params: dict[str, Any] | None = None
    deps: tuple[Any, ...] = ()
    transform: Callable[[Any], Any] | None = None
    should_execute: Callable[[], bool] | None = None
    on_success: Callable[[Any], Any] | None = None
    on_error: Callable[[ApiError], Any] | None = None

    def __post_init__(self) -> None:
        if self.ttl.total_seconds() <= 0:
            raise ValueError(f"Query TTL must be positive, got {self.ttl}")


@dataclass(frozen=True)
class CacheInfo:
    is_cached: bool = False
    cached_at: datetime | None = None
    expires_at: datetime | None = None


@dataclass(frozen=True)
class QueryState:
    """Snapshot handed to listeners."""

    status: RequestStatus
    data: Any
    error: ApiError | None
    updated_at: datetime | None
    cache_info: CacheInfo = field(default_factory=CacheInfo)

    @property
    def is_loading(self) -> bool:
        return self.status == RequestStatus.LOADING

    @property
    def is_success(self) -> bool:
        return self.status == RequestStatus.SUCCESS

    @property
    def is_error(self) -> bool:
        return self.status == RequestStatus.ERROR


StateListener = Callable[[QueryState], Any]


class RequestFacade:
    """
    One logical query with observable state.

    Usage:
        profile = RequestFacade(
            executor, cache, network,
            QueryConfig(url="/profile", cache_key="profile", ttl=timedelta(minutes=15)),
        )
        profile.subscribe(render)
        data = await profile.execute()
        ...
        profile.dispose()
    """

    def __init__(
        self,
        executor: RequestExecutor,
        cache: CacheStore,
        network: NetworkMonitor,
        config: QueryConfig,
    ):
        self._executor = executor
        self._cache = cache
        self._network = network
        self.config = config

        self._state = QueryState(
            status=RequestStatus.IDLE,
            data=config.initial_data,
            error=None,
            updated_at=None,
        )
        self._listeners: list[StateListener] = []
        self._active: set[CancellationToken] = set()
        self._current: CancellationToken | None = None
        self._disposed = False
        self._deps: tuple[Any, ...] = tuple(config.deps)
        self._auto_task: asyncio.Task[Any] | None = None

        if config.auto_load:
            self._auto_task = asyncio.get_running_loop().create_task(self._auto_load())

    # Observable state

    @property
    def state(self) -> QueryState:
        return self._state

    @property
    def status(self) -> RequestStatus:
        return self._state.status

    @property
    def data(self) -> Any:
        return self._state.data

    @property
    def error(self) -> ApiError | None:
        return self._state.error

    @property
    def updated_at(self) -> datetime | None:
        return self._state.updated_at

    @property
    def cache_info(self) -> CacheInfo:
        return self._state.cache_info

    @property
    def is_disposed(self) -> bool:
        return self._disposed

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _update(self, token: CancellationToken | None = None, **changes: Any) -> bool:
        """Apply a state change unless disposed or superseded."""
        if self._disposed or (token is not None and token.cancelled):
            return False
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as e:
                logger.error(f"Query state listener raised: {e}")
        return True

    # Operations

    async def execute(self, params: Any = None, payload: Any = None) -> Any:
        """
        Run the query.

        Returns the data (from cache or network). Raises ApiError on
        failure, after recording it in state.
        """
        return await self._run(params, payload, force=False)

    async def refresh(self) -> Any:
        """Re-run the query, bypassing cache reads."""
        return await self._run(None, None, force=True)

    def reset(self) -> None:
        self._update(
            status=RequestStatus.IDLE,
            data=self.config.initial_data,
            error=None,
            updated_at=None,
            cache_info=CacheInfo(),
        )

    def cancel(self) -> None:
        """Cancel every outstanding call of this query."""
        for token in list(self._active):
            token.cancel("Query cancelled")
        self._active.clear()
        self._current = None
        if self.status == RequestStatus.LOADING:
            self._update(status=RequestStatus.IDLE)

    async def update_dependencies(self, *deps: Any) -> Any:
        """Re-run `execute()` when the dependency values change."""
        if deps == self._deps:
            return self.data
        self._deps = deps
        try:
            return await self.execute()
        except ApiError:
            return None

    async def clear_cache(self) -> None:
        key = self._cache_key(self._resolve_url(self.config.params))
        if key:
            await self._cache.remove(key)
        self._update(cache_info=CacheInfo())

    def dispose(self) -> None:
        """Cancel outstanding work and stop all further state updates."""
        if self._disposed:
            return
        for token in list(self._active):
            token.cancel("Query disposed")
        self._active.clear()
        self._current = None
        self._disposed = True
        self._listeners.clear()
        if self._auto_task and not self._auto_task.done():
            self._auto_task.cancel()

    async def __aenter__(self) -> "RequestFacade":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.dispose()

    # Internals

    async def _auto_load(self) -> None:
        try:
            await self.execute()
        except ApiError as e:
            logger.debug(f"Auto-load of {self.config.url} failed: {e.code}")

    def _resolve_url(self, params: Any) -> str:
        url = self.config.url
        return url(params) if callable(url) else url

    def _cache_key(self, url: str) -> str | None:
        if self.config.cache_key:
            return self.config.cache_key
        if self.config.method.upper() == "GET":
            return f"GET_{url}"
        return None

    def _begin(self) -> CancellationToken:
        if (
            self._current is not None
            and self.status == RequestStatus.LOADING
            and not self.config.skip_loading_check
        ):
            self._current.cancel("Superseded by a newer request")
            self._active.discard(self._current)

        token = CancellationToken()
        self._active.add(token)
        self._current = token
        return token

    async def _run(self, params: Any, payload: Any, force: bool) -> Any:
        config = self.config
        if self._disposed:
            return self.data
        if config.should_execute is not None and not config.should_execute():
            return self.data

        token = self._begin()
        url = self._resolve_url(params if params is not None else config.params)
        cache_key = self._cache_key(url)
        strategy = config.strategy
        bypass_cache = force or config.force_refresh

        try:
            if strategy in (CacheStrategy.CACHE_FIRST, CacheStrategy.CACHE_ONLY) and cache_key:
                if not bypass_cache or strategy == CacheStrategy.CACHE_ONLY:
                    entry = await self._cache.get_entry(cache_key)
                    if entry is not None:
                        return await self._apply_cached(token, entry)

            if strategy == CacheStrategy.CACHE_ONLY:
                raise ApiError(
                    "Data not found in cache",
                    status=404,
                    code=CACHE_MISS,
                    kind=ErrorKind.NOT_FOUND,
                )

            # Writes go through the executor so they are queued while offline
            if (
                strategy == CacheStrategy.NETWORK_FIRST
                and config.method.upper() == "GET"
                and not self._network.is_online()
                and self.data is not None
            ):
                logger.info(f"Offline, serving held data for {url}")
                return self.data

            self._update(token, status=RequestStatus.LOADING, error=None)

            descriptor = self._executor.descriptor(
                config.method,
                url,
                params=params if isinstance(params, dict) else config.params,
                payload=payload,
                cache_key=(
                    config.cache_key if strategy == CacheStrategy.NETWORK_FIRST else None
                ),
                cache_duration=config.ttl,
                force_refresh=bypass_cache or strategy == CacheStrategy.NETWORK_ONLY,
                write_cache=False,
                retries=config.retries,
                retry_delay=config.retry_delay,
                cancellation=token,
            )
            response = await self._executor.execute(descriptor)

            if response.from_cache and response.cache_entry is not None:
                return await self._apply_cached(token, response.cache_entry)

            data = config.transform(response.data) if config.transform else response.data
            if token.cancelled or self._disposed:
                return data

            cache_info = CacheInfo()
            if cache_key and config.write_cache and (config.method.upper() == "GET" or config.cache_key):
                await self._cache.set(cache_key, data, config.ttl)
                now = datetime.now()
                cache_info = CacheInfo(is_cached=False, cached_at=now, expires_at=now + config.ttl)

            if self._update(
                token,
                status=RequestStatus.SUCCESS,
                data=data,
                error=None,
                updated_at=datetime.now(),
                cache_info=cache_info,
            ):
                await self._call(config.on_success, data)
            return data

        except Exception as e:
            error = normalize_error(e)
            if error.code == REQUEST_CANCELLED or token.cancelled:
                raise error from None
            if self._update(token, status=RequestStatus.ERROR, error=error):
                await self._call(config.on_error, error)
            if error is e:
                raise
            raise error from e

        finally:
            self._active.discard(token)
            if self._current is token:
                self._current = None

    async def _apply_cached(self, token: CancellationToken, entry: CacheEntry) -> Any:
        applied = self._update(
            token,
            status=RequestStatus.SUCCESS,
            data=entry.data,
            error=None,
            updated_at=entry.created,
            cache_info=CacheInfo(
                is_cached=True,
                cached_at=entry.created,
                expires_at=entry.expires,
            ),
        )
        if applied:
            await self._call(self.config.on_success, entry.data)
        return entry.data

    @staticmethod
    async def _call(callback: Callable[[Any], Any] | None, value: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(value)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Query callback raised: {e}")
