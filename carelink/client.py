"""
CareLinkClient - composition root for the API client subsystem.

Builds every component explicitly and owns their start/close lifecycle, so
the host application holds one client per process instead of module-level
singletons.
"""

from datetime import timedelta
from typing import Any

import httpx
from loguru import logger

from carelink.datastore.engine import Database
from carelink.datastore.store import PersistentStore, SQLStore
from carelink.services.auth import AuthCoordinator, AuthToken
from carelink.services.cache import CacheStore
from carelink.services.executor import RequestExecutor
from carelink.services.facade import QueryConfig, RequestFacade
from carelink.services.network import (
    ConnectivitySource,
    ManualConnectivitySource,
    NetworkMonitor,
    NetworkState,
    ProbeConnectivitySource,
)
from carelink.services.transport import HttpTransport
from carelink.settings import Settings


class CareLinkClient:
    """
    Wires store, cache, transport, network monitor, auth and executor.

    Usage:
        async with CareLinkClient(settings) as client:
            client.auth.on_auth_failure(force_logout)
            profile = client.query(QueryConfig(url="/profile", cache_key="profile"))
            data = await profile.execute()
    """

    def __init__(
        self,
        settings: Settings,
        store: PersistentStore | None = None,
        connectivity: ConnectivitySource | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings

        self._database: Database | None = None
        if store is None:
            self._database = Database(settings.database_url, echo=settings.database_echo)
            store = SQLStore(self._database)
        self.store = store

        if connectivity is None:
            if settings.connectivity_probe_url:
                connectivity = ProbeConnectivitySource(
                    settings.connectivity_probe_url,
                    interval=settings.connectivity_probe_interval,
                )
            else:
                # No probe configured: assume online until the host says otherwise
                connectivity = ManualConnectivitySource(
                    NetworkState(connected=True, reachable=True, kind="unknown")
                )
        self.connectivity = connectivity

        self.cache = CacheStore(
            store,
            max_size=settings.cache_max_size,
            default_ttl=timedelta(seconds=settings.cache_default_ttl),
            debug=settings.debug,
        )
        self.transport = HttpTransport(
            settings.api_base_url,
            timeout=settings.request_timeout,
            client=http_client,
        )
        self.network = NetworkMonitor(
            store,
            connectivity,
            capacity=settings.pending_queue_capacity,
        )
        self.auth = AuthCoordinator(
            store,
            self.transport,
            refresh_retry_delay=settings.retry_delay,
            refresh_timeout=settings.refresh_timeout,
        )
        self.executor = RequestExecutor(
            self.transport,
            self.auth,
            self.network,
            self.cache,
            coalesce_gets=settings.coalesce_gets,
            default_retries=settings.max_retries,
            default_retry_delay=settings.retry_delay,
            debug=settings.debug,
        )
        self._started = False

    async def start(self) -> None:
        """Open storage, restore credentials and start connectivity tracking."""
        if self._started:
            return
        if self._database is not None:
            await self._database.init()
        await self.auth.load()
        await self.network.start()
        if isinstance(self.connectivity, ProbeConnectivitySource):
            self.connectivity.start()
        self._started = True
        logger.info(f"CareLink client started ({self.settings.api_base_url})")

    async def close(self) -> None:
        """Tear down in reverse order."""
        if isinstance(self.connectivity, ProbeConnectivitySource):
            await self.connectivity.stop()
        await self.network.stop()
        await self.executor.close()
        await self.transport.close()
        if self._database is not None:
            await self._database.close()
        self._started = False
        logger.debug("CareLink client closed")

    async def __aenter__(self) -> "CareLinkClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def query(self, config: QueryConfig) -> RequestFacade:
        """Create a facade for one logical query."""
        return RequestFacade(self.executor, self.cache, self.network, config)

    async def login(self, access_token: str, refresh_token: str | None = None) -> None:
        await self.auth.set_token(AuthToken(access_token, refresh_token))

    async def logout(self) -> None:
        await self.auth.set_token(None)
        await self.cache.clear()

    async def get_health_status(self) -> dict[str, Any]:
        return {
            "online": self.network.is_online(),
            "connection": self.network.get_connection_kind(),
            "pending_requests": len(self.network.get_pending_requests()),
            "auth_state": self.auth.state.value,
            "cache": (await self.cache.get_stats()).to_dict(),
            "coalescer": self.executor.coalescer.get_stats().to_dict(),
        }
