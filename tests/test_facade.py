"""Tests for RequestFacade strategies, state transitions and cancellation."""

import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from carelink.services.errors import CACHE_MISS, REQUEST_CANCELLED, ApiError, ErrorKind
from carelink.services.facade import (
    CacheStrategy,
    QueryConfig,
    RequestFacade,
    RequestStatus,
)

from .conftest import wait_until


@pytest.fixture
def make_query(executor, cache, network):
    created = []

    def factory(**kwargs) -> RequestFacade:
        kwargs.setdefault("auto_load", False)
        query = RequestFacade(executor, cache, network, QueryConfig(**kwargs))
        created.append(query)
        return query

    yield factory
    for query in created:
        query.dispose()


def gated(payload, release: asyncio.Event):
    async def handler(request):
        await release.wait()
        return httpx.Response(200, json=payload)

    return handler


class TestStrategies:
    @pytest.mark.asyncio
    async def test_keyed_profile_served_from_cache_on_second_call(self, make_query, server):
        server.add("GET", "/profile", httpx.Response(200, json={"name": "Ann"}))
        query = make_query(url="/profile", cache_key="profile", ttl=timedelta(minutes=15))

        assert await query.execute() == {"name": "Ann"}
        first_info = query.cache_info
        assert not first_info.is_cached
        assert first_info.expires_at - first_info.cached_at == timedelta(minutes=15)

        assert await query.execute() == {"name": "Ann"}
        assert query.cache_info.is_cached
        assert server.count("GET", "/profile") == 1

    @pytest.mark.asyncio
    async def test_cache_only_miss(self, make_query, server):
        query = make_query(url="/doctors", strategy=CacheStrategy.CACHE_ONLY)

        with pytest.raises(ApiError) as exc_info:
            await query.execute()

        assert exc_info.value.code == CACHE_MISS
        assert exc_info.value.kind == ErrorKind.NOT_FOUND
        assert query.status == RequestStatus.ERROR
        assert server.calls == []

    @pytest.mark.asyncio
    async def test_cache_first_hit_skips_network(self, make_query, cache, server):
        await cache.set("GET_/doctors", [{"id": 1}])
        query = make_query(url="/doctors", strategy=CacheStrategy.CACHE_FIRST)

        assert await query.execute() == [{"id": 1}]
        assert query.cache_info.is_cached
        assert query.status == RequestStatus.SUCCESS
        assert server.calls == []

    @pytest.mark.asyncio
    async def test_cache_first_miss_fetches_and_stores(self, make_query, cache, server):
        server.add("GET", "/doctors", httpx.Response(200, json=[{"id": 2}]))
        query = make_query(url="/doctors", strategy=CacheStrategy.CACHE_FIRST)

        assert await query.execute() == [{"id": 2}]
        assert await cache.get("GET_/doctors") == [{"id": 2}]

    @pytest.mark.asyncio
    async def test_refresh_bypasses_cache(self, make_query, cache, server):
        await cache.set("GET_/doctors", ["stale"])
        server.add("GET", "/doctors", httpx.Response(200, json=["fresh"]))
        query = make_query(url="/doctors", strategy=CacheStrategy.CACHE_FIRST)

        assert await query.refresh() == ["fresh"]
        assert server.count("GET", "/doctors") == 1

    @pytest.mark.asyncio
    async def test_network_only_still_writes_cache(self, make_query, cache, server):
        await cache.set("GET_/doctors", ["old"])
        server.add("GET", "/doctors", httpx.Response(200, json=["new"]))
        query = make_query(url="/doctors", strategy=CacheStrategy.NETWORK_ONLY)

        assert await query.execute() == ["new"]
        assert await cache.get("GET_/doctors") == ["new"]

    @pytest.mark.asyncio
    async def test_write_cache_disabled(self, make_query, cache, server):
        server.add("GET", "/doctors", httpx.Response(200, json=["new"]))
        query = make_query(url="/doctors", write_cache=False)

        await query.execute()

        assert await cache.get("GET_/doctors") is None
        assert not query.cache_info.is_cached

    @pytest.mark.asyncio
    async def test_network_first_offline_keeps_held_data(self, make_query, source, server):
        server.add("GET", "/records", httpx.Response(200, json=[1]))
        query = make_query(url="/records")
        await query.execute()

        source.set_offline()

        assert await query.execute() == [1]
        assert query.status == RequestStatus.SUCCESS
        assert server.count("GET", "/records") == 1

    @pytest.mark.asyncio
    async def test_offline_write_is_queued_not_served_from_held_data(
        self, make_query, network, source, server
    ):
        server.add(
            "POST",
            "/appointments",
            httpx.Response(201, json={"id": 1}),
            httpx.Response(201, json={"id": 2}),
        )
        query = make_query(url="/appointments", method="POST")
        assert await query.execute(payload={"slot": "a"}) == {"id": 1}

        source.set_offline()
        task = asyncio.create_task(query.execute(payload={"slot": "b"}))
        await wait_until(lambda: len(network.get_pending_requests()) == 1)
        assert not task.done()

        source.set_online()
        await network.wait_for_drain()

        assert await task == {"id": 2}
        sent = server.requests_to("POST", "/appointments")
        assert [json.loads(r.content)["slot"] for r in sent] == ["a", "b"]

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValueError):
            QueryConfig(url="/records", ttl=timedelta(0))


class TestState:
    @pytest.mark.asyncio
    async def test_success_transitions_and_callbacks(self, make_query, server):
        server.add("GET", "/records", httpx.Response(200, json={"items": [1, 2]}))
        on_success = AsyncMock()
        query = make_query(
            url="/records",
            transform=lambda body: body["items"],
            on_success=on_success,
        )
        seen = []
        query.subscribe(lambda state: seen.append(state.status))

        assert await query.execute() == [1, 2]

        assert seen == [RequestStatus.LOADING, RequestStatus.SUCCESS]
        assert query.updated_at is not None
        on_success.assert_awaited_once_with([1, 2])

    @pytest.mark.asyncio
    async def test_error_transitions_and_callbacks(self, make_query, server, sleep):
        server.add("GET", "/records", httpx.Response(404))
        on_error = MagicMock()
        query = make_query(url="/records", on_error=on_error)
        seen = []
        query.subscribe(lambda state: seen.append(state.status))

        with pytest.raises(ApiError):
            await query.execute()

        assert seen == [RequestStatus.LOADING, RequestStatus.ERROR]
        assert query.error.kind == ErrorKind.NOT_FOUND
        on_error.assert_called_once_with(query.error)
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_url_builder_receives_params(self, make_query, server):
        server.add("GET", "/doctors/4", httpx.Response(200, json={"id": 4}))
        query = make_query(url=lambda params: f"/doctors/{params['id']}")

        assert await query.execute({"id": 4}) == {"id": 4}

    @pytest.mark.asyncio
    async def test_should_execute_guard(self, make_query, server):
        query = make_query(url="/records", initial_data=[], should_execute=lambda: False)

        assert await query.execute() == []
        assert query.status == RequestStatus.IDLE
        assert server.calls == []

    @pytest.mark.asyncio
    async def test_reset(self, make_query, server):
        server.add("GET", "/records", httpx.Response(200, json=[1]))
        query = make_query(url="/records", initial_data=[])
        await query.execute()

        query.reset()

        assert query.status == RequestStatus.IDLE
        assert query.data == []
        assert query.error is None

    @pytest.mark.asyncio
    async def test_update_dependencies(self, make_query, server):
        server.add("GET", "/slots", httpx.Response(200, json=[]))
        query = make_query(url="/slots", deps=("2026-10-19",))

        await query.update_dependencies("2026-10-19")
        assert server.calls == []

        await query.update_dependencies("2026-10-20")
        assert server.count("GET", "/slots") == 1

    @pytest.mark.asyncio
    async def test_clear_cache(self, make_query, cache, server):
        server.add("GET", "/profile", httpx.Response(200, json={}))
        query = make_query(url="/profile", cache_key="profile")
        await query.execute()

        await query.clear_cache()

        assert await cache.get("profile") is None

    @pytest.mark.asyncio
    async def test_auto_load(self, executor, cache, network, server):
        server.add("GET", "/records", httpx.Response(200, json=[1]))
        query = RequestFacade(executor, cache, network, QueryConfig(url="/records"))

        await wait_until(lambda: query.status == RequestStatus.SUCCESS)
        assert query.data == [1]
        query.dispose()


class TestCancellation:
    @pytest.mark.asyncio
    async def test_new_call_supersedes_loading_one(self, make_query, server):
        release = asyncio.Event()
        server.add("GET", "/records", gated([1], release))
        query = make_query(url="/records")

        first = asyncio.create_task(query.execute())
        await wait_until(lambda: server.count("GET", "/records") == 1)
        second = asyncio.create_task(query.execute())
        await asyncio.sleep(0)
        release.set()

        with pytest.raises(ApiError) as exc_info:
            await first
        assert exc_info.value.code == REQUEST_CANCELLED
        assert await second == [1]
        assert query.status == RequestStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_skip_loading_check_keeps_both(self, make_query, server):
        release = asyncio.Event()
        server.add("GET", "/records", gated([1], release))
        query = make_query(url="/records", skip_loading_check=True)

        first = asyncio.create_task(query.execute())
        await wait_until(lambda: server.count("GET", "/records") == 1)
        second = asyncio.create_task(query.execute())
        await asyncio.sleep(0)
        release.set()

        assert await asyncio.gather(first, second) == [[1], [1]]

    @pytest.mark.asyncio
    async def test_cancel_returns_to_idle(self, make_query, server):
        release = asyncio.Event()
        server.add("GET", "/records", gated([1], release))
        query = make_query(url="/records")

        task = asyncio.create_task(query.execute())
        await wait_until(lambda: query.status == RequestStatus.LOADING)
        query.cancel()

        with pytest.raises(ApiError):
            await task
        assert query.status == RequestStatus.IDLE
        release.set()

    @pytest.mark.asyncio
    async def test_dispose_freezes_state(self, make_query, server):
        release = asyncio.Event()
        server.add("GET", "/records", gated([1], release))
        query = make_query(url="/records")

        task = asyncio.create_task(query.execute())
        await wait_until(lambda: server.count("GET", "/records") == 1)
        query.dispose()
        release.set()

        with pytest.raises(ApiError) as exc_info:
            await task
        assert exc_info.value.code == REQUEST_CANCELLED
        assert query.is_disposed
        assert query.status == RequestStatus.LOADING
        assert query.data is None

        assert await query.execute() is None
        assert server.count("GET", "/records") == 1
