import asyncio
import time
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from utils.api_clients import PokeAPIClient
from utils.circuit_breaker import CircuitBreaker, CircuitState
from utils.errors import CircuitBreakerError, FetchError, TransientNetworkError
from utils.ttl_cache import MemoryTTLCache


class ScriptedUpstream:
    """Serves a fixed sequence of statuses, then 200s."""

    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.calls = 0

    async def handle(self, request):
        self.calls += 1
        if self.statuses:
            status = self.statuses.pop(0)
            if status != 200:
                return web.json_response({"detail": "nope"}, status=status)
        return web.json_response({"id": 25, "name": "pikachu"})


async def start_upstream(upstream):
    app = web.Application()
    app.router.add_get("/pokemon/{name}", upstream.handle)
    server = test_utils.TestServer(app)
    await server.start_server()
    return server


@pytest.mark.asyncio
class TestRetryFetch:
    @pytest_asyncio.fixture
    async def make_client(self):
        created = []

        async def _make(statuses, **kwargs):
            upstream = ScriptedUpstream(statuses)
            server = await start_upstream(upstream)
            client = PokeAPIClient(
                base_url=str(server.make_url("")).rstrip("/"),
                jitter=0,
                **kwargs,
            )
            created.append((client, server))
            return client, upstream

        yield _make

        for client, server in created:
            await client.close()
            await server.close()

    async def test_retries_5xx_with_backoff(self, make_client):
        client, upstream = await make_client([500, 500, 200], attempts=3, base_delay=0.1)

        started = time.monotonic()
        data = await client.get_pokemon("pikachu")
        elapsed = time.monotonic() - started

        assert data["name"] == "pikachu"
        assert upstream.calls == 3
        assert elapsed >= 0.3

    async def test_429_is_retried(self, make_client):
        client, upstream = await make_client([429, 200], attempts=2, base_delay=0.01)
        assert (await client.get_pokemon("pikachu"))["id"] == 25
        assert upstream.calls == 2

    async def test_404_fails_immediately(self, make_client):
        client, upstream = await make_client([404], attempts=3, base_delay=0.01)

        with pytest.raises(FetchError) as exc_info:
            await client.get_pokemon("missingno")

        assert not isinstance(exc_info.value, TransientNetworkError)
        assert exc_info.value.status == 404
        assert upstream.calls == 1

    async def test_exhausted_budget_surfaces_last_error(self, make_client):
        client, upstream = await make_client([503, 503], attempts=2, base_delay=0.01)

        with pytest.raises(TransientNetworkError) as exc_info:
            await client.get_pokemon("pikachu")

        assert "HTTP 503" in str(exc_info.value)
        assert str(exc_info.value).startswith("E_TRANSIENT:")
        assert upstream.calls == 2

    async def test_response_cache_short_circuits(self, make_client):
        client, upstream = await make_client([], cache=MemoryTTLCache(ttl=60))

        await client.get_pokemon("pikachu")
        await client.get_pokemon("pikachu")

        assert upstream.calls == 1
        assert client.get_cache_stats()["hits"] == 1


@pytest.mark.asyncio
class TestPokeAPIClient:
    @pytest_asyncio.fixture
    async def client(self):
        client = PokeAPIClient()
        yield client
        await client.close()

    async def test_deduplication(self, client):
        """Concurrent requests for the same resource trigger one fetch"""
        mock_fetch = AsyncMock(return_value={"some": "data"})

        async def slow_fetch():
            await asyncio.sleep(0.1)
            return await mock_fetch()

        tasks = [client._deduplicate_request("test_key", slow_fetch) for _ in range(5)]
        results = await asyncio.gather(*tasks)

        for res in results:
            assert res == {"some": "data"}
        assert mock_fetch.call_count == 1
        assert client.get_deduplication_stats()["pending_requests"] == 0

    async def test_caller_queued_on_lock_joins_finished_fetch(self, client):
        mock_fetch = AsyncMock(return_value={"some": "data"})

        first = asyncio.create_task(client._deduplicate_request("test_key", mock_fetch))
        await asyncio.sleep(0)

        lock = client._request_locks["test_key"]
        await lock.acquire()
        queued = asyncio.create_task(client._deduplicate_request("test_key", mock_fetch))
        await asyncio.sleep(0)

        assert await first == {"some": "data"}
        lock.release()
        assert await queued == {"some": "data"}

        assert mock_fetch.call_count == 1
        assert client.get_deduplication_stats() == {"pending_requests": 0, "active_locks": 0}

    async def test_later_caller_starts_fresh_fetch(self, client):
        mock_fetch = AsyncMock(return_value={"some": "data"})

        await client._deduplicate_request("test_key", mock_fetch)
        await client._deduplicate_request("test_key", mock_fetch)

        assert mock_fetch.call_count == 2

    async def test_url_for(self, client):
        assert client.url_for("pokemon/1") == "https://pokeapi.co/api/v2/pokemon/1"
        assert client.url_for("https://example.org/x") == "https://example.org/x"


@pytest.mark.asyncio
class TestCircuitBreaker:
    async def test_opens_after_transient_failures(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60)

        async def failing():
            raise TransientNetworkError("timeout")

        for _ in range(2):
            with pytest.raises(TransientNetworkError):
                await breaker.call(failing)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerError):
            await breaker.call(failing)

    async def test_permanent_errors_do_not_count(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60)

        async def not_found():
            raise FetchError("HTTP 404", status=404)

        with pytest.raises(FetchError):
            await breaker.call(not_found)
        assert breaker.state == CircuitState.CLOSED

    async def test_half_open_trial_closes_circuit(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0.05)

        async def failing():
            raise TransientNetworkError("reset")

        async def healthy():
            return "ok"

        with pytest.raises(TransientNetworkError):
            await breaker.call(failing)
        await asyncio.sleep(0.06)

        assert await breaker.call(healthy) == "ok"
        assert breaker.state == CircuitState.CLOSED

    async def test_half_open_allows_one_trial_at_a_time(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0.05)
        release = asyncio.Event()

        async def failing():
            raise TransientNetworkError("reset")

        async def slow():
            await release.wait()
            return "ok"

        with pytest.raises(TransientNetworkError):
            await breaker.call(failing)
        await asyncio.sleep(0.06)

        trial = asyncio.create_task(breaker.call(slow))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        with pytest.raises(CircuitBreakerError):
            await breaker.call(slow)

        release.set()
        assert await trial == "ok"
        assert breaker.state == CircuitState.CLOSED
