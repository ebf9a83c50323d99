"""
API Client module for fetching Pokemon data from PokeAPI.

This module handles every interaction with the upstream REST API (and the
plain-HTML fetches used for scraping). It implements the infrastructure
patterns the rest of the service relies on: connection pooling, a bounded
retry budget with exponential backoff, a circuit breaker, request
deduplication and an optional injected response cache.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Optional, Union

import aiohttp

from config.settings import (
    API_REQUEST_TIMEOUT,
    CACHE_CLEANUP_INTERVAL,
    MAX_CACHE_SIZE,
    MAX_CONCURRENT_API_REQUESTS,
    MAX_RETRY_ATTEMPTS,
    POKEAPI_URL,
    RETRY_BASE_DELAY,
    RETRY_MAX_JITTER,
    SCRAPE_REQUEST_TIMEOUT,
)
from utils.api_models import (
    CacheStats,
    DeduplicationStats,
    RawForm,
    RawPage,
    RawPokedex,
    RawPokemon,
    RawSpecies,
)
from utils.circuit_breaker import CircuitBreaker
from utils.decorators import call_with_retry, is_retriable_error, is_retriable_status
from utils.errors import FetchError, PokedexError, TransientNetworkError
from utils.ttl_cache import TTLCache

logger = logging.getLogger("pokedex.api")

# Connection pool settings
CONNECTION_POOL_LIMIT = 100  # Total connections across all hosts
CONNECTION_POOL_LIMIT_PER_HOST = 30  # Max connections per host
CONNECTION_KEEPALIVE_TIMEOUT = 30  # Seconds to keep idle connections

USER_AGENT = "Pokedex-Cache-Service/1.0"


class PokeAPIClient:
    """
    Client for PokeAPI resources.

    Key Features:
    - **Connection Pooling**: Uses `aiohttp.TCPConnector` to reuse connections.
    - **Retry With Backoff**: 5xx, 429, timeouts and transport faults are
      retried `attempts` times; any other status fails immediately.
    - **Circuit Breaker**: Fails fast while the upstream is unhealthy.
    - **Request Deduplication**: Merges simultaneous requests for the same URL
      into a single API call.
    - **Response Caching**: An injected `TTLCache` short-circuits repeat reads.
    """

    def __init__(
        self,
        base_url: str = POKEAPI_URL,
        cache: Optional[TTLCache] = None,
        max_concurrency: int = MAX_CONCURRENT_API_REQUESTS,
        breaker: Optional[CircuitBreaker] = None,
        attempts: int = MAX_RETRY_ATTEMPTS,
        base_delay: float = RETRY_BASE_DELAY,
        jitter: float = RETRY_MAX_JITTER,
        timeout: float = API_REQUEST_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.session: Optional[aiohttp.ClientSession] = None
        self.cache = cache

        self.attempts = attempts
        self.base_delay = base_delay
        self.jitter = jitter
        self.timeout = timeout

        # Session creation lock to prevent race conditions during lazy loading
        self._session_lock = asyncio.Lock()

        # Client-wide limit on outstanding upstream requests
        self._rate_limiter = asyncio.Semaphore(max_concurrency)

        self.cache_hits = 0
        self.cache_misses = 0

        self._breaker = breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            name="pokeapi",
        )

        # Tracks in-flight requests to prevent duplicate API calls
        self._pending_requests: Dict[str, asyncio.Task] = {}
        self._request_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._request_callers: Dict[str, int] = defaultdict(int)

        self._cleanup_task: Optional[asyncio.Task] = None
        self._is_closing = False

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def url_for(self, path: str) -> str:
        """Resolve a resource path against the base URL; absolute URLs pass through."""
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _deduplicate_request(self, key: str, fetch_func, *args, **kwargs) -> Any:
        """
        Deduplicate concurrent requests for the same data.

        The lock is held only while creating or retrieving the pending task,
        never while awaiting the network result, so unrelated keys never
        serialize behind each other. The pending task and the key's lock are
        released only once the last caller for the key has left, so a caller
        still queued on the lock joins the same task instead of starting a
        second fetch.

        Args:
            key: Unique key identifying this request resource.
            fetch_func: Async function to call if no request is pending.

        Returns:
            Result from fetch_func or shared result from a pending request.
        """
        self._request_callers[key] += 1
        task: Optional[asyncio.Task] = None

        try:
            async with self._request_locks[key]:
                task = self._pending_requests.get(key)
                if task is None:
                    task = asyncio.create_task(fetch_func(*args, **kwargs))
                    self._pending_requests[key] = task
                    logger.debug("Request dedup: new request", extra={"key": key[:80]})
                else:
                    logger.debug("Request dedup: joining request", extra={"key": key[:80]})

            return await asyncio.shield(task)
        finally:
            self._request_callers[key] -= 1
            if self._request_callers[key] == 0:
                del self._request_callers[key]
                self._request_locks.pop(key, None)
                pending = self._pending_requests.get(key)
                if pending is not None and not pending.done():
                    pending.add_done_callback(lambda t: self._release_pending(key, t))
                elif pending is not None:
                    self._release_pending(key, pending)

    def _release_pending(self, key: str, task: asyncio.Task) -> None:
        if key not in self._request_callers and self._pending_requests.get(key) is task:
            del self._pending_requests[key]

    async def get_session(self) -> aiohttp.ClientSession:
        """
        Get or create the pooled aiohttp session.

        Creating the session also (re)starts the background sweep of the
        injected response cache.
        """
        async with self._session_lock:
            if self.session is None or self.session.closed:
                connector = aiohttp.TCPConnector(
                    limit=CONNECTION_POOL_LIMIT,
                    limit_per_host=CONNECTION_POOL_LIMIT_PER_HOST,
                    ttl_dns_cache=300,
                    keepalive_timeout=CONNECTION_KEEPALIVE_TIMEOUT,
                    enable_cleanup_closed=True,
                )

                self.session = aiohttp.ClientSession(
                    connector=connector,
                    headers={"User-Agent": USER_AGENT},
                )

                logger.info(
                    "Created aiohttp session with connection pooling",
                    extra={
                        "total_limit": CONNECTION_POOL_LIMIT,
                        "per_host_limit": CONNECTION_POOL_LIMIT_PER_HOST,
                    },
                )

                if self.cache is not None:
                    if self._cleanup_task and not self._cleanup_task.done():
                        self._cleanup_task.cancel()
                        try:
                            await self._cleanup_task
                        except asyncio.CancelledError:
                            pass
                    self._cleanup_task = asyncio.create_task(self._cache_cleanup_loop())

        return self.session

    async def close(self) -> None:
        """Close the aiohttp session and cancel background tasks."""
        self._is_closing = True

        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        if self.session and not self.session.closed:
            await self.session.close()
            logger.info(
                f"API client session closed (Cache stats - Hits: {self.cache_hits}, "
                f"Misses: {self.cache_misses})",
                extra=self._breaker.get_stats(),
            )

    async def _cache_cleanup_loop(self) -> None:
        """Background task to periodically expire cached responses."""
        while not self._is_closing:
            try:
                await asyncio.sleep(CACHE_CLEANUP_INTERVAL)
                await self.cache.cleanup()  # type: ignore[union-attr]
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in cache cleanup task: {e}", exc_info=True)

    async def _get_cached(self, key: str) -> Optional[Any]:
        if self.cache is None:
            return None
        try:
            data = await self.cache.get(key)
        except Exception as e:
            logger.error(f"Error reading response cache: {e}", exc_info=True)
            data = None

        if data is None:
            self.cache_misses += 1
            return None

        self.cache_hits += 1
        logger.debug("Cache hit", extra={"cache_key": key[:80]})
        return data

    async def _set_cache(self, key: str, data: Any) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(key, data)
        except Exception as e:
            logger.error(f"Error writing response cache: {e}", exc_info=True)

    async def _request_once(self, url: str, timeout: float, as_text: bool) -> Any:
        """
        Perform a single GET.

        Raises:
            TransientNetworkError: Timeout, transport fault, 5xx or 429.
            FetchError: Any other non-2xx status or an unreadable body.
        """
        session = await self.get_session()
        try:
            async with self._rate_limiter:
                async with session.get(
                    url, timeout=aiohttp.ClientTimeout(total=timeout)
                ) as resp:
                    if 200 <= resp.status < 300:
                        if as_text:
                            return await resp.text()
                        return await resp.json(content_type=None)

                    message = f"HTTP {resp.status} for {url}"
                    if is_retriable_status(resp.status):
                        raise TransientNetworkError(message, status=resp.status, url=url)
                    raise FetchError(message, status=resp.status, url=url)

        except PokedexError:
            raise
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(
                f"request timed out after {timeout}s: {url}", url=url
            ) from e
        except aiohttp.ClientError as e:
            message = f"{type(e).__name__}: {e} ({url})"
            if is_retriable_error(e):
                raise TransientNetworkError(message, url=url) from e
            raise FetchError(message, url=url) from e
        except ValueError as e:
            raise FetchError(f"invalid JSON from {url}: {e}", url=url) from e

    async def _fetch_with_retry(
        self,
        url: str,
        attempts: int,
        base_delay: float,
        timeout: float,
        as_text: bool = False,
    ) -> Any:
        async def _attempt():
            return await self._request_once(url, timeout, as_text)

        async def _retrying():
            return await call_with_retry(
                _attempt,
                attempts=attempts,
                base_delay=base_delay,
                jitter=self.jitter,
                label=f"GET {url}",
            )

        return await self._breaker.call(_retrying)

    async def fetch_json(
        self,
        path: str,
        attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        use_cache: bool = True,
    ) -> Any:
        """
        Fetch a JSON resource with retry, dedup and caching.

        Args:
            path: Resource path relative to the base URL, or an absolute URL.
            attempts: Total attempts (defaults to the client's budget).
            base_delay: Backoff base in seconds.
            timeout: Per-attempt timeout in seconds.
            use_cache: Read and populate the injected response cache.

        Returns:
            Parsed JSON body.

        Raises:
            FetchError: Non-retriable failure (e.g. HTTP 404).
            TransientNetworkError: Retriable failure after the budget ran out.
            CircuitBreakerError: The circuit is open.
        """
        url = self.url_for(path)

        if use_cache:
            cached = await self._get_cached(url)
            if cached is not None:
                return cached

        async def _fetch():
            data = await self._fetch_with_retry(
                url,
                attempts or self.attempts,
                self.base_delay if base_delay is None else base_delay,
                timeout or self.timeout,
            )
            if use_cache:
                await self._set_cache(url, data)
            return data

        return await self._deduplicate_request(f"json:{url}", _fetch)

    async def fetch_text(
        self,
        url: str,
        timeout: float = SCRAPE_REQUEST_TIMEOUT,
        attempts: Optional[int] = None,
    ) -> str:
        """Fetch an HTML/text document (used for scraping). Never cached here."""

        async def _fetch():
            return await self._fetch_with_retry(
                url, attempts or self.attempts, self.base_delay, timeout, as_text=True
            )

        return await self._deduplicate_request(f"text:{url}", _fetch)

    # ==================== RESOURCE HELPERS ====================

    @staticmethod
    def _key(name_or_id: Union[str, int]) -> str:
        return str(name_or_id).strip().lower().replace(" ", "-")

    async def get_pokemon(self, name_or_id: Union[str, int]) -> RawPokemon:
        return await self.fetch_json(f"pokemon/{self._key(name_or_id)}")

    async def get_species(self, name_or_id: Union[str, int]) -> RawSpecies:
        return await self.fetch_json(f"pokemon-species/{self._key(name_or_id)}")

    async def get_form(self, name_or_id: Union[str, int]) -> RawForm:
        return await self.fetch_json(f"pokemon-form/{self._key(name_or_id)}")

    async def get_pokedex(self, slug: str) -> RawPokedex:
        return await self.fetch_json(f"pokedex/{self._key(slug)}")

    async def get_type_list(self) -> RawPage:
        return await self.fetch_json("type")

    async def get_forms_page(self, limit: int, offset: int) -> RawPage:
        return await self.fetch_json(f"pokemon-form?limit={limit}&offset={offset}")

    # ==================== STATS ====================

    def get_cache_stats(self) -> CacheStats:
        total_requests = self.cache_hits + self.cache_misses
        hit_rate = (self.cache_hits / total_requests * 100) if total_requests > 0 else 0

        return {
            "size": len(self.cache) if hasattr(self.cache, "__len__") else "N/A",  # type: ignore[arg-type]
            "max_size": getattr(self.cache, "max_size", MAX_CACHE_SIZE),
            "hits": self.cache_hits,
            "misses": self.cache_misses,
            "hit_rate": f"{hit_rate:.1f}%",
        }

    def get_deduplication_stats(self) -> DeduplicationStats:
        return {
            "pending_requests": len(self._pending_requests),
            "active_locks": len(self._request_locks),
        }

    def get_circuit_breaker_stats(self) -> Dict[str, dict]:
        return {"pokeapi": self._breaker.get_stats()}
