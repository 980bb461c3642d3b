"""
Client Entitlement Cache - session-side memo of the entitlement decision.

Provides:
- ClientEntitlementCache: TTL cache with single-flight fetch collapsing
- EntitlementView: per-consumer handle that can be detached mid-wait
- HttpEntitlementFetcher: default fetch against GET /api/entitlement
- configure/get/reset accessors for the process-wide instance

Behaviour:
- A decision is served unmodified while clock() - timestamp < ttl
- Concurrent misses share ONE in-flight fetch (an asyncio.Future resolved
  exactly once); waiters give up after wait_timeout and get None
- Not entitled, or any fetch error, caches "not entitled" and navigates to
  the same external URL the access gate uses
- refetch() ignores the cache and TTL; invalidate() drops the entry

The server-side gate never reads this cache. Nothing here raises to the
caller: every path ends in a decision or None.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set

import httpx

from gatekeeper.config.settings import get_settings

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_WAIT_TIMEOUT_SECONDS = 5.0
DEFAULT_NO_ENTITLEMENT_URL = "https://google.com"

FetchFn = Callable[[], Awaitable[Mapping[str, Any]]]
NavigateFn = Callable[[str], Any]
ClockFn = Callable[[], float]


@dataclass(frozen=True)
class CachedDecision:
    """Memoized entitlement decision."""

    entitled: bool
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0

    def is_fresh(self, now: float, ttl: float) -> bool:
        return now - self.timestamp < ttl


class ClientEntitlementCache:
    """
    Single-flight TTL cache for one session's entitlement decision.

    Usage:
        cache = configure_client_entitlement_cache(
            fetch=HttpEntitlementFetcher("https://app.example.com", token),
            navigate=browser.open,
        )
        decision = await cache.get()
    """

    def __init__(
        self,
        fetch: FetchFn,
        navigate: NavigateFn,
        clock: ClockFn = time.monotonic,
        ttl: float = DEFAULT_TTL_SECONDS,
        wait_timeout: float = DEFAULT_WAIT_TIMEOUT_SECONDS,
        no_entitlement_url: str = DEFAULT_NO_ENTITLEMENT_URL,
    ):
        """
        Initialize cache.

        Args:
            fetch: Coroutine function returning {"entitled": bool, "details": {...}}
            navigate: Called with the no-entitlement URL on a deny (may be async)
            clock: Monotonic seconds
            ttl: Seconds a decision stays fresh
            wait_timeout: Upper bound a caller waits on an in-flight fetch
            no_entitlement_url: External destination on deny
        """
        self._fetch = fetch
        self._navigate = navigate
        self._clock = clock
        self._ttl = ttl
        self._wait_timeout = wait_timeout
        self._no_entitlement_url = no_entitlement_url

        self._entry: Optional[CachedDecision] = None
        self._inflight: Optional[asyncio.Future] = None
        self._generation = 0
        self._tasks: Set[asyncio.Task] = set()

    @property
    def ttl(self) -> float:
        return self._ttl

    @property
    def is_fetching(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def peek(self) -> Optional[CachedDecision]:
        """Return the cached decision if still fresh, without fetching."""
        entry = self._entry
        if entry is not None and entry.is_fresh(self._clock(), self._ttl):
            return entry
        return None

    async def get(self) -> Optional[CachedDecision]:
        """
        Return the cached decision, fetching on miss or expiry.

        Returns None if an in-flight fetch outlasts wait_timeout.
        """
        entry = self.peek()
        if entry is not None:
            return entry
        return await self._wait_for(self._start_fetch(force=False))

    async def refetch(self) -> Optional[CachedDecision]:
        """Drop the entry and fetch again regardless of TTL or in-flight fetches."""
        self._entry = None
        return await self._wait_for(self._start_fetch(force=True))

    def invalidate(self) -> None:
        """Drop the cached decision; the next get() fetches."""
        self._entry = None
        logger.debug("Client entitlement cache invalidated")

    def attach(self) -> "EntitlementView":
        """Create a consumer view bound to this cache."""
        return EntitlementView(self)

    def _start_fetch(self, force: bool) -> asyncio.Future:
        if not force and self.is_fetching:
            return self._inflight

        loop = asyncio.get_running_loop()
        self._generation += 1
        future = loop.create_future()
        self._inflight = future

        task = loop.create_task(self._run_fetch(future, self._generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return future

    async def _wait_for(self, future: asyncio.Future) -> Optional[CachedDecision]:
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self._wait_timeout)
        except asyncio.TimeoutError:
            logger.info(
                "Entitlement fetch still pending",
                extra={"wait_timeout": self._wait_timeout},
            )
            return None

    async def _run_fetch(self, future: asyncio.Future, generation: int) -> None:
        try:
            payload = await self._fetch()
            entitled = bool(payload.get("entitled"))
            details = dict(payload.get("details") or {})
        except Exception as e:
            logger.warning(
                "Entitlement fetch failed, treating as not entitled",
                extra={"error": str(e)},
            )
            entitled = False
            details = {"error": str(e)}

        decision = CachedDecision(entitled=entitled, details=details, timestamp=self._clock())

        # A newer refetch owns the entry and navigation; this result only answers its own waiters
        current = generation == self._generation
        if current:
            self._entry = decision

        if not future.done():
            future.set_result(decision)
        if self._inflight is future:
            self._inflight = None

        if not current:
            logger.debug(
                "Superseded entitlement fetch discarded",
                extra={"generation": generation, "entitled": entitled},
            )
        elif not entitled:
            await self._redirect(decision)

    async def _redirect(self, decision: CachedDecision) -> None:
        logger.info(
            "Not entitled, navigating away",
            extra={"url": self._no_entitlement_url, "details": decision.details},
        )
        try:
            result = self._navigate(self._no_entitlement_url)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Navigation to no-entitlement URL failed")


class EntitlementView:
    """
    One consumer's handle on the cache.

    After detach(), a pending get() is cancelled and any late result is
    discarded: the view returns None instead of acting on it.
    """

    def __init__(self, cache: ClientEntitlementCache):
        self._cache = cache
        self._alive = True
        self._pending: Optional[asyncio.Task] = None

    @property
    def alive(self) -> bool:
        return self._alive

    async def get(self) -> Optional[CachedDecision]:
        if not self._alive:
            return None

        task = asyncio.ensure_future(self._cache.get())
        self._pending = task
        try:
            result = await task
        except asyncio.CancelledError:
            if self._alive:
                raise
            return None
        finally:
            if self._pending is task:
                self._pending = None

        return result if self._alive else None

    def detach(self) -> None:
        self._alive = False
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()


class HttpEntitlementFetcher:
    """
    Fetch the signed-in account's decision from GET /api/entitlement.

    Any non-2xx answer raises, which the cache records as not entitled.
    """

    def __init__(
        self,
        base_url: str,
        session_token: Optional[str] = None,
        path: str = "/api/entitlement",
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session_token = session_token
        self.path = path
        self.timeout = timeout
        self._client = client

    async def __call__(self) -> Mapping[str, Any]:
        headers = {"Accept": "application/json"}
        if self.session_token:
            headers["Authorization"] = f"Bearer {self.session_token}"

        url = f"{self.base_url}{self.path}"
        if self._client is not None:
            response = await self._client.get(url, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, headers=headers)

        response.raise_for_status()
        return response.json()


# Module-level singleton accessor
_cache_instance: Optional[ClientEntitlementCache] = None
_cache_lock = Lock()


def configure_client_entitlement_cache(
    fetch: FetchFn,
    navigate: NavigateFn,
    clock: ClockFn = time.monotonic,
    ttl: Optional[float] = None,
    wait_timeout: Optional[float] = None,
    no_entitlement_url: Optional[str] = None,
) -> ClientEntitlementCache:
    """
    Create the process-wide cache.

    Unset TTL, wait bound and URL come from access_gate.yml.
    """
    global _cache_instance
    settings = get_settings()
    with _cache_lock:
        _cache_instance = ClientEntitlementCache(
            fetch=fetch,
            navigate=navigate,
            clock=clock,
            ttl=settings.client_cache_ttl_seconds if ttl is None else ttl,
            wait_timeout=settings.client_cache_wait_seconds if wait_timeout is None else wait_timeout,
            no_entitlement_url=no_entitlement_url or settings.no_entitlement_url,
        )
    return _cache_instance


def get_client_entitlement_cache() -> ClientEntitlementCache:
    """
    Get the process-wide cache.

    Raises:
        RuntimeError: configure_client_entitlement_cache() was never called
    """
    if _cache_instance is None:
        raise RuntimeError("Client entitlement cache is not configured")
    return _cache_instance


def reset_client_entitlement_cache() -> None:
    """
    Reset the singleton (for testing).

    WARNING: Only use in tests!
    """
    global _cache_instance
    with _cache_lock:
        _cache_instance = None
