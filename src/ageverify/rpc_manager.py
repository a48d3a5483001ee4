"""
RPC endpoint manager.

Holds the configured JSON-RPC endpoints and their health. A background task
probes every endpoint periodically; a failed probe marks the endpoint
unhealthy without removing it, and a later successful probe restores it.

Health is kept as an immutable snapshot that is replaced wholesale under a
lock, so selection always reads a consistent view while probes complete
concurrently.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
)

import httpx
import structlog

from .constants import (
    DEFAULT_ENDPOINT_WEIGHT,
    DEFAULT_RPC_TAG,
    HEALTH_CHECK_INTERVAL_SECONDS,
    PREFERRED_ENDPOINT_WEIGHT,
    TX_RPC_TAG,
)
from .exceptions import LedgerRpcError, NoHealthyEndpoint

# Initialize structured logger
logger = structlog.get_logger(__name__)

ProbeFn = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class RpcEndpoint:
    """
    Endpoint descriptor.

    ``tags`` of None means the endpoint serves every tag.
    """

    url: str
    tags: Optional[Tuple[str, ...]] = None
    weight: int = 0

    def __post_init__(self) -> None:
        if self.tags is not None:
            object.__setattr__(self, "tags", tuple(self.tags))

    def serves(self, tag: str) -> bool:
        return self.tags is None or tag in self.tags or tag == DEFAULT_RPC_TAG


@dataclass(frozen=True)
class EndpointHealth:
    """Result of the latest probe; latency is -1 while unhealthy."""

    healthy: bool = True
    latency_ms: float = 0.0
    checked_at: Optional[float] = None
    error: Optional[str] = None


def endpoints_from_urls(urls: Iterable[str]) -> List[RpcEndpoint]:
    """
    Build endpoint descriptors from bare URLs.

    QuickNode endpoints serve transactions and carry priority fee estimates,
    so they are tagged ``tx`` and preferred; Helius endpoints are preferred
    for reads.

    Examples
    --------
    >>> [e.weight for e in endpoints_from_urls(["https://x.quiknode.pro/k", "https://rpc.example"])]
    [10, 1]
    """
    endpoints = []
    for url in urls:
        url = url.strip()
        if not url:
            continue
        lowered = url.lower()
        if "quiknode" in lowered or "quicknode" in lowered:
            endpoints.append(
                RpcEndpoint(url, (TX_RPC_TAG, DEFAULT_RPC_TAG), PREFERRED_ENDPOINT_WEIGHT)
            )
        elif "helius" in lowered:
            endpoints.append(RpcEndpoint(url, None, PREFERRED_ENDPOINT_WEIGHT))
        else:
            endpoints.append(RpcEndpoint(url, None, DEFAULT_ENDPOINT_WEIGHT))
    return endpoints


class JsonRpcProbe:
    """
    Liveness probe issuing ``getLatestBlockhash``.

    Parameters
    ----------
    client : httpx.AsyncClient, optional
        Shared client; one is created per probe when omitted.
    timeout : float, default=5.0
        Request timeout in seconds.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 5.0) -> None:
        self.client = client
        self.timeout = timeout

    async def __call__(self, url: str) -> None:
        payload = {"jsonrpc": "2.0", "id": 1, "method": "getLatestBlockhash"}
        if self.client is not None:
            response = await self.client.post(url, json=payload, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload)

        response.raise_for_status()
        body = response.json()
        if body.get("error"):
            error = body["error"]
            raise LedgerRpcError(
                "getLatestBlockhash", error.get("code", 0), error.get("message", "")
            )


class RpcManager:
    """
    Weighted, health-aware endpoint selection.

    Parameters
    ----------
    endpoints : Iterable[RpcEndpoint]
        Configured endpoints, in preference order for the last-resort fallback.
    health_check_interval : float, default=30
        Seconds between background probe rounds.
    probe : callable, optional
        ``async probe(url)`` that raises on failure. Defaults to a
        ``getLatestBlockhash`` request.
    clock : callable
        Timer used to measure probe latency, in seconds.

    Examples
    --------
    >>> manager = RpcManager([RpcEndpoint("https://a", weight=10)])
    >>> manager.select().url
    'https://a'
    """

    def __init__(
        self,
        endpoints: Iterable[RpcEndpoint],
        health_check_interval: float = HEALTH_CHECK_INTERVAL_SECONDS,
        probe: Optional[ProbeFn] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._endpoints: Tuple[RpcEndpoint, ...] = tuple(endpoints)
        self.health_check_interval = health_check_interval
        self.probe: ProbeFn = probe or JsonRpcProbe()
        self.clock = clock

        self._lock = threading.Lock()
        self._health: Mapping[str, EndpointHealth] = MappingProxyType(
            {e.url: EndpointHealth() for e in self._endpoints}
        )
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_urls(cls, urls: Iterable[str], **kwargs: Any) -> "RpcManager":
        return cls(endpoints_from_urls(urls), **kwargs)

    @property
    def endpoints(self) -> Tuple[RpcEndpoint, ...]:
        return self._endpoints

    @property
    def health(self) -> Mapping[str, EndpointHealth]:
        """Current immutable health snapshot."""
        return self._health

    def _update(self, url: str, health: EndpointHealth) -> None:
        with self._lock:
            updated: Dict[str, EndpointHealth] = dict(self._health)
            updated[url] = health
            self._health = MappingProxyType(updated)

    def mark_unhealthy(self, url: str, error: Optional[str] = None) -> None:
        """Flag an endpoint after a failed request; it stays configured."""
        if url not in self._health:
            return
        self._update(
            url,
            EndpointHealth(healthy=False, latency_ms=-1, checked_at=time.time(), error=error),
        )
        logger.warning("RPC endpoint marked unhealthy", url=url, error=error)

    def mark_healthy(self, url: str, latency_ms: float) -> None:
        if url not in self._health:
            return
        self._update(
            url, EndpointHealth(healthy=True, latency_ms=latency_ms, checked_at=time.time())
        )

    def candidates(self, tag: str = DEFAULT_RPC_TAG) -> List[RpcEndpoint]:
        """Healthy endpoints serving ``tag``, best first."""
        snapshot = self._health
        matching = [
            e for e in self._endpoints if snapshot[e.url].healthy and e.serves(tag)
        ]
        return sorted(matching, key=lambda e: (-e.weight, snapshot[e.url].latency_ms))

    def select(self, tag: str = DEFAULT_RPC_TAG) -> RpcEndpoint:
        """
        Pick the endpoint for a request.

        Order: healthy endpoints serving the tag by weight then latency, then
        any healthy endpoint, then the first configured endpoint.

        Raises
        ------
        NoHealthyEndpoint
            Only when no endpoints are configured at all.
        """
        if not self._endpoints:
            raise NoHealthyEndpoint(tag)

        ranked = self.candidates(tag)
        if ranked:
            return ranked[0]

        snapshot = self._health
        for endpoint in self._endpoints:
            if snapshot[endpoint.url].healthy:
                return endpoint

        return self._endpoints[0]

    def select_url(self, tag: str = DEFAULT_RPC_TAG) -> str:
        return self.select(tag).url

    async def check_health(self, url: str) -> EndpointHealth:
        """Probe one endpoint and record the result."""
        start = self.clock()
        try:
            await self.probe(url)
        except Exception as e:
            self.mark_unhealthy(url, str(e))
            return self._health[url]

        latency_ms = (self.clock() - start) * 1000
        self.mark_healthy(url, latency_ms)
        return self._health[url]

    async def check_all_health(self) -> Mapping[str, EndpointHealth]:
        """Probe every endpoint concurrently; returns the resulting snapshot."""
        await asyncio.gather(*(self.check_health(e.url) for e in self._endpoints))
        healthy = sum(1 for h in self._health.values() if h.healthy)
        logger.debug("RPC health round complete", healthy=healthy, total=len(self._endpoints))
        return self._health

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_interval)
            await self.check_all_health()

    def start(self) -> None:
        """Start periodic health checks on the running event loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._health_loop())

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def __aenter__(self) -> "RpcManager":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()
