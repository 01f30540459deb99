"""Batching HTTP transport with bounded retries and exponential backoff."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

import httpx

from .compression import Compressor, select_compressor
from .config import TransportConfig
from .discovery import EndpointDiscovery
from .types import TelemetryItem, epoch_ms, to_json_safe

logger = logging.getLogger(__name__)


class DeliveryError(RuntimeError):
    """Raised when the collector answers with a non-2xx status."""

    def __init__(self, status_code: int, reason: str = "") -> None:
        super().__init__(f"HTTP {status_code}: {reason}".rstrip(": "))
        self.status_code = status_code


_DELIVERY_ERRORS = (DeliveryError, httpx.HTTPError, asyncio.TimeoutError, OSError)


@dataclass(eq=False, slots=True)
class RetryEntry:
    batch: List[Dict[str, Any]]
    retry_count: int = 0
    next_retry_time: float = 0.0


@dataclass(slots=True)
class TransportStats:
    total_sent: int = 0
    total_failed: int = 0
    total_retries: int = 0
    total_dropped: int = 0
    average_latency: float = 0.0
    last_success_time: Optional[int] = None
    last_failure_time: Optional[int] = None

    def record_latency(self, sample_ms: float) -> None:
        if self.average_latency == 0:
            self.average_latency = sample_ms
        else:
            self.average_latency = (self.average_latency + sample_ms) / 2


class HttpTransport:
    """Ships telemetry to the collector in batches.

    ``send`` only touches in-memory state and never raises; all network I/O
    happens in background tasks on the event loop. ``send`` may be called
    from any thread: the batch buffer is guarded by one lock and flush
    scheduling is handed to the loop with ``call_soon_threadsafe``. The retry
    queue is only mutated from the loop thread.
    """

    def __init__(
        self,
        config: Optional[TransportConfig] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
        compressor: Optional[Compressor] = None,
    ) -> None:
        self.config = config or TransportConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()
        self._clock = clock
        self._compressor = compressor or select_compressor(self.config.enable_compression)

        self.is_connected = False
        self.is_healthy = False
        self.discovered_endpoint: Optional[str] = None

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._batch: List[Dict[str, Any]] = []
        self._batch_lock = threading.Lock()
        self._batch_timer: Optional[asyncio.TimerHandle] = None
        self._retry_queue: List[RetryEntry] = []
        self._retry_lock = asyncio.Lock()
        self._inflight: Set[asyncio.Task[Any]] = set()
        self._background: List[asyncio.Task[Any]] = []
        self._destroyed = False
        self._stats = TransportStats()

    @property
    def endpoint(self) -> str:
        return self.discovered_endpoint or self.config.default_endpoint

    @property
    def health_endpoint(self) -> str:
        endpoint = self.endpoint
        if endpoint.endswith(self.config.server_path):
            return endpoint[: len(endpoint) - len(self.config.server_path)] + self.config.health_path
        return endpoint.rstrip("/") + self.config.health_path

    @property
    def pending(self) -> int:
        with self._batch_lock:
            return len(self._batch)

    @property
    def retry_queue(self) -> List[RetryEntry]:
        return list(self._retry_queue)

    async def initialize(self) -> bool:
        self._loop = asyncio.get_running_loop()
        if self.config.enable_auto_discovery:
            await self.discover()
        self._start_background()
        return self.is_connected

    async def discover(self) -> str:
        discovery = EndpointDiscovery(
            host=self.config.server_host,
            ports=self.config.discovery_ports,
            server_path=self.config.server_path,
            health_path=self.config.health_path,
            default_endpoint=self.config.default_endpoint,
            probe=self._probe,
        )
        result = await discovery.discover()
        self.discovered_endpoint = result.endpoint
        self.is_connected = result.connected
        if result.connected:
            self.is_healthy = True
        return result.endpoint

    def send(self, item: TelemetryItem | Mapping[str, Any] | None) -> None:
        if item is None or self._destroyed:
            return

        entry = item.to_dict() if isinstance(item, TelemetryItem) else to_json_safe(item)
        if not isinstance(entry, dict):
            entry = {"value": entry}
        entry["transportTimestamp"] = epoch_ms()
        with self._batch_lock:
            self._batch.append(entry)

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not None:
            self._loop = running
            self._schedule_flush()
            return

        # Off the loop thread: without a known loop the item waits for flush().
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._schedule_flush)
        except RuntimeError:
            logger.debug("event loop closed; item left in buffer")

    async def flush(self) -> None:
        self._cancel_batch_timer()
        while self.pending:
            self._dispatch_batch()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)
        await self.process_retry_queue()

    def destroy(self) -> None:
        self._destroyed = True
        self._cancel_batch_timer()
        for task in self._background:
            task.cancel()
        self._background = []
        with self._batch_lock:
            self._batch = []
        self._retry_queue = []
        self.is_connected = False
        self.is_healthy = False

    async def aclose(self) -> None:
        background = list(self._background)
        self.destroy()
        if background:
            await asyncio.gather(*background, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()

    def get_stats(self) -> Dict[str, Any]:
        stats = asdict(self._stats)
        stats.update(
            {
                "is_connected": self.is_connected,
                "is_healthy": self.is_healthy,
                "pending": self.pending,
                "retry_queue_size": len(self._retry_queue),
            }
        )
        return stats

    def backoff_delay(self, retry_count: int) -> float:
        delay = self.config.retry_delay * (self.config.retry_backoff_multiplier ** max(0, retry_count))
        return min(delay, self.config.max_retry_delay)

    async def process_retry_queue(self) -> None:
        async with self._retry_lock:
            now = self._clock()
            for entry in list(self._retry_queue):
                if self._destroyed:
                    return
                if entry not in self._retry_queue:
                    continue
                if entry.retry_count >= self.config.max_retries:
                    self._retry_queue.remove(entry)
                    self._stats.total_dropped += len(entry.batch)
                    logger.warning(
                        "dropping batch after %s retries size=%s", entry.retry_count, len(entry.batch)
                    )
                    continue
                if entry.next_retry_time > now:
                    continue

                try:
                    await self._send_batch(entry.batch)
                except _DELIVERY_ERRORS as exc:
                    if self._destroyed:
                        return
                    entry.retry_count += 1
                    entry.next_retry_time = now + self.backoff_delay(entry.retry_count)
                    self._stats.total_retries += 1
                    logger.debug("retry failed attempt=%s error=%s", entry.retry_count, exc)
                    continue

                if self._destroyed:
                    return
                self._stats.total_sent += len(entry.batch)
                self._stats.total_retries += 1
                self._stats.last_success_time = epoch_ms()
                self.is_healthy = True
                if entry in self._retry_queue:
                    self._retry_queue.remove(entry)

    async def check_health(self) -> bool:
        try:
            healthy = await self._probe(self.health_endpoint)
        except _DELIVERY_ERRORS:
            healthy = False
        if not self._destroyed:
            self.is_healthy = healthy
            self.is_connected = healthy
        return healthy

    def _schedule_flush(self) -> None:
        """Runs on the loop thread: dispatch a full batch or arm the timer."""
        if self._destroyed:
            return
        pending = self.pending
        if pending >= self.config.batch_size:
            self._dispatch_batch()
        elif pending and self._batch_timer is None:
            loop = asyncio.get_running_loop()
            self._batch_timer = loop.call_later(self.config.batch_timeout, self._on_batch_timeout)

    def _dispatch_batch(self) -> Optional[asyncio.Task[Any]]:
        size = self.config.max_batch_size
        with self._batch_lock:
            if not self._batch:
                return None
            batch = self._batch[:size]
            del self._batch[:size]
        self._cancel_batch_timer()

        task = asyncio.get_running_loop().create_task(self._deliver(batch))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    def _on_batch_timeout(self) -> None:
        self._batch_timer = None
        self._dispatch_batch()

    def _cancel_batch_timer(self) -> None:
        if self._batch_timer is not None:
            self._batch_timer.cancel()
            self._batch_timer = None

    async def _deliver(self, batch: List[Dict[str, Any]]) -> None:
        try:
            await self._send_batch(batch)
        except _DELIVERY_ERRORS as exc:
            if self._destroyed:
                return
            self._stats.total_failed += len(batch)
            self._stats.last_failure_time = epoch_ms()
            self.is_healthy = False
            self._retry_queue.append(
                RetryEntry(batch=batch, retry_count=0, next_retry_time=self._clock() + self.config.retry_delay)
            )
            logger.debug("batch delivery failed size=%s error=%s", len(batch), exc)
            return

        if self._destroyed:
            return
        self._stats.total_sent += len(batch)
        self._stats.last_success_time = epoch_ms()
        self.is_healthy = True

    async def _send_batch(self, batch: List[Dict[str, Any]]) -> None:
        started = time.perf_counter()
        body = json.dumps(
            {
                "items": batch,
                "metadata": {
                    "producerId": self.config.application_name,
                    "sessionId": self.config.session_id,
                    "timestamp": epoch_ms(),
                    "batchSize": len(batch),
                },
            },
            ensure_ascii=True,
        ).encode("utf-8")

        headers = {"Content-Type": "application/json"}
        if self.config.application_name:
            headers["X-Application-Name"] = self.config.application_name
        if self.config.session_id:
            headers["X-Session-Id"] = self.config.session_id
        if self.config.enable_compression and len(body) > self.config.compression_threshold:
            compressed = self._compressor.compress(body)
            if compressed is not None and self._compressor.encoding:
                body = compressed
                headers["Content-Encoding"] = self._compressor.encoding

        response = await self._request("POST", self.endpoint, content=body, headers=headers)
        if not response.is_success:
            raise DeliveryError(response.status_code, response.reason_phrase)

        self._stats.record_latency((time.perf_counter() - started) * 1000.0)

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        return await asyncio.wait_for(
            self._client.request(method, url, **kwargs),
            timeout=self.config.connection_timeout,
        )

    async def _probe(self, url: str) -> bool:
        response = await self._request("GET", url)
        return response.is_success

    def _start_background(self) -> None:
        if self._background or self._destroyed:
            return
        loop = asyncio.get_running_loop()
        self._background = [
            loop.create_task(self._health_loop(), name="logpipe-transport-health"),
            loop.create_task(self._retry_loop(), name="logpipe-transport-retry"),
        ]

    async def _health_loop(self) -> None:
        while not self._destroyed:
            await asyncio.sleep(self.config.health_check_interval)
            await self.check_health()

    async def _retry_loop(self) -> None:
        while not self._destroyed:
            await asyncio.sleep(self.config.retry_interval)
            if self._retry_queue:
                await self.process_retry_queue()
