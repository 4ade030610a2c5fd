"""
Live Interface Counter Service

Fast, in-memory path behind the operator wallboard. Each tick fetches raw
byte counters for the tracked interfaces, turns them into bit rates against
the previous reading of the same (router_id, interface_name) key and keeps the
last N points per key for sparklines. Nothing here is persisted.

Consumers either pull (`latest`, `series`, `snapshot`) or `subscribe()` to a
queue that receives every new point.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from mikronoc.errors import RouterClientError
from mikronoc.services.poll_scheduler import backoff_delay
from mikronoc.services.router_client import InterfaceLiveCounter, RouterClient, RouterTarget

logger = logging.getLogger(__name__)

Key = Tuple[int, str]
Floors = Tuple[Optional[int], Optional[int]]

SUBSCRIBER_QUEUE_SIZE = 1000


@dataclass(frozen=True)
class RatePoint:
    at: datetime
    rx_bps: int
    tx_bps: int
    running: bool
    disabled: bool
    warn: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload['at'] = self.at.isoformat()
        return payload


@dataclass
class _Reading:
    rx_byte: int
    tx_byte: int
    at: datetime


def compute_rate(prev_byte: int, cur_byte: int, dt_seconds: float) -> int:
    """max(0, delta / dt * 8); a counter reset clamps to zero."""
    if dt_seconds <= 0:
        return 0
    return max(0, int(round((cur_byte - prev_byte) / dt_seconds * 8)))


class LiveCounterService:
    def __init__(
        self,
        client: Optional[RouterClient] = None,
        ring_size: int = 60,
        max_workers: int = 12,
        max_interfaces: int = 12,
        tick_timeout: float = 5.0,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.client = client or RouterClient()
        self.ring_size = max(2, int(ring_size))
        self.max_workers = max(1, int(max_workers))
        self.max_interfaces = max(1, int(max_interfaces))
        self.tick_timeout = float(tick_timeout)
        self.clock = clock

        self._lock = threading.RLock()
        self._previous: Dict[Key, _Reading] = {}
        self._rings: Dict[Key, Deque[RatePoint]] = {}
        self._floors: Dict[Key, Floors] = {}
        self._router_tenants: Dict[int, Optional[int]] = {}
        self._subscribers: List[queue.Queue] = []

        self._failures: Dict[int, int] = {}
        self._next_retry: Dict[int, datetime] = {}
        self._in_flight: Set[int] = set()
        self._executor: Optional[ThreadPoolExecutor] = None

    @classmethod
    def from_config(cls, config, client: Optional[RouterClient] = None) -> 'LiveCounterService':
        return cls(
            client=client or RouterClient.from_config(config),
            ring_size=config.get('MIKROTIK_LIVE_RING_SIZE', 60),
            max_workers=config.get('MIKROTIK_POLL_CONCURRENCY', 12),
            max_interfaces=config.get('MIKROTIK_LIVE_MAX_INTERFACES', 12),
            tick_timeout=config.get('MIKROTIK_CONNECT_TIMEOUT_SECS', 5),
        )

    # ==================== WRITE SIDE ====================

    def set_floors(self, floors: Dict[Key, Floors]) -> None:
        with self._lock:
            self._floors = dict(floors)

    def record(
        self,
        router_id: int,
        counters: Iterable[InterfaceLiveCounter],
        at: Optional[datetime] = None,
        tenant_id: Optional[int] = None,
    ) -> List[Tuple[Key, RatePoint]]:
        """Feed raw counters; returns the points produced (none on a key's first reading)."""
        at = at or self.clock()
        produced: List[Tuple[Key, RatePoint]] = []
        with self._lock:
            if tenant_id is not None or router_id not in self._router_tenants:
                self._router_tenants[router_id] = tenant_id
            for counter in counters:
                key = (router_id, counter.name)
                prev = self._previous.get(key)
                self._previous[key] = _Reading(counter.rx_byte, counter.tx_byte, at)
                if prev is None:
                    continue
                dt = (at - prev.at).total_seconds()
                if dt <= 0:
                    continue
                rx_bps = compute_rate(prev.rx_byte, counter.rx_byte, dt)
                tx_bps = compute_rate(prev.tx_byte, counter.tx_byte, dt)
                point = RatePoint(
                    at=at,
                    rx_bps=rx_bps,
                    tx_bps=tx_bps,
                    running=counter.running,
                    disabled=counter.disabled,
                    warn=self._below_floor(key, rx_bps, tx_bps),
                )
                ring = self._rings.get(key)
                if ring is None:
                    ring = self._rings[key] = deque(maxlen=self.ring_size)
                ring.append(point)
                produced.append((key, point))
            subscribers = list(self._subscribers)

        for key, point in produced:
            self._publish(subscribers, key, point)
        return produced

    def _below_floor(self, key: Key, rx_bps: int, tx_bps: int) -> bool:
        rx_floor, tx_floor = self._floors.get(key, (None, None))
        return bool((rx_floor and rx_bps < rx_floor) or (tx_floor and tx_bps < tx_floor))

    def forget(self, router_id: int, interface_name: Optional[str] = None) -> None:
        with self._lock:
            for key in list(self._previous):
                if key[0] == router_id and interface_name in (None, key[1]):
                    self._previous.pop(key, None)
                    self._rings.pop(key, None)

    # ==================== READ SIDE ====================

    def latest(self, key: Key) -> Optional[RatePoint]:
        with self._lock:
            ring = self._rings.get(key)
            return ring[-1] if ring else None

    def series(self, key: Key) -> List[RatePoint]:
        with self._lock:
            return list(self._rings.get(key, ()))

    def snapshot(self, tenant_id: Optional[int] = None, keys: Optional[Iterable[Key]] = None) -> List[Dict[str, Any]]:
        with self._lock:
            wanted = list(keys) if keys is not None else sorted(self._rings)
            rows = []
            for key in wanted:
                router_id, interface_name = key
                if keys is None and tenant_id is not None and self._router_tenants.get(router_id) != tenant_id:
                    continue
                ring = self._rings.get(key)
                latest = ring[-1] if ring else None
                rows.append(
                    {
                        'router_id': router_id,
                        'interface_name': interface_name,
                        'latest': latest.to_dict() if latest else None,
                        'series': [point.to_dict() for point in (ring or ())],
                    }
                )
            return rows

    # ==================== PUSH SIDE ====================

    def subscribe(self, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> queue.Queue:
        channel: queue.Queue = queue.Queue(maxsize=maxsize)
        with self._lock:
            self._subscribers.append(channel)
        return channel

    def unsubscribe(self, channel: queue.Queue) -> None:
        with self._lock:
            if channel in self._subscribers:
                self._subscribers.remove(channel)

    @staticmethod
    def _publish(subscribers: List[queue.Queue], key: Key, point: RatePoint) -> None:
        event = {'router_id': key[0], 'interface_name': key[1], **point.to_dict()}
        for channel in subscribers:
            try:
                channel.put_nowait(event)
            except queue.Full:
                logger.debug('Dropping live point for a slow subscriber (%s/%s)', key[0], key[1])

    # ==================== POLLING ====================

    def fetch(self, target: RouterTarget, names: Iterable[str]) -> List[InterfaceLiveCounter]:
        """On-demand read of raw counters for up to `max_interfaces` names."""
        cleaned = []
        for name in names:
            name = str(name).strip()
            if name and name not in cleaned:
                cleaned.append(name)
        if len(cleaned) > self.max_interfaces:
            raise ValueError(f'at most {self.max_interfaces} interfaces per request')
        with self.client.connect(target) as session:
            return session.get_interface_counters(cleaned)

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='mikronoc-live')
        return self._executor

    def tick(self, targets: Iterable[Tuple[RouterTarget, Set[str]]], now: Optional[datetime] = None) -> Dict[str, List[int]]:
        """
        Poll every tracked router once, honoring per-router backoff. Routers
        whose previous fetch is still running are skipped. A failing worker
        only counts against its own router.
        """
        now = now or self.clock()
        result: Dict[str, List[int]] = {'polled': [], 'failed': [], 'skipped': []}
        futures = {}
        for target, names in targets:
            router_id = target.router_id
            with self._lock:
                retry_at = self._next_retry.get(router_id)
                if router_id in self._in_flight or (retry_at is not None and retry_at > now) or not names:
                    result['skipped'].append(router_id)
                    continue
                self._in_flight.add(router_id)
            try:
                future = self._pool().submit(self._fetch_timed, target, sorted(names)[: self.max_interfaces])
            except Exception:
                self._release(router_id)
                raise
            futures[future] = target

        if not futures:
            return result
        done = set()
        try:
            done, _ = wait(futures, timeout=self.tick_timeout + 1)
            for future in done:
                target = futures[future]
                if self._harvest(target, future, now):
                    result['polled'].append(target.router_id)
                else:
                    result['failed'].append(target.router_id)
        finally:
            for future, target in futures.items():
                if future in done:
                    self._release(target.router_id)
                else:
                    future.add_done_callback(lambda _f, rid=target.router_id: self._release(rid))
        return result

    def _release(self, router_id: int) -> None:
        with self._lock:
            self._in_flight.discard(router_id)

    def _harvest(self, target: RouterTarget, future, now: datetime) -> bool:
        router_id = target.router_id
        try:
            counters, at = future.result()
            self.record(router_id, counters, at=at, tenant_id=target.tenant_id)
        except RouterClientError as exc:
            logger.debug('Live counters for router %s failed (%s): %s', router_id, exc.kind, exc)
            self._mark_failed(router_id, now)
            return False
        except Exception as exc:
            logger.error('Live counter worker for router %s crashed: %s', router_id, exc, exc_info=exc)
            self._mark_failed(router_id, now)
            return False
        with self._lock:
            self._failures.pop(router_id, None)
            self._next_retry.pop(router_id, None)
        return True

    def _mark_failed(self, router_id: int, now: datetime) -> None:
        with self._lock:
            fails = self._failures.get(router_id, 0) + 1
            self._failures[router_id] = fails
            self._next_retry[router_id] = now + backoff_delay(fails)

    def _fetch_timed(self, target: RouterTarget, names: List[str]):
        counters = self.fetch(target, names)
        return counters, self.clock()

    def run_forever(self, targets_provider: Callable[[], Iterable[Tuple[RouterTarget, Set[str]]]], stop_event: threading.Event, interval: float = 1.0) -> None:
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                self.tick(targets_provider())
            except Exception:
                logger.exception('Live counter tick failed')
            stop_event.wait(max(0.0, interval - (time.monotonic() - started)))
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=not wait)
