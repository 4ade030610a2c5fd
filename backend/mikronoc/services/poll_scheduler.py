"""
Polling Scheduler

One coordinator owns every piece of polling state: per-router phase and
backoff, the worker pool and the in-flight futures. Workers only talk to the
device through the RouterClient on detached RouterTarget values; everything
touching the database runs on the coordinator thread inside an app context.

Per router:  Idle -> Polling -> (success) Idle
                             -> (failure) Backoff -> Idle once next_retry_at passes
"""
from __future__ import annotations

import logging
import threading
import time
from contextlib import nullcontext
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set

from flask import has_app_context
from prometheus_client import Counter, Histogram

from mikronoc import db
from mikronoc.errors import RouterAuthError, RouterClientError
from mikronoc.models import InterfaceMetricSample, MikroTikRouter, RouterMetricSample
from mikronoc.services import wallboard
from mikronoc.services.alert_evaluator import HealthEvaluator, PollOutcome
from mikronoc.services.metrics_store import MetricsStore
from mikronoc.services.router_client import RouterClient, RouterTarget
from mikronoc.signals import router_down, router_recovered

logger = logging.getLogger(__name__)

PHASE_IDLE = 'idle'
PHASE_POLLING = 'polling'
PHASE_BACKOFF = 'backoff'

BACKOFF_CAP_SECS = 30
BACKOFF_MAX_EXPONENT = 5
RECOVERY_MIN_FAILURES = 3

POLLS_TOTAL = Counter(
    'mikronoc_router_polls_total',
    'Router polls by result',
    ['result'],
)
POLL_DURATION = Histogram(
    'mikronoc_router_poll_duration_seconds',
    'Wall time of one router poll',
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30),
)


def backoff_delay(failures: int) -> timedelta:
    """min(30 s, 1 s * 2 ** min(failures, 5))"""
    exponent = min(max(failures, 0), BACKOFF_MAX_EXPONENT)
    return timedelta(seconds=min(BACKOFF_CAP_SECS, 2 ** exponent))


def interface_rate(prev_byte, prev_ts, cur_byte, ts) -> Optional[int]:
    """bits/s between two cumulative byte counters; None on reset or bad clock."""
    if prev_byte is None or cur_byte is None or prev_ts is None:
        return None
    dt = (ts - prev_ts).total_seconds()
    if dt <= 0:
        return None
    delta = cur_byte - prev_byte
    if delta < 0:
        return None
    return int(round(delta * 8 / dt))


@dataclass
class RouterPollState:
    phase: str = PHASE_IDLE
    consecutive_failures: int = 0
    next_retry_at: Optional[datetime] = None
    last_polled_at: Optional[datetime] = None

    def ready(self, now: datetime) -> bool:
        if self.phase == PHASE_POLLING:
            return False
        return self.next_retry_at is None or self.next_retry_at <= now


@dataclass
class TickReport:
    started_at: datetime
    dispatched: List[int] = field(default_factory=list)
    deferred: List[int] = field(default_factory=list)
    skipped_in_flight: List[int] = field(default_factory=list)
    skipped_backoff: List[int] = field(default_factory=list)
    succeeded: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    recovered: List[int] = field(default_factory=list)

    def to_dict(self):
        return {
            'started_at': self.started_at.isoformat(),
            'dispatched': self.dispatched,
            'deferred': self.deferred,
            'skipped_in_flight': self.skipped_in_flight,
            'skipped_backoff': self.skipped_backoff,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'recovered': self.recovered,
        }


@dataclass
class _InFlight:
    target: RouterTarget
    tracked: Set[str]
    future: Future
    started: float


def _poll_target(
    client: RouterClient,
    target: RouterTarget,
    tracked: Set[str],
    clock: Callable[[], datetime] = datetime.utcnow,
) -> PollOutcome:
    """Worker body. Never touches the database."""
    started = time.monotonic()
    try:
        with client.connect(target) as session:
            resource = session.query_system_resource()
            latency_ms = int(round((time.monotonic() - started) * 1000))
            interfaces = session.list_interfaces() if tracked else []
    except RouterClientError as exc:
        return PollOutcome(
            router_id=target.router_id,
            tenant_id=target.tenant_id,
            ok=False,
            at=clock(),
            latency_ms=int(round((time.monotonic() - started) * 1000)),
            tracked_interfaces=set(tracked),
            error=str(exc),
            error_kind=exc.kind,
        )
    return PollOutcome(
        router_id=target.router_id,
        tenant_id=target.tenant_id,
        ok=True,
        at=clock(),
        latency_ms=latency_ms,
        resource=resource,
        interfaces=[iface for iface in interfaces if iface.name in tracked],
        tracked_interfaces=set(tracked),
    )


class PollScheduler:
    """Slow-path poller for router health and metrics."""

    def __init__(
        self,
        app,
        client: Optional[RouterClient] = None,
        max_workers: Optional[int] = None,
        interval: Optional[float] = None,
        cycle_timeout: Optional[float] = None,
        evaluator: Optional[HealthEvaluator] = None,
        store: Optional[MetricsStore] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.app = app
        config = app.config
        self.client = client or RouterClient.from_config(config)
        self.max_workers = int(max_workers or config.get('MIKROTIK_POLL_CONCURRENCY', 12))
        self.interval = float(interval or config.get('MIKROTIK_POLL_INTERVAL_SECS', 60))
        self.cycle_timeout = float(cycle_timeout or config.get('MIKROTIK_POLL_CYCLE_TIMEOUT_SECS', 30))
        self.store = store or MetricsStore()
        self.evaluator = evaluator or HealthEvaluator(self.store)
        self.clock = clock
        self.states: Dict[int, RouterPollState] = {}
        self._in_flight: Dict[int, _InFlight] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix='mikronoc-poll'
            )
        return self._executor

    def _context(self):
        if has_app_context():
            return nullcontext()
        return self.app.app_context()

    def state_for(self, router_id: int) -> RouterPollState:
        return self.states.setdefault(router_id, RouterPollState())

    # ==================== TICK ====================

    def run_once(self, now: Optional[datetime] = None) -> TickReport:
        """One scheduler tick. Safe to call from a Celery task or a loop."""
        with self._lock, self._context():
            now = now or self.clock()
            report = TickReport(started_at=now)
            self._harvest(report, block=False)

            routers = MikroTikRouter.query.filter_by(enabled=True).all()
            enabled_ids = {router.id for router in routers}
            for router_id in list(self.states):
                if router_id not in enabled_ids and router_id not in self._in_flight:
                    self.states.pop(router_id, None)

            candidates = []
            for router in routers:
                state = self.state_for(router.id)
                if router.id in self._in_flight:
                    report.skipped_in_flight.append(router.id)
                elif not state.ready(now):
                    report.skipped_backoff.append(router.id)
                else:
                    candidates.append(router)

            # least recently polled first
            candidates.sort(key=lambda r: (self.state_for(r.id).last_polled_at or datetime.min, r.id))
            capacity = max(0, self.max_workers - len(self._in_flight))
            selected, deferred = candidates[:capacity], candidates[capacity:]
            report.deferred.extend(router.id for router in deferred)

            tracked_by_tenant: Dict[Optional[int], Dict[int, Set[str]]] = {}
            for router in selected:
                if router.tenant_id not in tracked_by_tenant:
                    tracked_by_tenant[router.tenant_id] = wallboard.tracked_interfaces_by_router(router.tenant_id)
                tracked = tracked_by_tenant[router.tenant_id].get(router.id, set())
                try:
                    target = RouterTarget.from_router(router)
                except ValueError as exc:
                    logger.error('Cannot build poll target for router %s: %s', router.id, exc)
                    continue
                state = self.state_for(router.id)
                state.phase = PHASE_POLLING
                state.last_polled_at = now
                future = self._pool().submit(_poll_target, self.client, target, tracked, self.clock)
                self._in_flight[router.id] = _InFlight(target, tracked, future, time.monotonic())
                report.dispatched.append(router.id)

            if report.dispatched:
                self._harvest(report, block=True)
            return report

    def _harvest(self, report: TickReport, block: bool) -> None:
        if not self._in_flight:
            return
        if block:
            deadline = time.monotonic() + self.cycle_timeout
            pending = {item.future for item in self._in_flight.values()}
            while pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                _, pending = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
                self._apply_finished(report)
            if pending:
                logger.warning('%s router polls still running after %.0fs; harvesting next tick', len(pending), self.cycle_timeout)
        self._apply_finished(report)

    def _apply_finished(self, report: TickReport) -> None:
        for router_id, item in list(self._in_flight.items()):
            if not item.future.done():
                continue
            del self._in_flight[router_id]
            POLL_DURATION.observe(time.monotonic() - item.started)
            exc = item.future.exception()
            if exc is not None:
                logger.error('Poll worker for router %s crashed: %s', router_id, exc, exc_info=exc)
                outcome = PollOutcome(
                    router_id=router_id,
                    tenant_id=item.target.tenant_id,
                    ok=False,
                    at=self.clock(),
                    tracked_interfaces=item.tracked,
                    error=str(exc),
                    error_kind='internal',
                )
            else:
                outcome = item.future.result()
            self.apply_outcome(outcome, report)

    # ==================== OUTCOME ====================

    def apply_outcome(self, outcome: PollOutcome, report: Optional[TickReport] = None) -> None:
        """Persist one poll result atomically, update backoff, then evaluate health."""
        report = report or TickReport(started_at=outcome.at)
        state = self.state_for(outcome.router_id)
        router = db.session.get(MikroTikRouter, outcome.router_id)
        if router is None:
            self.states.pop(outcome.router_id, None)
            return

        was_online = bool(router.is_online)
        previous_failures = state.consecutive_failures
        router.last_polled_at = outcome.at
        router.latency_ms = outcome.latency_ms

        if outcome.ok:
            self._apply_success(router, outcome)
        else:
            router.is_online = False
            router.last_error = outcome.error
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception('Failed to persist poll result for router %s', outcome.router_id)
            state.phase = PHASE_IDLE
            return

        if outcome.ok:
            POLLS_TOTAL.labels(result='success').inc()
            state.phase = PHASE_IDLE
            state.consecutive_failures = 0
            state.next_retry_at = None
            report.succeeded.append(router.id)
            if previous_failures >= RECOVERY_MIN_FAILURES:
                report.recovered.append(router.id)
                router_recovered.send(router.id, tenant_id=router.tenant_id, failures=previous_failures, at=outcome.at)
        else:
            POLLS_TOTAL.labels(result=outcome.error_kind or 'error').inc()
            state.consecutive_failures = previous_failures + 1
            state.phase = PHASE_BACKOFF
            state.next_retry_at = outcome.at + backoff_delay(state.consecutive_failures)
            report.failed.append(router.id)
            if outcome.error_kind == RouterAuthError.kind:
                logger.error('Router %s (%s) rejected credentials: %s', router.name, router.host, outcome.error)
            else:
                logger.warning(
                    'Router %s (%s) unreachable [%s]: %s; retry after %s',
                    router.name,
                    router.host,
                    outcome.error_kind,
                    outcome.error,
                    state.next_retry_at.isoformat(),
                )
            if was_online:
                router_down.send(
                    router.id,
                    tenant_id=router.tenant_id,
                    error=outcome.error,
                    kind=outcome.error_kind,
                    at=outcome.at,
                )

        floors = wallboard.slot_floors(router.tenant_id) if outcome.tracked_interfaces else {}
        try:
            self.evaluator.evaluate(router, outcome, floors=floors)
        except Exception:
            db.session.rollback()
            logger.exception('Health evaluation failed for router %s', outcome.router_id)

    def _apply_success(self, router: MikroTikRouter, outcome: PollOutcome) -> None:
        resource = outcome.resource
        router.is_online = True
        router.last_seen_at = outcome.at
        router.last_error = None
        if resource is not None:
            router.identity = resource.identity or router.identity
            router.ros_version = resource.ros_version or router.ros_version
            router.board_name = resource.board_name or router.board_name

        sum_rx, sum_tx = self._append_interface_samples(router.id, outcome)
        sample = RouterMetricSample(router_id=router.id, ts=outcome.at, rx_bps=sum_rx, tx_bps=sum_tx)
        if resource is not None:
            sample.cpu_load = resource.cpu_load
            sample.total_memory_bytes = resource.total_memory_bytes
            sample.free_memory_bytes = resource.free_memory_bytes
            sample.total_hdd_bytes = resource.total_hdd_bytes
            sample.free_hdd_bytes = resource.free_hdd_bytes
            sample.uptime_seconds = resource.uptime_seconds
        self.store.append(sample)

    def _append_interface_samples(self, router_id: int, outcome: PollOutcome):
        if not outcome.interfaces:
            return None, None
        previous = {row.interface_name: row for row in self.store.latest_interfaces(router_id)}
        sum_rx = sum_tx = None
        for iface in outcome.interfaces:
            prev = previous.get(iface.name)
            rx_bps = tx_bps = None
            if prev is not None:
                rx_bps = interface_rate(prev.rx_byte, prev.ts, iface.rx_byte, outcome.at)
                tx_bps = interface_rate(prev.tx_byte, prev.ts, iface.tx_byte, outcome.at)
            if rx_bps is not None:
                sum_rx = (sum_rx or 0) + rx_bps
            if tx_bps is not None:
                sum_tx = (sum_tx or 0) + tx_bps
            self.store.append_interface(
                InterfaceMetricSample(
                    router_id=router_id,
                    interface_name=iface.name,
                    ts=outcome.at,
                    rx_byte=iface.rx_byte,
                    tx_byte=iface.tx_byte,
                    rx_bps=rx_bps,
                    tx_bps=tx_bps,
                    running=iface.running,
                    disabled=iface.disabled,
                    link_downs=iface.link_downs,
                )
            )
        return sum_rx, sum_tx

    # ==================== LOOP ====================

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info(
            'Router poller started: interval=%ss workers=%s timeout=%ss',
            self.interval,
            self.max_workers,
            self.cycle_timeout,
        )
        while not stop_event.is_set():
            try:
                report = self.run_once()
                logger.debug('Poll tick: %s', report.to_dict())
            except Exception:
                logger.exception('Router poll tick failed')
            stop_event.wait(self.interval)
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info('Router poller stopped')
