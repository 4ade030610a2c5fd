from datetime import datetime, timedelta

import pytest

from mikronoc.errors import RouterConnectionError
from mikronoc.services.live_counters import LiveCounterService, compute_rate
from mikronoc.services.router_client import InterfaceLiveCounter, RouterTarget

T0 = datetime(2026, 5, 1, 8, 0, 0)


def _counter(name='ether1', rx=0, tx=0, running=True):
    return InterfaceLiveCounter(name=name, running=running, disabled=False, rx_byte=rx, tx_byte=tx)


def _target(router_id=1):
    return RouterTarget(
        router_id=router_id,
        tenant_id=9,
        name=f'r{router_id}',
        host=f'192.0.2.{router_id}',
        port=8728,
        username='api',
        password='secret',
    )


class FakeLiveSession:
    def __init__(self, counters):
        self.counters = counters

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def get_interface_counters(self, names):
        return [c for c in self.counters if c.name in names]


class FakeLiveClient:
    def __init__(self, counters=None, failing=()):
        self.counters = counters or {}
        self.failing = set(failing)
        self.connects = []

    def connect(self, target):
        self.connects.append(target.router_id)
        if target.router_id in self.failing:
            raise RouterConnectionError('refused', host=target.host)
        return FakeLiveSession(self.counters.get(target.router_id, []))


def test_compute_rate():
    assert compute_rate(1000, 2000, 1.0) == 8000
    assert compute_rate(2000, 1000, 1.0) == 0
    assert compute_rate(0, 1000, 0) == 0
    assert compute_rate(0, 1000, 2.0) == 4000


def test_two_readings_one_second_apart_give_8000_bps():
    service = LiveCounterService(client=FakeLiveClient())

    assert service.record(1, [_counter(rx=1000)], at=T0) == []
    produced = service.record(1, [_counter(rx=2000)], at=T0 + timedelta(seconds=1))

    assert len(produced) == 1
    key, point = produced[0]
    assert key == (1, 'ether1')
    assert point.rx_bps == 8000
    assert point.tx_bps == 0
    assert service.latest((1, 'ether1')) == point


def test_ring_keeps_last_n_points():
    service = LiveCounterService(client=FakeLiveClient(), ring_size=3)
    for second in range(6):
        service.record(1, [_counter(rx=second * 100)], at=T0 + timedelta(seconds=second))

    series = service.series((1, 'ether1'))

    assert len(series) == 3
    assert [p.at for p in series] == [T0 + timedelta(seconds=s) for s in (3, 4, 5)]


def test_counter_reset_clamps_to_zero():
    service = LiveCounterService(client=FakeLiveClient())
    service.record(1, [_counter(rx=10_000)], at=T0)

    _, point = service.record(1, [_counter(rx=50)], at=T0 + timedelta(seconds=1))[0]

    assert point.rx_bps == 0


def test_floor_sets_warn_flag():
    service = LiveCounterService(client=FakeLiveClient())
    service.set_floors({(1, 'ether1'): (10_000, None)})
    service.record(1, [_counter(rx=0)], at=T0)

    _, point = service.record(1, [_counter(rx=1000)], at=T0 + timedelta(seconds=1))[0]

    assert point.rx_bps == 8000
    assert point.warn is True


def test_subscribers_receive_points():
    service = LiveCounterService(client=FakeLiveClient())
    channel = service.subscribe()
    service.record(4, [_counter(name='sfp1', tx=0)], at=T0)
    service.record(4, [_counter(name='sfp1', tx=500)], at=T0 + timedelta(seconds=2))

    event = channel.get_nowait()

    assert event['router_id'] == 4
    assert event['interface_name'] == 'sfp1'
    assert event['tx_bps'] == 2000
    service.unsubscribe(channel)
    service.record(4, [_counter(name='sfp1', tx=900)], at=T0 + timedelta(seconds=3))
    assert channel.empty()


def test_snapshot_filters_by_tenant():
    service = LiveCounterService(client=FakeLiveClient())
    for router_id, tenant_id in ((1, 9), (2, 10)):
        service.record(router_id, [_counter(rx=0)], at=T0, tenant_id=tenant_id)
        service.record(router_id, [_counter(rx=100)], at=T0 + timedelta(seconds=1), tenant_id=tenant_id)

    rows = service.snapshot(tenant_id=9)

    assert [row['router_id'] for row in rows] == [1]
    assert rows[0]['latest']['rx_bps'] == 800
    assert len(rows[0]['series']) == 1


def test_forget_drops_router_state():
    service = LiveCounterService(client=FakeLiveClient())
    service.record(1, [_counter(rx=0)], at=T0)
    service.record(1, [_counter(rx=100)], at=T0 + timedelta(seconds=1))

    service.forget(1)

    assert service.latest((1, 'ether1')) is None
    assert service.record(1, [_counter(rx=200)], at=T0 + timedelta(seconds=2)) == []


def test_fetch_rejects_too_many_interfaces():
    service = LiveCounterService(client=FakeLiveClient(), max_interfaces=2)

    with pytest.raises(ValueError):
        service.fetch(_target(), ['ether1', 'ether2', 'ether3'])


def test_tick_records_and_backs_off_failures():
    clock = {'now': T0}
    client = FakeLiveClient(counters={1: [_counter(rx=1000)]}, failing={2})
    service = LiveCounterService(client=client, clock=lambda: clock['now'])
    targets = [(_target(1), {'ether1'}), (_target(2), {'ether1'})]

    first = service.tick(targets, now=T0)
    assert first['polled'] == [1]
    assert first['failed'] == [2]

    clock['now'] = T0 + timedelta(seconds=1)
    client.counters[1] = [_counter(rx=3000)]
    second = service.tick(targets, now=clock['now'])

    assert second['polled'] == [1]
    assert second['skipped'] == [2]
    assert service.latest((1, 'ether1')).rx_bps == 16000
    service.shutdown()


class BrokenDecodeClient(FakeLiveClient):
    def connect(self, target):
        if target.router_id in self.failing:
            raise KeyError('rx-byte')
        return super().connect(target)


def test_tick_isolates_unexpected_worker_errors():
    clock = {'now': T0}
    client = BrokenDecodeClient(
        counters={2: [_counter(rx=1000)], 3: [_counter(rx=1000)]},
        failing={1},
    )
    service = LiveCounterService(client=client, clock=lambda: clock['now'])
    targets = [(_target(1), {'ether1'}), (_target(2), {'ether1'}), (_target(3), {'ether1'})]

    first = service.tick(targets, now=T0)

    assert first['failed'] == [1]
    assert sorted(first['polled']) == [2, 3]
    assert service._in_flight == set()
    assert service._failures == {1: 1}

    clock['now'] = T0 + timedelta(seconds=1)
    second = service.tick(targets, now=clock['now'])

    assert second['skipped'] == [1]
    assert sorted(second['polled']) == [2, 3]
    assert service._in_flight == set()
    service.shutdown()
