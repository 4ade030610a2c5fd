from datetime import datetime, timedelta

from mikronoc import db
from mikronoc.models import InterfaceMetricSample, RouterMetricSample
from mikronoc.services.metrics_store import (
    BUCKET_DAY,
    BUCKET_HOUR,
    BUCKET_RAW,
    MetricsStore,
    choose_bucket,
    downsample,
)

START = datetime(2026, 3, 1)


def _seed_hourly(router_id, hours):
    for hour in range(hours):
        ts = START + timedelta(hours=hour)
        db.session.add(RouterMetricSample(router_id=router_id, ts=ts, cpu_load=ts.hour, rx_bps=1000 * ts.day))
    db.session.commit()


def test_choose_bucket_by_span():
    assert choose_bucket(START, START + timedelta(hours=6)) == BUCKET_RAW
    assert choose_bucket(START, START + timedelta(days=2)) == BUCKET_RAW
    assert choose_bucket(START, START + timedelta(days=7)) == BUCKET_HOUR
    assert choose_bucket(START, START + timedelta(days=30)) == BUCKET_DAY


def test_thirty_day_query_returns_daily_means(app, make_router):
    with app.app_context():
        router = make_router()
        _seed_hourly(router.id, 30 * 24)

        bucket, points = MetricsStore().bucketed(router.id, START, START + timedelta(days=30))

        assert bucket == BUCKET_DAY
        assert len(points) <= 31
        assert len(points) == 30
        for point in points:
            assert point['samples'] == 24
            assert point['cpu_load'] == 11.5
            assert point['rx_bps'] == 1000 * point['bucket_start'].day
            assert point['ts'] == point['bucket_start'] + timedelta(hours=23)


def test_raw_range_returns_every_sample(app, make_router):
    with app.app_context():
        router = make_router()
        _seed_hourly(router.id, 10)

        bucket, points = MetricsStore().bucketed(router.id, START, START + timedelta(hours=12))

        assert bucket == BUCKET_RAW
        assert len(points) == 10
        assert points[0]['ts'] == START


def test_query_resumes_after_cursor(app, make_router):
    with app.app_context():
        router = make_router()
        _seed_hourly(router.id, 10)
        store = MetricsStore()

        first_page = store.query(router.id, start=START, limit=4)
        second_page = store.query(router.id, after=first_page[-1].ts, limit=4)

        assert [s.ts.hour for s in first_page] == [0, 1, 2, 3]
        assert [s.ts.hour for s in second_page] == [4, 5, 6, 7]


def test_query_without_start_returns_newest_page_oldest_first(app, make_router):
    with app.app_context():
        router = make_router()
        _seed_hourly(router.id, 10)

        page = MetricsStore().query(router.id, limit=3)

        assert [s.ts.hour for s in page] == [7, 8, 9]


def test_query_limit_is_clamped(app, make_router):
    with app.app_context():
        router = make_router()
        _seed_hourly(router.id, 3)

        assert len(MetricsStore().query(router.id, start=START, limit=0)) == 1


def test_iter_samples_pages_through_range(app, make_router):
    with app.app_context():
        router = make_router()
        _seed_hourly(router.id, 25)

        samples = list(MetricsStore().iter_samples(router.id, START, START + timedelta(days=2), page_size=7))

        assert len(samples) == 25
        assert samples == sorted(samples, key=lambda s: s.ts)


def test_latest_interfaces_returns_newest_row_per_interface(app, make_router):
    with app.app_context():
        router = make_router()
        for minute, name, rx in ((0, 'ether1', 1), (1, 'ether1', 2), (0, 'ether2', 3)):
            db.session.add(
                InterfaceMetricSample(
                    router_id=router.id,
                    interface_name=name,
                    ts=START + timedelta(minutes=minute),
                    rx_byte=rx,
                )
            )
        db.session.commit()

        latest = {row.interface_name: row.rx_byte for row in MetricsStore().latest_interfaces(router.id)}

        assert latest == {'ether1': 2, 'ether2': 3}


def test_interface_query_filters_by_name(app, make_router):
    with app.app_context():
        router = make_router()
        for minute in range(4):
            for name in ('ether1', 'ether2'):
                db.session.add(
                    InterfaceMetricSample(
                        router_id=router.id,
                        interface_name=name,
                        ts=START + timedelta(minutes=minute),
                        rx_bps=minute,
                    )
                )
        db.session.commit()

        rows = MetricsStore().query_interface(router.id, 'ether2', start=START)

        assert len(rows) == 4
        assert {row.interface_name for row in rows} == {'ether2'}


def test_prune_deletes_only_old_samples(app, make_router):
    with app.app_context():
        router = make_router()
        _seed_hourly(router.id, 48)
        db.session.add(InterfaceMetricSample(router_id=router.id, interface_name='ether1', ts=START))
        db.session.commit()

        router_rows, interface_rows = MetricsStore().prune(START + timedelta(days=1))

        assert router_rows == 24
        assert interface_rows == 1
        assert RouterMetricSample.query.count() == 24


def test_downsample_keeps_interface_state_of_last_sample():
    samples = [
        InterfaceMetricSample(interface_name='ether1', ts=START, rx_bps=100, running=True),
        InterfaceMetricSample(interface_name='ether1', ts=START + timedelta(minutes=30), rx_bps=300, running=False),
    ]

    points = downsample(samples, BUCKET_HOUR)

    assert len(points) == 1
    assert points[0]['rx_bps'] == 200
    assert points[0]['tx_bps'] is None
    assert points[0]['running'] is False


def test_interface_cursor_keeps_rows_sharing_a_timestamp(app, make_router):
    with app.app_context():
        router = make_router()
        for minute in range(2):
            for name in ('ether1', 'ether2', 'ether3'):
                db.session.add(
                    InterfaceMetricSample(router_id=router.id, interface_name=name, ts=START + timedelta(minutes=minute))
                )
        db.session.commit()
        store = MetricsStore()

        seen = []
        page = store.query_interface(router.id, None, start=START, limit=2)
        while page:
            seen.extend((s.interface_name, s.ts.minute) for s in page)
            page = store.query_interface(router.id, None, limit=2, after=page[-1].ts, after_id=page[-1].id)

        assert seen == [(name, minute) for minute in range(2) for name in ('ether1', 'ether2', 'ether3')]
        assert len(list(store.iter_samples(router.id, START, START + timedelta(hours=1), 'ether2', page_size=1))) == 2
