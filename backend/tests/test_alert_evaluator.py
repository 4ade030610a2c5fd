import threading
from datetime import datetime, timedelta

import pytest

from mikronoc import db
from mikronoc.errors import ConstraintViolation
from mikronoc.models import InterfaceMetricSample, MikroTikAlert, MikroTikIncident, MikroTikRouter
from mikronoc.services import settings_service
from mikronoc.services.alert_evaluator import (
    ALERT_CPU,
    ALERT_OFFLINE,
    INCIDENT_INTERFACE_DOWN,
    INCIDENT_INTERFACE_LOW_RATE,
    EvaluationReport,
    HealthEvaluator,
    PollOutcome,
)
from mikronoc.services.router_client import InterfaceInfo, SystemResource
from mikronoc.services.settings_service import AlertThresholds


def _ok(router, at, cpu=10, latency=5, interfaces=None, tracked=()):
    return PollOutcome(
        router_id=router.id,
        tenant_id=router.tenant_id,
        ok=True,
        at=at,
        latency_ms=latency,
        resource=SystemResource(cpu_load=cpu),
        interfaces=list(interfaces or []),
        tracked_interfaces=set(tracked),
    )


def _failed(router, at):
    return PollOutcome(
        router_id=router.id,
        tenant_id=router.tenant_id,
        ok=False,
        at=at,
        error='timed out',
        error_kind='connection',
    )


def _open_alerts(router_id, alert_type=None):
    query = MikroTikAlert.query.filter(MikroTikAlert.router_id == router_id, MikroTikAlert.resolved_at.is_(None))
    if alert_type:
        query = query.filter(MikroTikAlert.alert_type == alert_type)
    return query.all()


def _open_incidents(router_id):
    return MikroTikIncident.query.filter(
        MikroTikIncident.router_id == router_id,
        MikroTikIncident.resolved_at.is_(None),
    ).all()


def test_cpu_over_threshold_opens_then_resolves(app, make_router):
    with app.app_context():
        router = make_router()
        evaluator = HealthEvaluator()
        now = datetime.utcnow()

        evaluator.evaluate(router, _ok(router, now, cpu=90), thresholds=AlertThresholds())

        alerts = _open_alerts(router.id, ALERT_CPU)
        assert len(alerts) == 1
        assert alerts[0].value_num == 90
        assert alerts[0].threshold_num == 85
        assert alerts[0].severity == 'warning'
        incident = MikroTikIncident.query.filter_by(dedup_key=f'{router.id}:*:cpu').one()
        assert incident.resolved_at is None

        evaluator.evaluate(router, _ok(router, now + timedelta(minutes=1), cpu=50), thresholds=AlertThresholds())

        alert = db.session.get(MikroTikAlert, alerts[0].id)
        assert alert.status == 'resolved'
        assert alert.resolved_at == now + timedelta(minutes=1)
        assert _open_incidents(router.id) == []


def test_cpu_above_critical_is_critical(app, make_router):
    with app.app_context():
        router = make_router()

        HealthEvaluator().evaluate(router, _ok(router, datetime.utcnow(), cpu=97), thresholds=AlertThresholds())

        assert _open_alerts(router.id, ALERT_CPU)[0].severity == 'critical'


def test_future_maintenance_window_freezes_evaluation(app, make_router):
    with app.app_context():
        now = datetime.utcnow()
        router = make_router(maintenance_until=now + timedelta(hours=1))

        report = HealthEvaluator().evaluate(router, _ok(router, now, cpu=100), thresholds=AlertThresholds())

        assert report.skipped == 'maintenance'
        assert _open_alerts(router.id) == []


def test_past_maintenance_window_evaluates_normally(app, make_router):
    with app.app_context():
        now = datetime.utcnow()
        router = make_router(maintenance_until=now - timedelta(minutes=1))

        report = HealthEvaluator().evaluate(router, _ok(router, now, cpu=100), thresholds=AlertThresholds())

        assert report.skipped is None
        assert len(_open_alerts(router.id, ALERT_CPU)) == 1


def test_same_result_twice_only_advances_last_seen(app, make_router):
    with app.app_context():
        router = make_router()
        evaluator = HealthEvaluator()
        t0 = datetime.utcnow()
        t1 = t0 + timedelta(seconds=60)

        evaluator.evaluate(router, _ok(router, t0, cpu=90), thresholds=AlertThresholds())
        first = _open_alerts(router.id, ALERT_CPU)[0]
        first_id, first_triggered = first.id, first.triggered_at

        report = evaluator.evaluate(router, _ok(router, t1, cpu=90), thresholds=AlertThresholds())

        alerts = MikroTikAlert.query.filter_by(router_id=router.id).all()
        assert len(alerts) == 1
        assert alerts[0].id == first_id
        assert alerts[0].triggered_at == first_triggered
        assert alerts[0].last_seen_at == t1
        assert (ALERT_CPU, 'touched') in report.actions('alert')


def test_concurrent_insert_touches_existing_open_alert(app, make_router):
    with app.app_context():
        router = make_router()
        evaluator = HealthEvaluator()
        t0 = datetime.utcnow()
        evaluator.evaluate(router, _ok(router, t0, cpu=90), thresholds=AlertThresholds())

        real_find = evaluator._find_open_alert
        calls = {'count': 0}

        def stale_find(router_id, alert_type):
            calls['count'] += 1
            if calls['count'] == 1:
                # another evaluator inserted after this one looked
                return None
            return real_find(router_id, alert_type)

        evaluator._find_open_alert = stale_find
        report = EvaluationReport(router_id=router.id)
        row = evaluator.apply_alert(router, ALERT_CPU, True, t0 + timedelta(seconds=30), report, value=91.0)

        assert len(_open_alerts(router.id, ALERT_CPU)) == 1
        assert row.value_num == 91.0
        assert (ALERT_CPU, 'touched') in report.actions('alert')


def test_rejected_insert_without_winner_raises_constraint_violation(app, make_router):
    with app.app_context():
        router = make_router()
        evaluator = HealthEvaluator()
        t0 = datetime.utcnow()
        evaluator.evaluate(router, _ok(router, t0, cpu=90), thresholds=AlertThresholds())
        evaluator._find_open_alert = lambda router_id, alert_type: None

        with pytest.raises(ConstraintViolation):
            evaluator.apply_alert(router, ALERT_CPU, True, t0, EvaluationReport(router_id=router.id))


def test_ack_keeps_status_open(app, make_router, tenant_admin):
    with app.app_context():
        router = make_router()
        evaluator = HealthEvaluator()
        now = datetime.utcnow()
        evaluator.evaluate(router, _ok(router, now, cpu=90), thresholds=AlertThresholds())
        alert = _open_alerts(router.id, ALERT_CPU)[0]

        evaluator.ack_alert(alert, tenant_admin['user_id'], now=now)
        evaluator.evaluate(router, _ok(router, now + timedelta(seconds=60), cpu=92), thresholds=AlertThresholds())

        alert = db.session.get(MikroTikAlert, alert.id)
        assert alert.status == 'open'
        assert alert.acked_at == now
        assert alert.acked_by == tenant_admin['user_id']
        incident = MikroTikIncident.query.filter_by(dedup_key=f'{router.id}:*:cpu').one()
        assert incident.acked_at == now


def test_resolve_alert_also_resolves_mirrored_incident(app, make_router):
    with app.app_context():
        router = make_router()
        evaluator = HealthEvaluator()
        evaluator.evaluate(router, _ok(router, datetime.utcnow(), cpu=90), thresholds=AlertThresholds())

        evaluator.resolve_alert(_open_alerts(router.id, ALERT_CPU)[0])

        assert _open_alerts(router.id) == []
        assert _open_incidents(router.id) == []


def test_offline_then_recovered(app, make_router):
    with app.app_context():
        router = make_router()
        evaluator = HealthEvaluator()
        now = datetime.utcnow()

        evaluator.evaluate(router, _failed(router, now), thresholds=AlertThresholds())
        assert len(_open_alerts(router.id, ALERT_OFFLINE)) == 1

        evaluator.evaluate(router, _ok(router, now + timedelta(seconds=60)), thresholds=AlertThresholds())
        assert _open_alerts(router.id) == []


def test_offline_grace_period(app, make_router):
    with app.app_context():
        now = datetime.utcnow()
        router = make_router(last_seen_at=now - timedelta(seconds=30))
        thresholds = AlertThresholds(offline_after_secs=120)

        HealthEvaluator().evaluate(router, _failed(router, now), thresholds=thresholds)
        assert _open_alerts(router.id) == []

        HealthEvaluator().evaluate(router, _failed(router, now + timedelta(seconds=120)), thresholds=thresholds)
        assert len(_open_alerts(router.id, ALERT_OFFLINE)) == 1


def test_alerting_disabled_resolves_open_alerts(app, make_router):
    with app.app_context():
        router = make_router()
        evaluator = HealthEvaluator()
        now = datetime.utcnow()
        evaluator.evaluate(router, _ok(router, now, cpu=90), thresholds=AlertThresholds())

        report = evaluator.evaluate(
            router,
            _ok(router, now + timedelta(seconds=60), cpu=99),
            thresholds=AlertThresholds(alerting_enabled=False),
        )

        assert report.skipped == 'alerting_disabled'
        assert _open_alerts(router.id) == []


def test_thresholds_are_read_from_tenant_settings(app, make_router, tenant_admin):
    with app.app_context():
        router = make_router(tenant_id=tenant_admin['tenant_id'])
        settings_service.set_setting(tenant_admin['tenant_id'], settings_service.CPU_RISK, 50)

        HealthEvaluator().evaluate(router, _ok(router, datetime.utcnow(), cpu=60))

        alert = _open_alerts(router.id, ALERT_CPU)[0]
        assert alert.threshold_num == 50
        assert alert.tenant_id == tenant_admin['tenant_id']


def test_tracked_interface_down_and_missing(app, make_router):
    with app.app_context():
        router = make_router()
        now = datetime.utcnow()
        interfaces = [
            InterfaceInfo(name='ether1', running=True),
            InterfaceInfo(name='ether2', running=False),
        ]

        HealthEvaluator().evaluate(
            router,
            _ok(router, now, interfaces=interfaces, tracked={'ether1', 'ether2', 'ether3'}),
            thresholds=AlertThresholds(),
        )

        down = {i.interface_name for i in _open_incidents(router.id) if i.incident_type == INCIDENT_INTERFACE_DOWN}
        assert down == {'ether2', 'ether3'}


def test_interface_below_floor_for_n_samples_opens_low_rate(app, make_router):
    with app.app_context():
        router = make_router()
        now = datetime.utcnow()
        for offset in range(3):
            db.session.add(
                InterfaceMetricSample(
                    router_id=router.id,
                    interface_name='ether1',
                    ts=now - timedelta(minutes=offset),
                    rx_bps=1000,
                    tx_bps=5000,
                )
            )
        db.session.commit()
        floors = {(router.id, 'ether1'): (100000, None)}
        outcome = _ok(router, now, interfaces=[InterfaceInfo(name='ether1', running=True)], tracked={'ether1'})

        HealthEvaluator().evaluate(router, outcome, thresholds=AlertThresholds(), floors=floors)

        incident = MikroTikIncident.query.filter_by(incident_type=INCIDENT_INTERFACE_LOW_RATE).one()
        assert incident.interface_name == 'ether1'
        assert incident.threshold_num == 100000
        assert incident.value_num == 1000


def test_low_rate_needs_enough_samples(app, make_router):
    with app.app_context():
        router = make_router()
        now = datetime.utcnow()
        db.session.add(InterfaceMetricSample(router_id=router.id, interface_name='ether1', ts=now, rx_bps=1))
        db.session.commit()
        floors = {(router.id, 'ether1'): (100000, None)}
        outcome = _ok(router, now, interfaces=[InterfaceInfo(name='ether1', running=True)], tracked={'ether1'})

        HealthEvaluator().evaluate(router, outcome, thresholds=AlertThresholds(), floors=floors)

        assert _open_incidents(router.id) == []


def test_offline_incident_suppresses_interface_and_cpu(app, make_router):
    with app.app_context():
        router = make_router()
        evaluator = HealthEvaluator()
        now = datetime.utcnow()
        evaluator.apply_incident(router.id, router.tenant_id, ALERT_OFFLINE, True, now, title='Router offline')

        report = EvaluationReport(router_id=router.id)
        down = evaluator.apply_incident(
            router.id, router.tenant_id, INCIDENT_INTERFACE_DOWN, True, now, report, interface_name='ether1'
        )
        cpu = evaluator.apply_alert(router, ALERT_CPU, True, now, report, value=99.0)

        assert down is None
        assert cpu is None
        assert report.actions() == [
            (f'{router.id}:ether1:{INCIDENT_INTERFACE_DOWN}', 'suppressed'),
            (ALERT_CPU, 'suppressed'),
        ]
        assert [i.incident_type for i in _open_incidents(router.id)] == [ALERT_OFFLINE]


def test_correlation_can_be_disabled(app, make_router):
    with app.app_context():
        router = make_router()
        settings_service.set_setting(None, settings_service.CORRELATION_ENABLED, False)
        evaluator = HealthEvaluator()
        now = datetime.utcnow()
        evaluator.apply_incident(router.id, None, ALERT_OFFLINE, True, now)

        incident = evaluator.apply_incident(router.id, None, INCIDENT_INTERFACE_DOWN, True, now, interface_name='ether1')

        assert incident is not None
        assert len(_open_incidents(router.id)) == 2


def test_escalation_marks_stale_incidents_critical(app, make_router, tenant_admin):
    with app.app_context():
        tenant_id = tenant_admin['tenant_id']
        router = make_router(tenant_id=tenant_id)
        settings_service.set_setting(tenant_id, settings_service.AUTO_ESCALATION_ENABLED, True)
        settings_service.set_setting(tenant_id, settings_service.ESCALATION_MINUTES, 30)
        evaluator = HealthEvaluator()
        now = datetime.utcnow()
        stale = evaluator.apply_incident(router.id, tenant_id, 'custom', True, now - timedelta(hours=2), title='Old')
        fresh = evaluator.apply_incident(router.id, tenant_id, 'other', True, now - timedelta(minutes=5), title='New')

        assert evaluator.escalate_stale_incidents(tenant_id, now=now) == 1

        stale = db.session.get(MikroTikIncident, stale.id)
        assert stale.severity == 'critical'
        assert stale.escalated_at == now
        assert db.session.get(MikroTikIncident, fresh.id).severity == 'warning'

        # a later touch keeps the escalated severity
        evaluator.apply_incident(router.id, tenant_id, 'custom', True, now + timedelta(minutes=1), severity='warning')
        assert db.session.get(MikroTikIncident, stale.id).severity == 'critical'


def test_escalation_disabled_by_default(app, make_router):
    with app.app_context():
        router = make_router()
        evaluator = HealthEvaluator()
        now = datetime.utcnow()
        evaluator.apply_incident(router.id, None, 'custom', True, now - timedelta(days=1))

        assert evaluator.escalate_stale_incidents(None, now=now) == 0


def test_acked_incident_is_not_escalated(app, make_router):
    with app.app_context():
        router = make_router()
        settings_service.set_setting(None, settings_service.AUTO_ESCALATION_ENABLED, True)
        evaluator = HealthEvaluator()
        now = datetime.utcnow()
        incident = evaluator.apply_incident(router.id, None, 'custom', True, now - timedelta(days=1))
        evaluator.ack_incident(incident, None, now=now)

        assert evaluator.escalate_stale_incidents(None, now=now) == 0


def test_parallel_evaluators_share_one_open_alert(file_app):
    with file_app.app_context():
        router = MikroTikRouter(name='edge-1', host='10.0.0.1', port=8728, username='api')
        router.password = 'router-pass'
        db.session.add(router)
        db.session.commit()
        router_id = router.id

    barrier = threading.Barrier(2)
    now = datetime.utcnow()
    ids, errors = [], []

    def evaluate(value):
        with file_app.app_context():
            try:
                current = db.session.get(MikroTikRouter, router_id)
                barrier.wait(timeout=5)
                row = HealthEvaluator().apply_alert(
                    current, ALERT_CPU, True, now, EvaluationReport(router_id=router_id), value=value
                )
                ids.append(row.id)
            except Exception as exc:
                errors.append(exc)
            finally:
                db.session.remove()

    workers = [threading.Thread(target=evaluate, args=(value,)) for value in (91.0, 92.0)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=30)

    assert errors == []
    assert len(ids) == 2
    assert ids[0] == ids[1]
    with file_app.app_context():
        assert len(_open_alerts(router_id, ALERT_CPU)) == 1
