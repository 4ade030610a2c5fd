"""
Health/Alert Evaluator

Turns one poll outcome into alert and incident transitions. Every rule is
reduced to a boolean "condition active" and applied per key:

    active   + no open row -> open (triggered_at = last_seen_at = now)
    active   + open row    -> touch last_seen_at (triggered_at and ack kept)
    inactive + open row    -> resolve
    inactive + no open row -> nothing

Router-level alerts (offline, cpu, latency) mirror into incidents keyed by
`dedup_key`; interface rules only produce incidents. At most one open row per
key is guaranteed by the partial unique indexes on both tables. An insert that
loses the race re-reads the winning row and touches it instead.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import IntegrityError

from mikronoc import db
from mikronoc.errors import ConstraintViolation
from mikronoc.models import MikroTikAlert, MikroTikIncident, MikroTikRouter
from mikronoc.services import settings_service
from mikronoc.services.metrics_store import MetricsStore
from mikronoc.services.router_client import InterfaceInfo, SystemResource
from mikronoc.signals import incident_changed

logger = logging.getLogger(__name__)

ALERT_OFFLINE = 'offline'
ALERT_CPU = 'cpu'
ALERT_LATENCY = 'latency'
ROUTER_ALERT_TYPES = (ALERT_OFFLINE, ALERT_CPU, ALERT_LATENCY)

INCIDENT_INTERFACE_DOWN = 'interface_down'
INCIDENT_INTERFACE_LOW_RATE = 'interface_low_rate'

SEVERITIES = ('info', 'warning', 'critical')


@dataclass
class PollOutcome:
    """What one poll learned about one router."""

    router_id: int
    tenant_id: Optional[int]
    ok: bool
    at: datetime
    latency_ms: Optional[int] = None
    resource: Optional[SystemResource] = None
    interfaces: List[InterfaceInfo] = field(default_factory=list)
    tracked_interfaces: Set[str] = field(default_factory=set)
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def cpu_load(self) -> Optional[int]:
        return self.resource.cpu_load if self.resource else None


@dataclass
class Transition:
    table: str
    key: str
    action: str  # opened, touched, resolved, suppressed
    row_id: Optional[int] = None


@dataclass
class EvaluationReport:
    router_id: int
    skipped: Optional[str] = None
    transitions: List[Transition] = field(default_factory=list)

    def actions(self, table: Optional[str] = None) -> List[Tuple[str, str]]:
        return [(t.key, t.action) for t in self.transitions if table is None or t.table == table]


class HealthEvaluator:
    """Applies health rules to poll outcomes. Holds no state between calls."""

    def __init__(self, store: Optional[MetricsStore] = None):
        self.store = store or MetricsStore()

    # ==================== ENTRY POINT ====================

    def evaluate(
        self,
        router: MikroTikRouter,
        outcome: PollOutcome,
        thresholds: Optional[settings_service.AlertThresholds] = None,
        floors: Optional[Dict[Tuple[int, str], Tuple[Optional[int], Optional[int]]]] = None,
    ) -> EvaluationReport:
        now = outcome.at
        report = EvaluationReport(router_id=router.id)

        if router.in_maintenance(now):
            # open rows stay frozen until the window ends
            report.skipped = 'maintenance'
            logger.debug('Skipping evaluation for router %s during maintenance', router.id)
            return report

        thresholds = thresholds or settings_service.load_alert_thresholds(router.tenant_id)
        if not thresholds.alerting_enabled:
            report.skipped = 'alerting_disabled'
            self.resolve_router_alerts(router, now, report)
            return report

        self._evaluate_offline(router, outcome, thresholds, report)
        self._evaluate_cpu(router, outcome, thresholds, report)
        self._evaluate_latency(router, outcome, thresholds, report)
        if outcome.ok:
            self._evaluate_interfaces(router, outcome, thresholds, floors or {}, report)
        return report

    # ==================== RULES ====================

    def _evaluate_offline(self, router, outcome, thresholds, report):
        now = outcome.at
        since = router.last_seen_at or router.created_at or now
        offline_for = max(0, int((now - since).total_seconds()))
        active = (not outcome.ok) and offline_for >= thresholds.offline_after_secs
        self.apply_alert(
            router,
            ALERT_OFFLINE,
            active,
            now,
            report,
            severity='critical',
            title='Router offline',
            message=f'{router.name} is unreachable ({offline_for}s): {outcome.error or "no reply"}',
            value=float(offline_for),
            threshold=float(thresholds.offline_after_secs),
        )

    def _evaluate_cpu(self, router, outcome, thresholds, report):
        cpu = outcome.cpu_load if outcome.ok else None
        active = cpu is not None and cpu >= thresholds.cpu_threshold
        self.apply_alert(
            router,
            ALERT_CPU,
            active,
            outcome.at,
            report,
            severity='critical' if active and cpu >= thresholds.cpu_critical else 'warning',
            title='High CPU',
            message=f'{router.name} CPU is {cpu}% (threshold: {thresholds.cpu_threshold}%).',
            value=float(cpu) if cpu is not None else None,
            threshold=float(thresholds.cpu_threshold),
        )

    def _evaluate_latency(self, router, outcome, thresholds, report):
        latency = outcome.latency_ms if outcome.ok else None
        active = latency is not None and latency >= thresholds.latency_threshold_ms
        self.apply_alert(
            router,
            ALERT_LATENCY,
            active,
            outcome.at,
            report,
            severity='critical' if active and latency >= thresholds.latency_critical_ms else 'warning',
            title='High latency',
            message=f'{router.name} latency is {latency}ms (threshold: {thresholds.latency_threshold_ms}ms).',
            value=float(latency) if latency is not None else None,
            threshold=float(thresholds.latency_threshold_ms),
        )

    def _evaluate_interfaces(self, router, outcome, thresholds, floors, report):
        if not outcome.tracked_interfaces:
            return
        by_name = {iface.name: iface for iface in outcome.interfaces}
        for name in sorted(outcome.tracked_interfaces):
            iface = by_name.get(name)
            if iface is None:
                down, reason = True, 'not present on the device'
            elif iface.disabled:
                down, reason = True, 'disabled'
            else:
                down, reason = not iface.running, 'not running'
            self.apply_incident(
                router.id,
                router.tenant_id,
                INCIDENT_INTERFACE_DOWN,
                down,
                outcome.at,
                report,
                interface_name=name,
                severity='critical',
                title=f'Interface {name} down',
                message=f'{router.name} interface {name} is {reason}.',
            )

            rx_floor, tx_floor = floors.get((router.id, name), (None, None))
            low, value, threshold = (False, None, None)
            if not down and (rx_floor or tx_floor):
                low, value, threshold = self._low_rate(router.id, name, rx_floor, tx_floor, thresholds.low_rate_samples)
            self.apply_incident(
                router.id,
                router.tenant_id,
                INCIDENT_INTERFACE_LOW_RATE,
                low,
                outcome.at,
                report,
                interface_name=name,
                severity='warning',
                title=f'Low traffic on {name}',
                message=(
                    f'{router.name} {name} stayed below {threshold} bps for '
                    f'{thresholds.low_rate_samples} samples.'
                ),
                value=value,
                threshold=threshold,
            )

    def _low_rate(self, router_id, interface_name, rx_floor, tx_floor, needed):
        """Debounced floor check over the newest persisted samples."""
        samples = self.store.recent_interface_samples(router_id, interface_name, needed)
        if len(samples) < needed:
            return False, None, None
        for attr, floor in (('rx_bps', rx_floor), ('tx_bps', tx_floor)):
            if not floor:
                continue
            values = [getattr(sample, attr) for sample in samples]
            if all(value is not None and value < floor for value in values):
                return True, float(values[0]), float(floor)
        return False, None, None

    def _offline_incident_open(self, router_id: int) -> bool:
        key = MikroTikIncident.build_dedup_key(router_id, ALERT_OFFLINE)
        return self._find_open_incident(key) is not None

    def _suppressed(self, router_id: int, tenant_id: Optional[int], incident_type: str) -> bool:
        if incident_type == ALERT_OFFLINE:
            return False
        if not settings_service.get_bool(tenant_id, settings_service.CORRELATION_ENABLED, True):
            return False
        return self._offline_incident_open(router_id)

    # ==================== ALERT TRANSITIONS ====================

    def _find_open_alert(self, router_id: int, alert_type: str) -> Optional[MikroTikAlert]:
        return MikroTikAlert.query.filter(
            MikroTikAlert.router_id == router_id,
            MikroTikAlert.alert_type == alert_type,
            MikroTikAlert.resolved_at.is_(None),
        ).first()

    def apply_alert(
        self,
        router: MikroTikRouter,
        alert_type: str,
        active: bool,
        now: datetime,
        report: EvaluationReport,
        severity: str = 'warning',
        title: str = '',
        message: Optional[str] = None,
        value: Optional[float] = None,
        threshold: Optional[float] = None,
    ) -> Optional[MikroTikAlert]:
        router_id, tenant_id = router.id, router.tenant_id
        open_row = self._find_open_alert(router_id, alert_type)

        if not active:
            if open_row is not None:
                self._resolve_alert_row(open_row, now)
                report.transitions.append(Transition('alert', alert_type, 'resolved', open_row.id))
            self.apply_incident(router_id, tenant_id, alert_type, False, now, report)
            return None

        if self._suppressed(router_id, tenant_id, alert_type):
            if open_row is not None:
                self._resolve_alert_row(open_row, now)
                self.apply_incident(router_id, tenant_id, alert_type, False, now, report)
            report.transitions.append(Transition('alert', alert_type, 'suppressed'))
            return None

        fields = {
            'severity': severity,
            'title': title,
            'message': message,
            'value_num': value,
            'threshold_num': threshold,
        }
        if open_row is not None:
            self._touch(open_row, now, fields)
            db.session.commit()
            report.transitions.append(Transition('alert', alert_type, 'touched', open_row.id))
        else:
            open_row, created = self._insert_alert(router_id, tenant_id, alert_type, now, fields)
            report.transitions.append(
                Transition('alert', alert_type, 'opened' if created else 'touched', open_row.id)
            )

        self.apply_incident(router_id, tenant_id, alert_type, True, now, report, **_incident_fields(fields))
        return open_row

    def _insert_alert(self, router_id, tenant_id, alert_type, now, fields):
        row = MikroTikAlert(
            tenant_id=tenant_id,
            router_id=router_id,
            alert_type=alert_type,
            status='open',
            triggered_at=now,
            last_seen_at=now,
            **fields,
        )
        try:
            db.session.add(row)
            db.session.commit()
            return row, True
        except IntegrityError as exc:
            db.session.rollback()
            winner = self._find_open_alert(router_id, alert_type)
            if winner is None:
                raise ConstraintViolation(f'open alert insert rejected for router {router_id}') from exc
            logger.info('Open %s alert for router %s already exists; touching it', alert_type, router_id)
            self._touch(winner, now, fields)
            db.session.commit()
            return winner, False

    def _resolve_alert_row(self, row: MikroTikAlert, now: datetime) -> None:
        row.status = 'resolved'
        row.resolved_at = now
        db.session.commit()

    def resolve_router_alerts(self, router: MikroTikRouter, now: datetime, report: Optional[EvaluationReport] = None):
        report = report or EvaluationReport(router_id=router.id)
        for alert_type in ROUTER_ALERT_TYPES:
            self.apply_alert(router, alert_type, False, now, report)
        return report

    # ==================== INCIDENT TRANSITIONS ====================

    def _find_open_incident(self, dedup_key: str) -> Optional[MikroTikIncident]:
        return MikroTikIncident.query.filter(
            MikroTikIncident.dedup_key == dedup_key,
            MikroTikIncident.resolved_at.is_(None),
        ).first()

    def apply_incident(
        self,
        router_id: int,
        tenant_id: Optional[int],
        incident_type: str,
        active: bool,
        now: datetime,
        report: Optional[EvaluationReport] = None,
        interface_name: Optional[str] = None,
        severity: str = 'warning',
        title: str = '',
        message: Optional[str] = None,
        value: Optional[float] = None,
        threshold: Optional[float] = None,
        correlate: bool = True,
    ) -> Optional[MikroTikIncident]:
        """Find-open-or-create (or resolve) the incident for one dedup key.

        With ``correlate`` off, an open offline incident does not suppress
        interface-scoped rows.
        """
        dedup_key = MikroTikIncident.build_dedup_key(router_id, incident_type, interface_name)
        report = report if report is not None else EvaluationReport(router_id=router_id)
        open_row = self._find_open_incident(dedup_key)

        if not active:
            if open_row is not None:
                open_row.status = 'resolved'
                open_row.resolved_at = now
                db.session.commit()
                report.transitions.append(Transition('incident', dedup_key, 'resolved', open_row.id))
                incident_changed.send(router_id, incident=open_row.to_dict(), action='resolved')
            return None

        if correlate and interface_name is not None and self._suppressed(router_id, tenant_id, incident_type):
            if open_row is not None:
                open_row.status = 'resolved'
                open_row.resolved_at = now
                db.session.commit()
            report.transitions.append(Transition('incident', dedup_key, 'suppressed'))
            return None

        fields = {
            'severity': severity,
            'title': title or f'{incident_type} incident',
            'message': message,
            'value_num': value,
            'threshold_num': threshold,
        }
        if open_row is not None:
            self._touch(open_row, now, fields)
            db.session.commit()
            report.transitions.append(Transition('incident', dedup_key, 'touched', open_row.id))
            return open_row

        row = MikroTikIncident(
            tenant_id=tenant_id,
            router_id=router_id,
            interface_name=interface_name,
            incident_type=incident_type,
            dedup_key=dedup_key,
            status='open',
            triggered_at=now,
            last_seen_at=now,
            **fields,
        )
        try:
            db.session.add(row)
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            winner = self._find_open_incident(dedup_key)
            if winner is None:
                raise ConstraintViolation(f'open incident insert rejected for {dedup_key}') from exc
            self._touch(winner, now, fields)
            db.session.commit()
            report.transitions.append(Transition('incident', dedup_key, 'touched', winner.id))
            return winner

        report.transitions.append(Transition('incident', dedup_key, 'opened', row.id))
        incident_changed.send(router_id, incident=row.to_dict(), action='opened')
        return row

    @staticmethod
    def _touch(row, now: datetime, fields: Dict[str, Any]) -> None:
        # escalation is sticky until the row resolves
        sticky = getattr(row, 'escalated_at', None) is not None
        for name, value in fields.items():
            if name == 'severity' and sticky:
                continue
            setattr(row, name, value)
        row.last_seen_at = now

    # ==================== OPERATOR ACTIONS ====================

    def _mirrored_incident(self, alert: MikroTikAlert) -> Optional[MikroTikIncident]:
        return self._find_open_incident(MikroTikIncident.build_dedup_key(alert.router_id, alert.alert_type))

    def ack_alert(self, alert: MikroTikAlert, user_id: Optional[int], now: Optional[datetime] = None) -> MikroTikAlert:
        now = now or datetime.utcnow()
        if alert.acked_at is None:
            alert.acked_at = now
            alert.acked_by = user_id
        incident = self._mirrored_incident(alert) if alert.resolved_at is None else None
        if incident is not None and incident.acked_at is None:
            incident.acked_at = now
            incident.acked_by = user_id
        db.session.commit()
        return alert

    def resolve_alert(self, alert: MikroTikAlert, now: Optional[datetime] = None) -> MikroTikAlert:
        now = now or datetime.utcnow()
        if alert.resolved_at is None:
            incident = self._mirrored_incident(alert)
            self._resolve_alert_row(alert, now)
            if incident is not None:
                incident.status = 'resolved'
                incident.resolved_at = now
                db.session.commit()
                incident_changed.send(alert.router_id, incident=incident.to_dict(), action='resolved')
        return alert

    def ack_incident(self, incident: MikroTikIncident, user_id: Optional[int], now: Optional[datetime] = None) -> MikroTikIncident:
        if incident.acked_at is None:
            incident.acked_at = now or datetime.utcnow()
            incident.acked_by = user_id
            db.session.commit()
        return incident

    def resolve_incident(self, incident: MikroTikIncident, now: Optional[datetime] = None) -> MikroTikIncident:
        if incident.resolved_at is None:
            incident.status = 'resolved'
            incident.resolved_at = now or datetime.utcnow()
            db.session.commit()
            incident_changed.send(incident.router_id, incident=incident.to_dict(), action='resolved')
        return incident

    # ==================== ESCALATION ====================

    def escalate_stale_incidents(self, tenant_id: Optional[int], now: Optional[datetime] = None) -> int:
        """
        Raise unacked, unresolved, non-critical incidents older than the
        tenant's escalation window to critical. Returns the number escalated.
        """
        policy = settings_service.load_escalation_policy(tenant_id)
        if not policy.enabled:
            return 0
        now = now or datetime.utcnow()
        cutoff = now - timedelta(minutes=policy.after_minutes)

        query = MikroTikIncident.query.filter(
            MikroTikIncident.resolved_at.is_(None),
            MikroTikIncident.acked_at.is_(None),
            MikroTikIncident.severity != 'critical',
            MikroTikIncident.triggered_at <= cutoff,
        )
        if tenant_id is None:
            query = query.filter(MikroTikIncident.tenant_id.is_(None))
        else:
            query = query.filter(MikroTikIncident.tenant_id == tenant_id)
        candidates = query.order_by(MikroTikIncident.triggered_at.asc()).limit(200).all()

        for incident in candidates:
            incident.severity = 'critical'
            incident.escalated_at = now
        db.session.commit()

        for incident in candidates:
            logger.warning(
                'Escalated incident %s (%s) after %s minutes without acknowledgement',
                incident.id,
                incident.title,
                policy.after_minutes,
            )
            incident_changed.send(incident.router_id, incident=incident.to_dict(), action='escalated')
        return len(candidates)


def _incident_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'severity': fields['severity'],
        'title': fields['title'],
        'message': fields['message'],
        'value': fields['value_num'],
        'threshold': fields['threshold_num'],
    }
