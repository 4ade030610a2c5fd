"""
NOC service facade
Tenant-scoped read/write operations used by the HTTP layer.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from flask import current_app
from sqlalchemy import func

from mikronoc import db
from mikronoc.errors import ConflictError, NotFoundError, ValidationError
from mikronoc.models import (
    MikroTikAlert,
    MikroTikIncident,
    MikroTikRouter,
    RouterMetricSample,
    User,
)
from mikronoc.services import wallboard
from mikronoc.services.alert_evaluator import SEVERITIES, EvaluationReport, HealthEvaluator
from mikronoc.services.live_counters import LiveCounterService
from mikronoc.services.metrics_store import BUCKET_RAW, MetricsStore
from mikronoc.services.router_client import RouterClient, RouterTarget

logger = logging.getLogger(__name__)

LIVE_SERVICE_EXTENSION = 'mikronoc_live_counters'
DEFAULT_LIST_LIMIT = 200
MAX_LIST_LIMIT = 1000


def parse_timestamp(value: Any, field_name: str = 'timestamp') -> Optional[datetime]:
    """ISO-8601 to naive UTC. Empty values return None."""
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f'{field_name} must be an ISO-8601 timestamp') from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def get_live_service(app=None) -> LiveCounterService:
    """Per-application live counter service."""
    app = app or current_app._get_current_object()
    service = app.extensions.get(LIVE_SERVICE_EXTENSION)
    if service is None:
        service = LiveCounterService.from_config(app.config, client=RouterClient.from_config(app.config))
        app.extensions[LIVE_SERVICE_EXTENSION] = service
    return service


def _clean_text(value: Any) -> str:
    return str(value or '').strip()


def _as_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in ('1', 'true', 'yes', 'y', 'on'):
        return True
    if text in ('0', 'false', 'no', 'n', 'off'):
        return False
    return default


def _clamp_limit(limit: Any, default: int = DEFAULT_LIST_LIMIT) -> int:
    try:
        value = int(limit)
    except (TypeError, ValueError):
        value = default
    return max(1, min(MAX_LIST_LIMIT, value))


class NocService:
    """All operations are scoped to `tenant_id`; None means every tenant."""

    def __init__(
        self,
        tenant_id: Optional[int],
        user_id: Optional[int] = None,
        client: Optional[RouterClient] = None,
        live: Optional[LiveCounterService] = None,
    ):
        self.tenant_id = tenant_id
        self.user_id = user_id
        self._client = client
        self._live = live
        self.store = MetricsStore()
        self.evaluator = HealthEvaluator(self.store)

    @property
    def client(self) -> RouterClient:
        if self._client is None:
            self._client = RouterClient.from_config(current_app.config)
        return self._client

    @property
    def live(self) -> LiveCounterService:
        if self._live is None:
            self._live = get_live_service()
        return self._live

    def _scoped(self, query, model):
        if self.tenant_id is None:
            return query
        return query.filter(model.tenant_id == self.tenant_id)

    # ==================== ROUTERS ====================

    def list_routers(self) -> List[MikroTikRouter]:
        query = self._scoped(MikroTikRouter.query, MikroTikRouter)
        return query.order_by(MikroTikRouter.name.asc()).all()

    def get_router(self, router_id: Any) -> MikroTikRouter:
        try:
            normalized = int(router_id)
        except (TypeError, ValueError):
            raise NotFoundError('Router not found')
        router = db.session.get(MikroTikRouter, normalized)
        if router is None or (self.tenant_id is not None and router.tenant_id != self.tenant_id):
            raise NotFoundError('Router not found')
        return router

    def list_routers_for_noc(self) -> List[Dict[str, Any]]:
        """Routers with their newest metric sample and open alert counts."""
        routers = self.list_routers()
        router_ids = [router.id for router in routers]
        open_counts: Dict[int, int] = {}
        if router_ids:
            rows = (
                db.session.query(MikroTikAlert.router_id, func.count(MikroTikAlert.id))
                .filter(MikroTikAlert.router_id.in_(router_ids), MikroTikAlert.resolved_at.is_(None))
                .group_by(MikroTikAlert.router_id)
                .all()
            )
            open_counts = {router_id: count for router_id, count in rows}

        payload = []
        for router in routers:
            row = router.to_dict()
            latest = self.store.latest(router.id)
            for field_name in RouterMetricSample.NUMERIC_FIELDS:
                row[field_name] = getattr(latest, field_name) if latest else None
            row['metrics_ts'] = latest.ts.isoformat() if latest else None
            row['open_alerts'] = open_counts.get(router.id, 0)
            payload.append(row)
        return payload

    def _apply_router_fields(self, router: MikroTikRouter, data: Dict[str, Any], creating: bool) -> List[str]:
        changed = []

        for field_name in ('name', 'host', 'username'):
            if field_name in data or creating:
                value = _clean_text(data.get(field_name))
                if not value:
                    raise ValidationError(f'{field_name} is required')
                setattr(router, field_name, value)
                changed.append(field_name)

        if 'password' in data or creating:
            password = _clean_text(data.get('password'))
            if creating and not password:
                raise ValidationError('password is required')
            if password:
                router.password = password
                changed.append('password')

        if 'use_tls' in data or creating:
            router.use_tls = _as_bool(data.get('use_tls'), default=False)
            changed.append('use_tls')

        if 'port' in data or creating:
            raw_port = data.get('port')
            if raw_port in (None, ''):
                port = 8729 if router.use_tls else 8728
            else:
                try:
                    port = int(raw_port)
                except (TypeError, ValueError):
                    raise ValidationError('port must be integer')
            if port < 1 or port > 65535:
                raise ValidationError('port must be between 1 and 65535')
            router.port = port
            changed.append('port')

        if 'enabled' in data or creating:
            router.enabled = _as_bool(data.get('enabled'), default=True)
            changed.append('enabled')

        for field_name, bound in (('latitude', 90), ('longitude', 180)):
            if field_name in data:
                raw = data.get(field_name)
                if raw in (None, ''):
                    setattr(router, field_name, None)
                else:
                    try:
                        number = float(raw)
                    except (TypeError, ValueError):
                        raise ValidationError(f'{field_name} must be a number')
                    if number < -bound or number > bound:
                        raise ValidationError(f'{field_name} must be between -{bound} and {bound}')
                    setattr(router, field_name, number)
                changed.append(field_name)
        if (router.latitude is None) != (router.longitude is None):
            raise ValidationError('latitude and longitude must be set together')

        if 'maintenance_until' in data:
            router.maintenance_until = parse_timestamp(data.get('maintenance_until'), 'maintenance_until')
            changed.append('maintenance_until')
        if 'maintenance_reason' in data:
            router.maintenance_reason = _clean_text(data.get('maintenance_reason')) or None
            changed.append('maintenance_reason')
        if 'maintenance_until' in data and router.maintenance_until is None:
            router.maintenance_reason = None

        duplicate = self._scoped(MikroTikRouter.query, MikroTikRouter).filter(
            MikroTikRouter.host == router.host,
            MikroTikRouter.port == router.port,
        )
        if router.id is not None:
            duplicate = duplicate.filter(MikroTikRouter.id != router.id)
        if duplicate.first() is not None:
            raise ConflictError('A router with this host and port already exists')
        return changed

    def create_router(self, data: Dict[str, Any]) -> MikroTikRouter:
        router = MikroTikRouter(tenant_id=self.tenant_id)
        self._apply_router_fields(router, data, creating=True)
        db.session.add(router)
        db.session.commit()
        logger.info('Router %s (%s:%s) created for tenant %s', router.id, router.host, router.port, self.tenant_id)
        return router

    def update_router(self, router_id: Any, data: Dict[str, Any]):
        router = self.get_router(router_id)
        try:
            changed = self._apply_router_fields(router, data, creating=False)
        except (ValidationError, ConflictError):
            db.session.rollback()
            raise
        db.session.commit()
        if {'enabled', 'maintenance_until'} & set(changed):
            logger.info(
                'Router %s enabled=%s maintenance_until=%s',
                router.id,
                router.enabled,
                router.maintenance_until,
            )
        return router, changed

    def delete_router(self, router_id: Any) -> int:
        router = self.get_router(router_id)
        deleted_id = router.id
        db.session.delete(router)
        db.session.commit()
        self.live.forget(deleted_id)
        wallboard.invalidate_tracked_cache(self.tenant_id)
        return deleted_id

    # ==================== DEVICE READS ====================

    def test_connection(self, router_id: Any) -> Dict[str, Any]:
        router = self.get_router(router_id)
        return self.client.test_connection(RouterTarget.from_router(router))

    def get_interface_snapshot(self, router_id: Any) -> Dict[str, Any]:
        router = self.get_router(router_id)
        probe = self.client.probe(RouterTarget.from_router(router), with_interfaces=True)
        return {
            'router_id': router.id,
            'identity': probe.resource.identity,
            'ros_version': probe.resource.ros_version,
            'latency_ms': probe.latency_ms,
            'resource': probe.resource.to_dict(),
            'interfaces': [iface.to_dict() for iface in probe.interfaces],
        }

    def get_interface_live_counters(self, router_id: Any, names: List[str]) -> List[Dict[str, Any]]:
        router = self.get_router(router_id)
        cleaned = [name.strip() for name in names if name and name.strip()]
        if not cleaned:
            raise ValidationError('names is required')
        if len(set(cleaned)) > self.live.max_interfaces:
            raise ValidationError(f'at most {self.live.max_interfaces} interfaces per request')

        counters = self.live.fetch(RouterTarget.from_router(router), cleaned)
        self.live.record(router.id, counters, tenant_id=router.tenant_id)
        rows = []
        for counter in counters:
            row = counter.to_dict()
            latest = self.live.latest((router.id, counter.name))
            row['rx_bps'] = latest.rx_bps if latest else None
            row['tx_bps'] = latest.tx_bps if latest else None
            rows.append(row)
        return rows

    # ==================== METRICS ====================

    def _range(self, start: Optional[datetime], end: Optional[datetime], default_hours: int = 24):
        end = end or datetime.utcnow()
        start = start or (end - timedelta(hours=default_hours))
        if start > end:
            raise ValidationError('from must be before to')
        return start, end

    def router_metrics(self, router_id: Any, start=None, end=None, limit=None) -> Dict[str, Any]:
        router = self.get_router(router_id)
        start, end = self._range(start, end)
        bucket, points = self.store.bucketed(router.id, start, end, limit=limit)
        return {'router_id': router.id, 'bucket': bucket, 'from': start, 'to': end, 'points': points}

    def interface_metrics(
        self, router_id: Any, interface_name: Optional[str], start=None, end=None, limit=None, after=None, after_id=None
    ) -> Dict[str, Any]:
        router = self.get_router(router_id)
        interface_name = _clean_text(interface_name) or None
        if start is not None and end is not None and interface_name:
            bucket, points = self.store.bucketed(router.id, start, end, limit=limit, interface_name=interface_name)
            if bucket != BUCKET_RAW:
                return {'router_id': router.id, 'interface_name': interface_name, 'bucket': bucket, 'points': points}
        samples = self.store.query_interface(
            router.id, interface_name, start=start, end=end, limit=limit, after=after, after_id=after_id
        )
        return {
            'router_id': router.id,
            'interface_name': interface_name,
            'bucket': BUCKET_RAW,
            'points': [sample.to_dict() for sample in samples],
            'next_after': samples[-1].ts.isoformat() if samples else None,
            'next_after_id': samples[-1].id if samples else None,
        }

    def latest_interface_metrics(self, router_id: Any) -> List[Dict[str, Any]]:
        router = self.get_router(router_id)
        return [sample.to_dict() for sample in self.store.latest_interfaces(router.id)]

    # ==================== ALERTS ====================

    def list_alerts(self, active_only: bool = True, limit: Any = DEFAULT_LIST_LIMIT) -> List[MikroTikAlert]:
        query = self._scoped(MikroTikAlert.query, MikroTikAlert)
        if active_only:
            query = query.filter(MikroTikAlert.resolved_at.is_(None))
        return query.order_by(MikroTikAlert.updated_at.desc(), MikroTikAlert.id.desc()).limit(_clamp_limit(limit)).all()

    def _get_alert(self, alert_id: Any) -> MikroTikAlert:
        try:
            alert = db.session.get(MikroTikAlert, int(alert_id))
        except (TypeError, ValueError):
            alert = None
        if alert is None or (self.tenant_id is not None and alert.tenant_id != self.tenant_id):
            raise NotFoundError('Alert not found')
        return alert

    def ack_alert(self, alert_id: Any) -> MikroTikAlert:
        return self.evaluator.ack_alert(self._get_alert(alert_id), self.user_id)

    def resolve_alert(self, alert_id: Any) -> MikroTikAlert:
        return self.evaluator.resolve_alert(self._get_alert(alert_id))

    # ==================== INCIDENTS ====================

    def list_incidents(
        self,
        active_only: bool = True,
        limit: Any = DEFAULT_LIST_LIMIT,
        router_id: Optional[int] = None,
        severity: Optional[str] = None,
    ) -> List[MikroTikIncident]:
        query = self._scoped(MikroTikIncident.query, MikroTikIncident)
        if active_only:
            query = query.filter(MikroTikIncident.resolved_at.is_(None))
        if router_id is not None:
            query = query.filter(MikroTikIncident.router_id == router_id)
        if severity:
            query = query.filter(MikroTikIncident.severity == severity)
        return query.order_by(MikroTikIncident.updated_at.desc(), MikroTikIncident.id.desc()).limit(_clamp_limit(limit)).all()

    def _get_incident(self, incident_id: Any) -> MikroTikIncident:
        try:
            incident = db.session.get(MikroTikIncident, int(incident_id))
        except (TypeError, ValueError):
            incident = None
        if incident is None or (self.tenant_id is not None and incident.tenant_id != self.tenant_id):
            raise NotFoundError('Incident not found')
        return incident

    def ack_incident(self, incident_id: Any) -> MikroTikIncident:
        return self.evaluator.ack_incident(self._get_incident(incident_id), self.user_id)

    def resolve_incident(self, incident_id: Any) -> MikroTikIncident:
        return self.evaluator.resolve_incident(self._get_incident(incident_id))

    def update_incident(self, incident_id: Any, data: Dict[str, Any]) -> MikroTikIncident:
        incident = self._get_incident(incident_id)
        if 'owner_user_id' in data:
            raw_owner = data.get('owner_user_id')
            if raw_owner in (None, ''):
                incident.owner_user_id = None
            else:
                try:
                    owner = db.session.get(User, int(raw_owner))
                except (TypeError, ValueError):
                    owner = None
                if owner is None or (self.tenant_id is not None and owner.tenant_id not in (None, self.tenant_id)):
                    raise ValidationError('owner_user_id does not match a user of this tenant')
                incident.owner_user_id = owner.id
        if 'notes' in data:
            notes = _clean_text(data.get('notes'))
            if len(notes) > 4000:
                raise ValidationError('notes must be at most 4000 characters')
            incident.notes = notes or None
        db.session.commit()
        return incident

    def simulate_incident(
        self,
        router_id: Any,
        incident_type: Any,
        severity: Any = None,
        interface_name: Any = None,
        message: Any = None,
    ) -> MikroTikIncident:
        """Open (or refresh) an incident through the same transition path as polling."""
        router = self.get_router(router_id)
        normalized_type = _clean_text(incident_type).lower()
        if not normalized_type:
            raise ValidationError('incident_type is required')
        normalized_severity = _clean_text(severity).lower() or 'warning'
        if normalized_severity not in SEVERITIES:
            normalized_severity = 'warning'

        actor = None
        if self.user_id is not None:
            user = db.session.get(User, self.user_id)
            if user is not None:
                actor = user.name or user.email
        text = _clean_text(message) or f'Manual simulation triggered by {actor or self.user_id or "system"}'

        report = EvaluationReport(router_id=router.id)
        incident = self.evaluator.apply_incident(
            router.id,
            router.tenant_id,
            normalized_type,
            True,
            datetime.utcnow(),
            report,
            interface_name=_clean_text(interface_name) or None,
            severity=normalized_severity,
            title=f'Simulated {normalized_type} incident',
            message=text,
            correlate=False,
        )
        logger.info('Simulated %s incident on router %s: %s', normalized_type, router.id, report.actions())
        return incident

    def escalate_now(self) -> int:
        return self.evaluator.escalate_stale_incidents(self.tenant_id)

    # ==================== WALLBOARD ====================

    def wallboard_slots(self) -> List[Dict[str, Any]]:
        return [slot.to_dict() for slot in wallboard.load_slots(self.tenant_id)]

    def save_wallboard_slots(self, entries: Any) -> List[Dict[str, Any]]:
        slots = wallboard.save_slots(self.tenant_id, entries, user_id=self.user_id)
        known = {router.id for router in self.list_routers()}
        unknown = sorted({slot.router_id for slot in slots if slot.router_id not in known})
        if unknown:
            logger.warning('Wallboard slots reference unknown routers: %s', unknown)
        return [slot.to_dict() for slot in slots]

    def wallboard_live(self, refresh: bool = True) -> List[Dict[str, Any]]:
        """
        Latest rate and sparkline per wallboard slot. With `refresh` the slot
        routers are read once more first, so a polling wallboard keeps the
        rings warm without a separate live loop.
        """
        slots = wallboard.load_slots(self.tenant_id)
        self.live.set_floors(wallboard.slot_floors(self.tenant_id))
        if refresh and slots:
            names_by_router: Dict[int, set] = {}
            for slot in slots:
                names_by_router.setdefault(slot.router_id, set()).add(slot.interface_name)
            targets = []
            for router in self.list_routers():
                if router.id in names_by_router and router.enabled and not router.in_maintenance():
                    targets.append((RouterTarget.from_router(router), names_by_router[router.id]))
            if targets:
                result = self.live.tick(targets)
                if result['failed']:
                    logger.debug('Live refresh failed for routers %s', result['failed'])
        rows = []
        for slot in slots:
            latest = self.live.latest(slot.key)
            rows.append(
                {
                    **slot.to_dict(),
                    'latest': latest.to_dict() if latest else None,
                    'series': [point.to_dict() for point in self.live.series(slot.key)],
                }
            )
        return rows
