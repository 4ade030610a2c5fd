"""
MikroTik NOC API endpoints
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from flask import Blueprint, g, jsonify, request

from mikronoc import limiter
from mikronoc.errors import NocServiceError, RouterClientError
from mikronoc.services.noc_service import NocService, parse_timestamp
from mikronoc.tenancy import current_tenant_id, tenant_admin_required

mikrotik_bp = Blueprint('mikrotik', __name__)
logger = logging.getLogger(__name__)


def _to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        return int(float(str(value)))
    except Exception:
        return default


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


def _service() -> NocService:
    user = getattr(g, 'current_user', None)
    return NocService(current_tenant_id(), user_id=user.id if user else None)


def _failure(exc: Exception, action: str):
    if isinstance(exc, NocServiceError):
        return jsonify({'success': False, 'error': exc.message}), exc.status_code
    if isinstance(exc, RouterClientError):
        logger.warning("Router call failed while %s: %s", action, exc)
        return jsonify({'success': False, 'error': str(exc), 'error_kind': exc.kind}), 502
    logger.error("Error %s: %s", action, exc, exc_info=True)
    return jsonify({'success': False, 'error': 'Internal server error'}), 500


def _iso_points(points: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    serialized = []
    for point in points:
        serialized.append(
            {key: (value.isoformat() if isinstance(value, datetime) else value) for key, value in point.items()}
        )
    return serialized


def _window_args():
    return (
        parse_timestamp(request.args.get('from'), 'from'),
        parse_timestamp(request.args.get('to'), 'to'),
        _to_int(request.args.get('limit')),
    )


# ==================== ROUTERS ====================

@mikrotik_bp.route('/noc', methods=['GET'])
@tenant_admin_required()
def noc_overview():
    """Router list enriched with latest metrics and open alert counts"""
    try:
        return jsonify({'success': True, 'routers': _service().list_routers_for_noc()}), 200
    except Exception as exc:
        return _failure(exc, 'building NOC overview')


@mikrotik_bp.route('/routers', methods=['GET'])
@tenant_admin_required()
def get_routers():
    try:
        routers = _service().list_routers()
        return jsonify({'success': True, 'routers': [r.to_dict() for r in routers]}), 200
    except Exception as exc:
        return _failure(exc, 'listing routers')


@mikrotik_bp.route('/routers', methods=['POST'])
@tenant_admin_required()
def create_router():
    data = request.get_json(silent=True) or {}
    try:
        service = _service()
        router = service.create_router(data)
        test_connection = _as_bool(data.get('test_connection'), default=False)
        connection = service.test_connection(router.id) if test_connection else None
        return jsonify(
            {
                'success': True,
                'router': router.to_dict(),
                'connection_tested': test_connection,
                'connection': connection,
            }
        ), 201
    except Exception as exc:
        return _failure(exc, 'creating router')


@mikrotik_bp.route('/routers/<router_id>', methods=['GET'])
@tenant_admin_required()
def get_router(router_id):
    try:
        router = _service().get_router(router_id)
        return jsonify({'success': True, 'router': router.to_dict()}), 200
    except Exception as exc:
        return _failure(exc, f'loading router {router_id}')


@mikrotik_bp.route('/routers/<router_id>', methods=['PATCH'])
@tenant_admin_required()
def update_router(router_id):
    data = request.get_json(silent=True) or {}
    try:
        router, changed = _service().update_router(router_id, data)
        return jsonify({'success': True, 'router': router.to_dict(), 'updated_fields': changed}), 200
    except Exception as exc:
        return _failure(exc, f'updating router {router_id}')


@mikrotik_bp.route('/routers/<router_id>', methods=['DELETE'])
@tenant_admin_required()
def delete_router(router_id):
    try:
        deleted_id = _service().delete_router(router_id)
        return jsonify({'success': True, 'deleted_id': str(deleted_id)}), 200
    except Exception as exc:
        return _failure(exc, f'deleting router {router_id}')


@mikrotik_bp.route('/routers/<router_id>/test', methods=['POST'])
@tenant_admin_required()
@limiter.limit("30/minute")
def test_router_connection(router_id):
    try:
        result = _service().test_connection(router_id)
        return jsonify({'success': True, **result}), 200
    except Exception as exc:
        return _failure(exc, f'testing router {router_id}')


@mikrotik_bp.route('/routers/<router_id>/snapshot', methods=['GET'])
@tenant_admin_required()
def router_snapshot(router_id):
    try:
        snapshot = _service().get_interface_snapshot(router_id)
        return jsonify({'success': True, **snapshot}), 200
    except Exception as exc:
        return _failure(exc, f'reading snapshot for router {router_id}')


@mikrotik_bp.route('/routers/<router_id>/interfaces/live', methods=['GET'])
@tenant_admin_required()
def router_interfaces_live(router_id):
    raw_names = request.args.get('names') or ''
    names = [part.strip() for part in raw_names.split(',') if part.strip()]
    try:
        counters = _service().get_interface_live_counters(router_id, names)
        return jsonify({'success': True, 'router_id': int(router_id), 'interfaces': counters}), 200
    except Exception as exc:
        return _failure(exc, f'reading live counters for router {router_id}')


# ==================== METRICS ====================

@mikrotik_bp.route('/routers/<router_id>/metrics', methods=['GET'])
@tenant_admin_required()
def router_metrics(router_id):
    try:
        start, end, limit = _window_args()
        result = _service().router_metrics(router_id, start=start, end=end, limit=limit)
        return jsonify(
            {
                'success': True,
                'router_id': result['router_id'],
                'bucket': result['bucket'],
                'from': result['from'].isoformat(),
                'to': result['to'].isoformat(),
                'points': _iso_points(result['points']),
            }
        ), 200
    except Exception as exc:
        return _failure(exc, f'reading metrics for router {router_id}')


@mikrotik_bp.route('/routers/<router_id>/interfaces/metrics', methods=['GET'])
@tenant_admin_required()
def router_interface_metrics(router_id):
    try:
        start, end, limit = _window_args()
        after = parse_timestamp(request.args.get('after'), 'after')
        result = _service().interface_metrics(
            router_id,
            request.args.get('interface'),
            start=start,
            end=end,
            limit=limit,
            after=after,
            after_id=_to_int(request.args.get('after_id')) if after is not None else None,
        )
        result['points'] = _iso_points(result['points'])
        return jsonify({'success': True, **result}), 200
    except Exception as exc:
        return _failure(exc, f'reading interface metrics for router {router_id}')


@mikrotik_bp.route('/routers/<router_id>/interfaces/metrics/latest', methods=['GET'])
@tenant_admin_required()
def router_interface_metrics_latest(router_id):
    try:
        rows = _service().latest_interface_metrics(router_id)
        return jsonify({'success': True, 'interfaces': rows}), 200
    except Exception as exc:
        return _failure(exc, f'reading latest interface metrics for router {router_id}')


# ==================== ALERTS ====================

@mikrotik_bp.route('/alerts', methods=['GET'])
@tenant_admin_required()
def list_alerts():
    try:
        alerts = _service().list_alerts(
            active_only=_as_bool(request.args.get('active_only'), default=True),
            limit=request.args.get('limit'),
        )
        return jsonify({'success': True, 'alerts': [a.to_dict() for a in alerts]}), 200
    except Exception as exc:
        return _failure(exc, 'listing alerts')


@mikrotik_bp.route('/alerts/<alert_id>/ack', methods=['POST'])
@tenant_admin_required()
def ack_alert(alert_id):
    try:
        alert = _service().ack_alert(alert_id)
        return jsonify({'success': True, 'alert': alert.to_dict()}), 200
    except Exception as exc:
        return _failure(exc, f'acknowledging alert {alert_id}')


@mikrotik_bp.route('/alerts/<alert_id>/resolve', methods=['POST'])
@tenant_admin_required()
def resolve_alert(alert_id):
    try:
        alert = _service().resolve_alert(alert_id)
        return jsonify({'success': True, 'alert': alert.to_dict()}), 200
    except Exception as exc:
        return _failure(exc, f'resolving alert {alert_id}')


# ==================== INCIDENTS ====================

@mikrotik_bp.route('/incidents', methods=['GET'])
@tenant_admin_required()
def list_incidents():
    try:
        incidents = _service().list_incidents(
            active_only=_as_bool(request.args.get('active_only'), default=True),
            limit=request.args.get('limit'),
            router_id=_to_int(request.args.get('router_id')),
            severity=(request.args.get('severity') or '').strip().lower() or None,
        )
        return jsonify({'success': True, 'incidents': [i.to_dict() for i in incidents]}), 200
    except Exception as exc:
        return _failure(exc, 'listing incidents')


@mikrotik_bp.route('/incidents/<incident_id>/ack', methods=['POST'])
@tenant_admin_required()
def ack_incident(incident_id):
    try:
        incident = _service().ack_incident(incident_id)
        return jsonify({'success': True, 'incident': incident.to_dict()}), 200
    except Exception as exc:
        return _failure(exc, f'acknowledging incident {incident_id}')


@mikrotik_bp.route('/incidents/<incident_id>/resolve', methods=['POST'])
@tenant_admin_required()
def resolve_incident(incident_id):
    try:
        incident = _service().resolve_incident(incident_id)
        return jsonify({'success': True, 'incident': incident.to_dict()}), 200
    except Exception as exc:
        return _failure(exc, f'resolving incident {incident_id}')


@mikrotik_bp.route('/incidents/<incident_id>', methods=['PUT'])
@tenant_admin_required()
def update_incident(incident_id):
    data = request.get_json(silent=True) or {}
    try:
        incident = _service().update_incident(incident_id, data)
        return jsonify({'success': True, 'incident': incident.to_dict()}), 200
    except Exception as exc:
        return _failure(exc, f'updating incident {incident_id}')


@mikrotik_bp.route('/incidents/simulate', methods=['POST'])
@tenant_admin_required()
@limiter.limit("30/minute")
def simulate_incident():
    data = request.get_json(silent=True) or {}
    try:
        incident = _service().simulate_incident(
            data.get('router_id'),
            data.get('incident_type') or data.get('type'),
            severity=data.get('severity'),
            interface_name=data.get('interface_name'),
            message=data.get('message'),
        )
        return jsonify({'success': True, 'incident': incident.to_dict()}), 201
    except Exception as exc:
        return _failure(exc, 'simulating incident')


@mikrotik_bp.route('/incidents/escalate', methods=['POST'])
@tenant_admin_required()
def escalate_incidents():
    try:
        escalated = _service().escalate_now()
        return jsonify({'success': True, 'escalated': escalated}), 200
    except Exception as exc:
        return _failure(exc, 'escalating incidents')


# ==================== WALLBOARD ====================

@mikrotik_bp.route('/wallboard/slots', methods=['GET'])
@tenant_admin_required()
def get_wallboard_slots():
    try:
        return jsonify({'success': True, 'slots': _service().wallboard_slots()}), 200
    except Exception as exc:
        return _failure(exc, 'loading wallboard slots')


@mikrotik_bp.route('/wallboard/slots', methods=['PUT'])
@tenant_admin_required()
def save_wallboard_slots():
    data = request.get_json(silent=True)
    entries = data.get('slots') if isinstance(data, dict) else data
    try:
        slots = _service().save_wallboard_slots(entries if entries is not None else [])
        return jsonify({'success': True, 'slots': slots}), 200
    except Exception as exc:
        return _failure(exc, 'saving wallboard slots')


@mikrotik_bp.route('/wallboard/live', methods=['GET'])
@tenant_admin_required()
def wallboard_live():
    try:
        refresh = _as_bool(request.args.get('refresh'), default=True)
        return jsonify({'success': True, 'slots': _service().wallboard_live(refresh=refresh)}), 200
    except Exception as exc:
        return _failure(exc, 'reading wallboard live rates')
