from __future__ import annotations

from datetime import datetime, timedelta
import hashlib
import json
from typing import Any, Dict, Optional, Tuple

import redis
from flask import current_app

from mikronoc import celery, db
from mikronoc.models import MikroTikIncident
from mikronoc.services import settings_service
from mikronoc.services.alert_evaluator import HealthEvaluator
from mikronoc.services.metrics_store import MetricsStore
from mikronoc.services.poll_scheduler import PollScheduler

SCHEDULER_EXTENSION = 'mikronoc_poll_scheduler'


def _get_redis_client() -> Optional[redis.Redis]:
    redis_url = current_app.config.get('REDIS_URL')
    if not redis_url:
        return None
    try:
        return redis.from_url(redis_url, decode_responses=True)
    except Exception:
        current_app.logger.warning('Redis unavailable for task locking; continuing without lock.')
        return None


def _try_acquire_lock(lock_key: str, ttl_seconds: int) -> Tuple[Optional[redis.Redis], Optional[str], bool]:
    client = _get_redis_client()
    if client is None:
        return None, None, True

    token = hashlib.sha256(f"{lock_key}:{datetime.utcnow().isoformat()}".encode('utf-8')).hexdigest()
    try:
        acquired = bool(client.set(lock_key, token, nx=True, ex=ttl_seconds))
        return client, token, acquired
    except Exception:
        current_app.logger.warning('Failed to acquire Redis lock; continuing task execution.')
        return None, None, True


def _release_lock(client: Optional[redis.Redis], lock_key: str, token: Optional[str]) -> None:
    if client is None or token is None:
        return
    try:
        current = client.get(lock_key)
        if current == token:
            client.delete(lock_key)
    except Exception:
        current_app.logger.warning('Failed to release Redis task lock: %s', lock_key)


def get_scheduler(app=None) -> PollScheduler:
    """One scheduler per worker process so backoff state survives between beats."""
    app = app or current_app._get_current_object()
    scheduler = app.extensions.get(SCHEDULER_EXTENSION)
    if scheduler is None:
        scheduler = PollScheduler(app)
        app.extensions[SCHEDULER_EXTENSION] = scheduler
    return scheduler


@celery.task(bind=True, name='mikronoc.tasks.poll_mikrotik_metrics')
def poll_mikrotik_metrics(self) -> Optional[Dict[str, Any]]:
    """Run one polling tick: fetch, persist samples, evaluate health."""
    interval = int(current_app.config.get('MIKROTIK_POLL_INTERVAL_SECS', 60))
    lock_key = 'tasks:poll_mikrotik_metrics'
    lock_client, lock_token, acquired = _try_acquire_lock(lock_key, ttl_seconds=max(15, interval - 5))
    if not acquired:
        current_app.logger.info('Skipping poll_mikrotik_metrics because lock is already held.')
        return None

    try:
        report = get_scheduler().run_once()
        summary = report.to_dict()
        current_app.logger.info('Router poll summary: %s', json.dumps(summary, ensure_ascii=True, default=str))
        return summary
    finally:
        _release_lock(lock_client, lock_key, lock_token)


@celery.task(name='mikronoc.tasks.evaluate_incident_escalation')
def evaluate_incident_escalation() -> Dict[str, Any]:
    """Escalate stale unacknowledged incidents for every tenant with open incidents."""
    evaluator = HealthEvaluator()
    tenant_ids = [
        row[0]
        for row in db.session.query(MikroTikIncident.tenant_id)
        .filter(MikroTikIncident.resolved_at.is_(None))
        .distinct()
        .all()
    ]
    escalated = 0
    for tenant_id in tenant_ids:
        try:
            escalated += evaluator.escalate_stale_incidents(tenant_id)
        except Exception as exc:
            db.session.rollback()
            current_app.logger.error('Escalation failed for tenant %s: %s', tenant_id, exc, exc_info=True)

    summary = {
        'tenants': len(tenant_ids),
        'escalated': escalated,
        'timestamp': datetime.utcnow().isoformat() + 'Z',
    }
    current_app.logger.info('Incident escalation summary: %s', json.dumps(summary, ensure_ascii=True))
    return summary


@celery.task(name='mikronoc.tasks.prune_router_metrics')
def prune_router_metrics() -> Dict[str, Any]:
    """Delete metric samples older than the retention window."""
    days = settings_service.metrics_retention_days(
        default=int(current_app.config.get('MIKROTIK_METRICS_RETENTION_DAYS', 14))
    )
    if days <= 0:
        current_app.logger.info('Metric retention disabled; nothing pruned.')
        return {'retention_days': 0, 'router_samples': 0, 'interface_samples': 0}

    router_rows, interface_rows = MetricsStore().prune(datetime.utcnow() - timedelta(days=days))
    return {
        'retention_days': days,
        'router_samples': router_rows,
        'interface_samples': interface_rows,
    }
