"""
Tenant-scoped NOC settings stored in admin_system_settings.
A tenant row wins over the global (tenant_id NULL) row for the same key.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from mikronoc import db
from mikronoc.models import AdminSystemSetting

ALERTING_ENABLED = 'mikrotik_alerting_enabled'
CPU_RISK = 'mikrotik_alert_cpu_risk'
CPU_HOT = 'mikrotik_alert_cpu_hot'
LATENCY_RISK_MS = 'mikrotik_alert_latency_risk_ms'
LATENCY_HOT_MS = 'mikrotik_alert_latency_hot_ms'
OFFLINE_AFTER_SECS = 'mikrotik_alert_offline_after_secs'
LOW_RATE_SAMPLES = 'mikrotik_interface_low_rate_samples'
CORRELATION_ENABLED = 'mikrotik_incident_correlation_enabled'
AUTO_ESCALATION_ENABLED = 'mikrotik_incident_auto_escalation_enabled'
ESCALATION_MINUTES = 'mikrotik_incident_escalation_minutes'
METRICS_RETENTION_DAYS = 'mikrotik_metrics_retention_days'
WALLBOARD_SLOTS = 'mikrotik_wallboard_slots_json'

TRUE_VALUES = ('1', 'true', 'yes', 'y', 'on')


@dataclass(frozen=True)
class AlertThresholds:
    alerting_enabled: bool = True
    cpu_threshold: int = 85
    cpu_critical: int = 95
    latency_threshold_ms: int = 400
    latency_critical_ms: int = 1000
    offline_after_secs: int = 0
    low_rate_samples: int = 3


@dataclass(frozen=True)
class EscalationPolicy:
    enabled: bool = False
    after_minutes: int = 60


def _setting_row(tenant_id: Optional[int], key: str) -> Optional[AdminSystemSetting]:
    query = AdminSystemSetting.query.filter_by(key=key)
    if tenant_id is None:
        return query.filter(AdminSystemSetting.tenant_id.is_(None)).first()
    row = query.filter(AdminSystemSetting.tenant_id == tenant_id).first()
    if row is not None:
        return row
    return AdminSystemSetting.query.filter_by(key=key).filter(
        AdminSystemSetting.tenant_id.is_(None)
    ).first()


def get_setting(tenant_id: Optional[int], key: str, default: Any = None) -> Any:
    row = _setting_row(tenant_id, key)
    if row is None or row.value is None:
        return default
    return row.value


def set_setting(tenant_id: Optional[int], key: str, value: Any, user_id: Optional[int] = None) -> AdminSystemSetting:
    query = AdminSystemSetting.query.filter_by(key=key)
    if tenant_id is None:
        query = query.filter(AdminSystemSetting.tenant_id.is_(None))
    else:
        query = query.filter(AdminSystemSetting.tenant_id == tenant_id)
    row = query.first()
    if row is None:
        row = AdminSystemSetting(tenant_id=tenant_id, key=key)
    row.value = value
    row.updated_by = user_id
    db.session.add(row)
    db.session.commit()
    return row


def get_bool(tenant_id: Optional[int], key: str, default: bool = False) -> bool:
    value = get_setting(tenant_id, key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if not text:
        return default
    return text in TRUE_VALUES


def get_int(
    tenant_id: Optional[int],
    key: str,
    default: int,
    minimum: Optional[int] = None,
    maximum: Optional[int] = None,
) -> int:
    value = get_setting(tenant_id, key)
    try:
        number = int(float(str(value).strip())) if value is not None else default
    except (TypeError, ValueError):
        number = default
    if minimum is not None:
        number = max(minimum, number)
    if maximum is not None:
        number = min(maximum, number)
    return number


def load_alert_thresholds(tenant_id: Optional[int]) -> AlertThresholds:
    defaults = AlertThresholds()
    cpu_threshold = get_int(tenant_id, CPU_RISK, defaults.cpu_threshold, 1, 100)
    latency_threshold = get_int(tenant_id, LATENCY_RISK_MS, defaults.latency_threshold_ms, 1, 60000)
    return AlertThresholds(
        alerting_enabled=get_bool(tenant_id, ALERTING_ENABLED, defaults.alerting_enabled),
        cpu_threshold=cpu_threshold,
        cpu_critical=max(cpu_threshold, get_int(tenant_id, CPU_HOT, defaults.cpu_critical, 1, 100)),
        latency_threshold_ms=latency_threshold,
        latency_critical_ms=max(
            latency_threshold,
            get_int(tenant_id, LATENCY_HOT_MS, defaults.latency_critical_ms, 1, 60000),
        ),
        offline_after_secs=get_int(tenant_id, OFFLINE_AFTER_SECS, defaults.offline_after_secs, 0, 86400),
        low_rate_samples=get_int(tenant_id, LOW_RATE_SAMPLES, defaults.low_rate_samples, 1, 60),
    )


def load_escalation_policy(tenant_id: Optional[int]) -> EscalationPolicy:
    return EscalationPolicy(
        enabled=get_bool(tenant_id, AUTO_ESCALATION_ENABLED, False),
        after_minutes=get_int(tenant_id, ESCALATION_MINUTES, 60, 5, 10080),
    )


def metrics_retention_days(default: int = 14) -> int:
    """Global retention in days; 0 disables pruning."""
    return get_int(None, METRICS_RETENTION_DAYS, default, 0, 3650)
