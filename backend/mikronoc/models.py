"""
Database models for MikroNOC
"""
from datetime import datetime

from mikronoc import db
from mikronoc.security import decrypt_secret, encrypt_secret

OPEN_ROW = db.text('resolved_at IS NULL')


def _iso(value):
    return value.isoformat() if value else None


class TimestampMixin:
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Tenant(db.Model, TimestampMixin):
    __tablename__ = 'tenants'

    id = db.Column(db.Integer, primary_key=True)
    slug = db.Column(db.String(63), unique=True, nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'slug': self.slug,
            'name': self.name,
            'is_active': self.is_active,
        }


class User(db.Model, TimestampMixin):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), index=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    name = db.Column(db.String(120))
    role = db.Column(db.String(20), nullable=False, default='tech')
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'email': self.email,
            'name': self.name,
            'role': self.role,
        }


class AdminSystemSetting(db.Model, TimestampMixin):
    __tablename__ = 'admin_system_settings'
    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'key', name='uq_admin_system_settings_tenant_key'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), index=True)
    key = db.Column(db.String(120), nullable=False, index=True)
    value = db.Column(db.JSON)
    updated_by = db.Column(db.Integer, db.ForeignKey('users.id'))


class MikroTikRouter(db.Model, TimestampMixin):
    __tablename__ = 'mikrotik_routers'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), index=True)

    # Router info
    name = db.Column(db.String(100), nullable=False)
    identity = db.Column(db.String(120))
    ros_version = db.Column(db.String(50))
    board_name = db.Column(db.String(80))

    # Connection
    host = db.Column(db.String(255), nullable=False)
    port = db.Column(db.Integer, nullable=False, default=8728)
    username = db.Column(db.String(64), nullable=False)
    password_encrypted = db.Column(db.Text, nullable=False, default='')
    use_tls = db.Column(db.Boolean, nullable=False, default=False)
    enabled = db.Column(db.Boolean, nullable=False, default=True)

    # Location
    latitude = db.Column(db.Float)
    longitude = db.Column(db.Float)

    # Status, written by the poll scheduler only
    is_online = db.Column(db.Boolean, nullable=False, default=False)
    last_seen_at = db.Column(db.DateTime)
    last_polled_at = db.Column(db.DateTime)
    latency_ms = db.Column(db.Integer)
    last_error = db.Column(db.Text)

    # Maintenance window
    maintenance_until = db.Column(db.DateTime)
    maintenance_reason = db.Column(db.String(255))

    samples = db.relationship(
        'RouterMetricSample', backref='router', lazy='dynamic', cascade='all, delete-orphan'
    )
    interface_samples = db.relationship(
        'InterfaceMetricSample', backref='router', lazy='dynamic', cascade='all, delete-orphan'
    )
    alerts = db.relationship(
        'MikroTikAlert', backref='router', lazy='dynamic', cascade='all, delete-orphan'
    )
    incidents = db.relationship(
        'MikroTikIncident', backref='router', lazy='dynamic', cascade='all, delete-orphan'
    )

    @property
    def password(self):
        """Decrypted API password."""
        return decrypt_secret(self.password_encrypted)

    @password.setter
    def password(self, plain):
        self.password_encrypted = encrypt_secret(plain or '')

    def in_maintenance(self, now=None):
        if self.maintenance_until is None:
            return False
        return self.maintenance_until > (now or datetime.utcnow())

    def to_dict(self):
        """Convert to dictionary for API responses"""
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'name': self.name,
            'host': self.host,
            'port': self.port,
            'username': self.username,
            'use_tls': self.use_tls,
            'enabled': self.enabled,
            'identity': self.identity,
            'ros_version': self.ros_version,
            'board_name': self.board_name,
            'is_online': self.is_online,
            'last_seen_at': _iso(self.last_seen_at),
            'latency_ms': self.latency_ms,
            'last_error': self.last_error,
            'maintenance_until': _iso(self.maintenance_until),
            'maintenance_reason': self.maintenance_reason,
            'in_maintenance': self.in_maintenance(),
            'latitude': self.latitude,
            'longitude': self.longitude,
        }


class RouterMetricSample(db.Model):
    __tablename__ = 'mikrotik_router_metrics'
    __table_args__ = (
        db.Index('ix_mikrotik_router_metrics_router_ts', 'router_id', 'ts'),
    )

    NUMERIC_FIELDS = (
        'cpu_load',
        'total_memory_bytes',
        'free_memory_bytes',
        'total_hdd_bytes',
        'free_hdd_bytes',
        'uptime_seconds',
        'rx_bps',
        'tx_bps',
    )

    id = db.Column(db.Integer, primary_key=True)
    router_id = db.Column(
        db.Integer, db.ForeignKey('mikrotik_routers.id', ondelete='CASCADE'), nullable=False
    )
    ts = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    cpu_load = db.Column(db.Integer)
    total_memory_bytes = db.Column(db.BigInteger)
    free_memory_bytes = db.Column(db.BigInteger)
    total_hdd_bytes = db.Column(db.BigInteger)
    free_hdd_bytes = db.Column(db.BigInteger)
    uptime_seconds = db.Column(db.BigInteger)
    rx_bps = db.Column(db.BigInteger)
    tx_bps = db.Column(db.BigInteger)

    def to_dict(self):
        payload = {'router_id': self.router_id, 'ts': _iso(self.ts)}
        for field in self.NUMERIC_FIELDS:
            payload[field] = getattr(self, field)
        return payload


class InterfaceMetricSample(db.Model):
    __tablename__ = 'mikrotik_interface_metrics'
    __table_args__ = (
        db.Index('ix_mikrotik_interface_metrics_router_iface_ts', 'router_id', 'interface_name', 'ts'),
    )

    NUMERIC_FIELDS = ('rx_byte', 'tx_byte', 'rx_bps', 'tx_bps', 'link_downs')

    id = db.Column(db.Integer, primary_key=True)
    router_id = db.Column(
        db.Integer, db.ForeignKey('mikrotik_routers.id', ondelete='CASCADE'), nullable=False
    )
    interface_name = db.Column(db.String(120), nullable=False)
    ts = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    rx_byte = db.Column(db.BigInteger)
    tx_byte = db.Column(db.BigInteger)
    rx_bps = db.Column(db.BigInteger)
    tx_bps = db.Column(db.BigInteger)
    running = db.Column(db.Boolean)
    disabled = db.Column(db.Boolean)
    link_downs = db.Column(db.Integer)

    def to_dict(self):
        payload = {
            'router_id': self.router_id,
            'interface_name': self.interface_name,
            'ts': _iso(self.ts),
            'running': self.running,
            'disabled': self.disabled,
        }
        for field in self.NUMERIC_FIELDS:
            payload[field] = getattr(self, field)
        return payload


class MikroTikAlert(db.Model, TimestampMixin):
    __tablename__ = 'mikrotik_alerts'
    # router ids are global, so (router_id, alert_type) also pins the tenant and
    # still collides when tenant_id is NULL.
    __table_args__ = (
        db.Index(
            'uq_mikrotik_alerts_open',
            'router_id',
            'alert_type',
            unique=True,
            sqlite_where=OPEN_ROW,
            postgresql_where=OPEN_ROW,
        ),
        db.Index('ix_mikrotik_alerts_tenant_status', 'tenant_id', 'status'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), index=True)
    router_id = db.Column(
        db.Integer, db.ForeignKey('mikrotik_routers.id', ondelete='CASCADE'), nullable=False
    )
    alert_type = db.Column(db.String(20), nullable=False)  # offline, cpu, latency
    severity = db.Column(db.String(20), nullable=False, default='warning')  # info, warning, critical
    status = db.Column(db.String(20), nullable=False, default='open')  # open, resolved
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    value_num = db.Column(db.Float)
    threshold_num = db.Column(db.Float)
    triggered_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    last_seen_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    resolved_at = db.Column(db.DateTime)
    acked_at = db.Column(db.DateTime)
    acked_by = db.Column(db.Integer, db.ForeignKey('users.id'))

    def to_dict(self):
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'router_id': self.router_id,
            'router_name': self.router.name if self.router else None,
            'alert_type': self.alert_type,
            'severity': self.severity,
            'status': self.status,
            'title': self.title,
            'message': self.message,
            'value_num': self.value_num,
            'threshold_num': self.threshold_num,
            'triggered_at': _iso(self.triggered_at),
            'last_seen_at': _iso(self.last_seen_at),
            'resolved_at': _iso(self.resolved_at),
            'acked_at': _iso(self.acked_at),
            'acked_by': self.acked_by,
        }


class MikroTikIncident(db.Model, TimestampMixin):
    __tablename__ = 'mikrotik_incidents'
    __table_args__ = (
        db.Index(
            'uq_mikrotik_incidents_open',
            'dedup_key',
            unique=True,
            sqlite_where=OPEN_ROW,
            postgresql_where=OPEN_ROW,
        ),
        db.Index('ix_mikrotik_incidents_tenant_status', 'tenant_id', 'status'),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), index=True)
    router_id = db.Column(
        db.Integer, db.ForeignKey('mikrotik_routers.id', ondelete='CASCADE'), nullable=False
    )
    interface_name = db.Column(db.String(120))
    incident_type = db.Column(db.String(40), nullable=False)
    dedup_key = db.Column(db.String(200), nullable=False)
    severity = db.Column(db.String(20), nullable=False, default='warning')
    status = db.Column(db.String(20), nullable=False, default='open')
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    value_num = db.Column(db.Float)
    threshold_num = db.Column(db.Float)
    triggered_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    last_seen_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    resolved_at = db.Column(db.DateTime)
    acked_at = db.Column(db.DateTime)
    acked_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    owner_user_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    notes = db.Column(db.Text)
    escalated_at = db.Column(db.DateTime)

    @staticmethod
    def build_dedup_key(router_id, incident_type, interface_name=None):
        return f"{router_id}:{interface_name or '*'}:{incident_type}"

    def to_dict(self):
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'router_id': self.router_id,
            'router_name': self.router.name if self.router else None,
            'interface_name': self.interface_name,
            'incident_type': self.incident_type,
            'severity': self.severity,
            'status': self.status,
            'title': self.title,
            'message': self.message,
            'value_num': self.value_num,
            'threshold_num': self.threshold_num,
            'triggered_at': _iso(self.triggered_at),
            'last_seen_at': _iso(self.last_seen_at),
            'resolved_at': _iso(self.resolved_at),
            'acked_at': _iso(self.acked_at),
            'acked_by': self.acked_by,
            'owner_user_id': self.owner_user_id,
            'notes': self.notes,
            'escalated_at': _iso(self.escalated_at),
        }
