"""mikrotik_noc_core

Revision ID: d51e7c2a9b30
Revises:
Create Date: 2026-10-18 09:30:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'd51e7c2a9b30'
down_revision = None
branch_labels = None
depends_on = None


OPEN_ROW = sa.text('resolved_at IS NULL')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    ]


def upgrade():
    op.create_table(
        'tenants',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('slug', sa.String(length=63), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_tenants_slug'), 'tenants', ['slug'], unique=True)

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=True),
        sa.Column('email', sa.String(length=120), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=True),
        sa.Column('role', sa.String(length=20), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)
    op.create_index(op.f('ix_users_tenant_id'), 'users', ['tenant_id'], unique=False)

    op.create_table(
        'admin_system_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=True),
        sa.Column('key', sa.String(length=120), nullable=False),
        sa.Column('value', sa.JSON(), nullable=True),
        sa.Column('updated_by', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.ForeignKeyConstraint(['updated_by'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'key', name='uq_admin_system_settings_tenant_key')
    )
    op.create_index(op.f('ix_admin_system_settings_key'), 'admin_system_settings', ['key'], unique=False)
    op.create_index(op.f('ix_admin_system_settings_tenant_id'), 'admin_system_settings', ['tenant_id'], unique=False)

    op.create_table(
        'mikrotik_routers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=True),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('identity', sa.String(length=120), nullable=True),
        sa.Column('ros_version', sa.String(length=50), nullable=True),
        sa.Column('board_name', sa.String(length=80), nullable=True),
        sa.Column('host', sa.String(length=255), nullable=False),
        sa.Column('port', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('password_encrypted', sa.Text(), nullable=False),
        sa.Column('use_tls', sa.Boolean(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('is_online', sa.Boolean(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=True),
        sa.Column('last_polled_at', sa.DateTime(), nullable=True),
        sa.Column('latency_ms', sa.Integer(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('maintenance_until', sa.DateTime(), nullable=True),
        sa.Column('maintenance_reason', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_mikrotik_routers_tenant_id'), 'mikrotik_routers', ['tenant_id'], unique=False)

    op.create_table(
        'mikrotik_router_metrics',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('router_id', sa.Integer(), nullable=False),
        sa.Column('ts', sa.DateTime(), nullable=False),
        sa.Column('cpu_load', sa.Integer(), nullable=True),
        sa.Column('total_memory_bytes', sa.BigInteger(), nullable=True),
        sa.Column('free_memory_bytes', sa.BigInteger(), nullable=True),
        sa.Column('total_hdd_bytes', sa.BigInteger(), nullable=True),
        sa.Column('free_hdd_bytes', sa.BigInteger(), nullable=True),
        sa.Column('uptime_seconds', sa.BigInteger(), nullable=True),
        sa.Column('rx_bps', sa.BigInteger(), nullable=True),
        sa.Column('tx_bps', sa.BigInteger(), nullable=True),
        sa.ForeignKeyConstraint(['router_id'], ['mikrotik_routers.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_mikrotik_router_metrics_router_ts', 'mikrotik_router_metrics', ['router_id', 'ts'], unique=False)

    op.create_table(
        'mikrotik_interface_metrics',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('router_id', sa.Integer(), nullable=False),
        sa.Column('interface_name', sa.String(length=120), nullable=False),
        sa.Column('ts', sa.DateTime(), nullable=False),
        sa.Column('rx_byte', sa.BigInteger(), nullable=True),
        sa.Column('tx_byte', sa.BigInteger(), nullable=True),
        sa.Column('rx_bps', sa.BigInteger(), nullable=True),
        sa.Column('tx_bps', sa.BigInteger(), nullable=True),
        sa.Column('running', sa.Boolean(), nullable=True),
        sa.Column('disabled', sa.Boolean(), nullable=True),
        sa.Column('link_downs', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['router_id'], ['mikrotik_routers.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(
        'ix_mikrotik_interface_metrics_router_iface_ts',
        'mikrotik_interface_metrics',
        ['router_id', 'interface_name', 'ts'],
        unique=False,
    )

    op.create_table(
        'mikrotik_alerts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=True),
        sa.Column('router_id', sa.Integer(), nullable=False),
        sa.Column('alert_type', sa.String(length=20), nullable=False),
        sa.Column('severity', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('value_num', sa.Float(), nullable=True),
        sa.Column('threshold_num', sa.Float(), nullable=True),
        sa.Column('triggered_at', sa.DateTime(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('acked_at', sa.DateTime(), nullable=True),
        sa.Column('acked_by', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['acked_by'], ['users.id'], ),
        sa.ForeignKeyConstraint(['router_id'], ['mikrotik_routers.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_mikrotik_alerts_tenant_id'), 'mikrotik_alerts', ['tenant_id'], unique=False)
    op.create_index('ix_mikrotik_alerts_tenant_status', 'mikrotik_alerts', ['tenant_id', 'status'], unique=False)
    op.create_index(
        'uq_mikrotik_alerts_open',
        'mikrotik_alerts',
        ['router_id', 'alert_type'],
        unique=True,
        sqlite_where=OPEN_ROW,
        postgresql_where=OPEN_ROW,
    )

    op.create_table(
        'mikrotik_incidents',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=True),
        sa.Column('router_id', sa.Integer(), nullable=False),
        sa.Column('interface_name', sa.String(length=120), nullable=True),
        sa.Column('incident_type', sa.String(length=40), nullable=False),
        sa.Column('dedup_key', sa.String(length=200), nullable=False),
        sa.Column('severity', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('message', sa.Text(), nullable=True),
        sa.Column('value_num', sa.Float(), nullable=True),
        sa.Column('threshold_num', sa.Float(), nullable=True),
        sa.Column('triggered_at', sa.DateTime(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('acked_at', sa.DateTime(), nullable=True),
        sa.Column('acked_by', sa.Integer(), nullable=True),
        sa.Column('owner_user_id', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('escalated_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['acked_by'], ['users.id'], ),
        sa.ForeignKeyConstraint(['owner_user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['router_id'], ['mikrotik_routers.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_mikrotik_incidents_tenant_id'), 'mikrotik_incidents', ['tenant_id'], unique=False)
    op.create_index('ix_mikrotik_incidents_tenant_status', 'mikrotik_incidents', ['tenant_id', 'status'], unique=False)
    op.create_index(
        'uq_mikrotik_incidents_open',
        'mikrotik_incidents',
        ['dedup_key'],
        unique=True,
        sqlite_where=OPEN_ROW,
        postgresql_where=OPEN_ROW,
    )


def downgrade():
    op.drop_index('uq_mikrotik_incidents_open', table_name='mikrotik_incidents')
    op.drop_index('ix_mikrotik_incidents_tenant_status', table_name='mikrotik_incidents')
    op.drop_index(op.f('ix_mikrotik_incidents_tenant_id'), table_name='mikrotik_incidents')
    op.drop_table('mikrotik_incidents')

    op.drop_index('uq_mikrotik_alerts_open', table_name='mikrotik_alerts')
    op.drop_index('ix_mikrotik_alerts_tenant_status', table_name='mikrotik_alerts')
    op.drop_index(op.f('ix_mikrotik_alerts_tenant_id'), table_name='mikrotik_alerts')
    op.drop_table('mikrotik_alerts')

    op.drop_index('ix_mikrotik_interface_metrics_router_iface_ts', table_name='mikrotik_interface_metrics')
    op.drop_table('mikrotik_interface_metrics')

    op.drop_index('ix_mikrotik_router_metrics_router_ts', table_name='mikrotik_router_metrics')
    op.drop_table('mikrotik_router_metrics')

    op.drop_index(op.f('ix_mikrotik_routers_tenant_id'), table_name='mikrotik_routers')
    op.drop_table('mikrotik_routers')

    op.drop_index(op.f('ix_admin_system_settings_tenant_id'), table_name='admin_system_settings')
    op.drop_index(op.f('ix_admin_system_settings_key'), table_name='admin_system_settings')
    op.drop_table('admin_system_settings')

    op.drop_index(op.f('ix_users_tenant_id'), table_name='users')
    op.drop_index(op.f('ix_users_email'), table_name='users')
    op.drop_table('users')

    op.drop_index(op.f('ix_tenants_slug'), table_name='tenants')
    op.drop_table('tenants')
