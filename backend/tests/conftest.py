import pytest
from flask_jwt_extended import create_access_token

from mikronoc import cache, create_app, db
from mikronoc.models import MikroTikRouter, Tenant, User


class TestConfig:
    TESTING = True
    SECRET_KEY = "test-secret-key-with-at-least-32-bytes"
    JWT_SECRET_KEY = "test-jwt-secret-key-with-at-least-32-bytes"
    ENCRYPTION_KEY = "itTQ-n1WYoDTC_iw8glZpwkfxAknjNtz85t-6xeUkso="
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    REDIS_URL = None
    CORS_ORIGINS = ["http://localhost:3000"]
    RATELIMIT_STORAGE_URI = "memory://"
    RATELIMIT_ENABLED = False
    CACHE_TYPE = "SimpleCache"
    CACHE_DEFAULT_TIMEOUT = 30
    CELERY_TASK_ALWAYS_EAGER = True
    MIKROTIK_CONNECT_TIMEOUT_SECS = 1
    MIKROTIK_POLL_CONCURRENCY = 4
    MIKROTIK_POLL_CYCLE_TIMEOUT_SECS = 5
    MIKROTIK_LIVE_RING_SIZE = 5
    MIKROTIK_LIVE_MAX_INTERFACES = 12


@pytest.fixture()
def app():
    flask_app = create_app(TestConfig)

    with flask_app.app_context():
        db.create_all()

    yield flask_app

    with flask_app.app_context():
        cache.clear()
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def tenant_admin(app):
    """Tenant with an admin user; returns ids and auth headers."""
    with app.app_context():
        tenant = Tenant(slug='isp-a', name='ISP A')
        db.session.add(tenant)
        db.session.flush()
        user = User(email='noc-admin@test.local', role='admin', name='NOC Admin', tenant_id=tenant.id)
        db.session.add(user)
        db.session.commit()
        token = create_access_token(identity=str(user.id), additional_claims={'tenant_id': tenant.id})
        return {
            'tenant_id': tenant.id,
            'user_id': user.id,
            'headers': {'Authorization': f'Bearer {token}'},
        }


@pytest.fixture()
def make_router(app):
    """Factory for routers; must be called inside an app context."""

    def _make_router(name='edge-1', host='10.0.0.1', tenant_id=None, **fields):
        router = MikroTikRouter(
            name=name,
            host=host,
            port=fields.pop('port', 8728),
            username=fields.pop('username', 'api'),
            tenant_id=tenant_id,
            **fields,
        )
        router.password = 'router-pass'
        db.session.add(router)
        db.session.commit()
        return router

    return _make_router


@pytest.fixture()
def file_app(tmp_path):
    """App on a file-backed SQLite database so several threads share one store."""

    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'noc.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {'connect_args': {'check_same_thread': False, 'timeout': 15}}

    flask_app = create_app(FileConfig)

    with flask_app.app_context():
        db.create_all()

    yield flask_app

    with flask_app.app_context():
        cache.clear()
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
