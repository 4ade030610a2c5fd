"""
MikroNOC Backend Application
Main application factory
"""
import logging

from celery import Celery
from flask import Flask, g, jsonify
from flask_caching import Cache
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from prometheus_flask_exporter import PrometheusMetrics

# Initialize extensions
db = SQLAlchemy()
migrate = Migrate()
jwt = JWTManager()
limiter = Limiter(key_func=get_remote_address)
metrics = PrometheusMetrics.for_app_factory()
cache = Cache()
celery = Celery(__name__)


def _resolve_config(config_class):
    if isinstance(config_class, str):
        from mikronoc.config import config as config_map

        if config_class in config_map:
            return config_map[config_class]
    return config_class


def init_celery(app):
    """Bind the module-level Celery app to the Flask app configuration."""
    celery.conf.update(
        broker_url=app.config.get('CELERY_BROKER_URL'),
        result_backend=app.config.get('CELERY_RESULT_BACKEND'),
        beat_schedule=app.config.get('CELERY_BEAT_SCHEDULE', {}),
        task_always_eager=app.config.get('CELERY_TASK_ALWAYS_EAGER', False),
    )

    class ContextTask(celery.Task):
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return self.run(*args, **kwargs)

    celery.Task = ContextTask
    return celery


def create_app(config_class='default'):
    """Application factory"""
    app = Flask(__name__)

    # Load configuration
    config_obj = _resolve_config(config_class)
    if callable(getattr(config_obj, 'validate', None)):
        config_obj.validate()
    app.config.from_object(config_obj)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    limiter.init_app(app)
    cache.init_app(app)
    if not app.config.get('TESTING'):
        metrics.init_app(app)
    init_celery(app)
    CORS(app, resources={r"/api/*": {"origins": app.config.get('CORS_ORIGINS', [])}})

    # Configure logging
    if not app.debug and not app.testing:
        gunicorn_logger = logging.getLogger('gunicorn.error')
        if gunicorn_logger.handlers:
            app.logger.handlers = gunicorn_logger.handlers
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    from mikronoc import models  # noqa: F401  (register tables)
    from mikronoc import signals
    from mikronoc.cli import noc_cli
    from mikronoc.routes.mikrotik import mikrotik_bp
    from mikronoc.tenancy import TenantResolutionError, resolve_tenant_id

    app.register_blueprint(mikrotik_bp, url_prefix='/api/mikrotik')
    app.cli.add_command(noc_cli)
    signals.connect_default_receivers()

    @app.before_request
    def bind_tenant():
        try:
            g.tenant_id = resolve_tenant_id()
        except TenantResolutionError as exc:
            return jsonify({'success': False, 'error': str(exc)}), 400
        return None

    # Health check endpoint
    @app.route('/health')
    def health():
        return jsonify({'status': 'healthy', 'service': 'mikronoc-backend'})

    # Error handlers
    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Not found'}), 404

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.error(f'Server Error: {error}')
        return jsonify({'error': 'Internal server error'}), 500

    @app.errorhandler(429)
    def ratelimit_handler(e):
        return jsonify({'error': 'Rate limit exceeded'}), 429

    return app
