"""
Frequent Buyer Loyalty Platform
Flask application factory
"""
import os
import logging
from flask import Flask
from flask_cors import CORS
from flask_compress import Compress

from .extensions import db, migrate, pos_clients
from .config import get_config, validate_config
from .utils.logging_config import setup_logging

logger = logging.getLogger(__name__)

compress = Compress()


def create_app(config_name: str = None) -> Flask:
    """
    Application factory for creating Flask app instances.

    Args:
        config_name: Configuration environment (development, production, testing)

    Returns:
        Configured Flask application
    """
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    # Setup logging before anything else
    setup_logging()
    validate_config(config_name)

    app = Flask(__name__)
    app.config.from_object(get_config(config_name))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    pos_clients.init_app(app)

    from .services.pos_sync_queue import sync_queue
    sync_queue.init_app(app)

    cors_origins = [o.strip() for o in os.getenv('CORS_ORIGINS', 'http://localhost:5173').split(',') if o.strip()]
    CORS(app, origins=cors_origins, allow_headers=['Content-Type', 'Authorization', 'X-Tenant-ID', 'X-User-ID'])

    # Response compression (gzip/brotli)
    app.config.setdefault('COMPRESS_LEVEL', 6)
    app.config.setdefault('COMPRESS_MIN_SIZE', 500)
    compress.init_app(app)

    # Register blueprints
    register_blueprints(app)

    # Register CLI commands
    from .commands import init_app as init_commands
    init_commands(app)

    # Background jobs for window expiry, catch-up and POS reconciliation
    from .utils.scheduler import init_scheduler
    init_scheduler(app)

    # Register error handlers
    register_error_handlers(app)

    @app.route('/health')
    def health_check():
        return {'status': 'healthy', 'service': 'frequent-buyer'}

    return app


def register_blueprints(app: Flask) -> None:
    """Register all API blueprints."""
    from .api.loyalty import loyalty_bp
    from .webhooks.order_lifecycle import order_lifecycle_bp

    app.register_blueprint(loyalty_bp, url_prefix='/api/loyalty')
    app.register_blueprint(order_lifecycle_bp, url_prefix='/webhooks/square')


def register_error_handlers(app: Flask) -> None:
    """Register error handlers."""
    from .utils.errors import exception_response
    from .utils.exceptions import FrequentBuyerError

    @app.errorhandler(FrequentBuyerError)
    def loyalty_error(error):
        return exception_response(error)

    @app.errorhandler(400)
    def bad_request(error):
        return {'error': {'message': 'Bad request', 'code': 'INVALID_REQUEST'}}, 400

    @app.errorhandler(404)
    def not_found(error):
        return {'error': {'message': 'Not found', 'code': 'NOT_FOUND'}}, 404

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        return {'error': {'message': 'Internal server error', 'code': 'INTERNAL_ERROR'}}, 500
