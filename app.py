# app.py
"""
Flask application factory for the newsletter sending service

Wires together:
- environment-based configuration
- logging with structured context
- admin session security, rate limiting and CORS
- the newsletter services (database, SMTP, Redis progress events)
- Celery for background sends
"""

import json
import logging
import logging.handlers
import os
from datetime import datetime
from typing import Any, Callable, Optional

import redis
from flask import Flask, g, jsonify, request
from flask_cors import CORS
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

from api.auth import auth_bp, limiter
from api.newsletter import newsletter_bp
from config.settings import get_config
from core.errors import AppError
from core.security_manager import init_security_manager
from middleware.security import security_headers
from services.chunk_sender import TransportFactory
from services.container import build_services
from services.progress_events import ProgressPublisher
from tasks.email_sender import celery_app, set_worker_services


class ContextFormatter(logging.Formatter):
    """Appends the record's structured context (extra={'context': ...}) as JSON"""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = getattr(record, 'context', None)
        if context:
            message = f"{message} | {json.dumps(context, default=str, sort_keys=True)}"
        return message


def setup_logging(app: Flask) -> None:
    """
    Configure logging for the service

    A stream handler always; a rotating file handler when LOG_FILE is set.
    """
    log_level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)

    formatter = ContextFormatter(
        fmt='%(asctime)s %(name)-24s %(levelname)-8s %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Replace handlers from a previous create_app call
    for handler in list(root_logger.handlers):
        if getattr(handler, '_newsletter_handler', False):
            root_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(log_level)
    stream_handler._newsletter_handler = True
    root_logger.addHandler(stream_handler)

    log_file = app.config.get('LOG_FILE')
    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(log_level)
        file_handler._newsletter_handler = True
        root_logger.addHandler(file_handler)

    # Suppress verbose third-party logs in production
    if not app.debug:
        logging.getLogger('werkzeug').setLevel(logging.WARNING)
        logging.getLogger('aiosmtplib').setLevel(logging.WARNING)


def configure_security(app: Flask) -> None:
    """Security manager, login rate limiting and CORS for the dashboard"""
    redis_url = app.config.get('REDIS_URL')
    init_security_manager(app, redis.Redis.from_url(redis_url) if redis_url else None)

    limiter.init_app(app)

    CORS(app,
         origins=app.config.get('CORS_ORIGINS', ['http://localhost:3000']),
         supports_credentials=True,
         allow_headers=['Content-Type', 'Authorization'])

    app.logger.info("Security features configured")


def configure_celery(app: Flask) -> None:
    celery_app.conf.update({
        'broker_url': app.config.get('CELERY_BROKER_URL'),
        'result_backend': app.config.get('CELERY_RESULT_BACKEND'),
        'task_always_eager': app.config.get('CELERY_TASK_ALWAYS_EAGER', False),
        'task_eager_propagates': True,
    })
    set_worker_services(app.extensions['newsletter'])


def register_blueprints(app: Flask) -> None:
    app.register_blueprint(auth_bp, url_prefix='/api/auth')
    app.register_blueprint(newsletter_bp, url_prefix='/api/admin/newsletter')
    app.logger.info("Application blueprints registered")


def configure_error_handlers(app: Flask) -> None:
    """Render every error as {error, type} JSON"""

    @app.errorhandler(AppError)
    def handle_app_error(error: AppError):
        log = app.logger.error if error.status_code >= 500 else app.logger.warning
        log(f"{error.error_type.value} error on {request.path}: {error.message}")
        return jsonify(error.to_dict(include_details=app.debug)), error.status_code

    @app.errorhandler(SQLAlchemyError)
    def handle_database_error(error: SQLAlchemyError):
        app.logger.error(f"Database error on {request.path}: {error}", exc_info=True)
        return jsonify(AppError.database('Database error', error).to_dict()), 500

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded for {request.remote_addr}")
        return jsonify({
            'error': 'Too many requests. Please try again later.',
            'type': 'RATE_LIMIT'
        }), 429

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        return jsonify({'error': error.description, 'type': error.name.upper().replace(' ', '_')}), error.code

    @app.errorhandler(Exception)
    def handle_exception(error: Exception):
        """Handle unexpected exceptions"""
        app.logger.error(f"Unhandled exception: {error}", exc_info=True)
        return jsonify({'error': 'An unexpected error occurred', 'type': 'UNKNOWN'}), 500


def configure_health_checks(app: Flask) -> None:
    @app.route('/health')
    def health_check():
        """Basic health check endpoint"""
        return jsonify({
            'status': 'healthy',
            'timestamp': datetime.utcnow().isoformat(),
            'version': app.config.get('VERSION', '1.0.0')
        })


def configure_request_middleware(app: Flask) -> None:
    @app.before_request
    def before_request():
        g.start_time = datetime.utcnow()

    @app.after_request
    def after_request(response):
        response = security_headers(response)

        if hasattr(g, 'start_time'):
            duration = (datetime.utcnow() - g.start_time).total_seconds() * 1000
            if duration > app.config.get('SLOW_REQUEST_THRESHOLD', 1000):
                app.logger.warning(f"Slow request ({duration:.0f}ms): {request.method} {request.path}")

        return response


def create_app(config_name: str = None,
               transport_factory: Optional[TransportFactory] = None,
               publisher: Optional[ProgressPublisher] = None,
               sleep: Optional[Callable[[float], None]] = None,
               **config_overrides: Any) -> Flask:
    """
    Flask application factory

    Args:
        config_name: Configuration environment ('development', 'testing', 'production')
        transport_factory: Override SMTP transport creation
        publisher: Override the Redis progress publisher
        sleep: Sleep callable for backoff and chunk delays
        config_overrides: Extra config values applied last

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    config_name = config_name or os.environ.get('FLASK_ENV', 'production')
    app.config.from_object(get_config(config_name))
    app.config.update(config_overrides)

    if config_name == 'production':
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    setup_logging(app)
    app.logger.info(f"Starting newsletter service in {config_name} mode")

    service_options = {'transport_factory': transport_factory, 'publisher': publisher}
    if sleep is not None:
        service_options['sleep'] = sleep
    app.extensions['newsletter'] = build_services(app.config, **service_options)

    configure_security(app)
    configure_celery(app)
    register_blueprints(app)
    configure_error_handlers(app)
    configure_health_checks(app)
    configure_request_middleware(app)

    app.logger.info("Flask application factory completed successfully")
    return app


if __name__ == '__main__':
    # Development server
    create_app('development').run(host='0.0.0.0', port=5000, debug=True)
