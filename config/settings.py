# config/settings.py
"""
Environment-driven configuration for the newsletter service
"""

import os
import secrets
from datetime import timedelta


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class BaseConfig:
    """Settings shared by every environment"""

    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_urlsafe(32)
    VERSION = os.environ.get('APP_VERSION', '1.0.0')

    # Session settings
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    PERMANENT_SESSION_LIFETIME = timedelta(hours=8)

    # Admin credentials (single dashboard account)
    ADMIN_USERNAME = os.environ.get('ADMIN_USERNAME', 'admin')
    ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD')

    # Persistence
    DATABASE_URL = os.environ.get('DATABASE_URL') or 'sqlite:///newsletter.db'
    CREATE_TABLES = False

    # Redis (progress events) and Celery (background sends)
    REDIS_URL = os.environ.get('REDIS_URL')
    CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL') or 'redis://localhost:6379/2'
    CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND') or 'redis://localhost:6379/2'
    CELERY_TASK_ALWAYS_EAGER = False

    # Rate limiting
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')
    RATELIMIT_STRATEGY = 'fixed-window'
    RATELIMIT_HEADERS_ENABLED = True
    LOGIN_RATE_LIMIT = '5 per minute'

    # CORS for the dashboard
    CORS_ORIGINS = [o.strip() for o in os.environ.get('CORS_ORIGINS', 'http://localhost:3000').split(',') if o.strip()]

    # SMTP server
    EMAIL_SERVER_HOST = os.environ.get('EMAIL_SERVER_HOST', 'localhost')
    EMAIL_SERVER_PORT = int(os.environ.get('EMAIL_SERVER_PORT', 1025))  # MailDev default
    EMAIL_SERVER_USER = os.environ.get('EMAIL_SERVER_USER', '')
    EMAIL_SERVER_PASSWORD = os.environ.get('EMAIL_SERVER_PASSWORD', '')
    EMAIL_SERVER_SECURE = _env_bool('EMAIL_SERVER_SECURE')
    EMAIL_VALIDATE_CERTS = True
    EMAIL_FROM = os.environ.get('EMAIL_FROM', 'newsletter@example.org')
    EMAIL_FROM_NAME = os.environ.get('EMAIL_FROM_NAME', 'Newsletter')

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE')
    SLOW_REQUEST_THRESHOLD = 1000  # ms

    # Security headers
    SECURITY_HEADERS = {
        'X-Content-Type-Options': 'nosniff',
        'X-Frame-Options': 'DENY',
        'X-XSS-Protection': '1; mode=block',
        'Strict-Transport-Security': 'max-age=31536000; includeSubDomains',
        'Referrer-Policy': 'strict-origin-when-cross-origin',
    }

    MAX_CONTENT_LENGTH = 16 * 1024 * 1024  # 16MB


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    SESSION_COOKIE_SECURE = False
    CREATE_TABLES = True
    EMAIL_VALIDATE_CERTS = False
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')


class TestingConfig(BaseConfig):
    TESTING = True
    SECRET_KEY = 'testing-secret-key'
    SESSION_COOKIE_SECURE = False
    DATABASE_URL = 'sqlite:///:memory:'
    CREATE_TABLES = True
    REDIS_URL = None
    RATELIMIT_ENABLED = False
    CELERY_TASK_ALWAYS_EAGER = True
    RATELIMIT_STORAGE_URI = 'memory://'
    ADMIN_USERNAME = 'admin'
    ADMIN_PASSWORD = 'test-password'
    EMAIL_FROM = 'newsletter@example.org'
    LOG_FILE = None


class ProductionConfig(BaseConfig):
    EMAIL_VALIDATE_CERTS = True


CONFIG_BY_NAME = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}


def get_config(config_name: str):
    return CONFIG_BY_NAME.get(config_name, ProductionConfig)
