# middleware/security.py
"""
Security Middleware for Request Processing
"""

from flask import current_app, request, jsonify, session
from functools import wraps
import logging
from datetime import datetime, timedelta

from core.security_manager import get_security_manager

logger = logging.getLogger(__name__)

SESSION_IDLE_TIMEOUT = timedelta(hours=8)


def security_headers(response):
    """Add security headers to all responses"""
    for header, value in current_app.config.get('SECURITY_HEADERS', {}).items():
        response.headers.setdefault(header, value)
    response.headers.setdefault('Content-Security-Policy', "default-src 'none'; frame-ancestors 'none'")
    return response


def session_expired() -> bool:
    last_activity = session.get('last_activity')
    if not last_activity:
        return False
    try:
        last = datetime.fromisoformat(last_activity)
    except ValueError:
        return True
    return datetime.utcnow() - last > SESSION_IDLE_TIMEOUT


def require_admin(f):
    """Decorator to require an authenticated admin session"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session or session.get('role') != 'admin':
            get_security_manager().log_security_event('unauthorized_access_attempt', {
                'endpoint': request.endpoint,
                'method': request.method
            })
            return jsonify({'error': 'Authentication required', 'type': 'AUTHENTICATION'}), 401

        if session_expired():
            logger.info(f"Session expired for user {session.get('user_id')}")
            session.clear()
            return jsonify({'error': 'Session expired', 'type': 'AUTHENTICATION'}), 401

        # Update last activity
        session['last_activity'] = datetime.utcnow().isoformat()

        return f(*args, **kwargs)
    return decorated_function
