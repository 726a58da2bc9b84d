# api/auth.py
"""
Admin session authentication API
"""

import logging
import secrets
from datetime import datetime

from flask import Blueprint, current_app, jsonify, request, session
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from core.errors import AppError
from core.security_manager import get_security_manager
from middleware.security import require_admin

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)

# Rate limiter for authentication endpoints; bound to the app in create_app
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["100 per hour"]
)


def _login_rate_limit() -> str:
    return current_app.config.get('LOGIN_RATE_LIMIT', '5 per minute')


@auth_bp.route('/login', methods=['POST'])
@limiter.limit(_login_rate_limit)
def login():
    """Log in with the admin credentials and open a session"""
    data = request.get_json(silent=True) or {}
    username = str(data.get('username') or '').strip()
    password = str(data.get('password') or '')

    if not username or not password:
        raise AppError.validation('Username and password required')

    security_manager = get_security_manager()
    if security_manager.is_locked_out(username.lower()):
        return jsonify({'error': 'Account temporarily locked', 'type': 'AUTHENTICATION'}), 423

    if not security_manager.verify_credentials(username, password):
        raise AppError.authentication('Invalid credentials')

    session.clear()
    session.permanent = True
    session.update({
        'user_id': username,
        'role': 'admin',
        'session_id': secrets.token_urlsafe(32),
        'login_time': datetime.utcnow().isoformat(),
        'last_activity': datetime.utcnow().isoformat()
    })

    logger.info("Admin logged in")
    return jsonify({
        'success': True,
        'user': {'username': username, 'role': 'admin'}
    })


@auth_bp.route('/logout', methods=['POST'])
def logout():
    if 'user_id' in session:
        get_security_manager().log_security_event('logout', {'username': session.get('user_id')})
    session.clear()
    return jsonify({'success': True})


@auth_bp.route('/session', methods=['GET'])
@require_admin
def current_session():
    return jsonify({
        'authenticated': True,
        'user': {'username': session.get('user_id'), 'role': session.get('role')},
        'loginTime': session.get('login_time'),
        'lastActivity': session.get('last_activity')
    })
