# core/security_manager.py
"""
Admin authentication and security auditing

- PBKDF2-HMAC-SHA256 password hashing (cryptography)
- Constant-time credential checks for the dashboard admin account
- Lockout after repeated failed logins
- Security event logging with optional Redis audit retention
"""

import base64
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

import redis
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from flask import current_app, has_request_context, request, session

logger = logging.getLogger(__name__)


@dataclass
class SecurityAuditLog:
    """Security audit log entry"""
    timestamp: datetime
    event_type: str
    user_id: Optional[str]
    source_ip: str
    resource: str
    action: str
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'event_type': self.event_type,
            'user_id': self.user_id,
            'source_ip': self.source_ip,
            'resource': self.resource,
            'action': self.action,
            'details': self.details
        }


class SecurityManager:
    """Credential verification, login throttling and audit logging"""

    PBKDF2_ITERATIONS = 200000

    def __init__(self,
                 admin_username: str,
                 admin_password: Optional[str],
                 redis_client: Optional[redis.Redis] = None,
                 max_login_attempts: int = 5,
                 lockout_duration: timedelta = timedelta(minutes=15),
                 audit_retention_days: int = 90,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.admin_username = admin_username
        self.redis_client = redis_client
        self.max_login_attempts = max_login_attempts
        self.lockout_duration = lockout_duration
        self.audit_retention_days = audit_retention_days
        self._clock = clock
        self._failed_logins: Dict[str, Tuple[int, datetime]] = {}

        if admin_password:
            self._admin_hash, self._admin_salt = self.hash_password(admin_password)
        else:
            self._admin_hash, self._admin_salt = None, None
            logger.warning("ADMIN_PASSWORD is not set; admin login is disabled")

        logger.info("SecurityManager initialized")

    def hash_password(self, password: str, salt: Optional[str] = None) -> Tuple[str, str]:
        """
        Hash password with secure salt

        Args:
            password: Plain text password
            salt: Optional salt (generates new if not provided)

        Returns:
            Tuple of (hashed_password, salt)
        """
        if salt is None:
            salt = secrets.token_hex(16)

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            iterations=self.PBKDF2_ITERATIONS,
        )

        hashed = base64.b64encode(kdf.derive(password.encode())).decode()
        return hashed, salt

    def verify_password(self, password: str, hashed_password: str, salt: str) -> bool:
        computed_hash, _ = self.hash_password(password or '', salt)
        return hmac.compare_digest(hashed_password, computed_hash)

    def is_locked_out(self, key: str) -> bool:
        attempts, last_failure = self._failed_logins.get(key, (0, None))
        if attempts < self.max_login_attempts:
            return False
        if self._clock() - last_failure > self.lockout_duration:
            self._failed_logins.pop(key, None)
            return False
        return True

    def verify_credentials(self, username: str, password: str) -> bool:
        """Check admin credentials; failed attempts count towards lockout"""
        key = (username or '').lower()

        if self.is_locked_out(key):
            self.log_security_event('login_locked_out', {'username': username})
            return False

        valid = (
            self._admin_hash is not None
            and hmac.compare_digest((username or '').encode(), self.admin_username.encode())
            and self.verify_password(password, self._admin_hash, self._admin_salt)
        )

        if valid:
            self._failed_logins.pop(key, None)
            self.log_security_event('login_success', {'username': username})
        else:
            attempts, _ = self._failed_logins.get(key, (0, None))
            self._failed_logins[key] = (attempts + 1, self._clock())
            self.log_security_event('login_failed', {'username': username, 'attempts': attempts + 1})

        return valid

    def log_security_event(self, event_type: str, details: Dict[str, Any] = None):
        """
        Log security event for audit trail

        Args:
            event_type: Type of security event
            details: Additional event details
        """
        in_request = has_request_context()
        log_entry = SecurityAuditLog(
            timestamp=self._clock(),
            event_type=event_type,
            user_id=session.get('user_id') if in_request else None,
            source_ip=(request.remote_addr or 'unknown') if in_request else 'system',
            resource=(request.endpoint or request.path) if in_request else 'system',
            action=request.method if in_request else 'system',
            details=details or {}
        )

        logger.info(f"Security event: {event_type}", extra={'context': log_entry.to_dict()})

        if self.redis_client is None:
            return

        try:
            self.redis_client.setex(
                f"audit_log:{log_entry.timestamp.isoformat()}",
                86400 * self.audit_retention_days,
                json.dumps(log_entry.to_dict())
            )
        except redis.RedisError as e:
            logger.error(f"Failed to store security event: {str(e)}")


def init_security_manager(app, redis_client: Optional[redis.Redis] = None) -> SecurityManager:
    """Create the app's security manager and register it on the app"""
    manager = SecurityManager(
        admin_username=app.config.get('ADMIN_USERNAME', 'admin'),
        admin_password=app.config.get('ADMIN_PASSWORD'),
        redis_client=redis_client,
    )
    app.extensions['security_manager'] = manager
    return manager


def get_security_manager() -> SecurityManager:
    return current_app.extensions['security_manager']
