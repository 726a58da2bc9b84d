# services/settings_service.py
"""
Newsletter sending settings

Settings live in a single database row. Reads go through an explicit
SettingsCache owned by the service instance; every update invalidates it.
"""

import logging
import secrets
import time
from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Callable, Dict, List, Optional

from core.database import NewsletterRepository
from core.email_validation import clean_email, validate_email
from core.errors import AppError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_CHUNK_SIZES = '10,5,1'

# camelCase API key -> dataclass attribute
API_KEYS = {
    'fromEmail': 'from_email',
    'fromName': 'from_name',
    'replyToEmail': 'reply_to_email',
    'subjectTemplate': 'subject_template',
    'testEmailRecipients': 'test_email_recipients',
    'chunkSize': 'chunk_size',
    'chunkDelay': 'chunk_delay',
    'emailDelay': 'email_delay',
    'emailTimeout': 'email_timeout',
    'connectionTimeout': 'connection_timeout',
    'greetingTimeout': 'greeting_timeout',
    'socketTimeout': 'socket_timeout',
    'maxConnections': 'max_connections',
    'maxMessages': 'max_messages',
    'maxRetries': 'max_retries',
    'maxBackoffDelay': 'max_backoff_delay',
    'retryChunkSizes': 'retry_chunk_sizes',
}

# attribute -> (min, max) for integer settings
INT_RANGES = {
    'chunk_size': (1, 1000),
    'chunk_delay': (0, 60000),
    'email_delay': (0, 60000),
    'email_timeout': (1000, 300000),
    'connection_timeout': (1000, 300000),
    'greeting_timeout': (1000, 300000),
    'socket_timeout': (1000, 300000),
    'max_connections': (1, 10),
    'max_messages': (1, 1000),
    'max_retries': (1, 10),
    'max_backoff_delay': (0, 300000),
}


@dataclass
class NewsletterSettings:
    """Effective sending settings (all durations in milliseconds)"""
    from_email: Optional[str] = None
    from_name: Optional[str] = None
    reply_to_email: Optional[str] = None
    subject_template: Optional[str] = None
    test_email_recipients: Optional[str] = None

    chunk_size: int = 50
    chunk_delay: int = 200
    email_delay: int = 50

    email_timeout: int = 30000
    connection_timeout: int = 20000
    greeting_timeout: int = 20000
    socket_timeout: int = 30000
    max_connections: int = 1
    max_messages: int = 1

    max_retries: int = 3
    max_backoff_delay: int = 10000
    retry_chunk_sizes: str = DEFAULT_RETRY_CHUNK_SIZES

    @property
    def retry_chunk_size_list(self) -> List[int]:
        return parse_retry_chunk_sizes(self.retry_chunk_sizes)

    def to_dict(self) -> Dict[str, Any]:
        """camelCase representation for the API"""
        data = {api_key: getattr(self, attr) for api_key, attr in API_KEYS.items()}
        data['retryChunkSizeList'] = self.retry_chunk_size_list
        return data

    def to_task_payload(self) -> Dict[str, Any]:
        return asdict(self)


def parse_retry_chunk_sizes(value: Any) -> List[int]:
    """
    Parse the retry stage chunk sizes

    Accepts "10,5,1" or a list of ints. Blank or unparsable input falls back
    to the default stages.
    """
    if isinstance(value, (list, tuple)):
        parts = list(value)
    elif isinstance(value, str) and value.strip():
        parts = [p.strip() for p in value.split(',') if p.strip()]
    else:
        parts = []

    sizes = []
    for part in parts:
        try:
            size = int(part)
        except (TypeError, ValueError):
            return parse_retry_chunk_sizes(DEFAULT_RETRY_CHUNK_SIZES)
        if size > 0:
            sizes.append(size)

    if not sizes:
        return [int(p) for p in DEFAULT_RETRY_CHUNK_SIZES.split(',')]
    return sizes


class SettingsCache:
    """Holds the last loaded settings until invalidated or expired"""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._value: Optional[NewsletterSettings] = None
        self._loaded_at = 0.0

    def get(self) -> Optional[NewsletterSettings]:
        if self._value is None:
            return None
        if self._clock() - self._loaded_at > self.ttl_seconds:
            self._value = None
            return None
        return self._value

    def set(self, value: NewsletterSettings) -> None:
        self._value = value
        self._loaded_at = self._clock()

    def invalidate(self) -> None:
        self._value = None


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map camelCase or snake_case input onto dataclass attributes; unknown keys dropped"""
    known = {f.name for f in fields(NewsletterSettings)}
    normalized = {}
    for key, value in (data or {}).items():
        attr = API_KEYS.get(key, key)
        if attr in known:
            normalized[attr] = value
    return normalized


def validate_settings_values(values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate and coerce settings updates

    Raises:
        ValidationError: out-of-range numbers or invalid sender addresses
    """
    clean: Dict[str, Any] = {}

    for attr, value in values.items():
        if attr in INT_RANGES:
            if value is None or value == '':
                continue
            try:
                number = int(value)
            except (TypeError, ValueError):
                raise AppError.validation(f"{attr} must be a number", context={'field': attr})
            low, high = INT_RANGES[attr]
            if number < low or number > high:
                raise AppError.validation(
                    f"{attr} must be between {low} and {high}",
                    context={'field': attr}
                )
            clean[attr] = number

        elif attr in ('from_email', 'reply_to_email'):
            if value in (None, ''):
                clean[attr] = None
                continue
            cleaned = clean_email(str(value))
            if not validate_email(cleaned):
                raise AppError.validation(f"{attr} is not a valid email address", context={'field': attr})
            clean[attr] = cleaned

        elif attr == 'retry_chunk_sizes':
            if isinstance(value, (list, tuple)):
                value = ','.join(str(v) for v in value)
            raw_parts = [p.strip() for p in str(value or '').split(',') if p.strip()]
            if not raw_parts or not all(p.isdigit() and int(p) > 0 for p in raw_parts):
                raise AppError.validation(
                    'retryChunkSizes must be a comma-separated list of positive integers',
                    context={'field': attr}
                )
            clean[attr] = ','.join(raw_parts)

        else:
            clean[attr] = value if value is None else str(value)

    return clean


class SettingsService:
    """Loads, caches and updates the sending settings"""

    def __init__(self, repository: NewsletterRepository, cache: Optional[SettingsCache] = None,
                 defaults: Optional[Dict[str, Any]] = None):
        self.repository = repository
        self.cache = cache or SettingsCache()
        self.defaults = _normalize_keys(defaults or {})

    def get_settings(self) -> NewsletterSettings:
        cached = self.cache.get()
        if cached is not None:
            return cached

        settings = replace(NewsletterSettings(), **self.defaults)
        record = self.repository.get_settings_record()
        if record is not None:
            overrides = {
                f.name: getattr(record, f.name)
                for f in fields(NewsletterSettings)
                if getattr(record, f.name, None) is not None
            }
            settings = replace(settings, **overrides)

        self.cache.set(settings)
        return settings

    def update_settings(self, data: Dict[str, Any]) -> NewsletterSettings:
        """
        Validate and persist a settings update

        Args:
            data: Partial settings, camelCase or snake_case keys

        Returns:
            Settings after the update
        """
        values = validate_settings_values(_normalize_keys(data))
        self.repository.save_settings_record(values)
        self.cache.invalidate()

        logger.info(
            "Newsletter settings updated",
            extra={'context': {'fields': sorted(values.keys())}}
        )
        return self.get_settings()

    def merged(self, overrides: Optional[Dict[str, Any]] = None) -> NewsletterSettings:
        """Effective settings with per-request overrides; unknown keys are ignored"""
        settings = self.get_settings()
        if not overrides:
            return settings
        values = validate_settings_values(_normalize_keys(overrides))
        return replace(settings, **values)

    def get_or_create_salt(self) -> str:
        """Installation salt for recipient hashing, created and persisted on first use"""
        record = self.repository.get_settings_record()
        if record is not None and record.email_salt:
            return record.email_salt

        salt = secrets.token_hex(16)
        self.repository.save_settings_record({'email_salt': salt})
        logger.info("Created new email hashing salt")
        return salt
