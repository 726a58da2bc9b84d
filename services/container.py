# services/container.py
"""
Wiring for the newsletter services, shared by the web app and the worker
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import sessionmaker

from core.database import NewsletterRepository, create_db_engine, create_session_factory, init_database
from core.smtp_transport import create_transporter
from services.chunk_sender import ChunkSender, TransportFactory
from services.progress_events import ProgressPublisher
from services.recipient_service import RecipientService
from services.retry_service import RetryService
from services.sending_service import SendingService
from services.settings_service import SettingsCache, SettingsService

logger = logging.getLogger(__name__)


@dataclass
class NewsletterServices:
    repository: NewsletterRepository
    settings: SettingsService
    recipients: RecipientService
    chunk_sender: ChunkSender
    sending: SendingService
    retry: RetryService
    publisher: ProgressPublisher
    sleep: Callable[[float], None] = time.sleep


def smtp_config_from(config: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'host': config.get('EMAIL_SERVER_HOST'),
        'port': config.get('EMAIL_SERVER_PORT'),
        'username': config.get('EMAIL_SERVER_USER'),
        'password': config.get('EMAIL_SERVER_PASSWORD'),
        'secure': config.get('EMAIL_SERVER_SECURE', False),
        'validate_certs': config.get('EMAIL_VALIDATE_CERTS', True),
    }


def build_services(config: Dict[str, Any],
                   session_factory: Optional[sessionmaker] = None,
                   transport_factory: Optional[TransportFactory] = None,
                   publisher: Optional[ProgressPublisher] = None,
                   sleep: Callable[[float], None] = time.sleep) -> NewsletterServices:
    """
    Build the service graph from a Flask-style config mapping

    Args:
        config: Mapping with DATABASE_URL, EMAIL_SERVER_* and REDIS_URL keys
        session_factory: Use an existing session factory instead of DATABASE_URL
        transport_factory: Override SMTP transport creation (tests)
        publisher: Override the progress publisher (tests)
        sleep: Sleep callable for backoff and chunk delays

    Returns:
        NewsletterServices
    """
    if session_factory is None:
        engine = create_db_engine(config.get('DATABASE_URL', 'sqlite:///newsletter.db'))
        if config.get('CREATE_TABLES'):
            init_database(engine)
        session_factory = create_session_factory(engine)

    if transport_factory is None:
        smtp_config = smtp_config_from(config)

        def transport_factory(send_settings):
            return create_transporter(smtp_config, send_settings)

    repository = NewsletterRepository(session_factory)
    settings_service = SettingsService(repository, SettingsCache(), defaults={
        'from_email': config.get('EMAIL_FROM'),
        'from_name': config.get('EMAIL_FROM_NAME'),
    })
    recipient_service = RecipientService(repository, settings_service)
    chunk_sender = ChunkSender(
        transport_factory,
        sleep=sleep,
        default_from_email=config.get('EMAIL_FROM') or 'newsletter@example.org',
        default_from_name=config.get('EMAIL_FROM_NAME') or 'Newsletter',
    )
    publisher = publisher or ProgressPublisher.from_url(config.get('REDIS_URL'))

    return NewsletterServices(
        repository=repository,
        settings=settings_service,
        recipients=recipient_service,
        chunk_sender=chunk_sender,
        sending=SendingService(repository, settings_service, recipient_service, chunk_sender, publisher),
        retry=RetryService(repository, settings_service, recipient_service, chunk_sender, publisher),
        publisher=publisher,
        sleep=sleep,
    )
