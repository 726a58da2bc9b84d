# core/database.py
"""
Database engine, session factory and the newsletter repository

All reads and writes are plain read-then-write calls; there is no
optimistic concurrency check, so concurrent writers are last-writer-wins.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.database_models import Base, HashedRecipient, NewsletterItem, NewsletterSettingsRecord

logger = logging.getLogger(__name__)

# Passed to update_newsletter to write NULL; plain None means "leave unchanged"
CLEAR = object()


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """
    Create the SQLAlchemy engine

    In-memory SQLite gets a StaticPool so every session shares the one
    connection (and therefore the one database).
    """
    engine_options: Dict[str, Any] = {'echo': echo, 'future': True}

    if database_url.startswith('sqlite'):
        engine_options['connect_args'] = {'check_same_thread': False}
        if ':memory:' in database_url or database_url in ('sqlite://', 'sqlite:///'):
            engine_options['poolclass'] = StaticPool
    else:
        engine_options.update({
            'pool_pre_ping': True,
            'pool_recycle': 300,
        })

    engine = create_engine(database_url, **engine_options)
    logger.info(f"Database configured: {database_url.split('@')[-1]}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_database(engine: Engine) -> None:
    """Create all tables (development and tests; production uses migrations)"""
    Base.metadata.create_all(engine)
    logger.info("Database tables created")


class NewsletterRepository:
    """Data access for newsletters, hashed recipients and sending settings"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    # Newsletters

    def get_newsletter(self, newsletter_id: str) -> Optional[NewsletterItem]:
        session = self.session_factory()
        try:
            return session.get(NewsletterItem, newsletter_id)
        finally:
            session.close()

    def create_newsletter(self, subject: str, content: Optional[str] = None,
                          status: str = 'draft', settings: Optional[str] = None) -> NewsletterItem:
        session = self.session_factory()
        try:
            newsletter = NewsletterItem(subject=subject, content=content,
                                        status=status, settings=settings)
            session.add(newsletter)
            session.commit()
            return newsletter
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def update_newsletter(self, newsletter_id: str, **fields: Any) -> Optional[NewsletterItem]:
        """Apply column updates; None values are skipped, CLEAR writes NULL"""
        session = self.session_factory()
        try:
            newsletter = session.get(NewsletterItem, newsletter_id)
            if newsletter is None:
                return None

            for name, value in fields.items():
                if value is CLEAR:
                    setattr(newsletter, name, None)
                elif value is not None:
                    setattr(newsletter, name, value)

            session.commit()
            return newsletter
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Hashed recipients

    def find_hashed_recipients(self, hashed_emails: Iterable[str]) -> List[HashedRecipient]:
        hashes = list(hashed_emails)
        if not hashes:
            return []

        session = self.session_factory()
        try:
            stmt = select(HashedRecipient).where(HashedRecipient.hashed_email.in_(hashes))
            return list(session.scalars(stmt))
        finally:
            session.close()

    def create_hashed_recipients(self, hashed_emails: Iterable[str]) -> List[HashedRecipient]:
        session = self.session_factory()
        try:
            now = datetime.utcnow()
            recipients = [HashedRecipient(hashed_email=h, first_seen=now) for h in hashed_emails]
            session.add_all(recipients)
            session.commit()
            return recipients
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def mark_recipients_sent(self, hashed_emails: Iterable[str]) -> int:
        """Stamp last_sent on the given hashes; returns the number updated"""
        hashes = list(hashed_emails)
        if not hashes:
            return 0

        session = self.session_factory()
        try:
            stmt = select(HashedRecipient).where(HashedRecipient.hashed_email.in_(hashes))
            now = datetime.utcnow()
            updated = 0
            for recipient in session.scalars(stmt):
                recipient.last_sent = now
                updated += 1
            session.commit()
            return updated
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Sending settings

    def get_settings_record(self) -> Optional[NewsletterSettingsRecord]:
        session = self.session_factory()
        try:
            return session.scalars(select(NewsletterSettingsRecord).limit(1)).first()
        finally:
            session.close()

    def save_settings_record(self, values: Dict[str, Any]) -> NewsletterSettingsRecord:
        """Update the single settings row, creating it on first write"""
        session = self.session_factory()
        try:
            record = session.scalars(select(NewsletterSettingsRecord).limit(1)).first()
            if record is None:
                record = NewsletterSettingsRecord()
                session.add(record)

            for name, value in values.items():
                if hasattr(NewsletterSettingsRecord, name):
                    setattr(record, name, value)

            session.commit()
            return record
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
