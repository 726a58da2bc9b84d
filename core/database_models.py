from datetime import datetime
import uuid
from sqlalchemy import (
    Column, Integer, String, DateTime, Text
)

from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class NewsletterItem(Base):
    __tablename__ = 'newsletter_items'

    id = Column(String(36), primary_key=True, default=_new_id)
    subject = Column(String(255), nullable=False)
    content = Column(Text)
    status = Column(String(20), nullable=False, default='draft')  # draft, sending, sent, retrying, failed
    recipient_count = Column(Integer, default=0)
    settings = Column(Text)  # JSON blob with chunk and retry progress
    sent_at = Column(DateTime)  # Only set on terminal success
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class HashedRecipient(Base):
    __tablename__ = 'hashed_recipients'

    id = Column(String(36), primary_key=True, default=_new_id)
    hashed_email = Column(String(64), nullable=False, unique=True, index=True)
    first_seen = Column(DateTime, default=datetime.utcnow)
    last_sent = Column(DateTime)


class NewsletterSettingsRecord(Base):
    __tablename__ = 'newsletter_settings'

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Sender identity
    from_email = Column(String(255))
    from_name = Column(String(255))
    reply_to_email = Column(String(255))
    subject_template = Column(String(255))
    test_email_recipients = Column(Text)
    email_salt = Column(String(64))

    # Chunking
    chunk_size = Column(Integer)
    chunk_delay = Column(Integer)  # ms between chunks
    email_delay = Column(Integer)  # ms between individual sends

    # SMTP connection (all ms)
    email_timeout = Column(Integer)
    connection_timeout = Column(Integer)
    greeting_timeout = Column(Integer)
    socket_timeout = Column(Integer)
    max_connections = Column(Integer)
    max_messages = Column(Integer)

    # Retry
    max_retries = Column(Integer)
    max_backoff_delay = Column(Integer)
    retry_chunk_sizes = Column(String(100))  # e.g. "10,5,1"

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
