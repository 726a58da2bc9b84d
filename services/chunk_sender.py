# services/chunk_sender.py
"""
Chunk sender: delivers one chunk of a newsletter over a single verified
SMTP transport.

A chunk with more than one valid address goes out as one message with every
recipient in Bcc and the organization address in To. A single valid address
is sent directly. Invalid addresses are reported as permanent failures and
never reach the transport.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from core.email_validation import clean_email, validate_email, email_domain
from core.sending_progress import utc_timestamp
from core.smtp_transport import (
    SMTPTransport, TransportError, backoff_delay_ms, build_message,
    is_connection_error, send_with_transport
)
from services.settings_service import NewsletterSettings

logger = logging.getLogger(__name__)

INVALID_EMAIL_ERROR = 'Invalid email address'
CONNECTION_FAILED_ERROR = 'SMTP connection failed'
RECIPIENT_REJECTED_ERROR = 'Recipient rejected by server'

DEFAULT_FROM_EMAIL = 'newsletter@example.org'
DEFAULT_FROM_NAME = 'Newsletter'

TransportFactory = Callable[[NewsletterSettings], SMTPTransport]


@dataclass
class EmailSendResult:
    """Per-address outcome"""
    email: str
    success: bool
    error: Optional[str] = None
    invalid: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = {'email': self.email, 'success': self.success}
        if self.error:
            data['error'] = self.error
        return data


@dataclass
class ChunkResult:
    """Outcome of one chunk; sent_count + failed_count == number of input addresses"""
    sent_count: int = 0
    failed_count: int = 0
    completed_at: str = field(default_factory=utc_timestamp)
    results: List[EmailSendResult] = field(default_factory=list)

    @classmethod
    def from_results(cls, results: List[EmailSendResult]) -> 'ChunkResult':
        sent = sum(1 for r in results if r.success)
        return cls(sent_count=sent, failed_count=len(results) - sent, results=results)

    @property
    def successful_emails(self) -> List[str]:
        return [r.email for r in self.results if r.success]

    @property
    def retryable_failures(self) -> List[str]:
        """Failed addresses worth retrying (invalid addresses are permanent)"""
        return [r.email for r in self.results if not r.success and not r.invalid]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sentCount': self.sent_count,
            'failedCount': self.failed_count,
            'completedAt': self.completed_at,
            'results': [r.to_dict() for r in self.results],
        }


def format_subject(subject: str, now: Optional[datetime] = None) -> str:
    """Replace the {date} placeholder with dd.mm.YYYY"""
    if not subject or '{date}' not in subject:
        return subject
    now = now or datetime.now()
    return subject.replace('{date}', now.strftime('%d.%m.%Y'))


class ChunkSender:
    """Sends newsletter chunks; owns transport lifecycle per chunk"""

    def __init__(self,
                 transport_factory: TransportFactory,
                 sleep: Callable[[float], None] = time.sleep,
                 default_from_email: str = DEFAULT_FROM_EMAIL,
                 default_from_name: str = DEFAULT_FROM_NAME):
        self.transport_factory = transport_factory
        self.sleep = sleep
        self.default_from_email = default_from_email
        self.default_from_name = default_from_name

    def process_sending_chunk(self,
                              emails: List[str],
                              newsletter_id: str,
                              send_settings: NewsletterSettings,
                              html: str,
                              subject: str,
                              mode: str = 'initial',
                              chunk_index: Optional[int] = None,
                              total_chunks: Optional[int] = None) -> ChunkResult:
        """
        Send one chunk of a newsletter

        Args:
            emails: Raw addresses in this chunk
            newsletter_id: Newsletter being sent (for logging)
            send_settings: Effective sending settings
            html: Message body
            subject: Subject, may contain a {date} placeholder
            mode: 'initial' or 'retry'
            chunk_index: Position in the chunk plan (logging only)
            total_chunks: Size of the chunk plan (logging only)

        Returns:
            ChunkResult with invalid entries first (input order), then send results
        """
        started = time.monotonic()
        chunk_info = (f"chunk {chunk_index + 1}/{total_chunks or '?'}"
                      if chunk_index is not None else f"{mode} chunk")

        logger.info(
            f"Processing {chunk_info} for newsletter {newsletter_id}",
            extra={'context': {'newsletterId': newsletter_id, 'emailCount': len(emails), 'mode': mode}}
        )

        if not emails:
            return ChunkResult()

        invalid_results: List[EmailSendResult] = []
        valid_emails: List[str] = []

        for raw in emails:
            cleaned = clean_email(raw or '')
            if not validate_email(cleaned):
                invalid_results.append(EmailSendResult(email=raw, success=False,
                                                       error=INVALID_EMAIL_ERROR, invalid=True))
                logger.warning(
                    f"Invalid email address skipped in {chunk_info}",
                    extra={'context': {'newsletterId': newsletter_id, 'domain': email_domain(cleaned)}}
                )
                continue

            normalized = cleaned.lower()
            if normalized != raw:
                logger.debug(f"Normalized recipient address (domain: {email_domain(normalized)})")
            valid_emails.append(normalized)

        if not valid_emails:
            logger.warning(
                f"No valid email addresses in {chunk_info}, nothing sent",
                extra={'context': {'newsletterId': newsletter_id, 'invalidCount': len(invalid_results), 'mode': mode}}
            )
            return ChunkResult.from_results(invalid_results)

        transport = self.transport_factory(send_settings)
        try:
            if not self._verify_transport(transport, send_settings, newsletter_id, mode):
                failed = [EmailSendResult(email=e, success=False, error=CONNECTION_FAILED_ERROR)
                          for e in valid_emails]
                return ChunkResult.from_results(invalid_results + failed)

            send_results, transport = self._send(transport, valid_emails, send_settings,
                                                 html, format_subject(subject),
                                                 newsletter_id, mode, chunk_info)
        finally:
            self._close(transport, newsletter_id, mode)

        result = ChunkResult.from_results(invalid_results + send_results)

        logger.info(
            f"{chunk_info} completed",
            extra={'context': {
                'newsletterId': newsletter_id,
                'mode': mode,
                'sent': result.sent_count,
                'failed': result.failed_count,
                'duration': int((time.monotonic() - started) * 1000),
            }}
        )
        return result

    def _verify_transport(self, transport: SMTPTransport, send_settings: NewsletterSettings,
                          newsletter_id: str, mode: str) -> bool:
        """Verify with exponential backoff on connection-class errors only"""
        max_retries = max(1, send_settings.max_retries)

        for attempt in range(1, max_retries + 1):
            try:
                transport.verify()
                return True
            except TransportError as e:
                if not is_connection_error(e) or attempt == max_retries:
                    logger.error(
                        f"Transport verification failed: {e}",
                        extra={'context': {'newsletterId': newsletter_id, 'mode': mode, 'attempts': attempt}}
                    )
                    return False

                delay = backoff_delay_ms(attempt, send_settings.max_backoff_delay)
                logger.warning(
                    f"Transport verification failed (attempt {attempt}/{max_retries}), retrying in {delay}ms",
                    extra={'context': {'newsletterId': newsletter_id, 'code': e.code}}
                )
                self.sleep(delay / 1000.0)

        return False

    def _send(self, transport: SMTPTransport, valid_emails: List[str],
              send_settings: NewsletterSettings, html: str, subject: str,
              newsletter_id: str, mode: str, chunk_info: str):
        """Send and return (results, transport in use at the end)"""
        from_email = send_settings.from_email or self.default_from_email
        from_name = send_settings.from_name or self.default_from_name
        reply_to = send_settings.reply_to_email or from_email

        if len(valid_emails) > 1:
            logger.info(
                f"Sending {mode} email in BCC mode to {len(valid_emails)} recipients",
                extra={'context': {'newsletterId': newsletter_id, 'chunk': chunk_info}}
            )
            msg = build_message(from_email, from_email, subject, html,
                                from_name=from_name, reply_to=reply_to, bcc=valid_emails)
        else:
            msg = build_message(from_email, valid_emails[0], subject, html,
                                from_name=from_name, reply_to=reply_to)

        try:
            outcome = send_with_transport(transport, msg, send_settings.max_retries,
                                          send_settings.max_backoff_delay, self.sleep)

            if not outcome.success and outcome.is_connection_error:
                logger.warning(
                    "Connection error after retries, recreating transport for one more attempt",
                    extra={'context': {'newsletterId': newsletter_id, 'chunk': chunk_info}}
                )
                self._close(transport, newsletter_id, mode)
                transport = self.transport_factory(send_settings)
                outcome = send_with_transport(transport, msg, 1,
                                              send_settings.max_backoff_delay, self.sleep)
        except Exception as e:
            logger.error(f"Unexpected error sending {chunk_info}: {e}", exc_info=True)
            return [EmailSendResult(email=addr, success=False, error=str(e)) for addr in valid_emails], transport

        if not outcome.success:
            error = str(outcome.error) if outcome.error else 'Send failed'
            rejected = set(outcome.rejected)
            return [
                EmailSendResult(email=addr, success=False,
                                error=RECIPIENT_REJECTED_ERROR if addr in rejected else error)
                for addr in valid_emails
            ], transport

        if outcome.rejected:
            logger.warning(
                f"{len(outcome.rejected)} recipients rejected by server in {chunk_info}",
                extra={'context': {'newsletterId': newsletter_id,
                                   'domains': sorted({email_domain(r) for r in outcome.rejected})}}
            )

        rejected = set(outcome.rejected)
        return [
            EmailSendResult(email=addr, success=False, error=RECIPIENT_REJECTED_ERROR)
            if addr in rejected else EmailSendResult(email=addr, success=True)
            for addr in valid_emails
        ], transport

    def _close(self, transport: SMTPTransport, newsletter_id: str, mode: str) -> None:
        try:
            transport.close()
        except Exception as e:
            logger.warning(
                f"Error closing transport: {e}",
                extra={'context': {'newsletterId': newsletter_id, 'mode': mode}}
            )
