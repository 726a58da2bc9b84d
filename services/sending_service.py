# services/sending_service.py
"""
Newsletter sending orchestration

prepare_send turns a recipient list into a chunk plan, process_chunk sends
one chunk of that plan and folds its result into the persisted progress,
and get_send_status reports a snapshot of that progress.

The progress blob on the newsletter record is the only chunk state. Every
call re-reads it, applies its change and writes it back (last writer wins).
"""

import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.database import CLEAR, NewsletterRepository
from core.database_models import NewsletterItem
from core.email_validation import normalize_email
from core.errors import AppError, CorruptedProgressError
from core.sending_progress import ChunkResultRecord, SendingProgress, chunk_token, utc_timestamp
from services.chunk_sender import ChunkResult, ChunkSender
from services.progress_events import ProgressPublisher
from services.recipient_service import RecipientService
from services.settings_service import NewsletterSettings, SettingsService

logger = logging.getLogger(__name__)

SENDABLE_STATUSES = ('sending',)
COMPLETE_STATUSES = ('sent', 'draft', 'failed')


def partition(emails: List[str], chunk_size: int) -> List[List[str]]:
    """Split into consecutive chunks of chunk_size (last one may be shorter)"""
    size = max(1, int(chunk_size))
    return [emails[i:i + size] for i in range(0, len(emails), size)]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class SendingService:
    """Prepares chunk plans, processes chunks and reports progress"""

    def __init__(self,
                 repository: NewsletterRepository,
                 settings_service: SettingsService,
                 recipient_service: RecipientService,
                 chunk_sender: ChunkSender,
                 publisher: Optional[ProgressPublisher] = None):
        self.repository = repository
        self.settings_service = settings_service
        self.recipient_service = recipient_service
        self.chunk_sender = chunk_sender
        self.publisher = publisher or ProgressPublisher(None)

    def _get_newsletter(self, newsletter_id: str) -> NewsletterItem:
        newsletter = self.repository.get_newsletter(newsletter_id)
        if newsletter is None:
            raise AppError.not_found('Newsletter not found')
        return newsletter

    def _save(self, newsletter_id: str, progress: SendingProgress, **fields: Any) -> None:
        self.repository.update_newsletter(newsletter_id, settings=progress.to_json(), **fields)

    def prepare_send(self,
                     newsletter_id: str,
                     html: str,
                     subject: str,
                     email_text: str,
                     settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Validate recipients and build the chunk plan for a newsletter

        Args:
            newsletter_id: Newsletter to send
            html: Rendered body
            subject: Subject line
            email_text: Raw recipient list
            settings: Optional per-request setting overrides

        Returns:
            Chunk plan: emailChunks, validRecipients, totalChunks, chunkSize ...

        Raises:
            ValidationError: Missing fields or no valid recipients
            NotFoundError: Unknown newsletter
        """
        if any(_is_blank(v) for v in (newsletter_id, html, subject, email_text)):
            raise AppError.validation('Missing required fields')

        newsletter = self._get_newsletter(newsletter_id)
        send_settings = self.settings_service.merged(settings)

        recipients = self.recipient_service.process_recipient_list(email_text)
        if recipients.valid == 0:
            raise AppError.validation(
                'No valid email addresses found',
                context={'invalid': recipients.invalid}
            )

        if newsletter.status in ('sending', 'retrying'):
            logger.warning(f"Newsletter {newsletter_id} re-prepared while {newsletter.status}; progress reset")

        chunks = partition(recipients.valid_emails, send_settings.chunk_size)
        progress = SendingProgress.new(total_chunks=len(chunks), chunk_size=send_settings.chunk_size)
        progress.retry_chunk_sizes = send_settings.retry_chunk_size_list
        # Hashes only; the plan itself is never persisted
        progress.expected_chunks = [chunk_token(i, chunk) for i, chunk in enumerate(chunks)]

        self._save(newsletter_id, progress, status='sending',
                   recipient_count=recipients.valid, sent_at=CLEAR)

        logger.info(
            f"Newsletter {newsletter_id} prepared for sending",
            extra={'context': {
                'recipientCount': recipients.valid,
                'chunkCount': len(chunks),
                'chunkSize': send_settings.chunk_size,
            }}
        )
        self.publisher.publish(newsletter_id, 'send_prepared', {
            'totalChunks': len(chunks),
            'recipientCount': recipients.valid,
        })

        return {
            'success': True,
            'newsletterId': newsletter_id,
            'validRecipients': recipients.valid,
            'invalidRecipients': recipients.invalid,
            'recipientStats': recipients.to_dict(),
            'emailChunks': chunks,
            'totalChunks': len(chunks),
            'chunkSize': send_settings.chunk_size,
            'html': html,
            'subject': subject,
            'settings': send_settings.to_dict(),
        }

    def process_chunk(self,
                      newsletter_id: str,
                      html: str,
                      subject: str,
                      chunk_emails: List[str],
                      chunk_index: int,
                      settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send one chunk of the plan and record its result

        Re-submitting the same chunk index with the same addresses returns the
        recorded counts without sending again.
        """
        if (_is_blank(newsletter_id) or _is_blank(html) or _is_blank(subject)
                or not isinstance(chunk_emails, list) or not chunk_emails
                or not isinstance(chunk_index, int) or isinstance(chunk_index, bool)):
            raise AppError.validation('Missing required fields')

        newsletter = self._get_newsletter(newsletter_id)
        if newsletter.status not in SENDABLE_STATUSES:
            raise AppError.validation(
                'Newsletter is not in a sendable state',
                context={'status': newsletter.status}
            )

        progress = SendingProgress.from_json(newsletter.settings)
        if chunk_index < 0 or chunk_index >= progress.total_chunks:
            raise AppError.validation(
                'Invalid chunk index',
                context={'chunkIndex': chunk_index, 'totalChunks': progress.total_chunks}
            )

        chunk_emails = [normalize_email(email or '') for email in chunk_emails]
        token = chunk_token(chunk_index, chunk_emails)
        if token in progress.processed_chunks:
            logger.info(f"Duplicate submission of chunk {chunk_index + 1} for newsletter {newsletter_id} ignored")
            return self._chunk_response(newsletter, progress, chunk_index,
                                        progress.chunk_result(chunk_index), duplicate=True)

        if progress.chunk_result(chunk_index) is not None:
            raise AppError.validation(
                'Chunk has already been processed with different recipients',
                context={'chunkIndex': chunk_index}
            )

        recipient_count = newsletter.recipient_count or 0
        if progress.total_sent + progress.total_failed + len(chunk_emails) > recipient_count:
            raise AppError.validation(
                'Chunk exceeds the prepared recipient count',
                context={'chunkIndex': chunk_index, 'recipientCount': recipient_count}
            )

        expected = progress.expected_chunks
        if expected and (chunk_index >= len(expected) or token != expected[chunk_index]):
            logger.warning(f"Chunk {chunk_index + 1} for newsletter {newsletter_id} does not match the prepared plan")
            raise AppError.validation(
                'Chunk does not match the prepared recipients',
                context={'chunkIndex': chunk_index}
            )

        send_settings = self.settings_service.merged(settings)
        result = self.chunk_sender.process_sending_chunk(
            chunk_emails, newsletter_id, send_settings, html, subject,
            mode='initial', chunk_index=chunk_index, total_chunks=progress.total_chunks
        )

        newsletter, progress = self._record_chunk(newsletter_id, chunk_index, token, result, send_settings)
        self.recipient_service.mark_sent(result.successful_emails)

        response = self._chunk_response(newsletter, progress, chunk_index,
                                        progress.chunk_result(chunk_index))
        response['results'] = [r.to_dict() for r in result.results]
        return response

    def _record_chunk(self, newsletter_id: str, chunk_index: int, token: str,
                      result: ChunkResult, send_settings: NewsletterSettings):
        """Fold a chunk result into freshly read progress and persist it"""
        newsletter = self._get_newsletter(newsletter_id)
        progress = SendingProgress.from_json(newsletter.settings)

        if token in progress.processed_chunks:
            # Another request recorded this chunk while we were sending
            return newsletter, progress

        progress.chunk_results.append(ChunkResultRecord(
            chunk_index=chunk_index,
            sent_count=result.sent_count,
            failed_count=result.failed_count,
            completed_at=result.completed_at,
        ))
        progress.processed_chunks.append(token)
        progress.total_sent += result.sent_count
        progress.total_failed += result.failed_count
        progress.completed_chunks = len(progress.chunk_results)
        progress.last_chunk_completed_at = utc_timestamp()

        for email in result.retryable_failures:
            if email not in progress.failed_emails:
                progress.failed_emails.append(email)

        status = newsletter.status
        sent_at = None
        if progress.completed_chunks >= progress.total_chunks:
            if not progress.failed_emails:
                status = 'sent'
                sent_at = datetime.utcnow()
            else:
                status = 'retrying'
                progress.retry_in_progress = True
                progress.current_retry_stage = 0
                progress.retry_chunk_sizes = progress.retry_chunk_sizes or send_settings.retry_chunk_size_list
                progress.retry_started_at = utc_timestamp()
                logger.info(
                    f"Newsletter {newsletter_id} entering retry with {len(progress.failed_emails)} failed recipients",
                    extra={'context': {'retryChunkSizes': progress.retry_chunk_sizes}}
                )

        self._save(newsletter_id, progress, status=status, sent_at=sent_at)
        newsletter.status = status
        if sent_at is not None:
            newsletter.sent_at = sent_at

        logger.info(
            f"Chunk {chunk_index + 1}/{progress.total_chunks} completed",
            extra={'context': {
                'sent': result.sent_count,
                'failed': result.failed_count,
                'totalSent': progress.total_sent,
                'totalFailed': progress.total_failed,
                'finalStatus': status,
            }}
        )
        self.publisher.publish(newsletter_id, 'chunk_completed', {
            'chunkIndex': chunk_index,
            'sentCount': result.sent_count,
            'failedCount': result.failed_count,
            'completedChunks': progress.completed_chunks,
            'totalChunks': progress.total_chunks,
            'status': status,
        })
        return newsletter, progress

    def _chunk_response(self, newsletter: NewsletterItem, progress: SendingProgress,
                        chunk_index: int, record: Optional[ChunkResultRecord],
                        duplicate: bool = False) -> Dict[str, Any]:
        return {
            'success': True,
            'newsletterId': newsletter.id,
            'chunkIndex': chunk_index,
            'sentCount': record.sent_count if record else 0,
            'failedCount': record.failed_count if record else 0,
            'completedAt': record.completed_at if record else None,
            'totalSent': progress.total_sent,
            'totalFailed': progress.total_failed,
            'completedChunks': progress.completed_chunks,
            'totalChunks': progress.total_chunks,
            'isComplete': progress.completed_chunks >= progress.total_chunks,
            'newsletterStatus': newsletter.status,
            'retryInProgress': progress.retry_in_progress,
            'duplicate': duplicate,
        }

    def get_send_status(self, newsletter_id: str) -> Dict[str, Any]:
        """
        Progress snapshot for a newsletter

        A corrupted progress blob yields a degraded snapshot with status
        'error', zeroed counters and isComplete True instead of raising.

        Raises:
            ValidationError: Missing id or unknown newsletter
        """
        if _is_blank(newsletter_id):
            raise AppError.validation('Newsletter ID is required')

        newsletter = self.repository.get_newsletter(newsletter_id)
        if newsletter is None:
            raise AppError.validation('Newsletter not found')

        try:
            progress = SendingProgress.from_json(newsletter.settings)
        except CorruptedProgressError as e:
            logger.error(f"Corrupted sending progress for newsletter {newsletter_id}: {e.message}")
            return {
                'success': False,
                'newsletterId': newsletter_id,
                'status': 'error',
                'recipientCount': 0,
                'totalSent': 0,
                'totalFailed': 0,
                'completedChunks': 0,
                'totalChunks': 0,
                'isComplete': True,
                'chunkResults': [],
                'error': e.message,
            }

        recipient_count = newsletter.recipient_count or 0
        chunk_size = progress.chunk_size or self.settings_service.get_settings().chunk_size
        total_chunks = math.ceil(recipient_count / chunk_size) if recipient_count else progress.total_chunks

        if newsletter.status in COMPLETE_STATUSES:
            is_complete = True
        elif newsletter.status == 'retrying':
            is_complete = False
        else:
            is_complete = progress.completed_chunks >= total_chunks and not progress.retry_in_progress

        return {
            'success': True,
            'newsletterId': newsletter_id,
            'status': newsletter.status,
            'recipientCount': recipient_count,
            'totalSent': progress.total_sent,
            'totalFailed': progress.total_failed,
            'completedChunks': progress.completed_chunks,
            'totalChunks': total_chunks,
            'isComplete': is_complete,
            'sentAt': newsletter.sent_at.isoformat() if newsletter.sent_at else None,
            'lastChunkCompletedAt': progress.last_chunk_completed_at,
            'chunkResults': [r.to_dict() for r in progress.chunk_results],
            'retryInProgress': progress.retry_in_progress,
            'currentRetryStage': progress.current_retry_stage,
            'retryChunkSizes': progress.retry_chunk_sizes,
            'remainingFailedCount': len(progress.failed_emails),
            'finalFailedCount': len(progress.final_failed_emails),
        }
