# services/retry_service.py
"""
Retry stage controller

After the initial pass, remaining failures are retried in stages with
shrinking chunk sizes (e.g. 10, 5, 1). A retry submission where every
address fails advances the stage; one with any success removes the
successes and keeps the stage. An empty failure set ends in 'sent',
exhausting every stage ends in 'failed'.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.database import NewsletterRepository
from core.email_validation import normalize_email
from core.errors import AppError
from core.sending_progress import RetryStageResult, SendingProgress, retry_token, utc_timestamp
from services.chunk_sender import ChunkSender
from services.progress_events import ProgressPublisher
from services.recipient_service import RecipientService
from services.sending_service import partition
from services.settings_service import SettingsService

logger = logging.getLogger(__name__)


def plan_retry_chunks(progress: SendingProgress) -> List[List[str]]:
    """Chunks for the current retry stage; empty when no stage applies"""
    if not progress.retry_in_progress or not progress.failed_emails:
        return []
    if progress.current_retry_stage >= progress.retry_stage_count:
        return []
    size = progress.retry_chunk_sizes[progress.current_retry_stage]
    return partition(progress.failed_emails, size)


class RetryService:
    """Drives retry submissions through the stage state machine"""

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

    def retry_chunk(self,
                    newsletter_id: str,
                    html: str,
                    subject: str,
                    chunk_emails: List[str],
                    chunk_index: int,
                    settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Retry one chunk of previously failed addresses

        Args:
            newsletter_id: Newsletter in 'retrying' status
            html: Message body
            subject: Subject line
            chunk_emails: Addresses to retry; anything not in the failed set is ignored
            chunk_index: Position within the current stage's plan
            settings: Optional per-request setting overrides

        Returns:
            Stage outcome including remainingFailedEmails and newsletterStatus

        Raises:
            ValidationError: Missing fields, or newsletter not in a retry
            NotFoundError: Unknown newsletter
        """
        if (not newsletter_id or not html or not subject
                or not isinstance(chunk_emails, list) or not chunk_emails
                or not isinstance(chunk_index, int) or isinstance(chunk_index, bool)):
            raise AppError.validation('Missing required fields')

        newsletter = self.repository.get_newsletter(newsletter_id)
        if newsletter is None:
            raise AppError.not_found('Newsletter not found')

        if newsletter.status != 'retrying':
            raise AppError.validation(
                'Newsletter is not in retry state',
                context={'status': newsletter.status}
            )

        progress = SendingProgress.from_json(newsletter.settings)
        if not progress.retry_in_progress:
            raise AppError.validation('No retry process in progress')

        stage = progress.current_retry_stage
        token = retry_token(stage, chunk_index, chunk_emails)
        if token in progress.processed_chunks:
            logger.info(f"Duplicate retry submission for newsletter {newsletter_id} at stage {stage} ignored")
            return self._response(progress, newsletter.status, processed=0, duplicate=True)

        failed_set = set(progress.failed_emails)
        to_send = []
        for email in chunk_emails:
            normalized = normalize_email(email or '')
            if normalized in failed_set and normalized not in to_send:
                to_send.append(normalized)

        skipped = len(chunk_emails) - len(to_send)
        if skipped:
            logger.warning(f"Ignored {skipped} retry addresses not in the failed set for newsletter {newsletter_id}")

        succeeded: List[str] = []
        sent_count = failed_count = 0
        if to_send:
            send_settings = self.settings_service.merged(settings)
            result = self.chunk_sender.process_sending_chunk(
                to_send, newsletter_id, send_settings, html, subject,
                mode='retry', chunk_index=chunk_index
            )
            succeeded = result.successful_emails
            sent_count, failed_count = result.sent_count, result.failed_count

        # Re-read; the send may have taken a while
        newsletter = self.repository.get_newsletter(newsletter_id)
        progress = SendingProgress.from_json(newsletter.settings)
        if token in progress.processed_chunks or newsletter.status != 'retrying':
            return self._response(progress, newsletter.status, processed=len(to_send), duplicate=True)

        if succeeded:
            done = set(succeeded)
            progress.failed_emails = [e for e in progress.failed_emails if e not in done]
        elif to_send and progress.current_retry_stage == stage:
            progress.current_retry_stage += 1
            logger.info(
                f"Retry stage {stage} attempt failed entirely for newsletter {newsletter_id}, "
                f"advancing to stage {progress.current_retry_stage}"
            )

        progress.processed_chunks.append(token)
        progress.retry_results.append(RetryStageResult(
            stage=stage,
            chunk_index=chunk_index,
            sent_count=sent_count,
            failed_count=failed_count,
            completed_at=utc_timestamp(),
        ))

        status = newsletter.status
        sent_at = None
        if not progress.failed_emails:
            status = 'sent'
            sent_at = datetime.utcnow()
            progress.retry_in_progress = False
            progress.retry_completed_at = utc_timestamp()
            logger.info(f"All retries succeeded for newsletter {newsletter_id}")
        elif progress.current_retry_stage >= progress.retry_stage_count:
            status = 'failed'
            progress.retry_in_progress = False
            progress.final_failed_emails = list(progress.failed_emails)
            progress.retry_completed_at = utc_timestamp()
            logger.warning(
                f"Retry stages exhausted for newsletter {newsletter_id}; "
                f"{len(progress.final_failed_emails)} recipients permanently failed"
            )

        self.repository.update_newsletter(newsletter_id, status=status,
                                          settings=progress.to_json(), sent_at=sent_at)
        self.recipient_service.mark_sent(succeeded)

        self.publisher.publish(newsletter_id, 'retry_completed', {
            'stage': progress.current_retry_stage,
            'sentCount': sent_count,
            'failedCount': failed_count,
            'remainingFailed': len(progress.failed_emails),
            'status': status,
        })
        return self._response(progress, status, processed=len(to_send))

    def _response(self, progress: SendingProgress, status: str, processed: int,
                  duplicate: bool = False) -> Dict[str, Any]:
        stage = progress.current_retry_stage
        chunk_size = (progress.retry_chunk_sizes[stage]
                      if stage < progress.retry_stage_count else None)
        response = {
            'success': True,
            'stage': stage,
            'totalStages': progress.retry_stage_count,
            'chunkSize': chunk_size,
            'processedEmails': processed,
            'remainingFailedEmails': list(progress.failed_emails),
            'isComplete': status in ('sent', 'failed'),
            'newsletterStatus': status,
            'duplicate': duplicate,
        }
        if status == 'failed':
            response['finalFailedEmails'] = list(progress.final_failed_emails)
        return response
