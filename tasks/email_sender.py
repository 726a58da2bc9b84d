# tasks/email_sender.py
"""
Celery-based background driver for newsletter sends

Walks the chunk plan server-side instead of relying on a browser loop:
- completed chunks recorded in the persisted progress are skipped, so a
  restarted task resumes where the last one stopped
- chunkDelay is honored between chunks
- retry stages are driven until the newsletter reaches 'sent' or 'failed'
"""

import os
import time
from typing import Any, Callable, Dict, List, Optional

from celery import Celery
from celery.signals import task_prerun, task_postrun, task_failure
from celery.utils.log import get_task_logger
from sqlalchemy.exc import SQLAlchemyError

from core.sending_progress import SendingProgress
from services.container import NewsletterServices, build_services
from services.retry_service import plan_retry_chunks

logger = get_task_logger(__name__)

celery_app = Celery('newsletter_sender')
celery_app.conf.update({
    # Broker and Result Backend
    'broker_url': os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/2'),
    'result_backend': os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/2'),

    # Serialization
    'task_serializer': 'json',
    'result_serializer': 'json',
    'accept_content': ['json'],

    # Timezone
    'timezone': 'UTC',
    'enable_utc': True,

    # Task Execution
    'task_acks_late': True,
    'task_reject_on_worker_lost': True,
    'worker_prefetch_multiplier': 1,  # one newsletter per worker slot

    'result_expires': 3600,

    'task_routes': {
        'tasks.email_sender.drive_newsletter_send': {'queue': 'newsletter_sending'},
    },

    'worker_send_task_events': True,
    'task_send_sent_event': True,
    'worker_hijack_root_logger': False,
})

_worker_services: Optional[NewsletterServices] = None


def set_worker_services(services: Optional[NewsletterServices]) -> None:
    """Install the service graph used by tasks (the web app does this for eager runs)"""
    global _worker_services
    _worker_services = services


def get_worker_services() -> NewsletterServices:
    global _worker_services
    if _worker_services is None:
        from config.settings import get_config
        config_class = get_config(os.environ.get('FLASK_ENV', 'production'))
        config = {key: getattr(config_class, key) for key in dir(config_class) if key.isupper()}
        _worker_services = build_services(config)
        logger.info("Worker services initialized")
    return _worker_services


def _load_progress(services: NewsletterServices, newsletter_id: str):
    newsletter = services.repository.get_newsletter(newsletter_id)
    if newsletter is None:
        return None, SendingProgress()
    return newsletter, SendingProgress.from_json(newsletter.settings)


def run_newsletter_send(services: NewsletterServices,
                        newsletter_id: str,
                        html: str,
                        subject: str,
                        email_chunks: List[List[str]],
                        settings: Optional[Dict[str, Any]] = None,
                        sleep: Optional[Callable[[float], None]] = None) -> Dict[str, Any]:
    """
    Drive a prepared newsletter to a terminal state

    Args:
        services: Service graph
        newsletter_id: Newsletter already prepared with prepare_send
        html: Message body
        subject: Subject line
        email_chunks: Chunk plan returned by prepare_send
        settings: Optional per-request setting overrides
        sleep: Sleep callable (defaults to the services' sleep)

    Returns:
        Final status snapshot
    """
    sleep = sleep or services.sleep
    send_settings = services.settings.merged(settings)
    delay = send_settings.chunk_delay / 1000.0

    newsletter, progress = _load_progress(services, newsletter_id)
    if newsletter is None:
        logger.error(f"Newsletter {newsletter_id} not found, nothing to send")
        return {'success': False, 'newsletterId': newsletter_id, 'error': 'Newsletter not found'}

    # Initial pass; the persisted chunk results are the cursor
    if newsletter.status == 'sending':
        done = set(progress.completed_chunk_indexes())
        pending = [i for i in range(len(email_chunks)) if i not in done]
        if done:
            logger.info(f"Resuming newsletter {newsletter_id}: {len(done)} chunks already completed")

        for position, index in enumerate(pending):
            response = services.sending.process_chunk(
                newsletter_id, html, subject, email_chunks[index], index, settings
            )
            logger.info(
                f"Newsletter {newsletter_id} chunk {index + 1}/{len(email_chunks)}: "
                f"{response['sentCount']} sent, {response['failedCount']} failed"
            )
            if position < len(pending) - 1 and delay > 0:
                sleep(delay)

        newsletter, progress = _load_progress(services, newsletter_id)

    # Retry stages, re-planned after every stage change; each round removes
    # at least one address or advances the stage
    max_rounds = len(progress.failed_emails) + progress.retry_stage_count + 1
    rounds = 0
    while newsletter is not None and newsletter.status == 'retrying' and rounds < max_rounds:
        chunks = plan_retry_chunks(progress)
        if not chunks:
            logger.warning(f"Newsletter {newsletter_id} is retrying but has nothing left to plan")
            break

        stage = progress.current_retry_stage
        for chunk_index, chunk in enumerate(chunks):
            if delay > 0:
                sleep(delay)
            response = services.retry.retry_chunk(newsletter_id, html, subject, chunk, chunk_index, settings)
            rounds += 1
            if response['isComplete'] or response['stage'] != stage:
                break

        newsletter, progress = _load_progress(services, newsletter_id)

    return services.sending.get_send_status(newsletter_id)


@celery_app.task(bind=True, name='tasks.email_sender.drive_newsletter_send',
                 max_retries=3, default_retry_delay=60)
def drive_newsletter_send(self,
                          newsletter_id: str,
                          html: str,
                          subject: str,
                          email_chunks: List[List[str]],
                          settings: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Background send of a prepared newsletter; database errors are retried"""
    started = time.monotonic()
    try:
        status = run_newsletter_send(get_worker_services(), newsletter_id, html, subject,
                                     email_chunks, settings)
    except SQLAlchemyError as e:
        logger.error(f"Database error while sending newsletter {newsletter_id}: {str(e)}")
        raise self.retry(exc=e)

    logger.info(
        f"Newsletter {newsletter_id} background send finished with status "
        f"{status.get('status')} in {time.monotonic() - started:.1f}s"
    )
    return status


# Celery signal handlers for monitoring
@task_prerun.connect
def task_prerun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None, **kwds):
    """Handle task pre-run events"""
    logger.info(f"Task {task.name} [{task_id}] starting")


@task_postrun.connect
def task_postrun_handler(sender=None, task_id=None, task=None, args=None, kwargs=None,
                         retval=None, state=None, **kwds):
    """Handle task post-run events"""
    logger.info(f"Task {task.name} [{task_id}] completed with state: {state}")


@task_failure.connect
def task_failure_handler(sender=None, task_id=None, exception=None, einfo=None, **kwds):
    """Handle task failure events"""
    logger.error(f"Task {sender.name} [{task_id}] failed: {exception}")
