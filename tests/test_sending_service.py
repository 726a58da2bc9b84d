import pytest

from core.errors import CorruptedProgressError, NotFoundError, ValidationError
from core.sending_progress import SendingProgress
from core.smtp_transport import TransportError
from services.sending_service import partition

from conftest import FakeTransport, make_recipients

HTML = '<p>Hello readers</p>'
SUBJECT = 'Monthly update'


def _prepare(sending_service, newsletter, emails, settings=None):
    return sending_service.prepare_send(newsletter.id, HTML, SUBJECT, '\n'.join(emails), settings)


def _send_all(sending_service, newsletter, plan):
    return [
        sending_service.process_chunk(newsletter.id, HTML, SUBJECT, chunk, index)
        for index, chunk in enumerate(plan['emailChunks'])
    ]


def test_partition():
    assert partition(list(range(5)), 2) == [[0, 1], [2, 3], [4]]
    assert partition([], 50) == []


def test_prepare_send_builds_chunk_plan(sending_service, newsletter, repository, publisher):
    plan = _prepare(sending_service, newsletter, make_recipients(125))

    assert [len(chunk) for chunk in plan['emailChunks']] == [50, 50, 25]
    assert plan['validRecipients'] == 125
    assert plan['invalidRecipients'] == 0
    assert plan['totalChunks'] == 3
    assert plan['chunkSize'] == 50

    stored = repository.get_newsletter(newsletter.id)
    assert stored.status == 'sending'
    assert stored.recipient_count == 125
    progress = SendingProgress.from_json(stored.settings)
    assert progress.total_chunks == 3
    assert progress.completed_chunks == 0
    assert publisher.events[-1][1] == 'send_prepared'


def test_prepare_send_uses_chunk_size_override(sending_service, newsletter):
    plan = _prepare(sending_service, newsletter, make_recipients(10), settings={'chunkSize': 4})

    assert [len(chunk) for chunk in plan['emailChunks']] == [4, 4, 2]


def test_prepare_send_requires_fields(sending_service, newsletter):
    with pytest.raises(ValidationError) as exc_info:
        sending_service.prepare_send(newsletter.id, '', SUBJECT, 'a@example.org')
    assert exc_info.value.message == 'Missing required fields'


def test_prepare_send_unknown_newsletter(sending_service):
    with pytest.raises(NotFoundError):
        sending_service.prepare_send('missing', HTML, SUBJECT, 'a@example.org')


def test_prepare_send_without_valid_recipients(sending_service, newsletter, repository):
    with pytest.raises(ValidationError) as exc_info:
        sending_service.prepare_send(newsletter.id, HTML, SUBJECT, 'nope\nstill-nope')

    assert exc_info.value.message == 'No valid email addresses found'
    assert repository.get_newsletter(newsletter.id).status == 'draft'


def test_all_chunks_successful_marks_sent(sending_service, newsletter, repository, transport_factory):
    plan = _prepare(sending_service, newsletter, make_recipients(5), settings={'chunkSize': 2})

    responses = _send_all(sending_service, newsletter, plan)

    assert [r['sentCount'] for r in responses] == [2, 2, 1]
    assert responses[-1]['newsletterStatus'] == 'sent'
    assert responses[-1]['isComplete']
    assert len(transport_factory.messages) == 3

    stored = repository.get_newsletter(newsletter.id)
    assert stored.status == 'sent'
    assert stored.sent_at is not None

    status = sending_service.get_send_status(newsletter.id)
    assert status['totalSent'] == 5
    assert status['totalFailed'] == 0
    assert status['completedChunks'] == 3
    assert status['totalChunks'] == 3
    assert status['isComplete']


def test_failures_after_last_chunk_enter_retry(sending_service, newsletter, repository, transport_factory):
    plan = _prepare(sending_service, newsletter, make_recipients(4), settings={'chunkSize': 2})
    transport_factory.queue.append(FakeTransport())
    transport_factory.queue.append(FakeTransport(always_fail=TransportError('EMESSAGE', '451 Try later')))

    responses = _send_all(sending_service, newsletter, plan)

    assert responses[0]['newsletterStatus'] == 'sending'
    assert responses[1]['newsletterStatus'] == 'retrying'

    stored = repository.get_newsletter(newsletter.id)
    assert stored.status == 'retrying'
    assert stored.sent_at is None

    progress = SendingProgress.from_json(stored.settings)
    assert progress.retry_in_progress
    assert progress.current_retry_stage == 0
    assert progress.retry_chunk_sizes == [10, 5, 1]
    assert progress.failed_emails == plan['emailChunks'][1]
    assert progress.total_sent == 2
    assert progress.total_failed == 2

    status = sending_service.get_send_status(newsletter.id)
    assert status['status'] == 'retrying'
    assert not status['isComplete']
    assert status['remainingFailedCount'] == 2


def test_resending_a_sent_newsletter_clears_sent_at(sending_service, newsletter, repository):
    plan = _prepare(sending_service, newsletter, make_recipients(2))
    _send_all(sending_service, newsletter, plan)
    assert repository.get_newsletter(newsletter.id).sent_at is not None

    _prepare(sending_service, newsletter, make_recipients(2))

    stored = repository.get_newsletter(newsletter.id)
    assert stored.status == 'sending'
    assert stored.sent_at is None
    assert sending_service.get_send_status(newsletter.id)['sentAt'] is None


def test_duplicate_chunk_submission_is_not_resent(sending_service, newsletter, transport_factory):
    plan = _prepare(sending_service, newsletter, make_recipients(4), settings={'chunkSize': 2})
    chunk = plan['emailChunks'][0]

    first = sending_service.process_chunk(newsletter.id, HTML, SUBJECT, chunk, 0)
    second = sending_service.process_chunk(newsletter.id, HTML, SUBJECT, list(reversed(chunk)), 0)

    assert not first['duplicate']
    assert second['duplicate']
    assert second['sentCount'] == first['sentCount']
    assert second['totalSent'] == 2
    assert len(transport_factory.messages) == 1


def test_same_index_with_different_recipients_is_rejected(sending_service, newsletter):
    plan = _prepare(sending_service, newsletter, make_recipients(4), settings={'chunkSize': 2})
    sending_service.process_chunk(newsletter.id, HTML, SUBJECT, plan['emailChunks'][0], 0)

    with pytest.raises(ValidationError):
        sending_service.process_chunk(newsletter.id, HTML, SUBJECT, plan['emailChunks'][1], 0)


def test_chunk_outside_the_plan_is_rejected(sending_service, newsletter, repository, transport_factory):
    _prepare(sending_service, newsletter, make_recipients(3))

    with pytest.raises(ValidationError) as exc_info:
        sending_service.process_chunk(newsletter.id, HTML, SUBJECT, ['outsider@example.net'], 0)

    assert exc_info.value.message == 'Chunk does not match the prepared recipients'
    assert transport_factory.transports == []
    stored = repository.get_newsletter(newsletter.id)
    assert stored.status == 'sending'
    assert stored.sent_at is None
    assert SendingProgress.from_json(stored.settings).completed_chunks == 0


def test_planned_chunk_under_another_index_is_rejected(sending_service, newsletter, transport_factory):
    plan = _prepare(sending_service, newsletter, make_recipients(4), settings={'chunkSize': 2})

    with pytest.raises(ValidationError):
        sending_service.process_chunk(newsletter.id, HTML, SUBJECT, plan['emailChunks'][1], 0)
    assert transport_factory.transports == []


def test_chunk_addresses_are_matched_after_normalizing(sending_service, newsletter):
    plan = _prepare(sending_service, newsletter, make_recipients(2))
    chunk = [email.upper() for email in plan['emailChunks'][0]]

    response = sending_service.process_chunk(newsletter.id, HTML, SUBJECT, chunk, 0)

    assert response['sentCount'] == 2
    assert response['newsletterStatus'] == 'sent'


def test_chunk_index_must_be_in_plan(sending_service, newsletter):
    plan = _prepare(sending_service, newsletter, make_recipients(4), settings={'chunkSize': 2})

    with pytest.raises(ValidationError) as exc_info:
        sending_service.process_chunk(newsletter.id, HTML, SUBJECT, plan['emailChunks'][0], 5)
    assert exc_info.value.message == 'Invalid chunk index'


def test_chunk_cannot_exceed_recipient_count(sending_service, newsletter):
    _prepare(sending_service, newsletter, make_recipients(3), settings={'chunkSize': 2})

    with pytest.raises(ValidationError) as exc_info:
        sending_service.process_chunk(newsletter.id, HTML, SUBJECT, make_recipients(4, 'example.net'), 0)
    assert exc_info.value.message == 'Chunk exceeds the prepared recipient count'


def test_draft_newsletter_is_not_sendable(sending_service, newsletter):
    with pytest.raises(ValidationError) as exc_info:
        sending_service.process_chunk(newsletter.id, HTML, SUBJECT, ['a@example.org'], 0)
    assert exc_info.value.message == 'Newsletter is not in a sendable state'


def test_process_chunk_requires_fields(sending_service, newsletter):
    with pytest.raises(ValidationError):
        sending_service.process_chunk(newsletter.id, HTML, SUBJECT, [], 0)
    with pytest.raises(ValidationError):
        sending_service.process_chunk(newsletter.id, HTML, SUBJECT, ['a@example.org'], None)


def test_chunk_results_publish_events(sending_service, newsletter, publisher):
    plan = _prepare(sending_service, newsletter, make_recipients(2))
    sending_service.process_chunk(newsletter.id, HTML, SUBJECT, plan['emailChunks'][0], 0)

    newsletter_id, event_type, data = publisher.events[-1]
    assert newsletter_id == newsletter.id
    assert event_type == 'chunk_completed'
    assert data['status'] == 'sent'


def test_out_of_order_chunks_complete_the_send(sending_service, newsletter, repository):
    plan = _prepare(sending_service, newsletter, make_recipients(4), settings={'chunkSize': 2})

    sending_service.process_chunk(newsletter.id, HTML, SUBJECT, plan['emailChunks'][1], 1)
    response = sending_service.process_chunk(newsletter.id, HTML, SUBJECT, plan['emailChunks'][0], 0)

    assert response['newsletterStatus'] == 'sent'
    assert response['completedChunks'] == 2


def test_status_of_corrupted_progress_is_degraded(sending_service, repository):
    newsletter = repository.create_newsletter(subject='Broken', status='sending', settings='{not json')

    status = sending_service.get_send_status(newsletter.id)

    assert status['status'] == 'error'
    assert status['totalSent'] == 0
    assert status['totalFailed'] == 0
    assert status['completedChunks'] == 0
    assert status['totalChunks'] == 0
    assert status['isComplete'] is True


def test_process_chunk_on_corrupted_progress_raises(sending_service, repository):
    newsletter = repository.create_newsletter(subject='Broken', status='sending', settings='[1, 2]')

    with pytest.raises(CorruptedProgressError):
        sending_service.process_chunk(newsletter.id, HTML, SUBJECT, ['a@example.org'], 0)


def test_status_for_draft_is_complete(sending_service, newsletter):
    status = sending_service.get_send_status(newsletter.id)

    assert status['status'] == 'draft'
    assert status['isComplete']
    assert status['totalChunks'] == 0


def test_status_while_sending(sending_service, newsletter):
    plan = _prepare(sending_service, newsletter, make_recipients(120))
    sending_service.process_chunk(newsletter.id, HTML, SUBJECT, plan['emailChunks'][0], 0)

    status = sending_service.get_send_status(newsletter.id)

    assert status['status'] == 'sending'
    assert status['totalChunks'] == 3
    assert status['completedChunks'] == 1
    assert not status['isComplete']
    assert status['chunkResults'][0]['sentCount'] == 50


def test_status_of_unknown_newsletter(sending_service):
    with pytest.raises(ValidationError) as exc_info:
        sending_service.get_send_status('missing')
    assert exc_info.value.message == 'Newsletter not found'
