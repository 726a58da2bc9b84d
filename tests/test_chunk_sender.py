import logging
from datetime import datetime

from core.smtp_transport import TransportError
from services.chunk_sender import (
    CONNECTION_FAILED_ERROR, INVALID_EMAIL_ERROR, RECIPIENT_REJECTED_ERROR, format_subject
)
from services.settings_service import NewsletterSettings

from conftest import FROM_EMAIL, FakeTransport

HTML = '<p>Hello readers</p>'


def _send(chunk_sender, emails, mode='initial', settings=None):
    return chunk_sender.process_sending_chunk(
        emails, 'newsletter-1', settings or NewsletterSettings(from_email=FROM_EMAIL),
        HTML, 'Update {date}', mode=mode, chunk_index=0, total_chunks=1
    )


def test_multiple_recipients_go_out_as_one_bcc_message(chunk_sender, transport_factory):
    emails = ['a@example.org', 'b@example.org', 'c@example.org']

    result = _send(chunk_sender, emails)

    assert len(transport_factory.messages) == 1
    msg = transport_factory.messages[0]
    assert msg['Bcc'] == 'a@example.org,b@example.org,c@example.org'
    assert msg['To'] == FROM_EMAIL
    assert len(result.results) == 3
    assert all(r.success for r in result.results)
    assert result.sent_count == 3
    assert result.failed_count == 0
    assert transport_factory.transports[0].closed


def test_single_recipient_failure_is_reported(chunk_sender, transport_factory):
    transport_factory.fail_sends(TransportError('EMESSAGE', '550 Mailbox unavailable'))

    result = _send(chunk_sender, ['jane@example.org'])

    transport = transport_factory.transports[0]
    assert transport.send_calls == 1
    assert result.sent_count == 0
    assert result.failed_count == 1
    assert result.results[0].error
    assert not result.results[0].invalid
    assert result.retryable_failures == ['jane@example.org']
    assert transport.closed


def test_single_recipient_is_sent_directly(chunk_sender, transport_factory):
    _send(chunk_sender, ['Jane@Example.org'])

    msg = transport_factory.messages[0]
    assert msg['To'] == 'jane@example.org'
    assert msg['Bcc'] is None


def test_invalid_addresses_come_first_and_never_reach_the_transport(chunk_sender, transport_factory):
    result = _send(chunk_sender, ['a@example.org', 'broken', 'b@example.org', 'also broken'])

    assert [r.email for r in result.results] == ['broken', 'also broken', 'a@example.org', 'b@example.org']
    assert [r.error for r in result.results[:2]] == [INVALID_EMAIL_ERROR, INVALID_EMAIL_ERROR]
    assert result.sent_count == 2
    assert result.failed_count == 2
    assert result.retryable_failures == []
    assert transport_factory.messages[0]['Bcc'] == 'a@example.org,b@example.org'


def test_all_invalid_chunk_opens_no_transport(chunk_sender, transport_factory, caplog):
    caplog.set_level(logging.WARNING, logger='services.chunk_sender')

    result = _send(chunk_sender, ['broken', 'nope'])

    assert transport_factory.transports == []
    assert result.sent_count == 0
    assert result.failed_count == 2
    assert 'No valid email addresses in chunk 1/1, nothing sent' in caplog.text


def test_empty_chunk(chunk_sender, transport_factory):
    result = _send(chunk_sender, [])

    assert result.sent_count == 0
    assert result.failed_count == 0
    assert transport_factory.transports == []


def test_verify_retries_connection_errors_with_backoff(chunk_sender, transport_factory, sleep):
    transport_factory.queue.append(FakeTransport(verify_errors=[
        TransportError('ECONNREFUSED', 'refused'),
        TransportError('ECONNREFUSED', 'refused'),
        TransportError('ECONNREFUSED', 'refused'),
    ]))

    result = _send(chunk_sender, ['a@example.org', 'b@example.org'])

    transport = transport_factory.transports[0]
    assert transport.verify_calls == 3
    assert transport.send_calls == 0
    assert sleep.calls == [1.0, 2.0]
    assert [r.error for r in result.results] == [CONNECTION_FAILED_ERROR, CONNECTION_FAILED_ERROR]
    assert result.failed_count == 2
    assert transport.closed


def test_verify_does_not_retry_authentication_errors(chunk_sender, transport_factory, sleep):
    transport_factory.queue.append(FakeTransport(verify_errors=[TransportError('EAUTH', 'Invalid login')]))

    result = _send(chunk_sender, ['a@example.org'])

    assert transport_factory.transports[0].verify_calls == 1
    assert sleep.calls == []
    assert result.results[0].error == CONNECTION_FAILED_ERROR


def test_verify_recovers_after_transient_error(chunk_sender, transport_factory, sleep):
    transport_factory.queue.append(FakeTransport(verify_errors=[TransportError('ESOCKET', 'reset')]))

    result = _send(chunk_sender, ['a@example.org'])

    assert result.sent_count == 1
    assert sleep.calls == [1.0]


def test_connection_failure_recreates_transport_once(chunk_sender, transport_factory, sleep):
    transport_factory.queue.append(FakeTransport(always_fail=TransportError('ESOCKET', 'Connection reset')))

    result = _send(chunk_sender, ['a@example.org', 'b@example.org'])

    first, second = transport_factory.transports
    assert first.send_calls == 3
    assert first.closed
    assert len(second.sent) == 1
    assert second.closed
    assert result.sent_count == 2
    assert sleep.calls == [1.0, 2.0]


def test_connection_failure_after_reconnect_fails_every_address(chunk_sender, transport_factory):
    transport_factory.fail_sends(TransportError('ECONNREFUSED', 'refused'))

    result = _send(chunk_sender, ['a@example.org', 'b@example.org'])

    assert len(transport_factory.transports) == 2
    assert transport_factory.transports[1].send_calls == 1
    assert result.failed_count == 2
    assert result.retryable_failures == ['a@example.org', 'b@example.org']


def test_rejected_recipients_are_recorded_individually(chunk_sender, transport_factory):
    transport_factory.queue.append(FakeTransport(rejected=['b@example.org']))

    result = _send(chunk_sender, ['a@example.org', 'b@example.org'])

    by_email = {r.email: r for r in result.results}
    assert by_email['a@example.org'].success
    assert by_email['b@example.org'].error == RECIPIENT_REJECTED_ERROR
    assert result.sent_count == 1
    assert result.failed_count == 1


def test_close_errors_are_not_raised(chunk_sender, transport_factory):
    class BrokenClose(FakeTransport):
        def close(self):
            raise RuntimeError('socket already gone')

    transport_factory.queue.append(BrokenClose())

    result = _send(chunk_sender, ['a@example.org'])

    assert result.sent_count == 1


def test_sender_settings_fall_back_to_defaults(chunk_sender, transport_factory):
    _send(chunk_sender, ['a@example.org', 'b@example.org'], settings=NewsletterSettings())

    assert transport_factory.messages[0]['To'] == FROM_EMAIL


def test_subject_date_placeholder():
    assert format_subject('News {date}', datetime(2024, 3, 7)) == 'News 07.03.2024'
    assert format_subject('No placeholder') == 'No placeholder'


def test_subject_in_message_is_formatted(chunk_sender, transport_factory):
    _send(chunk_sender, ['a@example.org'])

    assert '{date}' not in transport_factory.messages[0]['Subject']
