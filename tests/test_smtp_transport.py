import asyncio

import aiosmtplib
import pytest

from core.smtp_transport import (
    SMTPTransport, TransportError, backoff_delay_ms, build_message, create_transporter,
    is_connection_error, send_with_transport, translate_smtp_error
)
from services.settings_service import NewsletterSettings

from conftest import FakeTransport, RecordingSleep


@pytest.mark.parametrize('error,expected', [
    (TransportError('ECONNREFUSED', 'refused'), True),
    (TransportError('ESOCKET', 'reset'), True),
    (TransportError('EPROTOCOL', 'bad reply'), True),
    (TransportError('EMESSAGE', 'rejected', '421 Too many connections from your host'), True),
    (TransportError('ETIMEDOUT', 'timeout'), False),
    (TransportError('EAUTH', 'Invalid login'), False),
    (ValueError('boom'), False),
])
def test_is_connection_error(error, expected):
    assert is_connection_error(error) is expected


def test_timeouts_are_connection_errors_for_sends():
    assert is_connection_error(TransportError('ETIMEDOUT', 'timeout'), include_timeouts=True)


def test_backoff_delay_is_exponential_and_capped():
    assert [backoff_delay_ms(a, 10000) for a in range(1, 6)] == [1000, 2000, 4000, 8000, 10000]
    assert backoff_delay_ms(3, 1500) == 1500


def test_translate_smtp_errors():
    assert translate_smtp_error(asyncio.TimeoutError()).code == 'ETIMEDOUT'
    assert translate_smtp_error(aiosmtplib.SMTPServerDisconnected('gone')).code == 'ESOCKET'
    assert translate_smtp_error(aiosmtplib.SMTPAuthenticationError(535, 'bad creds')).code == 'EAUTH'
    assert translate_smtp_error(ConnectionRefusedError()).code == 'ECONNREFUSED'

    greeting = translate_smtp_error(aiosmtplib.SMTPConnectResponseError(421, 'Too many connections'))
    assert greeting.code == 'ESOCKET'
    assert is_connection_error(greeting)

    refused = translate_smtp_error(aiosmtplib.SMTPRecipientsRefused([
        aiosmtplib.SMTPRecipientRefused(550, 'No such user', 'jane@example.org')
    ]))
    assert refused.code == 'EENVELOPE'
    assert refused.rejected == ['jane@example.org']


def test_build_message_with_bcc():
    msg = build_message('news@example.org', 'news@example.org', 'Hello', '<p>Hi</p>',
                        from_name='News', bcc=['a@example.org', 'b@example.org', 'c@example.org'])

    assert msg['To'] == 'news@example.org'
    assert msg['Bcc'] == 'a@example.org,b@example.org,c@example.org'
    assert msg['Reply-To'] == 'news@example.org'
    assert 'News' in msg['From']
    assert msg['Message-ID'].endswith('@example.org>')


def test_create_transporter_converts_millisecond_settings():
    settings = NewsletterSettings(email_timeout=45000, connection_timeout=5000, socket_timeout=60000)
    transport = create_transporter({'host': 'smtp.example.org', 'port': 587, 'secure': False}, settings)

    assert isinstance(transport, SMTPTransport)
    assert transport.host == 'smtp.example.org'
    assert transport.port == 587
    assert transport.email_timeout == 45.0
    assert transport.connection_timeout == 5.0
    assert transport.greeting_timeout == 20.0
    assert transport.socket_timeout == 60.0
    assert transport.username is None


def test_closed_transport_refuses_to_send():
    transport = create_transporter({'host': 'smtp.example.org', 'port': 25})
    transport.close()

    with pytest.raises(TransportError) as exc_info:
        transport.verify()
    assert exc_info.value.code == 'ESOCKET'


def _message():
    return build_message('news@example.org', 'jane@example.org', 'Hello', '<p>Hi</p>')


def test_send_with_transport_retries_connection_errors():
    sleep = RecordingSleep()
    transport = FakeTransport(send_errors=[
        TransportError('ESOCKET', 'reset'),
        TransportError('ETIMEDOUT', 'timeout'),
    ])

    outcome = send_with_transport(transport, _message(), max_retries=3, sleep=sleep)

    assert outcome.success
    assert outcome.attempts == 3
    assert sleep.calls == [1.0, 2.0]


def test_send_with_transport_reports_exhausted_connection_errors():
    sleep = RecordingSleep()
    transport = FakeTransport(always_fail=TransportError('ECONNREFUSED', 'refused'))

    outcome = send_with_transport(transport, _message(), max_retries=3, max_backoff_delay=1500, sleep=sleep)

    assert not outcome.success
    assert outcome.is_connection_error
    assert outcome.attempts == 3
    assert transport.send_calls == 3
    assert sleep.calls == [1.0, 1.5]


def test_send_with_transport_does_not_retry_other_errors():
    sleep = RecordingSleep()
    transport = FakeTransport(always_fail=TransportError('EMESSAGE', '552 Message too large'))

    outcome = send_with_transport(transport, _message(), sleep=sleep)

    assert not outcome.success
    assert not outcome.is_connection_error
    assert transport.send_calls == 1
    assert sleep.calls == []
