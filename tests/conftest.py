import pytest

from app import create_app
from core.database import NewsletterRepository, create_db_engine, create_session_factory, init_database
from core.smtp_transport import SendReceipt, TransportError
from services.chunk_sender import ChunkSender
from services.progress_events import ProgressPublisher
from services.recipient_service import RecipientService
from services.retry_service import RetryService
from services.sending_service import SendingService
from services.settings_service import SettingsCache, SettingsService

FROM_EMAIL = 'newsletter@example.org'


class FakeTransport:
    """Stands in for SMTPTransport; records sent messages"""

    def __init__(self, verify_errors=None, send_errors=None, always_fail=None, rejected=None):
        self.verify_errors = list(verify_errors or [])
        self.send_errors = list(send_errors or [])
        self.always_fail = always_fail
        self.rejected = list(rejected or [])
        self.verify_calls = 0
        self.send_calls = 0
        self.sent = []
        self.closed = False

    def verify(self):
        self.verify_calls += 1
        if self.verify_errors:
            raise self.verify_errors.pop(0)
        return True

    def send_mail(self, msg):
        self.send_calls += 1
        if self.always_fail is not None:
            raise self.always_fail
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append(msg)
        return SendReceipt(message_id=msg['Message-ID'], rejected=list(self.rejected))

    def close(self):
        self.closed = True


class FakeTransportFactory:
    """Hands out queued transports, then fresh ones built from the defaults"""

    def __init__(self):
        self.queue = []
        self.transports = []
        self.defaults = {}
        self.settings_seen = []

    def __call__(self, send_settings):
        self.settings_seen.append(send_settings)
        transport = self.queue.pop(0) if self.queue else FakeTransport(**self.defaults)
        self.transports.append(transport)
        return transport

    def fail_sends(self, error=None):
        self.defaults = {'always_fail': error or TransportError('EMESSAGE', '550 Mailbox unavailable')}

    def succeed(self):
        self.defaults = {}

    @property
    def messages(self):
        return [msg for transport in self.transports for msg in transport.sent]


class RecordingPublisher(ProgressPublisher):
    def __init__(self):
        super().__init__(None)
        self.events = []

    def publish(self, newsletter_id, event_type, data):
        self.events.append((newsletter_id, event_type, data))
        return True


class RecordingSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def transport_factory():
    return FakeTransportFactory()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def repository():
    engine = create_db_engine('sqlite:///:memory:')
    init_database(engine)
    yield NewsletterRepository(create_session_factory(engine))
    engine.dispose()


@pytest.fixture
def settings_service(repository):
    return SettingsService(repository, SettingsCache(), defaults={'fromEmail': FROM_EMAIL})


@pytest.fixture
def recipient_service(repository, settings_service):
    return RecipientService(repository, settings_service)


@pytest.fixture
def chunk_sender(transport_factory, sleep):
    return ChunkSender(transport_factory, sleep=sleep, default_from_email=FROM_EMAIL)


@pytest.fixture
def sending_service(repository, settings_service, recipient_service, chunk_sender, publisher):
    return SendingService(repository, settings_service, recipient_service, chunk_sender, publisher)


@pytest.fixture
def retry_service(repository, settings_service, recipient_service, chunk_sender, publisher):
    return RetryService(repository, settings_service, recipient_service, chunk_sender, publisher)


@pytest.fixture
def newsletter(repository):
    return repository.create_newsletter(subject='Monthly update', content='<p>Hello</p>')


def make_recipients(count, domain='example.org'):
    return [f'reader{i}@{domain}' for i in range(count)]


@pytest.fixture
def app(transport_factory, publisher, sleep):
    app = create_app('testing', transport_factory=transport_factory, publisher=publisher, sleep=sleep)
    yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_client(client):
    with client.session_transaction() as session:
        session['user_id'] = 'admin'
        session['role'] = 'admin'
    return client
