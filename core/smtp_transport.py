# core/smtp_transport.py
"""
SMTP transport built on aiosmtplib

One transport object maps to one chunk. Each message opens its own SMTP
connection (max one connection, one message per connection), so there is no
pool to drain; close() only marks the transport unusable.

Failures surface as TransportError carrying a short code in the style of
classic mail transports (ECONNREFUSED, ESOCKET, EPROTOCOL, ETIMEDOUT, EAUTH,
EENVELOPE, EMESSAGE) plus the raw server response when there is one.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from typing import Any, Callable, Dict, List, Optional

import aiosmtplib

from core.email_validation import email_domain

logger = logging.getLogger(__name__)

CONNECTION_ERROR_CODES = ('ECONNREFUSED', 'ESOCKET', 'EPROTOCOL')
TOO_MANY_CONNECTIONS = 'too many connections'


class TransportError(Exception):
    """SMTP failure with a transport code and optional server response"""

    def __init__(self, code: str, message: str, response: Optional[str] = None,
                 rejected: Optional[List[str]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.response = response
        self.rejected = rejected or []

    def __str__(self):
        return f"{self.code}: {self.message}"


@dataclass
class SendReceipt:
    """Accepted message; rejected lists recipients the server refused individually"""
    message_id: str
    rejected: List[str] = field(default_factory=list)


@dataclass
class SendOutcome:
    """Result of send_with_transport after its own retries"""
    success: bool
    message_id: Optional[str] = None
    rejected: List[str] = field(default_factory=list)
    error: Optional[Exception] = None
    is_connection_error: bool = False
    attempts: int = 0


def is_connection_error(error: Exception, include_timeouts: bool = False) -> bool:
    """
    Classify an error as connection-class (worth retrying on a fresh connection)

    Args:
        error: Exception raised by the transport
        include_timeouts: Treat ETIMEDOUT as connection-class (sends do, verify does not)

    Returns:
        True for 'too many connections' responses and socket/protocol level codes
    """
    response = getattr(error, 'response', None) or ''
    if TOO_MANY_CONNECTIONS in response.lower():
        return True

    code = getattr(error, 'code', None)
    if code in CONNECTION_ERROR_CODES:
        return True

    return include_timeouts and code == 'ETIMEDOUT'


def backoff_delay_ms(attempt: int, max_backoff_delay: int) -> int:
    """Exponential backoff: 1s, 2s, 4s ... capped at max_backoff_delay (ms)"""
    return min(1000 * 2 ** (attempt - 1), max_backoff_delay)


def translate_smtp_error(error: Exception) -> TransportError:
    """Map aiosmtplib / socket exceptions onto transport codes"""
    if isinstance(error, TransportError):
        return error

    if isinstance(error, (asyncio.TimeoutError, aiosmtplib.SMTPTimeoutError)):
        return TransportError('ETIMEDOUT', f"SMTP operation timed out: {error}")

    if isinstance(error, aiosmtplib.SMTPRecipientsRefused):
        rejected = [r.recipient for r in error.recipients]
        response = '; '.join(f"{r.code} {r.message}" for r in error.recipients)
        return TransportError('EENVELOPE', 'All recipients were refused', response, rejected)

    if isinstance(error, aiosmtplib.SMTPConnectResponseError):
        # Greeting rejected, typically 421 "too many connections"
        return TransportError('ESOCKET', str(error), f"{error.code} {error.message}")

    if isinstance(error, aiosmtplib.SMTPConnectError):
        if isinstance(error.__cause__, ConnectionRefusedError):
            return TransportError('ECONNREFUSED', str(error))
        return TransportError('ESOCKET', str(error))

    if isinstance(error, aiosmtplib.SMTPServerDisconnected):
        return TransportError('ESOCKET', str(error))

    if isinstance(error, aiosmtplib.SMTPAuthenticationError):
        return TransportError('EAUTH', 'Invalid login', f"{error.code} {error.message}")

    if isinstance(error, aiosmtplib.SMTPHeloError):
        return TransportError('EPROTOCOL', str(error), f"{error.code} {error.message}")

    if isinstance(error, aiosmtplib.SMTPNotSupported):
        return TransportError('EPROTOCOL', str(error))

    if isinstance(error, aiosmtplib.SMTPResponseException):
        return TransportError('EMESSAGE', error.message, f"{error.code} {error.message}")

    if isinstance(error, ConnectionRefusedError):
        return TransportError('ECONNREFUSED', str(error))

    if isinstance(error, OSError):
        return TransportError('ESOCKET', str(error))

    return TransportError('EMESSAGE', str(error))


def build_message(from_address: str,
                  to: str,
                  subject: str,
                  html: str,
                  from_name: Optional[str] = None,
                  reply_to: Optional[str] = None,
                  bcc: Optional[List[str]] = None) -> MIMEMultipart:
    """
    Build an HTML newsletter message

    Bcc recipients are carried as a header so they become envelope
    recipients; aiosmtplib strips the Bcc header before transmission.
    """
    msg = MIMEMultipart('alternative')
    msg['Subject'] = subject
    msg['From'] = formataddr((from_name, from_address)) if from_name else from_address
    msg['To'] = to
    msg['Reply-To'] = reply_to or from_address
    msg['Date'] = formatdate(localtime=True)
    msg['Message-ID'] = make_msgid(domain=email_domain(from_address))
    if bcc:
        msg['Bcc'] = ','.join(bcc)

    msg.attach(MIMEText(html, 'html', 'utf-8'))
    return msg


class SMTPTransport:
    """Single-use SMTP transport; one connection per message"""

    def __init__(self,
                 host: str,
                 port: int,
                 username: Optional[str] = None,
                 password: Optional[str] = None,
                 secure: bool = False,
                 validate_certs: bool = True,
                 connection_timeout: float = 20.0,
                 greeting_timeout: float = 20.0,
                 socket_timeout: float = 30.0,
                 email_timeout: float = 30.0):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.secure = secure
        self.validate_certs = validate_certs
        self.connection_timeout = connection_timeout
        self.greeting_timeout = greeting_timeout
        self.socket_timeout = socket_timeout
        self.email_timeout = email_timeout
        self.closed = False

    def _client(self) -> aiosmtplib.SMTP:
        return aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            timeout=self.socket_timeout,
            use_tls=self.secure,
            start_tls=False if self.secure else None,  # opportunistic STARTTLS on plain ports
            validate_certs=self.validate_certs
        )

    async def _open(self) -> aiosmtplib.SMTP:
        smtp = self._client()
        await smtp.connect(timeout=max(self.connection_timeout, self.greeting_timeout))
        if self.username and self.password:
            await smtp.login(self.username, self.password)
        return smtp

    async def _async_verify(self) -> None:
        smtp = await self._open()
        await smtp.quit()

    async def _async_send(self, msg: MIMEMultipart) -> SendReceipt:
        smtp = await self._open()
        try:
            errors, _response = await smtp.send_message(msg)
        finally:
            if smtp.is_connected:
                try:
                    await smtp.quit()
                except aiosmtplib.SMTPException as e:
                    logger.debug(f"SMTP QUIT failed: {str(e)}")

        return SendReceipt(message_id=msg['Message-ID'], rejected=sorted(errors.keys()))

    def verify(self) -> bool:
        """Open a connection, authenticate and quit; raises TransportError"""
        if self.closed:
            raise TransportError('ESOCKET', 'Transport already closed')
        try:
            asyncio.run(self._async_verify())
        except Exception as e:
            raise translate_smtp_error(e) from e
        return True

    def send_mail(self, msg: MIMEMultipart) -> SendReceipt:
        """Send one message within email_timeout; raises TransportError"""
        if self.closed:
            raise TransportError('ESOCKET', 'Transport already closed')
        try:
            return asyncio.run(asyncio.wait_for(self._async_send(msg), timeout=self.email_timeout))
        except Exception as e:
            raise translate_smtp_error(e) from e

    def close(self) -> None:
        self.closed = True


def create_transporter(smtp_config: Dict[str, Any], send_settings: Any = None) -> SMTPTransport:
    """
    Create a transport from server config and per-send settings

    Args:
        smtp_config: host, port, username, password, secure, validate_certs
        send_settings: NewsletterSettings-like object with millisecond timeouts

    Returns:
        Fresh SMTPTransport
    """
    def seconds(name: str, default_ms: int) -> float:
        value = getattr(send_settings, name, None) if send_settings is not None else None
        return (value or default_ms) / 1000.0

    transport = SMTPTransport(
        host=smtp_config.get('host') or 'localhost',
        port=int(smtp_config.get('port') or 1025),
        username=smtp_config.get('username') or None,
        password=smtp_config.get('password') or None,
        secure=bool(smtp_config.get('secure', False)),
        validate_certs=bool(smtp_config.get('validate_certs', True)),
        connection_timeout=seconds('connection_timeout', 20000),
        greeting_timeout=seconds('greeting_timeout', 20000),
        socket_timeout=seconds('socket_timeout', 30000),
        email_timeout=seconds('email_timeout', 30000),
    )

    logger.info(
        f"Created SMTP transport for {transport.host}:{transport.port}",
        extra={'context': {
            'secure': transport.secure,
            'hasAuth': bool(transport.username and transport.password),
            'connectionModel': 'single-use',
        }}
    )
    return transport


def send_with_transport(transport: SMTPTransport,
                        msg: MIMEMultipart,
                        max_retries: int = 3,
                        max_backoff_delay: int = 10000,
                        sleep: Callable[[float], None] = time.sleep) -> SendOutcome:
    """
    Send a message, retrying connection-class failures on the same transport

    Args:
        transport: Transport to send with
        msg: Prepared message
        max_retries: Total attempts
        max_backoff_delay: Backoff ceiling in ms
        sleep: Sleep callable taking seconds

    Returns:
        SendOutcome; is_connection_error is set only when the final attempt
        failed with a connection-class error
    """
    recipient_domain = email_domain(msg['To'] or '')
    attempts = max(1, max_retries)
    started = time.monotonic()

    for attempt in range(1, attempts + 1):
        try:
            receipt = transport.send_mail(msg)
            return SendOutcome(
                success=True,
                message_id=receipt.message_id,
                rejected=receipt.rejected,
                attempts=attempt
            )
        except TransportError as e:
            connection_error = is_connection_error(e, include_timeouts=True)

            if attempt == attempts or not connection_error:
                logger.error(
                    f"Failed to send email with shared transport: {e}",
                    extra={'context': {
                        'recipientDomain': recipient_domain,
                        'bccCount': len((msg['Bcc'] or '').split(',')) if msg['Bcc'] else 0,
                        'attempts': attempt,
                        'duration': f"{int((time.monotonic() - started) * 1000)}ms",
                        'code': e.code,
                    }}
                )
                return SendOutcome(
                    success=False,
                    error=e,
                    rejected=e.rejected,
                    is_connection_error=connection_error,
                    attempts=attempt
                )

            delay = backoff_delay_ms(attempt, max_backoff_delay)
            logger.warning(
                f"Email send failed (attempt {attempt}/{attempts}), retrying in {delay}ms",
                extra={'context': {'recipientDomain': recipient_domain, 'code': e.code}}
            )
            sleep(delay / 1000.0)

    return SendOutcome(success=False, error=TransportError('EMESSAGE', 'Max retries exceeded'))
