"""
Mail transport for the batch sender.

Thin wrapper around a Django email connection. Opening the connection is
separate from sending so an unreachable server can halt the whole
campaign, while a single rejected message only fails its recipient.
"""

import logging
import smtplib
import socket
from dataclasses import dataclass, field
from typing import Dict, Optional

from django.core.mail import EmailMultiAlternatives, get_connection
from django.core.mail.message import sanitize_address

from .conf import engine_setting
from .exceptions import DeliveryError, TransportUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class OutgoingMessage:
    """One rendered message ready for the transport."""
    to_email: str
    subject: str
    html_body: str
    text_body: str
    headers: Dict[str, str] = field(default_factory=dict)


def default_from_address() -> str:
    from_email = engine_setting('FROM_EMAIL')
    from_name = engine_setting('FROM_NAME')
    if from_name:
        return f"{from_name} <{from_email}>"
    return from_email


class MailTransport:
    """Send rendered newsletters through a Django email backend."""

    def __init__(self, backend: Optional[str] = None, timeout: Optional[int] = None,
                 from_email: Optional[str] = None):
        self.backend = backend
        self.timeout = timeout if timeout is not None else engine_setting('SEND_TIMEOUT_SECONDS')
        self.from_email = from_email or default_from_address()
        self.connection = None

    def open(self):
        """
        Open the backend connection.

        Raises TransportUnavailableError when the server cannot be reached.
        """
        try:
            self.connection = get_connection(self.backend, fail_silently=False, timeout=self.timeout)
            self.connection.open()
        except (smtplib.SMTPException, OSError) as e:
            self.connection = None
            raise TransportUnavailableError(f"Mail transport unavailable: {e}") from e
        return self

    def close(self):
        if self.connection is None:
            return
        try:
            self.connection.close()
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"Error closing mail connection: {e}")
        finally:
            self.connection = None

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def send(self, message: OutgoingMessage):
        """
        Send one message.

        Raises DeliveryError if the backend rejects it or times out.
        """
        if self.connection is None:
            raise DeliveryError("Transport is not open")

        try:
            sanitize_address(message.to_email, 'utf-8')
        except ValueError as e:
            raise DeliveryError(f"Invalid recipient address: {message.to_email}") from e

        email = EmailMultiAlternatives(
            subject=message.subject,
            body=message.text_body,
            from_email=self.from_email,
            to=[message.to_email],
            headers=message.headers,
            connection=self.connection
        )
        email.attach_alternative(message.html_body, "text/html")

        try:
            sent = email.send(fail_silently=False)
        except socket.timeout as e:
            raise DeliveryError(f"Timed out after {self.timeout}s") from e
        except smtplib.SMTPRecipientsRefused as e:
            raise DeliveryError(f"Recipient refused: {message.to_email}") from e
        except (smtplib.SMTPException, OSError) as e:
            raise DeliveryError(str(e) or e.__class__.__name__) from e

        if not sent:
            raise DeliveryError("Message was not accepted by the mail backend")
