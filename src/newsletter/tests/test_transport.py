"""
Tests for the mail transport wrapper.
"""

from django.core import mail
from django.test import SimpleTestCase, override_settings

from newsletter.exceptions import DeliveryError, TransportUnavailableError
from newsletter.transport import MailTransport, OutgoingMessage, default_from_address


def message_to(address):
    return OutgoingMessage(
        to_email=address,
        subject='Sujet',
        html_body='<p>Bonjour</p>',
        text_body='Bonjour',
        headers={'X-Campaign-ID': 'abc'}
    )


class MailTransportTest(SimpleTestCase):

    def test_sends_html_and_text_parts(self):
        with MailTransport() as transport:
            transport.send(message_to('reader@example.com'))

        self.assertEqual(len(mail.outbox), 1)
        sent = mail.outbox[0]
        self.assertEqual(sent.to, ['reader@example.com'])
        self.assertEqual(sent.body, 'Bonjour')
        self.assertEqual(sent.alternatives[0][1], 'text/html')
        self.assertEqual(sent.extra_headers['X-Campaign-ID'], 'abc')
        self.assertEqual(sent.from_email, 'newsletter@example.com')

    def test_refused_recipient_is_a_delivery_error(self):
        with MailTransport(backend='newsletter.tests.backends.FlakyEmailBackend') as transport:
            with self.assertRaises(DeliveryError):
                transport.send(message_to('fail@example.com'))
            transport.send(message_to('ok@example.com'))
        self.assertEqual(len(mail.outbox), 1)

    def test_invalid_address(self):
        with MailTransport() as transport:
            with self.assertRaises(DeliveryError):
                transport.send(message_to('reader@example.com, other@example.com'))

    def test_send_requires_open_connection(self):
        with self.assertRaises(DeliveryError):
            MailTransport().send(message_to('reader@example.com'))

    def test_unreachable_server(self):
        transport = MailTransport(backend='newsletter.tests.backends.UnavailableEmailBackend')
        with self.assertRaises(TransportUnavailableError):
            transport.open()
        self.assertIsNone(transport.connection)

    def test_from_address_with_name(self):
        engine = {'FROM_EMAIL': 'news@example.com', 'FROM_NAME': 'La Gazette'}
        with override_settings(NEWSLETTER_ENGINE=engine):
            self.assertEqual(default_from_address(), 'La Gazette <news@example.com>')
