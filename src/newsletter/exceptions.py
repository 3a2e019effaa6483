"""
Exceptions raised by the newsletter delivery engine.
"""


class NewsletterError(Exception):
    """Base class for newsletter engine errors."""


class InvalidStateError(NewsletterError):
    """The campaign is not in a state that allows the requested operation."""


class NoRecipientsError(InvalidStateError):
    """A campaign cannot start without at least one eligible recipient."""


class DeliveryError(NewsletterError):
    """Sending one message failed. Recorded against the recipient."""


class TransportUnavailableError(NewsletterError):
    """The mail transport cannot be reached at all."""


class InvalidTrackingToken(NewsletterError):
    """A tracking request carries missing, malformed or forged parameters."""
