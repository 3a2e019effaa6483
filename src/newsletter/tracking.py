"""
Tracking token codec.

Builds the per-recipient URLs embedded in outgoing newsletters (open
pixel, click redirect, unsubscribe link) and decodes the parameters
when those URLs are fetched.

Ids travel as query parameters ``c`` (campaign) and ``s`` (subscriber).
``t`` is a truncated HMAC of the pair keyed with SECRET_KEY, so nobody
can forge engagement events for another recipient by editing ids.
"""

import hashlib
import hmac
import urllib.parse
import uuid
from dataclasses import dataclass
from typing import Mapping, Optional

from django.conf import settings
from django.urls import reverse

from .conf import engine_setting
from .exceptions import InvalidTrackingToken

SIGNATURE_LENGTH = 16


@dataclass(frozen=True)
class TrackingToken:
    campaign_id: uuid.UUID
    subscriber_id: uuid.UUID


def _parse_uuid(value: Optional[str], label: str) -> uuid.UUID:
    if not value:
        raise InvalidTrackingToken(f"Missing {label} id")
    try:
        return uuid.UUID(str(value))
    except (ValueError, AttributeError):
        raise InvalidTrackingToken(f"Malformed {label} id: {value!r}")


class TrackingCodec:
    """Encode and decode tracking parameters."""

    def __init__(self, base_url: Optional[str] = None, secret: Optional[str] = None,
                 require_signature: Optional[bool] = None):
        self.base_url = (base_url if base_url is not None else engine_setting('TRACKING_BASE_URL')).rstrip('/')
        self.secret = (secret or settings.SECRET_KEY).encode()
        self.require_signature = (
            require_signature if require_signature is not None
            else engine_setting('TRACKING_REQUIRE_SIGNATURE')
        )

    def sign(self, campaign_id, subscriber_id) -> str:
        message = f"{campaign_id}:{subscriber_id}".encode()
        return hmac.new(self.secret, message, hashlib.sha256).hexdigest()[:SIGNATURE_LENGTH]

    def _build(self, route: str, params: dict) -> str:
        return f"{self.base_url}{reverse(route)}?{urllib.parse.urlencode(params)}"

    def _pair_params(self, campaign_id, subscriber_id) -> dict:
        return {
            'c': str(campaign_id),
            's': str(subscriber_id),
            't': self.sign(campaign_id, subscriber_id),
        }

    def pixel_url(self, campaign_id, subscriber_id) -> str:
        return self._build('newsletter:track-open', self._pair_params(campaign_id, subscriber_id))

    def click_url(self, campaign_id, subscriber_id, destination: str) -> str:
        params = self._pair_params(campaign_id, subscriber_id)
        params['url'] = destination
        return self._build('newsletter:track-click', params)

    def web_view_url(self, campaign_id, subscriber_id) -> str:
        return self._build('newsletter:web-view', self._pair_params(campaign_id, subscriber_id))

    def unsubscribe_url(self, token: str, campaign_id=None) -> str:
        params = {'token': token}
        if campaign_id is not None:
            params['c'] = str(campaign_id)
        return self._build('newsletter:unsubscribe', params)

    def decode(self, params: Mapping[str, str]) -> TrackingToken:
        """
        Validate and decode the (campaign, subscriber) pair.

        Raises InvalidTrackingToken for missing or malformed ids and for a
        signature that does not match. Unsigned URLs are accepted unless
        TRACKING_REQUIRE_SIGNATURE is on.
        """
        campaign_id = _parse_uuid(params.get('c'), 'campaign')
        subscriber_id = _parse_uuid(params.get('s'), 'subscriber')

        signature = params.get('t')
        if signature:
            if not hmac.compare_digest(str(signature), self.sign(campaign_id, subscriber_id)):
                raise InvalidTrackingToken("Tracking signature mismatch")
        elif self.require_signature:
            raise InvalidTrackingToken("Tracking signature missing")

        return TrackingToken(campaign_id=campaign_id, subscriber_id=subscriber_id)

    @staticmethod
    def decode_destination(params: Mapping[str, str]) -> str:
        """Return the click destination if it is an absolute http(s) URL."""
        destination = (params.get('url') or '').strip()
        if not destination:
            raise InvalidTrackingToken("Missing destination url")
        parsed = urllib.parse.urlparse(destination)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise InvalidTrackingToken(f"Unsupported destination url: {destination!r}")
        return destination


def is_allowed_destination(url: str, allowed_domains) -> bool:
    """
    Check the redirect target against an allow-list of domains.

    An empty allow-list permits every host. A listed domain also covers
    its subdomains.
    """
    if not allowed_domains:
        return True
    host = (urllib.parse.urlparse(url).hostname or '').lower()
    for domain in allowed_domains:
        domain = domain.lower().lstrip('.')
        if host == domain or host.endswith('.' + domain):
            return True
    return False
