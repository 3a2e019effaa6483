"""
Email utility functions for newsletter rendering.

Personalizes campaign content per recipient, rewrites links for click
tracking, appends the open pixel and derives the plain-text part.
"""

import re
from typing import Any, Dict, Optional

from bs4 import BeautifulSoup
from jinja2 import BaseLoader, Environment

from .tracking import TrackingCodec
from .transport import OutgoingMessage

UNSUBSCRIBE_FOOTER = (
    '<p style="font-size:12px;color:#888;text-align:center;">'
    '<a href="{url}">Se désabonner</a></p>'
)


class JinjaStringLoader(BaseLoader):
    """Custom Jinja2 loader for string templates."""

    def get_source(self, environment, template):
        return template, None, lambda: True


def render_email_template(template_string: str, context: Dict[str, Any], autoescape: bool = True) -> str:
    """
    Render campaign content using Jinja2.

    Raises jinja2.TemplateError on syntax or rendering errors.
    """
    env = Environment(loader=JinjaStringLoader(), autoescape=autoescape)
    template = env.from_string(template_string)
    return template.render(**context)


def track_email_links(content: str, codec: TrackingCodec, campaign_id, subscriber_id) -> str:
    """
    Replace links in HTML content with click tracking URLs.

    mailto:, tel:, anchors and unsubscribe links are left untouched.
    """
    soup = BeautifulSoup(content, 'html.parser')
    own_prefixes = (
        codec.click_url(campaign_id, subscriber_id, '').split('?')[0],
        codec.web_view_url(campaign_id, subscriber_id).split('?')[0],
    )

    for link in soup.find_all('a', href=True):
        original_url = link['href'].strip()

        if not original_url.lower().startswith(('http://', 'https://')):
            continue

        # Skip unsubscribe links (don't want to track those)
        if 'unsubscribe' in original_url.lower():
            continue

        if original_url.startswith(own_prefixes):
            continue

        link['href'] = codec.click_url(campaign_id, subscriber_id, original_url)

    return str(soup)


def add_tracking_pixel(html_content: str, pixel_url: str) -> str:
    """Add invisible tracking pixel to HTML content."""
    tracking_pixel = f'<img src="{pixel_url}" width="1" height="1" style="display:none;" alt="" />'

    # Insert before closing body tag
    if '</body>' in html_content:
        return html_content.replace('</body>', f'{tracking_pixel}</body>', 1)
    return html_content + tracking_pixel


def html_to_text(html_content: str) -> str:
    """Derive a plain-text alternative from HTML content."""
    soup = BeautifulSoup(html_content, 'html.parser')

    for element in soup(["script", "style", "img"]):
        element.decompose()

    # Keep link targets readable in the text part
    for link in soup.find_all('a', href=True):
        text = link.get_text(strip=True)
        href = link['href']
        if href.startswith(('http://', 'https://')) and href != text:
            link.replace_with(f"{text} ({href})" if text else href)

    text = soup.get_text(separator='\n', strip=True)
    return re.sub(r'\n{3,}', '\n\n', text)


def build_recipient_context(delivery, campaign, codec: TrackingCodec) -> Dict[str, Any]:
    subscriber = delivery.subscriber
    unsubscribe_url = codec.unsubscribe_url(subscriber.unsubscribe_token, campaign.id)
    return {
        'email': delivery.email,
        'name': delivery.name or delivery.email,
        'first_name': subscriber.first_name,
        'last_name': subscriber.last_name,
        'unsubscribe_url': unsubscribe_url,
        'web_view_url': codec.web_view_url(campaign.id, subscriber.id),
        'campaign_title': campaign.title,
    }


def render_newsletter(campaign, delivery, codec: Optional[TrackingCodec] = None) -> OutgoingMessage:
    """
    Render the campaign for one delivery record.

    The result carries per-recipient tracking: rewritten links, the open
    pixel and List-Unsubscribe headers.
    """
    codec = codec or TrackingCodec()
    subscriber = delivery.subscriber
    context = build_recipient_context(delivery, campaign, codec)
    unsubscribe_url = context['unsubscribe_url']

    subject = render_email_template(campaign.subject, context, autoescape=False)
    html_content = render_email_template(campaign.content, context)

    if subscriber.unsubscribe_token not in html_content:
        footer = UNSUBSCRIBE_FOOTER.format(url=unsubscribe_url)
        if '</body>' in html_content:
            html_content = html_content.replace('</body>', f'{footer}</body>', 1)
        else:
            html_content += footer

    html_content = track_email_links(html_content, codec, campaign.id, subscriber.id)
    text_content = html_to_text(html_content)
    html_content = add_tracking_pixel(html_content, codec.pixel_url(campaign.id, subscriber.id))

    headers = {
        'X-Campaign-ID': str(campaign.id),
        'List-Unsubscribe': f'<{unsubscribe_url}>',
        'List-Unsubscribe-Post': 'List-Unsubscribe=One-Click',
    }

    return OutgoingMessage(
        to_email=delivery.email,
        subject=subject,
        html_body=html_content,
        text_body=text_content,
        headers=headers
    )
