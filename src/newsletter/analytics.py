"""
Campaign analytics and queue status reporting.

Stats are computed from the delivery records so they are live while a
campaign is still sending; the denormalized campaign totals are reported
alongside under "stored".
"""

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from django.db import transaction
from django.db.models import Count, Q

from .conf import engine_setting
from .models import Campaign, QueueCounter, QueueJob

PERFORMANCE_EXCELLENT = "Excellente"
PERFORMANCE_GOOD = "Bonne"
PERFORMANCE_NEEDS_WORK = "À améliorer"

RECENT_ERRORS_LIMIT = 10


def calculate_rate(count: int, total: int) -> int:
    """Percentage of total rounded half up to an integer. 0 when total is 0."""
    if not total:
        return 0
    rate = Decimal(count) * 100 / Decimal(total)
    return int(rate.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def classify_performance(open_rate: float) -> str:
    if open_rate >= 20:
        return PERFORMANCE_EXCELLENT
    if open_rate >= 10:
        return PERFORMANCE_GOOD
    return PERFORMANCE_NEEDS_WORK


class CampaignAnalytics:
    """
    Aggregated delivery and engagement stats for a single campaign.
    """

    def __init__(self, recent_activity_limit: Optional[int] = None):
        self.recent_activity_limit = recent_activity_limit or engine_setting('RECENT_ACTIVITY_LIMIT')

    def get_counts(self, campaign: Campaign) -> Dict[str, int]:
        sent = Q(sent_at__isnull=False)
        counts = campaign.deliveries.aggregate(
            sent=Count('id', filter=sent),
            opened=Count('id', filter=sent & Q(first_opened_at__isnull=False)),
            clicked=Count('id', filter=sent & Q(first_clicked_at__isnull=False)),
            failed=Count('id', filter=Q(failed_at__isnull=False)),
            unsubscribed=Count('id', filter=Q(unsubscribed_at__isnull=False)),
        )
        # No bounce feedback: everything the transport accepted is delivered
        counts['delivered'] = counts['sent']
        return counts

    def get_campaign_stats(self, campaign: Campaign) -> Dict[str, Any]:
        counts = self.get_counts(campaign)
        sent = counts['sent']

        rates = {
            'delivery': calculate_rate(counts['delivered'], sent),
            'open': calculate_rate(counts['opened'], sent),
            'click': calculate_rate(counts['clicked'], sent),
            'failure': calculate_rate(counts['failed'], sent),
        }

        return {
            'campaign': {
                'id': str(campaign.id),
                'title': campaign.title,
                'status': campaign.status,
                'sentAt': campaign.sent_at,
            },
            'stats': {
                'sent': sent,
                'delivered': counts['delivered'],
                'opened': counts['opened'],
                'clicked': counts['clicked'],
                'failed': counts['failed'],
                'unsubscribed': counts['unsubscribed'],
                'rates': rates,
                'stored': {
                    'recipients': campaign.total_recipients,
                    'sent': campaign.total_sent,
                    'opened': campaign.total_opened,
                    'clicked': campaign.total_clicked,
                    'failed': campaign.total_failed,
                    'unsubscribed': campaign.total_unsubscribed,
                },
            },
            'performance': classify_performance(rates['open']),
            'recentActivity': self.get_recent_activity(campaign),
            'errors': self.get_recent_errors(campaign),
        }

    def get_recent_activity(self, campaign: Campaign) -> List[Dict[str, Any]]:
        """First opens and first clicks, newest first."""
        limit = self.recent_activity_limit
        deliveries = campaign.deliveries.filter(sent_at__isnull=False)

        events = []
        for action, field in (('opened', 'first_opened_at'), ('clicked', 'first_clicked_at')):
            rows = (
                deliveries.filter(**{f'{field}__isnull': False})
                .order_by(f'-{field}')
                .values('email', 'name', field)[:limit]
            )
            for row in rows:
                events.append({
                    'email': row['email'],
                    'name': row['name'] or row['email'],
                    'action': action,
                    'timestamp': row[field],
                })

        events.sort(key=lambda event: event['timestamp'], reverse=True)
        return events[:limit]

    def get_recent_errors(self, campaign: Campaign) -> List[Dict[str, Any]]:
        rows = (
            campaign.deliveries.filter(failed_at__isnull=False)
            .order_by('-failed_at')
            .values('email', 'failure_reason', 'failed_at')[:RECENT_ERRORS_LIMIT]
        )
        return [
            {'email': row['email'], 'reason': row['failure_reason'], 'failedAt': row['failed_at']}
            for row in rows
        ]


class QueueStatusReporter:
    """Queue counts for the dashboard, read from the running counters."""

    def get_queue_status(self) -> Dict[str, int]:
        return QueueCounter.objects.snapshot()

    def get_operational_settings(self) -> Dict[str, Any]:
        return {
            'batchSize': engine_setting('BATCH_SIZE'),
            'sendIntervalMs': engine_setting('SEND_INTERVAL_MS'),
            'batchDelayMs': engine_setting('BATCH_DELAY_MS'),
            'failureRatioThreshold': engine_setting('FAILURE_RATIO_THRESHOLD'),
        }

    def rebuild(self) -> Dict[str, int]:
        """Recount the counters from the job table."""
        with transaction.atomic():
            actual = dict(
                QueueJob.objects.order_by().values('status').annotate(n=Count('id')).values_list('status', 'n')
            )
            for status in QueueJob.Status.values:
                QueueCounter.objects.update_or_create(
                    status=status,
                    defaults={'count': actual.get(status, 0)}
                )
        return self.get_queue_status()
