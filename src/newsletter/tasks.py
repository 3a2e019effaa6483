"""
Celery tasks for newsletter delivery.

process_newsletter_queue is the single drain of the send queue; a cache
lock keeps concurrent invocations from running two drains at once.
"""

import logging
import time
from typing import Any, Dict, List, Optional

from celery import shared_task
from django.core.cache import cache

from .analytics import QueueStatusReporter
from .conf import engine_setting
from .models import Campaign, QueueJob
from .sender import BatchSender, clear_completed_jobs as clear_finished_jobs

logger = logging.getLogger(__name__)

QUEUE_LOCK_KEY = 'newsletter:queue-drain-lock'


@shared_task
def process_newsletter_queue() -> Dict[str, Any]:
    """
    Drain the send queue unless another drain is already running.

    A drain stops after DRAIN_MAX_SECONDS, well inside the task time
    limit, and queues a follow-up drain for whatever is left.
    """
    if not cache.add(QUEUE_LOCK_KEY, 'locked', timeout=engine_setting('QUEUE_LOCK_TIMEOUT_SECONDS')):
        logger.info("Newsletter queue drain already running, skipping")
        return {'status': 'skipped', 'reason': 'Queue drain already running'}

    deadline = time.monotonic() + engine_setting('DRAIN_MAX_SECONDS')
    try:
        results = BatchSender().process_queue(deadline=deadline)
    finally:
        cache.delete(QUEUE_LOCK_KEY)

    if QueueJob.objects.pending().filter(campaign__status=Campaign.CampaignStatus.SENDING).exists():
        logger.info("Newsletter queue drain reached its time budget, continuing in a new task")
        process_newsletter_queue.delay()

    return {
        'status': 'completed',
        'campaigns': [result.as_dict() for result in results],
    }


@shared_task
def dispatch_scheduled_campaigns() -> List[str]:
    """Start due scheduled campaigns and kick off a drain."""
    started = BatchSender().dispatch_due_campaigns()
    if started:
        logger.info(f"Started {len(started)} scheduled campaigns")
        process_newsletter_queue.delay()
    return [result.campaign_id for result in started]


@shared_task
def clear_completed_jobs(older_than_days: Optional[int] = None) -> int:
    return clear_finished_jobs(older_than_days)


@shared_task
def recalculate_campaign_totals(campaign_id: str) -> Dict[str, int]:
    """Recompute a campaign's stored totals from its delivery records."""
    try:
        campaign = Campaign.objects.get(pk=campaign_id)
    except Campaign.DoesNotExist:
        logger.error(f"Campaign {campaign_id} not found")
        return {}
    return campaign.recalculate_totals()


@shared_task
def rebuild_queue_counters() -> Dict[str, int]:
    return QueueStatusReporter().rebuild()
