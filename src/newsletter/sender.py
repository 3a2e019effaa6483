"""
Batch sender for newsletter campaigns.

Turns a campaign and its recipients into queued jobs, then drains the
queue one campaign at a time at a bounded rate: jobs are claimed in
batches, every send waits for the throttle, and the campaign reaches
SENT or ERROR once nothing is left outstanding.
"""

import logging
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

from django.db import transaction
from django.db.models import Count
from django.utils import timezone
from django_fsm import ConcurrentTransition, TransitionNotAllowed
from jinja2 import TemplateError

from .conf import engine_setting
from .email_utils import render_newsletter
from .exceptions import (
    DeliveryError, InvalidStateError, NoRecipientsError, TransportUnavailableError
)
from .models import Campaign, DeliveryRecord, QueueCounter, QueueJob, Subscriber
from .throttle import SendThrottle
from .tracking import TrackingCodec
from .transport import MailTransport

logger = logging.getLogger(__name__)

OUTSTANDING_JOB_STATUSES = [QueueJob.Status.PENDING, QueueJob.Status.PROCESSING]
FINISHED_JOB_STATUSES = [QueueJob.Status.COMPLETED, QueueJob.Status.FAILED]


@dataclass
class StartResult:
    campaign_id: str
    total_recipients: int
    queued: int


@dataclass
class ProcessResult:
    campaign_id: str
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    batches: int = 0
    stopped: bool = False
    final_status: str = ''

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class _Recipient:
    subscriber: Subscriber
    email: str
    name: str


def _expired(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


class BatchSender:
    """
    Sends campaigns through the queue.

    Every argument falls back to the NEWSLETTER_ENGINE setting of the
    same name.
    """

    def __init__(self, batch_size: Optional[int] = None, send_interval_ms: Optional[int] = None,
                 batch_delay_ms: Optional[int] = None, failure_ratio_threshold: Optional[float] = None,
                 stale_job_timeout: Optional[int] = None, throttle: Optional[SendThrottle] = None,
                 transport_factory=None, codec: Optional[TrackingCodec] = None):
        self.batch_size = max(1, batch_size or engine_setting('BATCH_SIZE'))
        self.send_interval_ms = (
            send_interval_ms if send_interval_ms is not None else engine_setting('SEND_INTERVAL_MS')
        )
        self.batch_delay_ms = (
            batch_delay_ms if batch_delay_ms is not None else engine_setting('BATCH_DELAY_MS')
        )
        self.failure_ratio_threshold = (
            failure_ratio_threshold if failure_ratio_threshold is not None
            else engine_setting('FAILURE_RATIO_THRESHOLD')
        )
        self.stale_job_timeout = (
            stale_job_timeout if stale_job_timeout is not None
            else engine_setting('STALE_JOB_TIMEOUT_SECONDS')
        )
        self.throttle = throttle or SendThrottle(self.send_interval_ms / 1000.0)
        self.transport_factory = transport_factory or MailTransport
        self.codec = codec or TrackingCodec()

    # Enqueueing

    def start_campaign(self, campaign_id, recipients: Optional[Iterable[Mapping[str, Any]]] = None) -> StartResult:
        """
        Queue a DRAFT or due SCHEDULED campaign and move it to SENDING.

        recipients is the resolved recipient list, each item a mapping with
        subscriber_id (or subscriberId), email and name. Without it every
        active, verified subscriber receives the campaign.

        Raises InvalidStateError or NoRecipientsError. Nothing is written
        when either is raised.
        """
        campaign = Campaign.objects.get(pk=campaign_id)

        if campaign.status not in [Campaign.CampaignStatus.DRAFT, Campaign.CampaignStatus.SCHEDULED]:
            raise InvalidStateError(f"Campaign {campaign.pk} cannot be sent from status {campaign.status}")
        if not campaign.is_due:
            raise InvalidStateError(
                f"Campaign {campaign.pk} is scheduled for {campaign.scheduled_at.isoformat()}"
            )

        try:
            with transaction.atomic():
                eligible = self._resolve_recipients(recipients)
                if not eligible:
                    raise NoRecipientsError(f"Campaign {campaign.pk} has no eligible recipients")

                campaign.start_sending()
                campaign.total_recipients = len(eligible)
                campaign.save(update_fields=['status', 'started_at', 'total_recipients', 'updated_at'])

                records = DeliveryRecord.objects.bulk_create([
                    DeliveryRecord(
                        campaign=campaign,
                        subscriber=recipient.subscriber,
                        email=recipient.email,
                        name=recipient.name
                    )
                    for recipient in eligible
                ])
                QueueJob.objects.bulk_create([
                    QueueJob(campaign=campaign, delivery=record) for record in records
                ])
                QueueCounter.objects.shift(None, QueueJob.Status.PENDING, len(records))
        except (TransitionNotAllowed, ConcurrentTransition) as e:
            raise InvalidStateError(f"Campaign {campaign.pk} was changed concurrently: {e}") from e

        logger.info(f"Campaign {campaign.pk} queued for {len(records)} recipients")
        return StartResult(
            campaign_id=str(campaign.pk),
            total_recipients=len(eligible),
            queued=len(records)
        )

    def _resolve_recipients(self, recipients) -> List[_Recipient]:
        if recipients is None:
            return [
                _Recipient(subscriber=s, email=s.email, name=s.display_name)
                for s in Subscriber.objects.filter(is_active=True, is_verified=True)
            ]

        resolved = []
        seen = set()
        for item in recipients:
            subscriber_id = item.get('subscriber_id') or item.get('subscriberId')
            email = (item.get('email') or '').strip()
            subscriber = None

            if subscriber_id:
                subscriber = Subscriber.objects.filter(pk=subscriber_id).first()
            if subscriber is None and email:
                subscriber, created = Subscriber.objects.get_or_create(
                    email__iexact=email,
                    defaults={'email': email, 'first_name': item.get('name') or '', 'is_verified': False}
                )
                if created:
                    logger.info(f"Created subscriber {subscriber.pk} for recipient {email}")
            if subscriber is None:
                logger.warning(f"Skipping unresolvable recipient {dict(item)!r}")
                continue

            if subscriber.pk in seen:
                continue
            seen.add(subscriber.pk)

            if not subscriber.is_active or subscriber.unsubscribed_at is not None:
                logger.debug(f"Skipping inactive subscriber {subscriber.pk}")
                continue

            resolved.append(_Recipient(
                subscriber=subscriber,
                email=email or subscriber.email,
                name=item.get('name') or subscriber.display_name
            ))
        return resolved

    def schedule_campaign(self, campaign_id, when) -> Campaign:
        """
        Move a DRAFT campaign to SCHEDULED for dispatch at when.

        Recipients are resolved when the campaign is started, not now.
        """
        campaign = Campaign.objects.get(pk=campaign_id)
        if when <= timezone.now():
            raise InvalidStateError(f"Campaign {campaign.pk} must be scheduled in the future")

        try:
            with transaction.atomic():
                campaign.schedule(when)
                campaign.save(update_fields=['status', 'scheduled_at', 'updated_at'])
        except (TransitionNotAllowed, ConcurrentTransition) as e:
            raise InvalidStateError(f"Campaign {campaign.pk} cannot be scheduled: {e}") from e

        logger.info(f"Campaign {campaign.pk} scheduled for {when.isoformat()}")
        return campaign

    def dispatch_due_campaigns(self) -> List[StartResult]:
        """Start every SCHEDULED campaign whose send time has passed."""
        started = []
        for campaign in Campaign.objects.due():
            try:
                started.append(self.start_campaign(campaign.pk))
            except NoRecipientsError as e:
                logger.warning(str(e))
                self._halt(campaign.pk, str(e))
            except InvalidStateError as e:
                logger.warning(f"Scheduled campaign {campaign.pk} not started: {e}")
        return started

    # Cancellation

    def cancel_campaign(self, campaign_id) -> Campaign:
        """
        Cancel a SCHEDULED or SENDING campaign and discard its pending jobs.

        Cancelling an already cancelled campaign is acknowledged as is.
        The job being sent at that moment finishes normally.
        """
        campaign = Campaign.objects.get(pk=campaign_id)
        if campaign.status == Campaign.CampaignStatus.CANCELLED:
            return campaign
        if campaign.is_terminal:
            raise InvalidStateError(f"Campaign {campaign.pk} is already {campaign.status}")

        try:
            with transaction.atomic():
                campaign.cancel()
                campaign.save(update_fields=['status', 'completed_at', 'updated_at'])
                discarded = QueueJob.objects.discard_pending(campaign_id=campaign.pk)
        except TransitionNotAllowed as e:
            raise InvalidStateError(
                f"Campaign {campaign.pk} cannot be cancelled from status {campaign.status}"
            ) from e
        except ConcurrentTransition as e:
            campaign.refresh_from_db()
            if campaign.status == Campaign.CampaignStatus.CANCELLED:
                return campaign
            raise InvalidStateError(
                f"Campaign {campaign.pk} changed to {campaign.status} while cancelling"
            ) from e

        logger.info(f"Campaign {campaign.pk} cancelled, {discarded} pending jobs discarded")
        return campaign

    # Draining

    def process_queue(self, deadline: Optional[float] = None) -> List[ProcessResult]:
        """
        Drain all sending campaigns, oldest queued work first.

        Starts with recovery: stale claims are failed and finished
        campaigns left in SENDING are finalized.

        deadline is a time.monotonic() value. Once it passes, the drain
        stops between two sends and leaves the remaining jobs pending.
        """
        self.release_stale_jobs()
        self.finalize_stuck_campaigns()

        results = []
        seen = set()
        while True:
            campaign_id = (
                QueueJob.objects.pending()
                .filter(campaign__status=Campaign.CampaignStatus.SENDING)
                .order_by('created_at')
                .values_list('campaign_id', flat=True)
                .first()
            )
            if campaign_id is None or campaign_id in seen or _expired(deadline):
                break
            seen.add(campaign_id)
            results.append(self.process_campaign(campaign_id, deadline))
        return results

    def process_campaign(self, campaign_id, deadline: Optional[float] = None) -> ProcessResult:
        """Send every pending job of one campaign, stopping early at deadline."""
        result = ProcessResult(campaign_id=str(campaign_id))
        campaign = Campaign.objects.get(pk=campaign_id)
        if campaign.status != Campaign.CampaignStatus.SENDING:
            result.final_status = campaign.status
            return result

        def should_stop() -> bool:
            if _expired(deadline):
                return True
            return not Campaign.objects.filter(
                pk=campaign_id, status=Campaign.CampaignStatus.SENDING
            ).exists()

        transport = self.transport_factory()
        try:
            transport.open()
        except TransportUnavailableError as e:
            logger.error(f"Campaign {campaign_id} halted: {e}")
            self._halt(campaign_id, str(e))
            result.stopped = True
            result.final_status = Campaign.objects.values_list('status', flat=True).get(pk=campaign_id)
            return result

        try:
            while not result.stopped:
                batch = list(
                    QueueJob.objects.pending()
                    .filter(campaign_id=campaign_id)
                    .select_related('delivery', 'delivery__subscriber')
                    .order_by('created_at')[:self.batch_size]
                )
                if not batch:
                    break

                for job in batch:
                    if not self.throttle.wait(should_stop):
                        result.stopped = True
                        break
                    self._dispatch(campaign, job, transport, result)

                result.batches += 1
                logger.info(
                    f"Campaign {campaign_id} batch {result.batches}: "
                    f"{result.sent} sent, {result.failed} failed so far"
                )

                if result.stopped:
                    break
                if QueueJob.objects.pending().filter(campaign_id=campaign_id).exists():
                    if not self.throttle.pause(self.batch_delay_ms / 1000.0, should_stop):
                        result.stopped = True
        finally:
            transport.close()

        result.final_status = self._finalize(campaign_id)
        return result

    def _dispatch(self, campaign: Campaign, job: QueueJob, transport, result: ProcessResult):
        if not QueueJob.objects.claim(job.pk):
            result.skipped += 1
            return

        delivery = job.delivery
        try:
            message = render_newsletter(campaign, delivery, self.codec)
            transport.send(message)
        except (DeliveryError, TemplateError) as e:
            logger.warning(f"Failed to send campaign {campaign.pk} to {delivery.email}: {e}")
            self._record_failure(job, delivery, str(e) or e.__class__.__name__)
            result.failed += 1
            return
        except Exception as e:
            logger.error(f"Unexpected error sending campaign {campaign.pk} to {delivery.email}: {e}",
                         exc_info=True)
            self._record_failure(job, delivery, f"Unexpected error: {e}")
            result.failed += 1
            return

        with transaction.atomic():
            QueueJob.objects.finish(job.pk, QueueJob.Status.COMPLETED)
            DeliveryRecord.objects.mark_sent(job.campaign_id, delivery.subscriber_id)
        result.sent += 1

    def _record_failure(self, job: QueueJob, delivery: DeliveryRecord, reason: str):
        with transaction.atomic():
            QueueJob.objects.finish(job.pk, QueueJob.Status.FAILED, reason)
            DeliveryRecord.objects.mark_failed(job.campaign_id, delivery.subscriber_id, reason)

    def _halt(self, campaign_id, reason: str):
        campaign = Campaign.objects.get(pk=campaign_id)
        try:
            with transaction.atomic():
                campaign.mark_error(reason)
                campaign.save(update_fields=['status', 'error_message', 'completed_at', 'updated_at'])
                QueueJob.objects.discard_pending(campaign_id=campaign_id)
        except (TransitionNotAllowed, ConcurrentTransition):
            campaign.refresh_from_db()
            logger.warning(f"Campaign {campaign_id} could not be halted from status {campaign.status}")

    def _finalize(self, campaign_id) -> str:
        """Close a SENDING campaign that has no outstanding jobs."""
        campaign = Campaign.objects.get(pk=campaign_id)
        if campaign.status != Campaign.CampaignStatus.SENDING:
            return campaign.status
        if QueueJob.objects.filter(campaign_id=campaign_id, status__in=OUTSTANDING_JOB_STATUSES).exists():
            return campaign.status

        attempted = campaign.total_sent + campaign.total_failed
        failure_ratio = campaign.total_failed / attempted if attempted else 0.0

        try:
            with transaction.atomic():
                if failure_ratio > self.failure_ratio_threshold:
                    campaign.mark_error(
                        f"{campaign.total_failed} of {attempted} deliveries failed"
                    )
                    campaign.save(update_fields=['status', 'error_message', 'completed_at', 'updated_at'])
                else:
                    campaign.mark_sent()
                    campaign.save(update_fields=['status', 'sent_at', 'completed_at', 'updated_at'])
        except ConcurrentTransition:
            campaign.refresh_from_db()
            logger.info(f"Campaign {campaign_id} changed to {campaign.status} while finalizing")
            return campaign.status

        if campaign.status == Campaign.CampaignStatus.ERROR:
            logger.error(f"Campaign {campaign_id} finished with errors: {campaign.error_message}")
        else:
            logger.info(
                f"Campaign {campaign_id} sent: {campaign.total_sent} sent, "
                f"{campaign.total_failed} failed"
            )
        return campaign.status

    # Recovery and housekeeping

    def release_stale_jobs(self) -> int:
        """Fail jobs left in processing by a worker that died mid-send."""
        cutoff = timezone.now() - timedelta(seconds=self.stale_job_timeout)
        stale = QueueJob.objects.filter(
            status=QueueJob.Status.PROCESSING,
            claimed_at__lt=cutoff
        ).select_related('delivery')

        released = 0
        for job in stale:
            with transaction.atomic():
                if QueueJob.objects.finish(job.pk, QueueJob.Status.FAILED, 'Worker interrupted'):
                    DeliveryRecord.objects.mark_failed(
                        job.campaign_id, job.delivery.subscriber_id, 'Worker interrupted during send'
                    )
                    released += 1
        if released:
            logger.warning(f"Released {released} stale queue jobs")
        return released

    def finalize_stuck_campaigns(self) -> int:
        """Finalize SENDING campaigns whose queue is already exhausted."""
        stuck = Campaign.objects.filter(
            status=Campaign.CampaignStatus.SENDING
        ).exclude(
            queue_jobs__status__in=OUTSTANDING_JOB_STATUSES
        ).values_list('pk', flat=True)

        finalized = 0
        for campaign_id in list(stuck):
            if self._finalize(campaign_id) != Campaign.CampaignStatus.SENDING:
                finalized += 1
        if finalized:
            logger.info(f"Finalized {finalized} stuck campaigns")
        return finalized


def clear_completed_jobs(older_than_days: Optional[int] = None) -> int:
    """Delete finished queue jobs older than the retention window."""
    if older_than_days is None:
        older_than_days = engine_setting('COMPLETED_JOB_RETENTION_DAYS')
    cutoff = timezone.now() - timedelta(days=older_than_days)

    with transaction.atomic():
        finished = QueueJob.objects.filter(
            status__in=FINISHED_JOB_STATUSES,
            processed_at__lt=cutoff
        )
        per_status = dict(
            finished.order_by().values('status').annotate(n=Count('id')).values_list('status', 'n')
        )
        deleted, _ = finished.delete()
        for status, n in per_status.items():
            QueueCounter.objects.shift(status, None, n)

    logger.info(f"Cleared {deleted} finished queue jobs older than {older_than_days} days")
    return deleted


def unsubscribe_subscriber(token: str, campaign_id=None) -> Subscriber:
    """
    Apply an unsubscribe request.

    Deactivates the subscriber, marks the originating delivery record and
    removes the subscriber from every queue it is still waiting in.
    Raises Subscriber.DoesNotExist for an unknown token.
    """
    subscriber = Subscriber.objects.get(unsubscribe_token=token)
    now = timezone.now()

    with transaction.atomic():
        Subscriber.objects.filter(pk=subscriber.pk).update(is_active=False, updated_at=now)
        Subscriber.objects.filter(pk=subscriber.pk, unsubscribed_at__isnull=True).update(unsubscribed_at=now)

        if campaign_id is not None:
            DeliveryRecord.objects.mark_unsubscribed(campaign_id, subscriber.pk, now)

        waiting = QueueJob.objects.pending().filter(delivery__subscriber_id=subscriber.pk)
        waiting_campaigns = list(waiting.values_list('campaign_id', flat=True))
        discarded = QueueJob.objects.discard_pending(delivery__subscriber_id=subscriber.pk)
        for waiting_campaign_id in waiting_campaigns:
            DeliveryRecord.objects.mark_unsubscribed(waiting_campaign_id, subscriber.pk, now)

    logger.info(f"Subscriber {subscriber.pk} unsubscribed, {discarded} pending jobs removed")
    subscriber.refresh_from_db()
    return subscriber
