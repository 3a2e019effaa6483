"""
Newsletter models.

Campaigns, subscribers, per-recipient delivery records and the dispatch
queue. Counters on Campaign and QueueCounter are only ever changed with
atomic F() updates, and tracking facts are set with conditional UPDATEs
so concurrent requests cannot double count.
"""

import secrets
from datetime import datetime
from typing import Optional

from django.db import models, transaction
from django.db.models import Case, F, Value, When
from django.utils import timezone
from django_fsm import ConcurrentTransitionMixin, FSMField, transition

from .base_models import TimestampedModel, UUIDModel


def generate_unsubscribe_token() -> str:
    return secrets.token_urlsafe(32)


class Subscriber(UUIDModel, TimestampedModel):
    """
    Newsletter subscriber.

    Managed by the directory application; the engine only reads it and
    applies unsubscribe requests.
    """

    email = models.EmailField(unique=True)
    first_name = models.CharField(max_length=100, blank=True)
    last_name = models.CharField(max_length=100, blank=True)
    is_active = models.BooleanField(default=True)
    is_verified = models.BooleanField(default=True)
    unsubscribe_token = models.CharField(
        max_length=64,
        unique=True,
        default=generate_unsubscribe_token,
        editable=False
    )
    unsubscribed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'newsletter_subscribers'
        ordering = ['email']
        indexes = [
            models.Index(fields=['is_active', 'is_verified'], name='nl_sub_active_verified_idx'),
        ]

    def __str__(self):
        return self.email

    @property
    def display_name(self) -> str:
        return self.first_name or self.email


class CampaignQuerySet(models.QuerySet):

    def increment_totals(self, campaign_id, **deltas) -> int:
        """Atomically add to the denormalized total_* counters."""
        if not deltas:
            return 0
        return self.filter(pk=campaign_id).update(
            **{name: F(name) + delta for name, delta in deltas.items()}
        )

    def due(self, now: Optional[datetime] = None):
        """Scheduled campaigns whose send time has passed."""
        now = now or timezone.now()
        return self.filter(
            status=Campaign.CampaignStatus.SCHEDULED,
            scheduled_at__lte=now
        )


class Campaign(ConcurrentTransitionMixin, UUIDModel, TimestampedModel):
    """
    One bulk send of a newsletter.

    Status moves forward only. CANCELLED and ERROR are terminal, SENT is
    terminal for dispatch purposes.
    """

    class CampaignStatus(models.TextChoices):
        DRAFT = 'DRAFT', 'Draft'
        SCHEDULED = 'SCHEDULED', 'Scheduled'
        SENDING = 'SENDING', 'Sending'
        SENT = 'SENT', 'Sent'
        CANCELLED = 'CANCELLED', 'Cancelled'
        ERROR = 'ERROR', 'Error'

    title = models.CharField(max_length=255)
    subject = models.CharField(max_length=255)
    content = models.TextField(help_text="HTML body, may contain {{ first_name }} style placeholders")

    status = FSMField(
        max_length=20,
        choices=CampaignStatus.choices,
        default=CampaignStatus.DRAFT
    )
    scheduled_at = models.DateTimeField(null=True, blank=True)
    started_at = models.DateTimeField(null=True, blank=True)
    sent_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    error_message = models.TextField(blank=True)

    # Denormalized totals, see recalculate_totals()
    total_recipients = models.PositiveIntegerField(default=0)
    total_sent = models.PositiveIntegerField(default=0)
    total_opened = models.PositiveIntegerField(default=0)
    total_clicked = models.PositiveIntegerField(default=0)
    total_failed = models.PositiveIntegerField(default=0)
    total_unsubscribed = models.PositiveIntegerField(default=0)

    objects = CampaignQuerySet.as_manager()

    class Meta:
        db_table = 'newsletter_campaigns'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'scheduled_at'], name='nl_campaign_status_sched_idx'),
        ]

    def __str__(self):
        return f"{self.title} ({self.status})"

    @property
    def is_due(self) -> bool:
        return self.scheduled_at is None or self.scheduled_at <= timezone.now()

    @property
    def is_terminal(self) -> bool:
        return self.status in [
            self.CampaignStatus.SENT,
            self.CampaignStatus.CANCELLED,
            self.CampaignStatus.ERROR
        ]

    # FSM transitions
    @transition(field=status, source=CampaignStatus.DRAFT, target=CampaignStatus.SCHEDULED)
    def schedule(self, when: datetime):
        """Schedule the campaign for later dispatch"""
        self.scheduled_at = when

    @transition(
        field=status,
        source=[CampaignStatus.DRAFT, CampaignStatus.SCHEDULED],
        target=CampaignStatus.SENDING
    )
    def start_sending(self):
        """Begin dispatching to the enqueued recipients"""
        self.started_at = timezone.now()

    @transition(field=status, source=CampaignStatus.SENDING, target=CampaignStatus.SENT)
    def mark_sent(self):
        now = timezone.now()
        self.sent_at = now
        self.completed_at = now

    @transition(
        field=status,
        source=[CampaignStatus.SCHEDULED, CampaignStatus.SENDING],
        target=CampaignStatus.ERROR
    )
    def mark_error(self, reason: str = ''):
        self.error_message = reason
        self.completed_at = timezone.now()

    @transition(
        field=status,
        source=[CampaignStatus.SCHEDULED, CampaignStatus.SENDING],
        target=CampaignStatus.CANCELLED
    )
    def cancel(self):
        self.completed_at = timezone.now()

    def recalculate_totals(self):
        """Recompute the total_* counters from the delivery records."""
        deliveries = self.deliveries.all()
        totals = {
            'total_recipients': deliveries.count(),
            'total_sent': deliveries.filter(sent_at__isnull=False).count(),
            'total_opened': deliveries.filter(sent_at__isnull=False, first_opened_at__isnull=False).count(),
            'total_clicked': deliveries.filter(sent_at__isnull=False, first_clicked_at__isnull=False).count(),
            'total_failed': deliveries.filter(failed_at__isnull=False).count(),
            'total_unsubscribed': deliveries.filter(unsubscribed_at__isnull=False).count(),
        }
        Campaign.objects.filter(pk=self.pk).update(**totals)
        for name, value in totals.items():
            setattr(self, name, value)
        return totals


class TrackingOutcome:
    """Result of applying a tracking event to a delivery record."""

    FIRST = 'first'
    REPEAT = 'repeat'
    IGNORED = 'ignored'


class DeliveryRecordQuerySet(models.QuerySet):
    """
    Atomic state changes for delivery records.

    Every change is a conditional UPDATE keyed by (campaign, subscriber).
    A first-time fact bumps the matching campaign total in the same
    transaction, so the totals never drift from the records.
    """

    def for_recipient(self, campaign_id, subscriber_id):
        return self.filter(campaign_id=campaign_id, subscriber_id=subscriber_id)

    def mark_sent(self, campaign_id, subscriber_id, when: Optional[datetime] = None) -> bool:
        when = when or timezone.now()
        with transaction.atomic():
            updated = self.for_recipient(campaign_id, subscriber_id).filter(
                sent_at__isnull=True,
                failed_at__isnull=True
            ).update(
                sent_at=when,
                status=Case(
                    When(status=DeliveryRecord.Status.PENDING, then=Value(DeliveryRecord.Status.SENT)),
                    default=F('status')
                ),
                updated_at=when
            )
            if updated:
                Campaign.objects.increment_totals(campaign_id, total_sent=1)
        return bool(updated)

    def mark_failed(self, campaign_id, subscriber_id, reason: str,
                    when: Optional[datetime] = None) -> bool:
        when = when or timezone.now()
        with transaction.atomic():
            updated = self.for_recipient(campaign_id, subscriber_id).filter(
                sent_at__isnull=True,
                failed_at__isnull=True
            ).update(
                failed_at=when,
                failure_reason=(reason or 'Unknown error')[:1000],
                status=Case(
                    When(status=DeliveryRecord.Status.PENDING, then=Value(DeliveryRecord.Status.FAILED)),
                    default=F('status')
                ),
                updated_at=when
            )
            if updated:
                Campaign.objects.increment_totals(campaign_id, total_failed=1)
        return bool(updated)

    def record_open(self, campaign_id, subscriber_id, when: Optional[datetime] = None) -> str:
        """
        Register a tracking pixel fetch.

        Only the request that moves first_opened_at from null counts the
        open on the campaign. Records that were never sent are left alone.
        """
        when = when or timezone.now()
        sent = self.for_recipient(campaign_id, subscriber_id).filter(sent_at__isnull=False)
        with transaction.atomic():
            first = sent.filter(first_opened_at__isnull=True).update(
                first_opened_at=when,
                last_opened_at=when,
                open_count=F('open_count') + 1,
                status=Case(
                    When(status=DeliveryRecord.Status.SENT, then=Value(DeliveryRecord.Status.OPENED)),
                    default=F('status')
                ),
                updated_at=when
            )
            if first:
                Campaign.objects.increment_totals(campaign_id, total_opened=1)
                return TrackingOutcome.FIRST

            repeat = sent.update(
                last_opened_at=when,
                open_count=F('open_count') + 1,
                updated_at=when
            )
        return TrackingOutcome.REPEAT if repeat else TrackingOutcome.IGNORED

    def record_click(self, campaign_id, subscriber_id, url: str,
                     when: Optional[datetime] = None) -> str:
        """
        Register a tracked link click.

        A first click also counts as the first open when the pixel was
        never fetched (images blocked by the mail client).
        """
        when = when or timezone.now()
        sent = self.for_recipient(campaign_id, subscriber_id).filter(sent_at__isnull=False)
        url = (url or '')[:2048]
        with transaction.atomic():
            first = sent.filter(first_clicked_at__isnull=True).update(
                first_clicked_at=when,
                last_clicked_at=when,
                click_count=F('click_count') + 1,
                last_clicked_url=url,
                status=Case(
                    When(
                        status__in=[DeliveryRecord.Status.SENT, DeliveryRecord.Status.OPENED],
                        then=Value(DeliveryRecord.Status.CLICKED)
                    ),
                    default=F('status')
                ),
                updated_at=when
            )
            if not first:
                repeat = sent.update(
                    last_clicked_at=when,
                    click_count=F('click_count') + 1,
                    last_clicked_url=url,
                    updated_at=when
                )
                return TrackingOutcome.REPEAT if repeat else TrackingOutcome.IGNORED

            deltas = {'total_clicked': 1}
            implied_open = sent.filter(first_opened_at__isnull=True).update(
                first_opened_at=when,
                last_opened_at=when
            )
            if implied_open:
                deltas['total_opened'] = 1
            Campaign.objects.increment_totals(campaign_id, **deltas)
        return TrackingOutcome.FIRST

    def mark_unsubscribed(self, campaign_id, subscriber_id, when: Optional[datetime] = None) -> bool:
        when = when or timezone.now()
        with transaction.atomic():
            updated = self.for_recipient(campaign_id, subscriber_id).filter(
                unsubscribed_at__isnull=True
            ).update(
                unsubscribed_at=when,
                status=DeliveryRecord.Status.UNSUBSCRIBED,
                updated_at=when
            )
            if updated:
                Campaign.objects.increment_totals(campaign_id, total_unsubscribed=1)
        return bool(updated)


class DeliveryRecord(UUIDModel, TimestampedModel):
    """
    Outcome of one campaign for one recipient.

    status is the most advanced label. The facts behind it are layered:
    sent_at, first_opened_at and first_clicked_at are independent and a
    record can hold all three at once.
    """

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        SENT = 'sent', 'Sent'
        OPENED = 'opened', 'Opened'
        CLICKED = 'clicked', 'Clicked'
        FAILED = 'failed', 'Failed'
        UNSUBSCRIBED = 'unsubscribed', 'Unsubscribed'

    campaign = models.ForeignKey(Campaign, on_delete=models.CASCADE, related_name='deliveries')
    subscriber = models.ForeignKey(Subscriber, on_delete=models.CASCADE, related_name='deliveries')

    # Recipient snapshot at enqueue time
    email = models.EmailField()
    name = models.CharField(max_length=200, blank=True)

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)

    sent_at = models.DateTimeField(null=True, blank=True)

    first_opened_at = models.DateTimeField(null=True, blank=True)
    last_opened_at = models.DateTimeField(null=True, blank=True)
    open_count = models.PositiveIntegerField(default=0)

    first_clicked_at = models.DateTimeField(null=True, blank=True)
    last_clicked_at = models.DateTimeField(null=True, blank=True)
    click_count = models.PositiveIntegerField(default=0)
    last_clicked_url = models.TextField(blank=True)

    failed_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.TextField(blank=True)

    unsubscribed_at = models.DateTimeField(null=True, blank=True)

    objects = DeliveryRecordQuerySet.as_manager()

    class Meta:
        db_table = 'newsletter_delivery_records'
        ordering = ['-created_at']
        unique_together = [['campaign', 'subscriber']]
        indexes = [
            models.Index(fields=['campaign', 'status'], name='nl_delivery_camp_status_idx'),
            models.Index(fields=['campaign', 'first_opened_at'], name='nl_delivery_camp_opened_idx'),
            models.Index(fields=['campaign', 'first_clicked_at'], name='nl_delivery_camp_clicked_idx'),
        ]

    def __str__(self):
        return f"{self.email} - {self.status}"


class QueueCounterManager(models.Manager):

    def _adjust(self, status: str, delta: int):
        if not self.filter(status=status).update(count=F('count') + delta):
            self.get_or_create(status=status)
            self.filter(status=status).update(count=F('count') + delta)

    def shift(self, from_status: Optional[str], to_status: Optional[str], n: int = 1):
        """
        Move n jobs between status counters.

        Either side may be None for jobs entering or leaving the queue.
        Call inside the transaction that changes the jobs.
        """
        if n <= 0:
            return
        if from_status:
            self._adjust(from_status, -n)
        if to_status:
            self._adjust(to_status, n)

    def snapshot(self):
        counts = {status: 0 for status in QueueJob.Status.values}
        for status, count in self.values_list('status', 'count'):
            if status in counts:
                counts[status] = max(0, count)
        return counts


class QueueCounter(models.Model):
    """Running number of queue jobs per status."""

    status = models.CharField(max_length=20, primary_key=True)
    count = models.BigIntegerField(default=0)

    objects = QueueCounterManager()

    class Meta:
        db_table = 'newsletter_queue_counters'

    def __str__(self):
        return f"{self.status}: {self.count}"


class QueueJobQuerySet(models.QuerySet):

    def pending(self):
        return self.filter(status=QueueJob.Status.PENDING)

    def claim(self, job_id) -> bool:
        """Move one job pending -> processing if nobody else has."""
        now = timezone.now()
        with transaction.atomic():
            claimed = self.filter(pk=job_id, status=QueueJob.Status.PENDING).update(
                status=QueueJob.Status.PROCESSING,
                claimed_at=now,
                attempts=F('attempts') + 1,
                updated_at=now
            )
            if claimed:
                QueueCounter.objects.shift(QueueJob.Status.PENDING, QueueJob.Status.PROCESSING)
        return bool(claimed)

    def finish(self, job_id, status: str, error: str = '') -> bool:
        """Move one claimed job to completed or failed."""
        now = timezone.now()
        with transaction.atomic():
            finished = self.filter(pk=job_id, status=QueueJob.Status.PROCESSING).update(
                status=status,
                processed_at=now,
                error=error[:1000],
                updated_at=now
            )
            if finished:
                QueueCounter.objects.shift(QueueJob.Status.PROCESSING, status)
        return bool(finished)

    def discard_pending(self, **filters) -> int:
        """Delete pending jobs matching filters. Returns how many went."""
        with transaction.atomic():
            deleted, _ = self.filter(status=QueueJob.Status.PENDING, **filters).delete()
            QueueCounter.objects.shift(QueueJob.Status.PENDING, None, deleted)
        return deleted


class QueueJob(UUIDModel, TimestampedModel):
    """
    One dispatch attempt waiting for the batch sender.

    Pending jobs are deleted when their campaign is cancelled or halted.
    Finished jobs stay until clear_completed_jobs removes them.
    """

    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        PROCESSING = 'processing', 'Processing'
        COMPLETED = 'completed', 'Completed'
        FAILED = 'failed', 'Failed'

    campaign = models.ForeignKey(Campaign, on_delete=models.CASCADE, related_name='queue_jobs')
    delivery = models.OneToOneField(DeliveryRecord, on_delete=models.CASCADE, related_name='queue_job')

    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    attempts = models.PositiveSmallIntegerField(default=0)
    claimed_at = models.DateTimeField(null=True, blank=True)
    processed_at = models.DateTimeField(null=True, blank=True)
    error = models.TextField(blank=True)

    objects = QueueJobQuerySet.as_manager()

    class Meta:
        db_table = 'newsletter_queue_jobs'
        ordering = ['created_at']
        indexes = [
            models.Index(fields=['status', 'created_at'], name='nl_job_status_created_idx'),
            models.Index(fields=['campaign', 'status'], name='nl_job_campaign_status_idx'),
        ]

    def __str__(self):
        return f"{self.delivery_id} - {self.status}"
