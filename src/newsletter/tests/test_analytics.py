"""
Tests for campaign stats and the queue status reporter.
"""

from datetime import timedelta

from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from newsletter.analytics import (
    CampaignAnalytics, QueueStatusReporter, calculate_rate, classify_performance
)
from newsletter.models import Campaign, DeliveryRecord, QueueCounter, QueueJob, Subscriber
from newsletter.tests.factories import CampaignFactory, QueueJobFactory


class RateTest(SimpleTestCase):

    def test_zero_total(self):
        self.assertEqual(calculate_rate(0, 0), 0)
        self.assertEqual(calculate_rate(5, 0), 0)

    def test_rounds_half_up(self):
        self.assertEqual(calculate_rate(5, 200), 3)
        self.assertEqual(calculate_rate(1, 8), 13)
        self.assertEqual(calculate_rate(1, 3), 33)
        self.assertEqual(calculate_rate(2, 3), 67)

    def test_classification_thresholds(self):
        self.assertEqual(classify_performance(25), "Excellente")
        self.assertEqual(classify_performance(20), "Excellente")
        self.assertEqual(classify_performance(19), "Bonne")
        self.assertEqual(classify_performance(10), "Bonne")
        self.assertEqual(classify_performance(9), "À améliorer")
        self.assertEqual(classify_performance(0), "À améliorer")


def populate(campaign, sent=0, opened=0, clicked=0, failed=0, pending=0):
    """Bulk-create delivery records in the given engagement buckets."""
    now = timezone.now()
    total = sent + failed + pending
    subscribers = Subscriber.objects.bulk_create([
        Subscriber(email=f"{campaign.pk.hex[:8]}-{n}@example.com", first_name=f"Lecteur{n}")
        for n in range(total)
    ])

    records = []
    for n, subscriber in enumerate(subscribers):
        record = DeliveryRecord(
            campaign=campaign, subscriber=subscriber,
            email=subscriber.email, name=subscriber.first_name
        )
        if n < sent:
            record.status = DeliveryRecord.Status.SENT
            record.sent_at = now
            if n < opened:
                record.status = DeliveryRecord.Status.OPENED
                record.first_opened_at = record.last_opened_at = now - timedelta(minutes=n)
                record.open_count = 1
            if n < clicked:
                record.status = DeliveryRecord.Status.CLICKED
                record.first_clicked_at = record.last_clicked_at = now - timedelta(minutes=n, seconds=30)
                record.click_count = 1
        elif n < sent + failed:
            record.status = DeliveryRecord.Status.FAILED
            record.failed_at = now - timedelta(seconds=n)
            record.failure_reason = f"Recipient refused: {subscriber.email}"
        records.append(record)
    return DeliveryRecord.objects.bulk_create(records)


class CampaignStatsTest(TestCase):

    def setUp(self):
        self.campaign = CampaignFactory(status=Campaign.CampaignStatus.SENT, sent_at=timezone.now())
        self.analytics = CampaignAnalytics()

    def test_rates_relative_to_sent(self):
        populate(self.campaign, sent=200, opened=40, clicked=10, failed=5)

        stats = self.analytics.get_campaign_stats(self.campaign)

        self.assertEqual(stats['stats']['sent'], 200)
        self.assertEqual(stats['stats']['delivered'], 200)
        self.assertEqual(stats['stats']['opened'], 40)
        self.assertEqual(stats['stats']['clicked'], 10)
        self.assertEqual(stats['stats']['failed'], 5)
        self.assertEqual(
            stats['stats']['rates'],
            {'delivery': 100, 'open': 20, 'click': 5, 'failure': 3}
        )
        self.assertEqual(stats['performance'], "Excellente")

    def test_nothing_sent(self):
        populate(self.campaign, pending=3)

        stats = self.analytics.get_campaign_stats(self.campaign)

        self.assertEqual(stats['stats']['sent'], 0)
        self.assertEqual(
            stats['stats']['rates'],
            {'delivery': 0, 'open': 0, 'click': 0, 'failure': 0}
        )
        self.assertEqual(stats['performance'], "À améliorer")
        self.assertEqual(stats['recentActivity'], [])

    def test_campaign_section(self):
        stats = self.analytics.get_campaign_stats(self.campaign)
        self.assertEqual(stats['campaign']['id'], str(self.campaign.pk))
        self.assertEqual(stats['campaign']['title'], self.campaign.title)
        self.assertEqual(stats['campaign']['status'], Campaign.CampaignStatus.SENT)
        self.assertEqual(stats['campaign']['sentAt'], self.campaign.sent_at)

    def test_stored_totals_reported_separately(self):
        Campaign.objects.filter(pk=self.campaign.pk).update(total_sent=7)
        self.campaign.refresh_from_db()

        stats = self.analytics.get_campaign_stats(self.campaign)

        self.assertEqual(stats['stats']['sent'], 0)
        self.assertEqual(stats['stats']['stored']['sent'], 7)

    def test_recent_activity_newest_first(self):
        populate(self.campaign, sent=5, opened=3, clicked=1)

        activity = self.analytics.get_recent_activity(self.campaign)

        self.assertEqual(len(activity), 4)
        timestamps = [event['timestamp'] for event in activity]
        self.assertEqual(timestamps, sorted(timestamps, reverse=True))
        self.assertEqual(activity[0]['action'], 'opened')
        self.assertEqual([e['action'] for e in activity].count('clicked'), 1)
        self.assertEqual(set(activity[0]), {'email', 'name', 'action', 'timestamp'})

    def test_recent_activity_limit(self):
        populate(self.campaign, sent=10, opened=10, clicked=10)

        activity = CampaignAnalytics(recent_activity_limit=5).get_recent_activity(self.campaign)

        self.assertEqual(len(activity), 5)

    def test_errors_list_latest_failures(self):
        populate(self.campaign, sent=2, failed=12)

        errors = self.analytics.get_recent_errors(self.campaign)

        self.assertEqual(len(errors), 10)
        self.assertTrue(errors[0]['reason'].startswith('Recipient refused'))
        self.assertGreaterEqual(errors[0]['failedAt'], errors[-1]['failedAt'])


class QueueStatusReporterTest(TestCase):

    def setUp(self):
        self.reporter = QueueStatusReporter()

    def test_empty_queue(self):
        self.assertEqual(
            self.reporter.get_queue_status(),
            {'pending': 0, 'processing': 0, 'completed': 0, 'failed': 0}
        )

    def test_rebuild_from_jobs(self):
        QueueJobFactory.create_batch(3)
        QueueJobFactory(status=QueueJob.Status.COMPLETED, processed_at=timezone.now())
        QueueCounter.objects.create(status=QueueJob.Status.FAILED, count=42)

        status = self.reporter.rebuild()

        self.assertEqual(status, {'pending': 3, 'processing': 0, 'completed': 1, 'failed': 0})
        self.assertEqual(self.reporter.get_queue_status(), status)

    @override_settings(NEWSLETTER_ENGINE={'BATCH_SIZE': 25, 'SEND_INTERVAL_MS': 200})
    def test_operational_settings(self):
        self.assertEqual(self.reporter.get_operational_settings(), {
            'batchSize': 25,
            'sendIntervalMs': 200,
            'batchDelayMs': 5000,
            'failureRatioThreshold': 0.5,
        })
