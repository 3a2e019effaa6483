"""
Management command running the long-lived newsletter queue worker.

Alternative to the Celery drain for deployments without a broker:
dispatches due scheduled campaigns and drains the queue in a loop.
"""

import time

from django.core.management.base import BaseCommand

from newsletter.conf import engine_setting
from newsletter.sender import BatchSender, clear_completed_jobs


class Command(BaseCommand):
    help = 'Run the newsletter queue worker (dispatch scheduled campaigns, send queued emails)'

    def add_arguments(self, parser):
        parser.add_argument(
            '--once',
            action='store_true',
            help='Drain the queue once and exit'
        )
        parser.add_argument(
            '--poll',
            type=float,
            default=None,
            help='Seconds to sleep between idle polls'
        )

    def handle(self, *args, **options):
        poll = options['poll'] if options['poll'] is not None else engine_setting('WORKER_POLL_SECONDS')
        sender = BatchSender()

        self.stdout.write(
            f"Newsletter worker started (batch size {sender.batch_size}, "
            f"{sender.send_interval_ms} ms between sends)"
        )

        try:
            while True:
                self._run_cycle(sender)
                if options['once']:
                    break
                time.sleep(poll)
        except KeyboardInterrupt:
            self.stdout.write('Newsletter worker stopped')

    def _run_cycle(self, sender: BatchSender):
        for started in sender.dispatch_due_campaigns():
            self.stdout.write(f"Started scheduled campaign {started.campaign_id} ({started.queued} recipients)")

        for result in sender.process_queue():
            self.stdout.write(self.style.SUCCESS(
                f"Campaign {result.campaign_id}: {result.sent} sent, {result.failed} failed, "
                f"status {result.final_status}"
            ))

        cleared = clear_completed_jobs()
        if cleared:
            self.stdout.write(f"Cleared {cleared} finished queue jobs")
