# config/celery.py
import os
from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings')

app = Celery('newsletter_engine')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django app configs.
app.autodiscover_tasks()

app.conf.beat_schedule = {
    'dispatch-scheduled-campaigns-every-minute': {
        'task': 'newsletter.tasks.dispatch_scheduled_campaigns',
        'schedule': crontab(),  # Every minute
    },
    'drain-newsletter-queue': {
        'task': 'newsletter.tasks.process_newsletter_queue',
        'schedule': crontab(minute='*/5'),  # Safety net if a drain was lost
    },
    'clear-completed-queue-jobs': {
        'task': 'newsletter.tasks.clear_completed_jobs',
        'schedule': crontab(minute=0, hour=3),  # Daily at 3 AM
    },
    'rebuild-queue-counters': {
        'task': 'newsletter.tasks.rebuild_queue_counters',
        'schedule': crontab(minute=30, hour=3),
    },
}
