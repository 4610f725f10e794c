"""
GST Invoice Admin - Celery Configuration

Celery configuration for background task processing.
Uses Redis as the message broker and result backend.
"""

from celery import Celery
from celery.schedules import crontab

from app.config import settings


# Get Redis URL from settings or use default
redis_url = getattr(settings, 'redis_url', 'redis://localhost:6379/0')

# Create Celery app
celery_app = Celery(
    'gst_invoice_admin',
    broker=redis_url,
    backend=redis_url,
    include=['app.tasks.einvoice_tasks'],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone
    timezone='Asia/Kolkata',
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=600,  # 10 minutes
    task_soft_time_limit=540,

    # One sweep at a time per worker; the IRP quota is shared
    worker_prefetch_multiplier=1,
    worker_concurrency=2,

    # Result backend settings
    result_expires=86400,  # 24 hours

    # Beat schedule for periodic tasks
    beat_schedule={
        # Settle stuck submissions, retry transient failures, auto-submit
        'reconcile-einvoices': {
            'task': 'app.tasks.einvoice_tasks.reconcile_einvoices_task',
            'schedule': crontab(minute='*/15'),
        },
    },
)


celery_app.conf.task_routes = {
    'app.tasks.einvoice_tasks.*': {'queue': 'einvoice'},
}
