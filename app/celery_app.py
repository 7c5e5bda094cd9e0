"""
GroupLedger - Celery Configuration

Celery configuration for background consolidation runs.
Uses Redis as the message broker and result backend.
"""

from celery import Celery

from app.config import settings


# Create Celery app
celery_app = Celery(
    'groupledger',
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=['app.tasks.consolidation_tasks'],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone
    timezone='UTC',
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=900,  # 15 minutes
    task_soft_time_limit=840,

    # Worker settings
    worker_prefetch_multiplier=1,

    # Result backend settings
    result_expires=86400,  # 24 hours
)


# Task routing
celery_app.conf.task_routes = {
    'app.tasks.consolidation_tasks.*': {'queue': 'consolidation'},
}
