"""
Celery application for the policy service.

Two queues (see ``celeryconfig``): ``migration`` for batch runs and
``default`` for the expiry sweep, backup purge and auto-migration beat.
"""

from celery import Celery
from celery.signals import worker_process_init

from app.core.logging import setup_logging

celery_app = Celery("policies")
celery_app.config_from_object("celeryconfig")

celery_app.autodiscover_tasks([
    "app.tasks.expiry_tasks",
    "app.tasks.migration_tasks",
])


@worker_process_init.connect
def configure_worker_logging(**kwargs) -> None:
    setup_logging()
