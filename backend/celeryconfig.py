"""
Celery configuration for the policy engine workers.

Two queues: `migration` for long batch runs and `default` for the
periodic sweep and backup purge. Broker and result backend come from
the environment (localhost Redis when unset).
"""

import os

from celery.schedules import crontab

# ═══════════════════════════════════════════════════════════
#  Broker & Result Backend
# ═══════════════════════════════════════════════════════════

broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
result_backend = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")

# ═══════════════════════════════════════════════════════════
#  Serialization — JSON only
# ═══════════════════════════════════════════════════════════

task_serializer = "json"
result_serializer = "json"
accept_content = ["json"]

# ═══════════════════════════════════════════════════════════
#  Timezone
# ═══════════════════════════════════════════════════════════

timezone = "UTC"
enable_utc = True

# ═══════════════════════════════════════════════════════════
#  Task Execution
# ═══════════════════════════════════════════════════════════

# Acknowledge after completion; a redelivered migration resumes from its high-water mark
task_acks_late = True
task_reject_on_worker_lost = True

worker_prefetch_multiplier = 1

# A whole migration run has no overall limit; each batch carries its own timeout
task_soft_time_limit = None
task_time_limit = None

# ═══════════════════════════════════════════════════════════
#  Retry Policy
# ═══════════════════════════════════════════════════════════

task_default_retry_delay = 1
task_max_retries = 3

# ═══════════════════════════════════════════════════════════
#  Result Expiry — auto-clean after 24h
# ═══════════════════════════════════════════════════════════

result_expires = 86400

# ═══════════════════════════════════════════════════════════
#  Worker Settings
# ═══════════════════════════════════════════════════════════

worker_max_tasks_per_child = 200

worker_send_task_events = False
task_send_sent_event = False

# ═══════════════════════════════════════════════════════════
#  Task Routes
# ═══════════════════════════════════════════════════════════
# Run dedicated workers per queue:
#   celery -A app.tasks worker -Q migration   (long-running batch runs)
#   celery -A app.tasks worker -Q default     (sweep, purge)

task_routes = {
    "app.tasks.migration_tasks.*": {"queue": "migration"},
    "app.tasks.expiry_tasks.*": {"queue": "default"},
}

task_default_queue = "default"

# ═══════════════════════════════════════════════════════════
#  Beat Schedule (periodic tasks)
# ═══════════════════════════════════════════════════════════

beat_schedule = {
    "sweep-expired-policies": {
        "task": "app.tasks.expiry_tasks.sweep_expired_policies",
        "schedule": float(os.getenv("EXPIRY_SWEEP_INTERVAL_SECONDS", "3600")),
    },
    "purge-migration-backups": {
        "task": "app.tasks.expiry_tasks.purge_migration_backups",
        "schedule": crontab(hour=3, minute=0),
    },
    "auto-migrate-legacy-policies": {
        "task": "app.tasks.migration_tasks.auto_migrate",
        "schedule": crontab(minute=30),
    },
}
