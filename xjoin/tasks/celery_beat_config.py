"""
Celery Beat schedule for the level-triggered pipeline resync
"""

CELERY_BEAT_SCHEDULE = {
    "reconcile-all-pipelines": {
        "task": "xjoin.tasks.celery_tasks.reconcile_all_pipelines_task",
        "schedule": 30.0,  # Every 30 seconds
        "options": {
            "expires": 25,  # Task expires after 25 seconds to avoid overlap
        },
    },
}

# Timezone for the scheduler
CELERY_TIMEZONE = "UTC"
