from celery import Celery

from xjoin.config import get_settings
from xjoin.tasks.celery_beat_config import CELERY_BEAT_SCHEDULE, CELERY_TIMEZONE

settings = get_settings()

app = Celery(
    "xjoin",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["xjoin.tasks.celery_tasks"],
)

app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone=CELERY_TIMEZONE,
    enable_utc=True,
    # one reconcile pass at a time per worker slot
    worker_prefetch_multiplier=1,
    task_acks_late=True,
)
app.conf.beat_schedule = CELERY_BEAT_SCHEDULE
