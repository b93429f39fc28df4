from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from core.env import env_int, env_str

CELERY_DEFAULT_QUEUE = env_str("CELERY_DEFAULT_QUEUE", "default") or "default"
CHECKPOINT_CRON_HOUR = env_int("CHECKPOINT_CRON_HOUR", 10, minimum=0)
CHECKPOINT_CRON_MINUTE = env_int("CHECKPOINT_CRON_MINUTE", 30, minimum=0)

app = Celery(
    "change_evidence",
    broker=env_str("CELERY_BROKER_URL", "redis://redis:6379/0"),
    backend=env_str("CELERY_RESULT_BACKEND", "redis://redis:6379/1"),
    include=["jobs.tasks"],
)

app.conf.update(
    task_track_started=True,
    timezone="UTC",
    enable_utc=True,
    task_default_queue=CELERY_DEFAULT_QUEUE,
    task_queues=(Queue(CELERY_DEFAULT_QUEUE),),
    beat_schedule={
        "checkpoints-daily": {
            "task": "checkpoints.run",
            "schedule": crontab(hour=CHECKPOINT_CRON_HOUR % 24, minute=CHECKPOINT_CRON_MINUTE % 60),
        },
    },
)
