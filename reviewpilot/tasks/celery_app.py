from celery import Celery
from celery.signals import worker_init, worker_process_init, worker_shutting_down

from reviewpilot.core.config import get_settings
from reviewpilot.core.logging import setup_worker_logging
from reviewpilot.core.observability import get_observability_manager
from reviewpilot.core.shutdown import request_shutdown
from reviewpilot.db.database import init_db

settings = get_settings()

celery_app = Celery(
    "reviewpilot",
    broker=settings.get_celery_broker_url(),
    backend=settings.get_celery_result_backend(),
    include=[
        "reviewpilot.tasks.monitor_tasks",  # Review polling
        "reviewpilot.tasks.notification_tasks",  # Alert retries and reply posting
        "reviewpilot.tasks.digest_tasks",  # Weekly digests
    ]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    result_expires=1800,  # 30 minutes
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,  # 8 minutes

    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=200,

    # Acknowledge after completion so a lost worker's task is redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    broker_transport_options={
        'visibility_timeout': 3600,
    },

    task_routes={
        'poll_all_accounts': {'queue': 'polling'},
        'poll_account': {'queue': 'polling'},
        'retry_failed_notifications': {'queue': 'notifications'},
        'post_approved_reply': {'queue': 'notifications'},
        'post_pending_replies': {'queue': 'notifications'},
        'send_weekly_digests': {'queue': 'digests'},
    },
    task_default_queue='default',
    task_create_missing_queues=True,
)

celery_app.conf.beat_schedule = {
    # Fan out one poll task per eligible account
    'poll-all-accounts': {
        'task': 'poll_all_accounts',
        'schedule': float(settings.poll_interval_seconds),
        'options': {'queue': 'polling', 'expires': float(settings.poll_interval_seconds)},
    },

    # Re-send failed review alerts whose backoff has elapsed
    'retry-failed-notifications': {
        'task': 'retry_failed_notifications',
        'schedule': 60.0,
        'options': {'queue': 'notifications', 'expires': 60.0},
    },

    # Hourly sweep; each account's local Sunday 09:00 hour sends
    'send-weekly-digests': {
        'task': 'send_weekly_digests',
        'schedule': 60.0 * 60.0,
        'options': {'queue': 'digests', 'expires': 60.0 * 30},
    },

    # Approved replies whose posting task was lost
    'post-pending-replies': {
        'task': 'post_pending_replies',
        'schedule': 60.0 * 10,
        'options': {'queue': 'notifications', 'expires': 60.0 * 10},
    },
}


@worker_init.connect
def init_worker(**kwargs):
    # Once in the parent process, before the pool forks
    if get_settings().auto_create_tables:
        init_db()


@worker_process_init.connect
def init_worker_process(**kwargs):
    setup_worker_logging()
    get_observability_manager().initialize_sentry()


@worker_shutting_down.connect
def on_worker_shutting_down(sig=None, how=None, exitcode=None, **kwargs):
    # Warm shutdown: loops stop between items, the current item completes
    request_shutdown()
