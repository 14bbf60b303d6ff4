"""
Notification and reply posting tasks
"""
from typing import Any, Dict

from celery.utils.log import get_task_logger

from reviewpilot.core.locks import LockNotAcquired, notification_retry_lock
from reviewpilot.core.shutdown import shutdown_requested
from reviewpilot.services.notification_retry_service import NotificationRetryService
from reviewpilot.services.response_poster import find_unposted_drafts, publish_approved_draft
from reviewpilot.tasks.celery_app import celery_app
from reviewpilot.tasks.db_session_manager import get_celery_db_session

logger = get_task_logger(__name__)


@celery_app.task(name="retry_failed_notifications")
def retry_failed_notifications() -> Dict[str, Any]:
    """Re-send review alerts whose retry time has come"""
    try:
        with notification_retry_lock():
            with get_celery_db_session("retry_failed_notifications") as db:
                result = NotificationRetryService(db).process_due()
    except LockNotAcquired:
        logger.info("Notification retry run already in progress, skipping")
        return {"skipped": "locked"}

    return {
        "processed": result.processed,
        "delivered": result.delivered,
        "rescheduled": result.rescheduled,
        "permanent_failures": result.permanent_failures,
    }


@celery_app.task(name="post_approved_reply")
def post_approved_reply(draft_id: int) -> Dict[str, Any]:
    """Publish one approved draft to its platform"""
    with get_celery_db_session("post_approved_reply") as db:
        result = publish_approved_draft(db, draft_id)

    if result is None:
        return {"draft_id": draft_id, "posted": False, "skipped": True}
    return {"draft_id": draft_id, "posted": result.success, "error": result.error}


@celery_app.task(name="post_pending_replies")
def post_pending_replies() -> Dict[str, Any]:
    """Sweep approved drafts that were never posted"""
    with get_celery_db_session("post_pending_replies") as db:
        draft_ids = find_unposted_drafts(db)

    queued = 0
    for draft_id in draft_ids:
        if shutdown_requested():
            break
        post_approved_reply.delay(draft_id)
        queued += 1

    if queued:
        logger.info(f"Queued {queued} approved replies for posting")
    return {"queued": queued}
