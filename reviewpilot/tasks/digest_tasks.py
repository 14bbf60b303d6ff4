"""
Weekly digest task
"""
from typing import Any, Dict

from celery.utils.log import get_task_logger

from reviewpilot.services.digest_service import DigestService
from reviewpilot.tasks.celery_app import celery_app
from reviewpilot.tasks.db_session_manager import get_celery_db_session

logger = get_task_logger(__name__)


@celery_app.task(name="send_weekly_digests")
def send_weekly_digests() -> Dict[str, Any]:
    """Send digests to accounts whose local digest hour is now"""
    with get_celery_db_session("send_weekly_digests") as db:
        result = DigestService(db).send_weekly_digests()

    return {"checked": result.checked, "sent": result.sent, "skipped": result.skipped, "failed": result.failed}
