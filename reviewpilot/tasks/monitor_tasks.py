"""
Review polling tasks

poll_all_accounts runs on the beat schedule and fans out one poll_account
task per eligible account. A per-account lock keeps two cycles for the same
account from overlapping; a second one is skipped.
"""
from typing import Any, Dict

from celery.utils.log import get_task_logger

from reviewpilot.core.locks import LockNotAcquired, account_poll_lock
from reviewpilot.core.shutdown import shutdown_requested
from reviewpilot.db.models import Account
from reviewpilot.services.ingestion_service import (
    UNPOLLED_SUBSCRIPTION_STATES, IngestionCoordinator, get_pollable_accounts,
)
from reviewpilot.tasks.celery_app import celery_app
from reviewpilot.tasks.db_session_manager import get_celery_db_session

logger = get_task_logger(__name__)


@celery_app.task(name="poll_all_accounts")
def poll_all_accounts() -> Dict[str, Any]:
    """Enqueue a poll for every account that is not paused or lapsed"""
    with get_celery_db_session("poll_all_accounts") as db:
        account_ids = [account.id for account in get_pollable_accounts(db)]

    queued = 0
    for account_id in account_ids:
        if shutdown_requested():
            logger.info("Shutdown requested, not enqueuing remaining polls")
            break
        poll_account.delay(account_id)
        queued += 1

    logger.info(f"Queued {queued} account polls")
    return {"eligible": len(account_ids), "queued": queued}


@celery_app.task(name="poll_account")
def poll_account(account_id: int) -> Dict[str, Any]:
    """
    Run one ingestion cycle for one account

    Returns:
        Poll counts, or a skipped marker when another cycle holds the lock
    """
    try:
        with account_poll_lock(account_id):
            with get_celery_db_session("poll_account") as db:
                account = db.query(Account).filter(Account.id == account_id).first()
                if account is None:
                    logger.warning(f"Account {account_id} no longer exists")
                    return {"account_id": account_id, "skipped": "missing"}

                if account.monitoring_paused or account.subscription_state in UNPOLLED_SUBSCRIPTION_STATES:
                    logger.info(f"Account {account_id} is not eligible for polling")
                    return {"account_id": account_id, "skipped": "ineligible"}

                result = IngestionCoordinator(db).poll_account(account)
                return result.to_dict()

    except LockNotAcquired:
        logger.info(f"Poll for account {account_id} already in progress, skipping")
        return {"account_id": account_id, "skipped": "locked"}
