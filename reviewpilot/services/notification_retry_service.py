"""
Notification Retry Scheduler

Review alerts that failed to send are tracked as NotificationAttempt rows
and re-sent with exponential backoff until delivered or until the attempt
limit is reached. A permanently failed alert raises an operational alert for
manual follow-up; the review and its draft stay stored either way.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.orm import Session

from reviewpilot.core.config import get_settings
from reviewpilot.core.observability import capture_alert
from reviewpilot.core.shutdown import shutdown_requested
from reviewpilot.db.models import Account, NotificationAttempt, NotificationStatus, ReplyDraft, Review
from reviewpilot.services.sms_client import SmsDeliveryError
from reviewpilot.services.system_metrics import track_notification_retry

logger = logging.getLogger(__name__)


def compute_backoff(attempt: int, base_seconds: Optional[int] = None) -> timedelta:
    """Delay before the next try: base * 2^attempt"""
    if base_seconds is None:
        base_seconds = get_settings().sms_retry_base_seconds
    return timedelta(seconds=base_seconds * (2 ** attempt))


def _set_notification_flag(review: Review, failed: bool) -> None:
    metadata = dict(review.review_metadata or {})
    metadata["notification_failed"] = failed
    review.review_metadata = metadata


@dataclass
class RetryRunResult:
    processed: int = 0
    delivered: int = 0
    rescheduled: int = 0
    permanent_failures: int = 0


class NotificationRetryService:
    """Schedules and re-sends failed review alerts"""

    def __init__(self, db: Session, messaging_engine=None,
                 base_seconds: Optional[int] = None, max_attempts: Optional[int] = None,
                 batch_size: Optional[int] = None):
        settings = get_settings()
        self.db = db
        self._messaging_engine = messaging_engine
        self.base_seconds = base_seconds if base_seconds is not None else settings.sms_retry_base_seconds
        self.max_attempts = max_attempts if max_attempts is not None else settings.sms_retry_max_attempts
        self.batch_size = batch_size or settings.sms_retry_batch_size

    @property
    def messaging_engine(self):
        if self._messaging_engine is None:
            from reviewpilot.services.messaging_service import ApprovalMessagingEngine
            self._messaging_engine = ApprovalMessagingEngine(self.db)
        return self._messaging_engine

    def record_failure(self, review: Review, draft: ReplyDraft, phone: Optional[str],
                       error: SmsDeliveryError, now: Optional[datetime] = None) -> NotificationAttempt:
        """
        Track a failed first alert for a review

        A non-transient error is final straight away; otherwise the first
        retry is scheduled one backoff step out. Commits.
        """
        now = now or datetime.now(timezone.utc)

        attempt = self.db.query(NotificationAttempt).filter(
            NotificationAttempt.draft_id == draft.id
        ).first()
        if attempt is None:
            attempt = NotificationAttempt(
                review_id=review.id,
                draft_id=draft.id,
                phone=phone,
                attempt_count=0,
                status=NotificationStatus.PENDING.value,
            )
            self.db.add(attempt)

        attempt.attempt_count = (attempt.attempt_count or 0) + 1
        attempt.last_error = str(error)
        _set_notification_flag(review, True)

        if not getattr(error, "transient", True) or attempt.attempt_count >= self.max_attempts:
            self._mark_permanent(attempt, review)
        else:
            attempt.status = NotificationStatus.PENDING.value
            attempt.next_retry_at = now + compute_backoff(attempt.attempt_count, self.base_seconds)
            logger.warning(
                f"Alert for review {review.id} failed (attempt {attempt.attempt_count}), "
                f"retrying at {attempt.next_retry_at.isoformat()}"
            )

        self.db.commit()
        return attempt

    def process_due(self, now: Optional[datetime] = None) -> RetryRunResult:
        """
        Re-send every pending alert whose retry time has come

        Args:
            now: Reference time, defaults to the current UTC time

        Returns:
            Counts of what happened in this run
        """
        now = now or datetime.now(timezone.utc)
        result = RetryRunResult()

        due = self.db.query(NotificationAttempt).filter(
            NotificationAttempt.status == NotificationStatus.PENDING.value,
            NotificationAttempt.next_retry_at <= now
        ).order_by(NotificationAttempt.next_retry_at).limit(self.batch_size).all()

        for attempt in due:
            if shutdown_requested():
                logger.info("Shutdown requested, stopping notification retries")
                break

            result.processed += 1
            outcome = self._retry_one(attempt, now)
            if outcome == NotificationStatus.DELIVERED:
                result.delivered += 1
            elif outcome == NotificationStatus.PERMANENT_FAILURE:
                result.permanent_failures += 1
            else:
                result.rescheduled += 1

        if result.processed:
            logger.info(
                f"Notification retries: {result.processed} processed, {result.delivered} delivered, "
                f"{result.rescheduled} rescheduled, {result.permanent_failures} failed permanently"
            )
        return result

    def _retry_one(self, attempt: NotificationAttempt, now: datetime) -> NotificationStatus:
        review = self.db.query(Review).filter(Review.id == attempt.review_id).first()
        draft = self.db.query(ReplyDraft).filter(ReplyDraft.id == attempt.draft_id).first()
        account = self.db.query(Account).filter(Account.id == review.account_id).first() if review else None

        if review is None or draft is None or account is None:
            attempt.last_error = "review, draft or account no longer exists"
            attempt.status = NotificationStatus.PERMANENT_FAILURE.value
            attempt.next_retry_at = None
            self.db.commit()
            track_notification_retry("permanent_failure")
            return NotificationStatus.PERMANENT_FAILURE

        phone = account.owner_phone or attempt.phone
        if not phone or account.sms_opted_out:
            attempt.last_error = "owner has no phone or opted out of SMS"
            self._mark_permanent(attempt, review)
            self.db.commit()
            return NotificationStatus.PERMANENT_FAILURE

        try:
            self.messaging_engine.send_review_alert(review, draft, account, phone)
        except SmsDeliveryError as e:
            attempt.attempt_count += 1
            attempt.last_error = str(e)
            if not e.transient or attempt.attempt_count >= self.max_attempts:
                self._mark_permanent(attempt, review)
                self.db.commit()
                return NotificationStatus.PERMANENT_FAILURE

            attempt.next_retry_at = now + compute_backoff(attempt.attempt_count, self.base_seconds)
            self.db.commit()
            track_notification_retry("rescheduled")
            logger.warning(
                f"Retry {attempt.attempt_count} for review {review.id} failed, next at "
                f"{attempt.next_retry_at.isoformat()}: {e}"
            )
            return NotificationStatus.PENDING

        attempt.status = NotificationStatus.DELIVERED.value
        attempt.next_retry_at = None
        attempt.last_error = None
        _set_notification_flag(review, False)
        self.db.commit()
        track_notification_retry("delivered")
        logger.info(f"Alert for review {review.id} delivered on retry {attempt.attempt_count}")
        return NotificationStatus.DELIVERED

    def _mark_permanent(self, attempt: NotificationAttempt, review: Review) -> None:
        attempt.status = NotificationStatus.PERMANENT_FAILURE.value
        attempt.next_retry_at = None
        track_notification_retry("permanent_failure")
        capture_alert(
            "Review alert could not be delivered",
            level="error",
            account_id=review.account_id,
            review_id=review.id,
            attempts=attempt.attempt_count,
            last_error=attempt.last_error,
        )
