"""
Weekly digest job

Sends each owner a short SMS recap of the past reporting week at the
configured local time (Sunday 09:00 by default). A Digest row per
(account, period) makes a second run inside the same hour a no-op.
"""
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reviewpilot.core.config import get_settings
from reviewpilot.core.shutdown import shutdown_requested
from reviewpilot.db.models import Account, Digest, DraftStatus, ReplyDraft, Review, SubscriptionState
from reviewpilot.services.digest_window import WeekWindow, compute_week_window, is_digest_time
from reviewpilot.services.sms_client import SmsDeliveryError

logger = logging.getLogger(__name__)

RESPONDED_STATUSES = (DraftStatus.APPROVED.value, DraftStatus.EDITED.value, DraftStatus.POSTED.value)

THEME_LIMIT = 3
PRAISE_SIGNALS = ("positive_keyword",)
COMPLAINT_SIGNALS = ("negative_keyword", "apology_worthy")


@dataclass
class DigestRunResult:
    checked: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0


def format_digest_sms(stats: Dict) -> str:
    body = (
        f"Week recap: {stats['review_count']} reviews, {stats['avg_rating']:.1f}★ avg "
        f"({stats['positive_count']} positive, {stats['negative_count']} negative). "
        f"Replied to {stats['responded_count']}."
    )
    previous = stats.get("previous_review_count")
    if previous is not None:
        body += f" Last week: {previous} reviews."
    if stats.get("praise_themes"):
        body += f"\nPraised: {', '.join(stats['praise_themes'])}."
    if stats.get("complaint_themes"):
        body += f"\nComplaints: {', '.join(stats['complaint_themes'])}."
    return body + "\nReply HELP anytime."


def top_themes(signal_lists: Iterable[List[str]], prefixes: Tuple[str, ...], limit: int = THEME_LIMIT) -> List[str]:
    """Most frequent keyword signals with the given prefixes, counted once per review"""
    counts = Counter()
    for signals in signal_lists:
        keywords = set()
        for signal in signals or []:
            prefix, _, keyword = signal.partition(":")
            if prefix in prefixes and keyword:
                keywords.add(keyword)
        counts.update(keywords)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0]))
    return [keyword for keyword, _ in ranked[:limit]]


class DigestService:
    """Aggregates weekly review stats and texts them to owners"""

    def __init__(self, db: Session, messaging_engine=None):
        self.db = db
        self.settings = get_settings()
        self._messaging_engine = messaging_engine

    @property
    def messaging_engine(self):
        if self._messaging_engine is None:
            from reviewpilot.services.messaging_service import ApprovalMessagingEngine
            self._messaging_engine = ApprovalMessagingEngine(self.db)
        return self._messaging_engine

    def aggregate(self, account_id: int, window: WeekWindow) -> Dict:
        """Review stats for one account over the window, last week's count and top themes"""
        row = self.db.query(
            func.count(Review.id),
            func.avg(Review.rating),
            func.sum(case((Review.rating >= 4, 1), else_=0)),
            func.sum(case((Review.rating <= 3, 1), else_=0)),
        ).filter(
            Review.account_id == account_id,
            Review.review_date >= window.period_start,
            Review.review_date < window.period_end
        ).one()

        responded = self.db.query(func.count(ReplyDraft.id)).join(Review).filter(
            Review.account_id == account_id,
            Review.review_date >= window.period_start,
            Review.review_date < window.period_end,
            ReplyDraft.status.in_(RESPONDED_STATUSES)
        ).scalar()

        previous = self.db.query(func.count(Review.id)).filter(
            Review.account_id == account_id,
            Review.review_date >= window.prev_start,
            Review.review_date < window.prev_end
        ).scalar()

        signal_rows = self.db.query(Review.rating, Review.sentiment_signals).filter(
            Review.account_id == account_id,
            Review.review_date >= window.period_start,
            Review.review_date < window.period_end
        ).all()

        review_count, avg_rating, positive, negative = row
        return {
            "review_count": review_count or 0,
            "avg_rating": round(float(avg_rating), 2) if avg_rating is not None else 0.0,
            "positive_count": int(positive or 0),
            "negative_count": int(negative or 0),
            "responded_count": responded or 0,
            "previous_review_count": previous or 0,
            "praise_themes": top_themes((s for rating, s in signal_rows if rating >= 4), PRAISE_SIGNALS),
            "complaint_themes": top_themes((s for rating, s in signal_rows if rating <= 3), COMPLAINT_SIGNALS),
        }

    def _candidate_accounts(self) -> List[Account]:
        return self.db.query(Account).filter(
            Account.subscription_state != SubscriptionState.CANCELED.value,
            Account.owner_phone.isnot(None)
        ).order_by(Account.id).all()

    def send_weekly_digests(self, now: Optional[datetime] = None) -> DigestRunResult:
        """
        Send the digest to every account whose local digest hour is now

        Args:
            now: Reference instant, defaults to the current UTC time

        Returns:
            DigestRunResult with counts for this run
        """
        now = now or datetime.now(timezone.utc)
        result = DigestRunResult()

        for account in self._candidate_accounts():
            if shutdown_requested():
                logger.info("Shutdown requested, stopping digest run")
                break

            try:
                due = is_digest_time(account.timezone, now,
                                     weekday=self.settings.digest_weekday, hour=self.settings.digest_hour)
            except ValueError as e:
                logger.error(f"Account {account.id} has an invalid timezone: {e}")
                result.failed += 1
                continue
            if not due:
                continue

            result.checked += 1
            if self._send_one(account, now):
                result.sent += 1
            else:
                result.skipped += 1

        if result.checked:
            logger.info(f"Weekly digests: {result.sent} sent, {result.skipped} skipped, {result.failed} failed")
        return result

    def _send_one(self, account: Account, now: datetime) -> bool:
        window = compute_week_window(account.timezone, now)
        stats = self.aggregate(account.id, window)

        digest = Digest(
            account_id=account.id,
            period_start=window.period_start,
            period_end=window.period_end,
            stats=stats,
            sms_sent=False,
        )
        self.db.add(digest)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(f"Digest for account {account.id} week of {window.period_start.date()} already exists")
            return False

        try:
            sid = self.messaging_engine.send_owner_message(account, format_digest_sms(stats))
        except SmsDeliveryError as e:
            self.db.commit()
            logger.error(f"Digest SMS for account {account.id} failed: {e}")
            return False

        digest.sms_sent = sid is not None
        self.db.commit()
        return digest.sms_sent
