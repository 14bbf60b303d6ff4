"""
Review Ingestion Coordinator

One poll cycle for one account:
1. For each active platform connection, fetch reviews newer than the
   latest stored review for that account and platform
2. Skip reviews that are already stored
3. Classify, draft a reply, and store review and draft together
4. After commit, alert the owner by SMS; failed alerts go to the retry
   scheduler and never undo the stored review
5. If the new reviews complete a crisis pattern, send one urgent alert

A failure on one platform or one review never stops the rest of the cycle.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from reviewpilot.core.shutdown import shutdown_requested
from reviewpilot.db.models import (
    Account, AuthStatus, DraftStatus, PlatformConnection, ReplyDraft, Review, SubscriptionState,
)
from reviewpilot.services.reply_generator import (
    GeneratedReply, ReplyGenerationError, ReplyGenerator, ReplyRequest, TemplateReplyGenerator,
    get_reply_generator,
)
from reviewpilot.services.review_sources import (
    RawReview, ReviewSource, ReviewSourceError, SourceAuthorizationError, SourceTransientError,
    get_review_source,
)
from reviewpilot.services.sentiment_classifier import classify_sentiment
from reviewpilot.services.sms_client import SmsDeliveryError
from reviewpilot.services.system_metrics import (
    POLL_CYCLE_DURATION, track_review_duplicate, track_review_ingested, track_source_error,
)

logger = logging.getLogger(__name__)

# Billing states that stop polling in addition to an explicit pause
UNPOLLED_SUBSCRIPTION_STATES = (SubscriptionState.CANCELED.value, SubscriptionState.PAST_DUE.value)


@dataclass
class PollResult:
    account_id: int
    fetched: int = 0
    new: int = 0
    duplicates: int = 0
    errors: int = 0
    alerts_sent: int = 0
    alerts_failed: int = 0
    crisis_alerted: bool = False
    new_review_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "fetched": self.fetched,
            "new": self.new,
            "duplicates": self.duplicates,
            "errors": self.errors,
            "alerts_sent": self.alerts_sent,
            "alerts_failed": self.alerts_failed,
            "crisis_alerted": self.crisis_alerted,
        }


def get_pollable_accounts(db: Session) -> List[Account]:
    """Accounts due for polling: not paused and not canceled or past due"""
    return db.query(Account).filter(
        Account.monitoring_paused.is_(False),
        Account.subscription_state.notin_(UNPOLLED_SUBSCRIPTION_STATES)
    ).order_by(Account.id).all()


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class IngestionCoordinator:
    """Fetch, dedupe, classify, draft, persist and notify for one account"""

    def __init__(self, db: Session,
                 source_factory: Callable[[PlatformConnection], ReviewSource] = get_review_source,
                 reply_generator: Optional[ReplyGenerator] = None,
                 fallback_generator: Optional[ReplyGenerator] = None,
                 messaging_engine=None, retry_service=None, crisis_monitor=None):
        self.db = db
        self.source_factory = source_factory
        self._reply_generator = reply_generator
        self.fallback_generator = fallback_generator or TemplateReplyGenerator()
        self._messaging_engine = messaging_engine
        self._retry_service = retry_service
        self._crisis_monitor = crisis_monitor

    @property
    def reply_generator(self) -> ReplyGenerator:
        if self._reply_generator is None:
            self._reply_generator = get_reply_generator()
        return self._reply_generator

    @property
    def messaging_engine(self):
        if self._messaging_engine is None:
            from reviewpilot.services.messaging_service import ApprovalMessagingEngine
            self._messaging_engine = ApprovalMessagingEngine(self.db)
        return self._messaging_engine

    @property
    def retry_service(self):
        if self._retry_service is None:
            from reviewpilot.services.notification_retry_service import NotificationRetryService
            self._retry_service = NotificationRetryService(self.db, messaging_engine=self.messaging_engine)
        return self._retry_service

    @property
    def crisis_monitor(self):
        if self._crisis_monitor is None:
            from reviewpilot.services.crisis_detector import CrisisMonitor
            self._crisis_monitor = CrisisMonitor(self.db, messaging_engine=self.messaging_engine)
        return self._crisis_monitor

    def poll_account(self, account: Account) -> PollResult:
        """
        Run one ingestion cycle for an account

        Args:
            account: Account to poll. Paused accounts are skipped without
                any fetch.

        Returns:
            PollResult with per-cycle counts
        """
        result = PollResult(account_id=account.id)

        if account.monitoring_paused:
            logger.info(f"Account {account.id} is paused, skipping poll")
            return result

        started = time.monotonic()
        connections = self.db.query(PlatformConnection).filter(
            PlatformConnection.account_id == account.id
        ).order_by(PlatformConnection.id).all()

        for connection in connections:
            if shutdown_requested():
                logger.info(f"Shutdown requested, stopping poll of account {account.id}")
                break
            if connection.auth_status != AuthStatus.ACTIVE.value:
                logger.info(
                    f"Skipping {connection.platform} for account {account.id}: {connection.auth_status}"
                )
                continue
            self._poll_connection(account, connection, result)

        if result.new_review_ids:
            self._check_crisis(account, result)

        POLL_CYCLE_DURATION.observe(time.monotonic() - started)
        logger.info(
            f"Poll for account {account.id}: fetched={result.fetched} new={result.new} "
            f"duplicates={result.duplicates} errors={result.errors}"
        )
        return result

    def _since_cursor(self, account_id: int, platform: str) -> Optional[datetime]:
        latest = self.db.query(func.max(Review.review_date)).filter(
            Review.account_id == account_id,
            Review.platform == platform
        ).scalar()
        return _as_utc(latest)

    def _poll_connection(self, account: Account, connection: PlatformConnection, result: PollResult) -> None:
        platform = connection.platform
        since = self._since_cursor(account.id, platform)

        source = None
        try:
            source = self.source_factory(connection)
            raw_reviews = source.fetch_reviews(connection.location_id, since)
        except SourceAuthorizationError as e:
            logger.error(f"{platform} credentials rejected for account {account.id}: {e}")
            track_source_error(platform, "authorization")
            connection.auth_status = AuthStatus.NEEDS_REAUTH.value
            connection.last_error = str(e)
            self.db.commit()
            result.errors += 1
            return
        except SourceTransientError as e:
            logger.warning(f"{platform} fetch failed for account {account.id}, retrying next cycle: {e}")
            track_source_error(platform, "transient")
            result.errors += 1
            return
        except ReviewSourceError as e:
            logger.error(f"{platform} fetch error for account {account.id}: {e}")
            track_source_error(platform, "other")
            connection.last_error = str(e)
            self.db.commit()
            result.errors += 1
            return
        except Exception as e:
            # Adapter bug or unexpected payload; the other platforms still run
            logger.exception(f"Unexpected {platform} adapter failure for account {account.id}: {e}")
            track_source_error(platform, "unexpected")
            connection.last_error = f"{type(e).__name__}: {e}"
            self.db.commit()
            result.errors += 1
            return
        finally:
            if source is not None:
                source.close()

        connection.last_polled_at = datetime.now(timezone.utc)
        connection.last_error = None
        self.db.commit()

        result.fetched += len(raw_reviews)
        for raw in raw_reviews:
            if shutdown_requested():
                logger.info(f"Shutdown requested, leaving remaining {platform} reviews for next cycle")
                break
            self._ingest_one(account, raw, result)

    def _exists(self, raw: RawReview) -> bool:
        return self.db.query(Review.id).filter(
            Review.platform == raw.platform,
            Review.platform_review_id == raw.platform_review_id
        ).first() is not None

    def _draft_reply(self, account: Account, raw: RawReview, sentiment) -> GeneratedReply:
        request = ReplyRequest(
            platform_review_id=raw.platform_review_id,
            author=raw.author,
            rating=raw.rating,
            text=raw.text or "",
            sentiment=sentiment,
            restaurant_name=account.name,
        )
        try:
            return self.reply_generator.generate(request)
        except ReplyGenerationError as e:
            logger.warning(f"Reply generation failed for {raw.platform}:{raw.platform_review_id}, using template: {e}")
            reply = self.fallback_generator.generate(request)
            reply.is_fallback = True
            return reply

    def _ingest_one(self, account: Account, raw: RawReview, result: PollResult) -> None:
        if self._exists(raw):
            result.duplicates += 1
            track_review_duplicate(raw.platform)
            return

        try:
            classification = classify_sentiment(raw.rating, raw.text or "")
        except ValueError as e:
            logger.warning(f"Skipping {raw.platform}:{raw.platform_review_id}: {e}")
            result.errors += 1
            return

        # Drafting may call out to an LLM; no rows are written until it returns
        reply = self._draft_reply(account, raw, classification.sentiment)

        review = Review(
            account_id=account.id,
            platform=raw.platform,
            platform_review_id=raw.platform_review_id,
            author=raw.author,
            rating=raw.rating,
            text=raw.text,
            review_date=raw.review_date,
            sentiment=classification.sentiment.value,
            sentiment_score=classification.score,
            sentiment_signals=classification.signals,
            review_metadata=dict(raw.metadata or {}),
        )
        draft = ReplyDraft(
            review=review,
            draft_text=reply.draft_text,
            escalation_flag=reply.escalation_flag,
            escalation_reasons=reply.escalation_reasons,
            status=DraftStatus.PENDING.value,
            confidence_score=reply.confidence_score,
            is_fallback=reply.is_fallback,
        )

        try:
            with self.db.begin_nested():
                self.db.add(review)
                self.db.add(draft)
                self.db.flush()
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            if self._exists(raw):
                # A concurrent cycle stored it first
                result.duplicates += 1
                track_review_duplicate(raw.platform)
            else:
                logger.error(f"Failed to store {raw.platform}:{raw.platform_review_id}: {e}")
                result.errors += 1
            return
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to store {raw.platform}:{raw.platform_review_id}: {e}")
            result.errors += 1
            return

        result.new += 1
        result.new_review_ids.append(review.id)
        track_review_ingested(raw.platform, classification.sentiment.value, reply.is_fallback)
        logger.info(
            f"Stored review {review.id} ({raw.platform}:{raw.platform_review_id}, {raw.rating}★, "
            f"{classification.sentiment.value}) with draft {draft.id}"
        )

        self._notify(account, review, draft, result)

    def _notify(self, account: Account, review: Review, draft: ReplyDraft, result: PollResult) -> None:
        if not account.owner_phone or account.sms_opted_out:
            logger.info(f"No alert for review {review.id}: account {account.id} has no reachable phone")
            return

        try:
            self.messaging_engine.send_review_alert(review, draft, account, account.owner_phone)
            result.alerts_sent += 1
        except SmsDeliveryError as e:
            result.alerts_failed += 1
            self.retry_service.record_failure(review, draft, account.owner_phone, e)

    def _check_crisis(self, account: Account, result: PollResult) -> None:
        try:
            alert = self.crisis_monitor.check_account(account, result.new_review_ids)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Crisis check for account {account.id} failed: {e}")
            return
        result.crisis_alerted = alert is not None
