"""
Integration tests for the ingestion cycle: dedup, atomic storage, fallback
drafting, per-platform isolation and alert hand-off
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import httpx
import pytest

from reviewpilot.core.http_client import HTTPClient, HTTPClientConfig
from reviewpilot.db.models import (
    AuthStatus, ConversationState, ConversationStateType, CrisisAlert, NotificationAttempt, NotificationStatus,
    Platform, ReplyDraft, Review, SubscriptionState,
)
from reviewpilot.services.crisis_detector import CrisisMonitor
from reviewpilot.services.ingestion_service import IngestionCoordinator, get_pollable_accounts
from reviewpilot.services.messaging_service import ApprovalMessagingEngine
from reviewpilot.services.notification_retry_service import NotificationRetryService
from reviewpilot.services.reply_generator import GeneratedReply, ReplyGenerationError, ReplyGenerator
from reviewpilot.services.review_sources import (
    GooglePlacesSource, RawReview, ReviewSource, ReviewSourceError, SourceAuthorizationError,
    SourceTransientError,
)
from reviewpilot.services.sms_client import SmsDeliveryError
from reviewpilot.tests.conftest import OWNER_PHONE

BASE_TIME = datetime(2026, 3, 4, 18, 0, tzinfo=timezone.utc)


def raw_review(review_id, rating=2, text="Food was cold", minutes=0, platform=Platform.GOOGLE.value):
    return RawReview(
        platform=platform,
        platform_review_id=review_id,
        author="Jamie",
        rating=rating,
        text=text,
        review_date=BASE_TIME + timedelta(minutes=minutes),
        metadata={"google_review_name": f"accounts/1/locations/2/reviews/{review_id}"},
    )


class FakeSource(ReviewSource):
    """Serves a fixed list of reviews, honouring the inclusive since cursor"""

    def __init__(self, reviews=None, error=None):
        self.reviews = list(reviews or [])
        self.error = error
        self.calls = []
        self.closed = False

    def close(self):
        self.closed = True

    def fetch_reviews(self, location_id, since=None):
        self.calls.append((location_id, since))
        if self.error is not None:
            raise self.error
        return [r for r in self.reviews if since is None or r.review_date >= since]


class StaticGenerator(ReplyGenerator):

    def __init__(self, draft_text="Thanks for dining with us!", error=None):
        self.draft_text = draft_text
        self.error = error
        self.requests = []

    def generate(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return GeneratedReply(draft_text=self.draft_text, escalation_flag=False, confidence_score=0.9)


@pytest.fixture
def sources():
    return {
        Platform.GOOGLE.value: FakeSource(),
        Platform.YELP.value: FakeSource(),
    }


@pytest.fixture
def generator():
    return StaticGenerator()


@pytest.fixture
def coordinator(db, sources, generator, sms_client, settings):
    messenger = ApprovalMessagingEngine(db, sms_client=sms_client, stripe_service=Mock(),
                                        on_reply_approved=lambda draft_id: None)
    return IngestionCoordinator(
        db,
        source_factory=lambda connection: sources[connection.platform],
        reply_generator=generator,
        messaging_engine=messenger,
        retry_service=NotificationRetryService(db, messaging_engine=messenger),
        # Far from BASE_TIME so no crisis pattern fires in the ordinary cycle tests
        crisis_monitor=CrisisMonitor(db, messaging_engine=messenger, clock=lambda: BASE_TIME + timedelta(days=90)),
    )


@pytest.fixture
def google(account, make_connection):
    return make_connection(account, Platform.GOOGLE.value, "accounts/1/locations/2")


class TestPollAccount:

    def test_new_reviews_are_stored_with_drafts_and_alerted(self, db, coordinator, account, google,
                                                            sources, sms_client):
        sources["google"].reviews = [raw_review("r1", rating=5, text="Great pasta"), raw_review("r2", minutes=5)]

        result = coordinator.poll_account(account)

        assert (result.fetched, result.new, result.duplicates, result.errors) == (2, 2, 0, 0)
        assert result.alerts_sent == 2
        reviews = db.query(Review).order_by(Review.id).all()
        assert [r.sentiment for r in reviews] == ["positive", "negative"]
        for review in reviews:
            assert review.draft.draft_text == "Thanks for dining with us!"
            assert review.draft.status == "pending"
            assert review.draft.is_fallback is False
        assert len(sms_client.sent) == 2

        state = db.query(ConversationState).filter(ConversationState.phone == OWNER_PHONE).one()
        assert state.state == ConversationStateType.AWAITING_APPROVAL.value
        assert state.pending_review_id == reviews[1].id

        db.refresh(google)
        assert google.last_polled_at is not None

    def test_repeated_polls_never_duplicate(self, db, coordinator, account, google, sources, sms_client):
        sources["google"].reviews = [raw_review("r1"), raw_review("r2", minutes=5)]

        coordinator.poll_account(account)
        second = coordinator.poll_account(account)

        assert second.new == 0
        assert second.duplicates == 1  # the review sitting on the inclusive cursor
        assert db.query(Review).count() == 2
        assert db.query(ReplyDraft).count() == 2
        assert len(sms_client.sent) == 2

    def test_since_cursor_is_latest_stored_review(self, coordinator, account, google, sources):
        sources["google"].reviews = [raw_review("r1"), raw_review("r2", minutes=30)]

        coordinator.poll_account(account)
        coordinator.poll_account(account)

        assert sources["google"].calls[0] == ("accounts/1/locations/2", None)
        assert sources["google"].calls[1] == ("accounts/1/locations/2", BASE_TIME + timedelta(minutes=30))

    def test_review_ids_are_unique_per_platform(self, db, coordinator, account, google, make_connection,
                                                sources):
        make_connection(account, Platform.YELP.value, "luigis-nyc")
        sources["google"].reviews = [raw_review("same-id")]
        sources["yelp"].reviews = [raw_review("same-id", platform=Platform.YELP.value)]

        result = coordinator.poll_account(account)

        assert result.new == 2
        assert db.query(Review).count() == 2

    def test_paused_account_is_not_fetched(self, db, coordinator, account, google, sources):
        account.monitoring_paused = True
        db.commit()
        sources["google"].reviews = [raw_review("r1")]

        result = coordinator.poll_account(account)

        assert sources["google"].calls == []
        assert result.fetched == 0
        assert db.query(Review).count() == 0


class TestAtomicStorage:

    def test_failed_draft_insert_leaves_no_review(self, db, coordinator, account, google, sources,
                                                  generator, sms_client):
        """Test a review is never stored without its draft"""
        generator.draft_text = None
        sources["google"].reviews = [raw_review("r1")]

        result = coordinator.poll_account(account)

        assert result.new == 0
        assert result.errors == 1
        assert db.query(Review).count() == 0
        assert db.query(ReplyDraft).count() == 0
        assert sms_client.sent == []

    def test_failure_on_one_review_does_not_stop_the_rest(self, db, coordinator, account, google, sources):
        sources["google"].reviews = [raw_review("bad", rating=0), raw_review("good", minutes=1)]

        result = coordinator.poll_account(account)

        assert result.errors == 1
        assert result.new == 1
        assert [r.platform_review_id for r in db.query(Review).all()] == ["good"]


class TestFallbackDrafts:

    def test_generator_failure_uses_template(self, db, coordinator, account, google, sources, generator):
        generator.error = ReplyGenerationError("LLM timed out")
        sources["google"].reviews = [raw_review("r1", rating=5, text="Lovely evening")]

        result = coordinator.poll_account(account)

        assert result.new == 1
        draft = db.query(ReplyDraft).one()
        assert draft.is_fallback is True
        assert "5-star" in draft.draft_text or "5 stars" in draft.draft_text

    def test_escalation_is_flagged_on_fallback(self, db, coordinator, account, google, sources, generator):
        generator.error = ReplyGenerationError("unconfigured")
        sources["google"].reviews = [raw_review("r1", rating=1, text="I got food poisoning, want a refund")]

        coordinator.poll_account(account)

        draft = db.query(ReplyDraft).one()
        assert draft.escalation_flag is True
        assert draft.escalation_reasons == ["health_issue", "refund_request"]


class TestPlatformIsolation:

    @pytest.fixture
    def yelp(self, account, make_connection):
        return make_connection(account, Platform.YELP.value, "luigis-nyc")

    def test_authorization_failure_marks_connection(self, db, coordinator, account, google, yelp, sources):
        sources["google"].error = SourceAuthorizationError("grant revoked")
        sources["yelp"].reviews = [raw_review("y1", platform=Platform.YELP.value)]

        result = coordinator.poll_account(account)

        assert result.errors == 1
        assert result.new == 1
        db.refresh(google)
        assert google.auth_status == AuthStatus.NEEDS_REAUTH.value
        assert "grant revoked" in google.last_error

    def test_connection_needing_reauth_is_skipped(self, db, coordinator, account, google, sources):
        google.auth_status = AuthStatus.NEEDS_REAUTH.value
        db.commit()

        coordinator.poll_account(account)

        assert sources["google"].calls == []

    def test_transient_failure_is_retried_next_cycle(self, db, coordinator, account, google, yelp, sources):
        sources["google"].error = SourceTransientError("503")
        sources["yelp"].reviews = [raw_review("y1", platform=Platform.YELP.value)]

        result = coordinator.poll_account(account)

        assert result.errors == 1
        assert result.new == 1
        db.refresh(google)
        assert google.auth_status == AuthStatus.ACTIVE.value

        sources["google"].error = None
        sources["google"].reviews = [raw_review("g1")]
        assert coordinator.poll_account(account).new == 1

    def test_unexpected_adapter_failure_does_not_stop_other_platforms(self, db, coordinator, account, google,
                                                                       yelp, sources):
        sources["google"].error = KeyError("publishTime")
        sources["yelp"].reviews = [raw_review("y1", platform=Platform.YELP.value)]

        result = coordinator.poll_account(account)

        assert result.errors == 1
        assert result.new == 1
        assert db.query(Review).one().platform_review_id == "y1"
        db.refresh(google)
        assert google.last_error.startswith("KeyError")
        assert google.auth_status == AuthStatus.ACTIVE.value
        assert sources["google"].closed and sources["yelp"].closed

    def test_malformed_google_item_is_skipped(self, db, coordinator, account, google, yelp, sources):
        payload = {"reviews": [
            {"name": "places/abc/reviews/bad", "rating": 1, "text": {"text": "No date"}},
            {"name": "places/abc/reviews/ok", "rating": 4, "text": {"text": "Nice"},
             "publishTime": "2026-03-04T18:00:00Z"},
        ]}
        client = HTTPClient(HTTPClientConfig(timeout=2.0, max_retries=0),
                            transport=httpx.MockTransport(lambda request: httpx.Response(200, json=payload)))
        places = GooglePlacesSource(api_key="key", http_client=client)
        sources["google"] = places
        sources["yelp"].reviews = [raw_review("y1", platform=Platform.YELP.value)]

        result = coordinator.poll_account(account)

        assert result.errors == 0
        assert result.new == 2
        stored = sorted(r.platform_review_id for r in db.query(Review).all())
        assert stored == ["places/abc/reviews/ok", "y1"]

    def test_other_source_error_records_last_error(self, db, coordinator, account, google, sources):
        sources["google"].error = ReviewSourceError("404 location not found")

        result = coordinator.poll_account(account)

        assert result.errors == 1
        db.refresh(google)
        assert google.last_error == "404 location not found"
        assert google.auth_status == AuthStatus.ACTIVE.value


class TestAlertHandOff:

    def test_failed_alert_is_scheduled_for_retry(self, db, coordinator, account, google, sources, sms_client):
        sms_client.failure = SmsDeliveryError("carrier timeout")
        sources["google"].reviews = [raw_review("r1")]

        result = coordinator.poll_account(account)

        assert result.new == 1
        assert result.alerts_failed == 1
        review = db.query(Review).one()
        assert review.review_metadata["notification_failed"] is True

        attempt = db.query(NotificationAttempt).one()
        assert attempt.status == NotificationStatus.PENDING.value
        assert attempt.attempt_count == 1
        assert attempt.next_retry_at is not None

    def test_opted_out_owner_gets_no_alert(self, db, coordinator, account, google, sources, sms_client):
        account.sms_opted_out = True
        db.commit()
        sources["google"].reviews = [raw_review("r1")]

        result = coordinator.poll_account(account)

        assert result.new == 1
        assert result.alerts_sent == 0
        assert sms_client.sent == []
        assert db.query(NotificationAttempt).count() == 0


class TestCrisisAlerts:

    @pytest.fixture
    def crisis_coordinator(self, db, sources, generator, sms_client, settings):
        messenger = ApprovalMessagingEngine(db, sms_client=sms_client, stripe_service=Mock(),
                                            on_reply_approved=lambda draft_id: None)
        return IngestionCoordinator(
            db,
            source_factory=lambda connection: sources[connection.platform],
            reply_generator=generator,
            messaging_engine=messenger,
            retry_service=NotificationRetryService(db, messaging_engine=messenger),
            crisis_monitor=CrisisMonitor(db, messaging_engine=messenger,
                                         clock=lambda: BASE_TIME + timedelta(hours=1)),
        )

    def test_burst_of_bad_reviews_alerts_once(self, db, crisis_coordinator, account, google, sources, sms_client):
        sources["google"].reviews = [raw_review("r1", rating=1), raw_review("r2", rating=2, minutes=10)]

        result = crisis_coordinator.poll_account(account)

        assert result.crisis_alerted is True
        assert len(sms_client.sent) == 3
        assert sms_client.sent[-1][1].startswith("🚨 Urgent: review trouble at Luigi's Trattoria")
        alert = db.query(CrisisAlert).one()
        assert alert.severity == "critical"
        assert alert.event_type == "multiple_negative"

        sources["google"].reviews.append(raw_review("r3", rating=1, minutes=20))
        second = crisis_coordinator.poll_account(account)

        assert second.new == 1
        assert second.crisis_alerted is False
        assert len(sms_client.sent) == 4
        assert db.query(CrisisAlert).count() == 1

    def test_single_mild_review_is_not_a_crisis(self, db, crisis_coordinator, account, google, sources, sms_client):
        sources["google"].reviews = [raw_review("r1", rating=2, text="Service was slow")]

        result = crisis_coordinator.poll_account(account)

        assert result.crisis_alerted is False
        assert len(sms_client.sent) == 1
        assert db.query(CrisisAlert).count() == 0

    def test_health_keyword_alerts_on_a_single_review(self, db, crisis_coordinator, account, google, sources,
                                                      sms_client):
        sources["google"].reviews = [raw_review("r1", rating=1, text="My husband got food poisoning")]

        result = crisis_coordinator.poll_account(account)

        assert result.crisis_alerted is True
        assert "mentions food poisoning" in sms_client.sent[-1][1]


class TestPollableAccounts:

    def test_excludes_paused_canceled_and_past_due(self, db, make_account):
        active = make_account(name="Active")
        trialing = make_account(name="Trial", subscription_state=SubscriptionState.TRIALING.value)
        make_account(name="Paused", monitoring_paused=True)
        make_account(name="Canceled", subscription_state=SubscriptionState.CANCELED.value)
        make_account(name="Past due", subscription_state=SubscriptionState.PAST_DUE.value)

        pollable = get_pollable_accounts(db)

        assert [a.id for a in pollable] == [active.id, trialing.id]
