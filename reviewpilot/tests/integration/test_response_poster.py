"""
Integration tests for publishing approved replies
"""
import json
from datetime import datetime, timedelta, timezone

import httpx

from reviewpilot.core.http_client import HTTPClient, HTTPClientConfig
from reviewpilot.db.models import DraftStatus, Platform
from reviewpilot.services import response_poster
from reviewpilot.services.response_poster import (
    GoogleBusinessProfilePoster, UnsupportedPlatformPoster, find_unposted_drafts, get_response_poster,
    publish_approved_draft,
)


def poster_with(handler):
    client = HTTPClient(HTTPClientConfig(timeout=2.0, max_retries=0), transport=httpx.MockTransport(handler))
    return GoogleBusinessProfilePoster("tok", http_client=client)


class TestPublishApprovedDraft:

    def test_success_marks_posted(self, db, account, make_review):
        review, draft = make_review(account, draft_status=DraftStatus.APPROVED.value)
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"comment": "Thank you for your feedback."})

        result = publish_approved_draft(db, draft.id, poster=poster_with(handler))

        assert result.success is True
        assert seen["method"] == "PUT"
        assert seen["url"] == (
            "https://mybusiness.googleapis.com/v4/accounts/1/locations/2/reviews/rev-1/reply"
        )
        assert seen["body"] == {"comment": "Thank you for your feedback."}
        db.refresh(draft)
        assert draft.status == DraftStatus.POSTED.value
        assert draft.posted_at is not None
        assert draft.draft_metadata["post_result"]["success"] is True

    def test_edited_text_is_what_gets_posted(self, db, account, make_review):
        review, draft = make_review(account, draft_status=DraftStatus.EDITED.value)
        draft.draft_text = "Sorry Jamie, come back on us."
        db.commit()
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content)["comment"])
            return httpx.Response(200, json={})

        publish_approved_draft(db, draft.id, poster=poster_with(handler))

        assert bodies == ["Sorry Jamie, come back on us."]

    def test_rejection_keeps_draft_approved(self, db, account, make_review):
        review, draft = make_review(account, draft_status=DraftStatus.APPROVED.value)

        result = publish_approved_draft(db, draft.id, poster=poster_with(lambda r: httpx.Response(403)))

        assert result.success is False
        assert "HTTP 403" in result.error
        db.refresh(draft)
        assert draft.status == DraftStatus.APPROVED.value
        assert draft.draft_metadata["post_result"]["success"] is False

    def test_transport_error_is_reported(self, db, account, make_review):
        review, draft = make_review(account, draft_status=DraftStatus.APPROVED.value)

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        result = publish_approved_draft(db, draft.id, poster=poster_with(handler))

        assert result.success is False

    def test_pending_draft_is_not_posted(self, db, account, make_review):
        review, draft = make_review(account)
        assert publish_approved_draft(db, draft.id, poster=poster_with(lambda r: httpx.Response(200))) is None

    def test_missing_draft(self, db):
        assert publish_approved_draft(db, 999) is None

    def test_yelp_reply_is_unsupported(self, db, account, make_review):
        review, draft = make_review(account, platform=Platform.YELP.value,
                                    draft_status=DraftStatus.APPROVED.value)

        result = publish_approved_draft(db, draft.id)

        assert result.success is False
        assert "Unsupported platform" in result.error
        db.refresh(draft)
        assert draft.status == DraftStatus.APPROVED.value


class TestGetResponsePoster:

    def test_google_connection_with_token(self, db, account, make_connection, make_review):
        make_connection(account, Platform.GOOGLE.value, "accounts/1/locations/2", access_token="tok")
        review, _ = make_review(account)

        assert isinstance(get_response_poster(db, review), GoogleBusinessProfilePoster)

    def test_google_without_token(self, db, account, make_connection, make_review):
        make_connection(account, Platform.GOOGLE.value, "place-id")
        review, _ = make_review(account)

        assert isinstance(get_response_poster(db, review), UnsupportedPlatformPoster)


class TestFindUnpostedDrafts:

    def test_only_settled_google_approvals(self, db, account, make_review):
        now = datetime(2026, 3, 4, 20, 0, tzinfo=timezone.utc)
        _, old = make_review(account, draft_status=DraftStatus.APPROVED.value)
        _, fresh = make_review(account, draft_status=DraftStatus.EDITED.value)
        _, yelp = make_review(account, platform=Platform.YELP.value, draft_status=DraftStatus.APPROVED.value)
        _, pending = make_review(account)
        old.approved_at = now - timedelta(minutes=30)
        fresh.approved_at = now - timedelta(minutes=1)
        yelp.approved_at = now - timedelta(minutes=30)
        db.commit()

        assert find_unposted_drafts(db, now=now) == [old.id]

    def test_abandoned_drafts_are_skipped(self, db, account, make_review):
        now = datetime(2026, 3, 4, 20, 0, tzinfo=timezone.utc)
        _, abandoned = make_review(account, draft_status=DraftStatus.APPROVED.value)
        _, waiting = make_review(account, draft_status=DraftStatus.APPROVED.value)
        abandoned.approved_at = now - timedelta(hours=2)
        abandoned.post_abandoned_at = now - timedelta(hours=1)
        waiting.approved_at = now - timedelta(hours=1)
        db.commit()

        assert find_unposted_drafts(db, now=now) == [waiting.id]

    def test_stuck_drafts_do_not_starve_the_sweep(self, db, account, make_account, make_connection, make_review):
        now = datetime(2026, 3, 4, 20, 0, tzinfo=timezone.utc)
        # Places-only connection: no token, so these can never be posted
        make_connection(account, Platform.GOOGLE.value, "place-id")
        stuck = []
        for _ in range(10):
            _, draft = make_review(account, draft_status=DraftStatus.APPROVED.value)
            draft.approved_at = now - timedelta(days=2)
            stuck.append(draft.id)
        other = make_account(owner_phone="+15559870000")
        make_connection(other, Platform.GOOGLE.value, "accounts/9/locations/9", access_token="tok")
        _, postable = make_review(other, draft_status=DraftStatus.APPROVED.value)
        postable.approved_at = now - timedelta(days=1)
        db.commit()

        first = find_unposted_drafts(db, now=now)
        assert first == stuck
        for draft_id in first:
            publish_approved_draft(db, draft_id)

        assert find_unposted_drafts(db, now=now) == [postable.id]


class TestPostAttempts:

    def test_unsupported_platform_is_abandoned_at_once(self, db, account, make_review):
        _, draft = make_review(account, platform=Platform.YELP.value, draft_status=DraftStatus.APPROVED.value)

        result = publish_approved_draft(db, draft.id)

        assert result.retryable is False
        db.refresh(draft)
        assert draft.post_attempts == 1
        assert draft.post_abandoned_at is not None

    def test_missing_review_reference_is_abandoned(self, db, account, make_review):
        review, draft = make_review(account, draft_status=DraftStatus.APPROVED.value)
        review.review_metadata = {}
        db.commit()

        result = publish_approved_draft(db, draft.id, poster=poster_with(lambda r: httpx.Response(200)))

        assert result.success is False
        db.refresh(draft)
        assert draft.post_abandoned_at is not None

    def test_server_errors_retry_until_the_limit(self, db, account, make_review, settings, monkeypatch):
        monkeypatch.setattr(settings, "reply_post_max_attempts", 3)
        _, draft = make_review(account, draft_status=DraftStatus.APPROVED.value)
        poster = poster_with(lambda r: httpx.Response(503))

        for expected in (1, 2):
            assert publish_approved_draft(db, draft.id, poster=poster).retryable is True
            db.refresh(draft)
            assert draft.post_attempts == expected
            assert draft.post_abandoned_at is None

        publish_approved_draft(db, draft.id, poster=poster)

        db.refresh(draft)
        assert draft.post_attempts == 3
        assert draft.post_abandoned_at is not None
        assert draft.status == DraftStatus.APPROVED.value

    def test_rate_limit_is_retryable(self, db, account, make_review):
        _, draft = make_review(account, draft_status=DraftStatus.APPROVED.value)

        result = publish_approved_draft(db, draft.id, poster=poster_with(lambda r: httpx.Response(429)))

        assert result.retryable is True
        db.refresh(draft)
        assert draft.post_abandoned_at is None


class TestPosterClientOwnership:

    def test_own_client_is_closed(self):
        poster = GoogleBusinessProfilePoster("tok")

        poster.close()

        assert poster.http._client.is_closed

    def test_injected_client_stays_open(self):
        poster = poster_with(lambda r: httpx.Response(200))

        poster.close()

        assert not poster.http._client.is_closed

    def test_publish_closes_the_poster_it_built(self, db, account, make_connection, make_review, monkeypatch):
        make_connection(account, Platform.GOOGLE.value, "accounts/1/locations/2", access_token="tok")
        _, draft = make_review(account, draft_status=DraftStatus.APPROVED.value)
        built = []

        def fake_poster(db, review):
            poster = GoogleBusinessProfilePoster("tok")
            built.append(poster)
            return poster

        def failing_put(*args, **kwargs):
            raise httpx.ConnectError("refused")

        monkeypatch.setattr(response_poster, "get_response_poster", fake_poster)
        monkeypatch.setattr(HTTPClient, "put", failing_put)

        publish_approved_draft(db, draft.id)

        assert built[0].http._client.is_closed
