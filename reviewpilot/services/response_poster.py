"""
Response posting

Publishes owner-approved reply drafts back to the review platform. Only
Google Business Profile accepts owner replies through an API; other
platforms report an unsupported result and the draft stays approved.

A draft whose post fails for good (unsupported platform, missing review
reference, a rejection that will not change on retry) or that has failed
reply_post_max_attempts times is marked abandoned and leaves the sweep.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import httpx
from sqlalchemy.orm import Session

from reviewpilot.core.config import get_settings
from reviewpilot.core.http_client import HTTPClient, HTTPClientConfig
from reviewpilot.db.models import DraftStatus, Platform, PlatformConnection, ReplyDraft, Review
from reviewpilot.services.review_sources import GoogleBusinessProfileSource

logger = logging.getLogger(__name__)

POSTABLE_STATUSES = (DraftStatus.APPROVED.value, DraftStatus.EDITED.value)

# Client errors worth another try: expired token, timeout, rate limit
RETRYABLE_CLIENT_ERRORS = (401, 408, 429)


@dataclass
class PostResult:
    success: bool
    platform: str
    external_response_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = True


class ResponsePoster(ABC):
    """Capability interface: publish one reply for one stored review"""

    @abstractmethod
    def post_reply(self, review: Review, text: str) -> PostResult:
        """Post the reply text as the owner's response to the review"""

    def close(self) -> None:
        pass


class GoogleBusinessProfilePoster(ResponsePoster):
    """PUT {review}/reply on the Business Profile API"""

    BASE_URL = GoogleBusinessProfileSource.BASE_URL

    def __init__(self, access_token: str, http_client: Optional[HTTPClient] = None):
        self.access_token = access_token
        self._owns_http = http_client is None
        self.http = http_client or HTTPClient(HTTPClientConfig())

    def close(self) -> None:
        if self._owns_http:
            self.http.close()

    def post_reply(self, review: Review, text: str) -> PostResult:
        review_name = (review.review_metadata or {}).get("google_review_name")
        if not review_name:
            return PostResult(False, Platform.GOOGLE.value,
                              error="Missing Google review resource name in metadata", retryable=False)

        try:
            response = self.http.put(
                f"{self.BASE_URL}/{review_name}/reply",
                json={"comment": text},
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        except (httpx.TimeoutException, httpx.TransportError) as e:
            logger.warning(f"Google reply post for review {review.id} failed: {e}")
            return PostResult(False, Platform.GOOGLE.value, error=str(e))

        if response.status_code >= 400:
            logger.warning(f"Google rejected reply for review {review.id}: {response.status_code}")
            retryable = response.status_code >= 500 or response.status_code in RETRYABLE_CLIENT_ERRORS
            return PostResult(False, Platform.GOOGLE.value,
                              error=f"HTTP {response.status_code}: {response.text[:200]}",
                              retryable=retryable)

        return PostResult(True, Platform.GOOGLE.value, external_response_id=review_name)


class UnsupportedPlatformPoster(ResponsePoster):
    def post_reply(self, review: Review, text: str) -> PostResult:
        return PostResult(False, review.platform, error=f"Unsupported platform: {review.platform}",
                          retryable=False)


def get_response_poster(db: Session, review: Review) -> ResponsePoster:
    """Pick the poster for the review's platform connection"""
    if review.platform == Platform.GOOGLE.value:
        connection = db.query(PlatformConnection).filter(
            PlatformConnection.account_id == review.account_id,
            PlatformConnection.platform == Platform.GOOGLE.value
        ).first()
        if connection is not None and connection.access_token:
            return GoogleBusinessProfilePoster(connection.access_token)
    return UnsupportedPlatformPoster()


def publish_approved_draft(db: Session, draft_id: int,
                           poster: Optional[ResponsePoster] = None) -> Optional[PostResult]:
    """
    Post an approved or edited draft and record the outcome

    Args:
        db: Database session
        draft_id: Draft to publish
        poster: Override the platform poster

    Returns:
        PostResult, or None when the draft is missing or not postable
    """
    draft = db.query(ReplyDraft).filter(ReplyDraft.id == draft_id).first()
    if draft is None or draft.status not in POSTABLE_STATUSES:
        logger.info(f"Draft {draft_id} is not awaiting posting")
        return None

    review = draft.review
    owned = poster is None
    poster = poster or get_response_poster(db, review)
    try:
        result = poster.post_reply(review, draft.draft_text)
    finally:
        if owned:
            poster.close()

    metadata = dict(draft.draft_metadata or {})
    metadata["post_result"] = asdict(result)
    draft.draft_metadata = metadata
    if result.success:
        draft.status = DraftStatus.POSTED.value
        draft.posted_at = datetime.now(timezone.utc)
        logger.info(f"Posted reply for review {review.id} on {review.platform}")
    else:
        draft.post_attempts = (draft.post_attempts or 0) + 1
        max_attempts = get_settings().reply_post_max_attempts
        if not result.retryable or draft.post_attempts >= max_attempts:
            draft.post_abandoned_at = datetime.now(timezone.utc)
            logger.warning(
                f"Giving up posting reply for review {review.id} after {draft.post_attempts} "
                f"attempt(s): {result.error}"
            )
        else:
            logger.warning(f"Reply for review {review.id} not posted: {result.error}")

    db.commit()
    return result


def find_unposted_drafts(db: Session, limit: int = 10, grace_seconds: int = 300,
                         now: Optional[datetime] = None) -> List[int]:
    """
    Approved drafts that have not been posted yet, oldest approval first

    Drafts approved within the grace period are left to the posting task
    enqueued at approval time. Abandoned drafts are never returned.
    """
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=grace_seconds)
    rows = db.query(ReplyDraft.id).join(Review).filter(
        ReplyDraft.status.in_(POSTABLE_STATUSES),
        ReplyDraft.post_abandoned_at.is_(None),
        ReplyDraft.approved_at <= cutoff,
        Review.platform == Platform.GOOGLE.value
    ).order_by(ReplyDraft.approved_at).limit(limit).all()
    return [row[0] for row in rows]
