"""
Review source adapters

Each platform implements ReviewSource.fetch_reviews(location_id, since) and
returns normalized RawReview objects. Adapters are stateless between calls;
deduplication happens in the ingestion layer, so returning a review twice is
always safe.

HTTP failures are mapped onto the ingestion error taxonomy:
timeouts, 408/429 and 5xx become SourceTransientError; 401/403 become
SourceAuthorizationError.
"""
import re
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from reviewpilot.core.config import get_settings
from reviewpilot.core.http_client import HTTPClient, HTTPClientConfig
from reviewpilot.db.models import Platform, PlatformConnection

logger = logging.getLogger(__name__)


class ReviewSourceError(Exception):
    """Base exception for review source failures"""
    pass


class SourceTransientError(ReviewSourceError):
    """Timeout, rate limit or provider outage; retry next cycle"""
    pass


class SourceAuthorizationError(ReviewSourceError):
    """Revoked grant or invalid key; needs manual re-authorization"""
    pass


@dataclass
class RawReview:
    platform: str
    platform_review_id: str
    author: Optional[str]
    rating: int
    text: str
    review_date: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)


_FRACTION = re.compile(r"\.(\d{6})\d+")


def parse_timestamp(value: str) -> datetime:
    """Parse RFC 3339 / ISO 8601 timestamps into aware UTC datetimes"""
    normalized = value.strip().replace("Z", "+00:00").replace(" ", "T", 1)
    normalized = _FRACTION.sub(r".\1", normalized)  # nanoseconds -> microseconds
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class ReviewSource(ABC):
    """Capability interface: fetch normalized reviews for one location"""

    platform: str = ""

    def __init__(self, http_client: Optional[HTTPClient] = None):
        self._owns_http = http_client is None
        self.http = http_client or HTTPClient(HTTPClientConfig())

    def close(self) -> None:
        """Release the HTTP client when this source created it"""
        if self._owns_http:
            self.http.close()

    @abstractmethod
    def fetch_reviews(self, location_id: str, since: Optional[datetime] = None) -> List[RawReview]:
        """
        Fetch reviews for a location.

        Args:
            location_id: Platform-native location identifier
            since: Only reviews at or after this instant are returned

        Raises:
            SourceTransientError: Retryable upstream failure
            SourceAuthorizationError: Credentials rejected
        """

    def _get(self, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = self.http.get(url, **kwargs)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise SourceTransientError(f"{self.platform} request failed: {e}") from e

        if response.status_code in (401, 403):
            raise SourceAuthorizationError(
                f"{self.platform} rejected credentials ({response.status_code}): {response.text[:200]}"
            )
        if response.status_code in (408, 429) or response.status_code >= 500:
            raise SourceTransientError(f"{self.platform} returned {response.status_code}")
        if response.status_code >= 400:
            raise ReviewSourceError(
                f"{self.platform} returned {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise SourceTransientError(f"{self.platform} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise SourceTransientError(f"{self.platform} returned an unexpected payload")
        return data

    def _parse_items(self, items: Any, location_id: str) -> List[RawReview]:
        """
        Convert provider items with _parse_item, skipping malformed ones.

        A single review with missing fields or a bad timestamp is logged and
        dropped; it never costs the rest of the batch.
        """
        parsed = []
        for item in items or []:
            try:
                parsed.append(self._parse_item(item))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(
                    f"Skipping malformed {self.platform} review for {location_id}: {type(e).__name__}: {e}"
                )
        return parsed

    def _parse_item(self, item: Dict[str, Any]) -> RawReview:
        raise NotImplementedError

    @staticmethod
    def _is_new(review_date: datetime, since: Optional[datetime]) -> bool:
        if since is None:
            return True
        if since.tzinfo is None:
            since = since.replace(tzinfo=timezone.utc)
        # Inclusive so reviews sharing the cursor timestamp are not lost
        return review_date >= since


class GooglePlacesSource(ReviewSource):
    """Places API (New); public reviews, at most five per place"""

    platform = Platform.GOOGLE.value
    BASE_URL = "https://places.googleapis.com/v1/places"

    def __init__(self, api_key: Optional[str] = None, http_client: Optional[HTTPClient] = None):
        super().__init__(http_client)
        self.api_key = api_key or get_settings().google_places_api_key

    def fetch_reviews(self, location_id: str, since: Optional[datetime] = None) -> List[RawReview]:
        if not self.api_key:
            raise SourceAuthorizationError("GOOGLE_PLACES_API_KEY not configured")

        data = self._get(
            f"{self.BASE_URL}/{location_id}",
            headers={"X-Goog-Api-Key": self.api_key, "X-Goog-FieldMask": "reviews"},
        )

        reviews = [
            review for review in self._parse_items(data.get("reviews"), location_id)
            if self._is_new(review.review_date, since)
        ]
        logger.debug(f"Google Places returned {len(reviews)} reviews for {location_id}")
        return reviews

    def _parse_item(self, item: Dict[str, Any]) -> RawReview:
        text = (item.get("text") or {}).get("text") or (item.get("originalText") or {}).get("text") or ""
        author = item.get("authorAttribution") or {}
        return RawReview(
            platform=self.platform,
            platform_review_id=item["name"],
            author=author.get("displayName") or "Anonymous",
            rating=int(item.get("rating", 0)),
            text=text,
            review_date=parse_timestamp(item["publishTime"]),
            metadata={
                "source": "places",
                "author_uri": author.get("uri"),
                "relative_time": item.get("relativePublishTimeDescription"),
                "language": (item.get("text") or {}).get("languageCode"),
            },
        )


class GoogleBusinessProfileSource(ReviewSource):
    """Business Profile API; needs the owner's OAuth access token, supports replies"""

    platform = Platform.GOOGLE.value
    BASE_URL = "https://mybusiness.googleapis.com/v4"
    STAR_MAP = {"ONE": 1, "TWO": 2, "THREE": 3, "FOUR": 4, "FIVE": 5}
    MAX_PAGES = 10

    def __init__(self, access_token: str, http_client: Optional[HTTPClient] = None):
        super().__init__(http_client)
        self.access_token = access_token

    def fetch_reviews(self, location_id: str, since: Optional[datetime] = None) -> List[RawReview]:
        """
        location_id is the resource name accounts/{a}/locations/{l}

        The API only orders by update time, so an old review edited recently
        can sit on the first page. Paging stops once every review on a page
        was last updated before the cursor, not at the first old review.
        """
        reviews = []
        page_token = None

        for _ in range(self.MAX_PAGES):
            params = {"pageSize": 50, "orderBy": "updateTime desc"}
            if page_token:
                params["pageToken"] = page_token

            data = self._get(
                f"{self.BASE_URL}/{location_id}/reviews",
                params=params,
                headers={"Authorization": f"Bearer {self.access_token}"},
            )

            page = self._parse_items(data.get("reviews"), location_id)
            reviews.extend(review for review in page if self._is_new(review.review_date, since))

            page_token = data.get("nextPageToken")
            if not page_token:
                break
            if since is not None and page and all(not self._is_new(self._updated_at(r), since) for r in page):
                break

        return reviews

    @staticmethod
    def _updated_at(review: RawReview) -> datetime:
        try:
            return parse_timestamp(review.metadata["update_time"])
        except (AttributeError, KeyError, ValueError):
            return review.review_date

    def _parse_item(self, item: Dict[str, Any]) -> RawReview:
        reviewer = item.get("reviewer") or {}
        return RawReview(
            platform=self.platform,
            platform_review_id=item["name"],
            author=reviewer.get("displayName") or "Anonymous",
            rating=self.STAR_MAP.get(item.get("starRating"), 0),
            text=item.get("comment") or "",
            review_date=parse_timestamp(item["createTime"]),
            metadata={
                "source": "business_profile",
                "google_review_name": item["name"],
                "update_time": item.get("updateTime"),
                "has_reply": bool(item.get("reviewReply")),
            },
        )


class YelpFusionSource(ReviewSource):
    """Yelp Fusion; returns only a handful of highlighted reviews per business"""

    platform = Platform.YELP.value
    BASE_URL = "https://api.yelp.com/v3"

    def __init__(self, api_key: Optional[str] = None, http_client: Optional[HTTPClient] = None):
        super().__init__(http_client)
        self.api_key = api_key or get_settings().yelp_api_key

    def fetch_reviews(self, location_id: str, since: Optional[datetime] = None) -> List[RawReview]:
        if not self.api_key:
            raise SourceAuthorizationError("YELP_API_KEY not configured")

        data = self._get(
            f"{self.BASE_URL}/businesses/{location_id}/reviews",
            params={"sort_by": "newest", "limit": 50},
            headers={"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"},
        )

        return [
            review for review in self._parse_items(data.get("reviews"), location_id)
            if self._is_new(review.review_date, since)
        ]

    def _parse_item(self, item: Dict[str, Any]) -> RawReview:
        user = item.get("user") or {}
        return RawReview(
            platform=self.platform,
            platform_review_id=item["id"],
            author=user.get("name") or "Anonymous",
            rating=int(item.get("rating", 0)),
            text=item.get("text") or "",
            # Yelp reports local business time without an offset; stored as UTC
            review_date=parse_timestamp(item["time_created"]),
            metadata={"url": item.get("url"), "profile_url": user.get("profile_url")},
        )


def get_review_source(connection: PlatformConnection) -> ReviewSource:
    """Pick the adapter for a platform connection"""
    if connection.platform == Platform.GOOGLE.value:
        if connection.access_token:
            return GoogleBusinessProfileSource(connection.access_token)
        return GooglePlacesSource()
    if connection.platform == Platform.YELP.value:
        return YelpFusionSource()
    raise ReviewSourceError(f"Unsupported platform: {connection.platform}")
