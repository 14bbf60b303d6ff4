"""
Crisis Detection

Looks for patterns in an account's recent reviews that need the owner's
attention now rather than in the weekly digest:
- 2+ reviews of 2★ or less within 24 hours (critical)
- 3+ reviews of 2★ or less within 72 hours (high)
- a low-rated review mentioning a health or hygiene keyword (critical)
- the 7-day average falling 1.5★ or more below the previous 23 days (high)

Only events involving a review stored in the current poll cycle raise an
alert, and at most one alert per account goes out within the cool-down
window. An alert row is written only after the SMS was accepted.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, List, Optional

from sqlalchemy.orm import Session

from reviewpilot.core.config import get_settings
from reviewpilot.db.models import Account, CrisisAlert, Review
from reviewpilot.services.sms_client import SmsDeliveryError
from reviewpilot.services.system_metrics import track_crisis_alert

logger = logging.getLogger(__name__)

LOW_RATING = 2
RECENT_WINDOW = timedelta(days=7)
BASELINE_WINDOW = timedelta(days=30)
BURST_WINDOW = timedelta(hours=24)
CLUSTER_WINDOW = timedelta(hours=72)
BURST_MIN_REVIEWS = 2
CLUSTER_MIN_REVIEWS = 3
RATING_DROP_THRESHOLD = 1.5
RATING_DROP_MIN_BASELINE = 5
EXCERPT_LENGTH = 150
MAX_EXCERPTS = 3

CRITICAL_KEYWORDS = [
    "sick", "food poisoning", "poison", "poisoned", "illness", "hospital", "vomit", "vomiting",
    "diarrhea", "health department", "roach", "cockroach", "bug", "dirty", "unsanitary",
    "disgusting", "moldy", "rotten", "raw", "undercooked", "hair", "foreign object",
]

_CRITICAL_PATTERN = re.compile(
    r"\b(" + "|".join(re.escape(keyword) for keyword in CRITICAL_KEYWORDS) + r")s?\b",
    re.IGNORECASE,
)


class Severity(str, Enum):
    HIGH = "high"
    CRITICAL = "critical"


class CrisisEventType(str, Enum):
    MULTIPLE_NEGATIVE = "multiple_negative"
    CRITICAL_KEYWORD = "critical_keyword"
    RATING_DROP = "rating_drop"


@dataclass
class CrisisEvent:
    event_type: str
    severity: str
    description: str
    review_ids: List[int] = field(default_factory=list)


@dataclass
class CrisisAssessment:
    account_id: int
    events: List[CrisisEvent] = field(default_factory=list)
    reviews: List[Review] = field(default_factory=list)

    @property
    def severity(self) -> Optional[str]:
        if not self.events:
            return None
        if any(event.severity == Severity.CRITICAL.value for event in self.events):
            return Severity.CRITICAL.value
        return Severity.HIGH.value

    @property
    def review_count(self) -> int:
        return len({review_id for event in self.events for review_id in event.review_ids})


def find_critical_keywords(text: Optional[str]) -> List[str]:
    """Distinct critical keywords in the text, in order of appearance"""
    found = []
    for match in _CRITICAL_PATTERN.finditer(text or ""):
        keyword = match.group(1).lower()
        if keyword not in found:
            found.append(keyword)
    return found


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _average(reviews: List[Review]) -> float:
    return sum(review.rating for review in reviews) / len(reviews)


def detect_crisis(db: Session, account_id: int, now: datetime) -> CrisisAssessment:
    """
    Evaluate an account's reviews of the last 30 days

    Args:
        db: Database session
        account_id: Account to evaluate
        now: Reference instant for every window

    Returns:
        CrisisAssessment listing every pattern found
    """
    rows = db.query(Review).filter(
        Review.account_id == account_id,
        Review.review_date >= now - BASELINE_WINDOW,
        Review.review_date <= now
    ).order_by(Review.review_date.desc()).all()

    recent = [r for r in rows if _as_utc(r.review_date) >= now - RECENT_WINDOW]
    baseline = [r for r in rows if _as_utc(r.review_date) < now - RECENT_WINDOW]
    low_rated = [r for r in recent if r.rating <= LOW_RATING]

    assessment = CrisisAssessment(account_id=account_id)

    last_day = [r for r in low_rated if _as_utc(r.review_date) >= now - BURST_WINDOW]
    last_three_days = [r for r in low_rated if _as_utc(r.review_date) >= now - CLUSTER_WINDOW]
    if len(last_day) >= BURST_MIN_REVIEWS:
        assessment.events.append(CrisisEvent(
            CrisisEventType.MULTIPLE_NEGATIVE.value, Severity.CRITICAL.value,
            f"{len(last_day)} reviews of {LOW_RATING}★ or less in 24 hours",
            [r.id for r in last_day],
        ))
    elif len(last_three_days) >= CLUSTER_MIN_REVIEWS:
        assessment.events.append(CrisisEvent(
            CrisisEventType.MULTIPLE_NEGATIVE.value, Severity.HIGH.value,
            f"{len(last_three_days)} reviews of {LOW_RATING}★ or less in 3 days",
            [r.id for r in last_three_days],
        ))

    for review in low_rated:
        keywords = find_critical_keywords(review.text)
        if keywords:
            assessment.events.append(CrisisEvent(
                CrisisEventType.CRITICAL_KEYWORD.value, Severity.CRITICAL.value,
                f"{review.rating}★ review mentions {', '.join(keywords)}",
                [review.id],
            ))

    if recent and len(baseline) >= RATING_DROP_MIN_BASELINE:
        recent_avg = _average(recent)
        baseline_avg = _average(baseline)
        if baseline_avg - recent_avg >= RATING_DROP_THRESHOLD:
            assessment.events.append(CrisisEvent(
                CrisisEventType.RATING_DROP.value, Severity.HIGH.value,
                f"average rating fell from {baseline_avg:.1f}★ to {recent_avg:.1f}★ this week",
                [r.id for r in recent],
            ))

    involved = {review_id for event in assessment.events for review_id in event.review_ids}
    assessment.reviews = [r for r in low_rated if r.id in involved][:MAX_EXCERPTS]
    return assessment


def format_crisis_sms(account: Account, assessment: CrisisAssessment) -> str:
    lines = [f"🚨 Urgent: review trouble at {account.name}"]
    lines.extend(f"- {event.description}" for event in assessment.events)
    for review in assessment.reviews:
        text = (review.text or "").strip()
        if len(text) > EXCERPT_LENGTH:
            text = text[:EXCERPT_LENGTH].rstrip() + "..."
        lines.append(f'{review.rating}★ {review.platform}: "{text}"')
    lines.append("Reply HELP anytime.")
    return "\n".join(lines)


class CrisisMonitor:
    """Runs crisis detection after an ingestion cycle and alerts the owner"""

    def __init__(self, db: Session, messaging_engine=None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.db = db
        self._messaging_engine = messaging_engine
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.cooldown = timedelta(hours=get_settings().crisis_alert_cooldown_hours)

    @property
    def messaging_engine(self):
        if self._messaging_engine is None:
            from reviewpilot.services.messaging_service import ApprovalMessagingEngine
            self._messaging_engine = ApprovalMessagingEngine(self.db)
        return self._messaging_engine

    def recently_alerted(self, account_id: int, now: datetime) -> bool:
        return self.db.query(CrisisAlert.id).filter(
            CrisisAlert.account_id == account_id,
            CrisisAlert.created_at >= now - self.cooldown
        ).first() is not None

    def check_account(self, account: Account, new_review_ids: Iterable[int]) -> Optional[CrisisAlert]:
        """
        Alert the owner if this cycle's reviews complete a crisis pattern

        Args:
            account: Account that was just polled
            new_review_ids: Reviews stored in this cycle

        Returns:
            The recorded CrisisAlert, or None when nothing was sent
        """
        new_ids = set(new_review_ids)
        if not new_ids:
            return None

        now = self.clock()
        assessment = detect_crisis(self.db, account.id, now)
        assessment.events = [e for e in assessment.events if new_ids.intersection(e.review_ids)]
        if not assessment.events:
            return None

        severity = assessment.severity
        if self.recently_alerted(account.id, now):
            logger.info(f"Crisis for account {account.id} already alerted within {self.cooldown}")
            track_crisis_alert(severity, "suppressed")
            return None

        body = format_crisis_sms(account, assessment)
        try:
            sid = self.messaging_engine.send_owner_message(account, body)
        except SmsDeliveryError as e:
            # Nothing recorded, so the next cycle with a new review tries again
            logger.error(f"Crisis alert for account {account.id} failed: {e}")
            track_crisis_alert(severity, "failed")
            return None
        if sid is None:
            track_crisis_alert(severity, "unreachable")
            return None

        alert = CrisisAlert(
            account_id=account.id,
            event_type=assessment.events[0].event_type,
            severity=severity,
            review_count=assessment.review_count,
            message=body,
            event_metadata={"events": [
                {"type": e.event_type, "severity": e.severity, "description": e.description,
                 "review_ids": e.review_ids}
                for e in assessment.events
            ]},
            provider_sid=sid,
            created_at=now,
        )
        self.db.add(alert)
        self.db.commit()
        track_crisis_alert(severity, "sent")
        logger.warning(
            f"Crisis alert sent to account {account.id}: "
            f"{', '.join(e.event_type for e in assessment.events)} ({severity})"
        )
        return alert
