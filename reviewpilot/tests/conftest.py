"""
Shared fixtures: in-memory SQLite, fakeredis-backed locks, a recording SMS
client and small model factories.
"""
import itertools
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import fakeredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from reviewpilot.core import locks
from reviewpilot.core.config import get_settings
from reviewpilot.core.shutdown import shutdown_event
from reviewpilot.db.database import Base
from reviewpilot.db.models import (
    Account, DraftStatus, Platform, PlatformConnection, ReplyDraft, Review, SubscriptionState,
)
from reviewpilot.services.sms_client import SmsDeliveryError

OWNER_PHONE = "+15551230000"
SERVICE_PHONE = "+15550009999"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    """Database session bound to a fresh in-memory schema"""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def fake_redis():
    """Route every per-key lock through an isolated fakeredis server"""
    client = fakeredis.FakeRedis()
    locks.set_redis_client(client)
    yield client
    locks.set_redis_client(None)


@pytest.fixture(autouse=True)
def reset_shutdown():
    shutdown_event.clear()
    yield
    shutdown_event.clear()


@pytest.fixture
def settings(monkeypatch):
    """Cached settings with test values; changes are undone after each test"""
    settings = get_settings()
    monkeypatch.setattr(settings, "twilio_phone_number", SERVICE_PHONE)
    monkeypatch.setattr(settings, "public_base_url", None)
    monkeypatch.setattr(settings, "sms_retry_base_seconds", 60)
    monkeypatch.setattr(settings, "sms_retry_max_attempts", 3)
    return settings


class FakeSmsClient:
    """Records outbound messages instead of calling Twilio"""

    def __init__(self):
        self.from_number = SERVICE_PHONE
        self.sent: List[Tuple[str, str]] = []
        self.failure: Optional[SmsDeliveryError] = None
        self._sids = itertools.count(1)

    def is_enabled(self) -> bool:
        return True

    def send(self, to_phone: str, body: str) -> str:
        if self.failure is not None:
            raise self.failure
        self.sent.append((to_phone, body))
        return f"SM{next(self._sids):032d}"


@pytest.fixture
def sms_client():
    return FakeSmsClient()


@pytest.fixture
def make_account(db):
    def _make_account(**overrides) -> Account:
        values = {
            "name": "Luigi's Trattoria",
            "owner_phone": OWNER_PHONE,
            "owner_email": "owner@luigis.example",
            "timezone": "America/New_York",
            "subscription_state": SubscriptionState.ACTIVE.value,
            "monitoring_paused": False,
            "sms_opted_out": False,
        }
        values.update(overrides)
        account = Account(**values)
        db.add(account)
        db.commit()
        return account
    return _make_account


@pytest.fixture
def account(make_account):
    return make_account()


@pytest.fixture
def make_connection(db):
    def _make_connection(account: Account, platform: str = Platform.GOOGLE.value,
                         location_id: str = "loc-1", **overrides) -> PlatformConnection:
        connection = PlatformConnection(
            account_id=account.id, platform=platform, location_id=location_id, **overrides
        )
        db.add(connection)
        db.commit()
        return connection
    return _make_connection


@pytest.fixture
def make_review(db):
    counter = itertools.count(1)

    def _make_review(account: Account, rating: int = 2, text: str = "Food was cold",
                     review_date: Optional[datetime] = None, draft_status: str = DraftStatus.PENDING.value,
                     platform: str = Platform.GOOGLE.value) -> Tuple[Review, ReplyDraft]:
        number = next(counter)
        review = Review(
            account_id=account.id,
            platform=platform,
            platform_review_id=f"rev-{number}",
            author="Jamie",
            rating=rating,
            text=text,
            review_date=review_date or datetime(2026, 3, 4, 18, 0, tzinfo=timezone.utc),
            sentiment="positive" if rating >= 4 else "negative",
            sentiment_score=0.5 if rating >= 4 else -0.5,
            sentiment_signals=[f"rating:{rating}"],
            review_metadata={"google_review_name": f"accounts/1/locations/2/reviews/rev-{number}"},
        )
        draft = ReplyDraft(
            review=review,
            draft_text="Thank you for your feedback.",
            status=draft_status,
            escalation_flag=False,
            escalation_reasons=[],
        )
        db.add_all([review, draft])
        db.commit()
        return review, draft
    return _make_review
