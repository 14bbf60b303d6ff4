from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, Float, Boolean, Text, JSON, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from reviewpilot.db.database import Base


class Platform(str, Enum):
    GOOGLE = "google"
    YELP = "yelp"


class SubscriptionState(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class AuthStatus(str, Enum):
    ACTIVE = "active"
    NEEDS_REAUTH = "needs_reauth"


class DraftStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    POSTED = "posted"
    EDITED = "edited"
    SKIPPED = "skipped"


class ConversationStateType(str, Enum):
    IDLE = "IDLE"
    AWAITING_APPROVAL = "AWAITING_APPROVAL"
    AWAITING_CUSTOM_REPLY = "AWAITING_CUSTOM_REPLY"
    AWAITING_CANCEL_CONFIRM = "AWAITING_CANCEL_CONFIRM"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    PERMANENT_FAILURE = "permanent_failure"


class Account(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    owner_phone = Column(String(20), nullable=True, index=True)  # E.164
    owner_email = Column(String(255), nullable=True)
    timezone = Column(String(64), nullable=False, default="America/New_York")  # IANA name

    monitoring_paused = Column(Boolean, nullable=False, default=False)
    sms_opted_out = Column(Boolean, nullable=False, default=False)  # STOP keyword

    # Billing
    subscription_state = Column(String(20), nullable=False, default=SubscriptionState.TRIALING.value)
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, index=True)
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    connections = relationship("PlatformConnection", back_populates="account", cascade="all, delete-orphan")
    reviews = relationship("Review", back_populates="account")


class PlatformConnection(Base):
    """External location identity for one platform of one account"""
    __tablename__ = "platform_connections"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    platform = Column(String(20), nullable=False)
    location_id = Column(String(255), nullable=False)  # Google place id / Yelp business id
    access_token = Column(Text, nullable=True)  # result of the OAuth exchange, when the platform needs one
    auth_status = Column(String(20), nullable=False, default=AuthStatus.ACTIVE.value)
    last_error = Column(Text, nullable=True)
    last_polled_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    account = relationship("Account", back_populates="connections")

    __table_args__ = (
        UniqueConstraint("account_id", "platform", name="uq_platform_connections_account_platform"),
    )


class Review(Base):
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    platform = Column(String(20), nullable=False)
    platform_review_id = Column(String(255), nullable=False)
    author = Column(String(255), nullable=True)
    rating = Column(Integer, nullable=False)
    text = Column(Text, nullable=True)
    review_date = Column(DateTime(timezone=True), nullable=False)

    sentiment = Column(String(20), nullable=False)
    sentiment_score = Column(Float, nullable=False, default=0.0)
    sentiment_signals = Column(JSON, default=list)

    # Platform payload plus the notification_failed flag
    review_metadata = Column(JSON, default=dict)
    ingested_at = Column(DateTime(timezone=True), server_default=func.now())

    account = relationship("Account", back_populates="reviews")
    draft = relationship("ReplyDraft", back_populates="review", uselist=False)

    __table_args__ = (
        UniqueConstraint("platform", "platform_review_id", name="uq_reviews_platform_review_id"),
        Index("ix_reviews_account_platform_date", "account_id", "platform", "review_date"),
    )


class ReplyDraft(Base):
    __tablename__ = "reply_drafts"

    id = Column(Integer, primary_key=True, index=True)
    review_id = Column(Integer, ForeignKey("reviews.id"), nullable=False, unique=True)
    draft_text = Column(Text, nullable=False)
    escalation_flag = Column(Boolean, nullable=False, default=False)
    escalation_reasons = Column(JSON, default=list)
    status = Column(String(20), nullable=False, default=DraftStatus.PENDING.value, index=True)
    confidence_score = Column(Float, nullable=True)
    is_fallback = Column(Boolean, nullable=False, default=False)  # template used because generation failed
    draft_metadata = Column(JSON, default=dict)
    post_attempts = Column(Integer, nullable=False, default=0)
    post_abandoned_at = Column(DateTime(timezone=True), nullable=True)  # sweep stops retrying

    approved_at = Column(DateTime(timezone=True), nullable=True)
    posted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    review = relationship("Review", back_populates="draft")


class ConversationState(Base):
    """One in-flight SMS conversation per owner phone"""
    __tablename__ = "conversation_states"

    phone = Column(String(20), primary_key=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    state = Column(String(32), nullable=False, default=ConversationStateType.IDLE.value)
    pending_review_id = Column(Integer, ForeignKey("reviews.id"), nullable=True)
    pending_draft_id = Column(Integer, ForeignKey("reply_drafts.id"), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class NotificationAttempt(Base):
    __tablename__ = "notification_attempts"

    id = Column(Integer, primary_key=True, index=True)
    review_id = Column(Integer, ForeignKey("reviews.id"), nullable=False)
    draft_id = Column(Integer, ForeignKey("reply_drafts.id"), nullable=False, index=True)
    phone = Column(String(20), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(20), nullable=False, default=NotificationStatus.PENDING.value)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index("ix_notification_attempts_status_next_retry", "status", "next_retry_at"),
    )


class SmsLog(Base):
    __tablename__ = "sms_logs"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    direction = Column(String(10), nullable=False)  # inbound, outbound
    from_phone = Column(String(20), nullable=True)
    to_phone = Column(String(20), nullable=True)
    body = Column(Text, nullable=True)
    command_parsed = Column(String(32), nullable=True)
    status = Column(String(20), nullable=True)  # queued, sent, delivered, undelivered, failed, received
    provider_sid = Column(String(64), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class WebhookEvent(Base):
    """Idempotency ledger for at-least-once provider deliveries"""
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(20), nullable=False)  # twilio, stripe
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=True)
    processing_result = Column(String(20), nullable=True)  # processed, ignored, failed
    response_body = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),
    )


class Digest(Base):
    __tablename__ = "digests"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=False)
    stats = Column(JSON, default=dict)
    sms_sent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("account_id", "period_start", name="uq_digests_account_period"),
    )


class CrisisAlert(Base):
    """Urgent owner alerts; the latest one suppresses repeats for a cool-down window"""
    __tablename__ = "crisis_alerts"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    event_type = Column(String(32), nullable=False)  # multiple_negative, critical_keyword, rating_drop
    severity = Column(String(16), nullable=False)  # high, critical
    review_count = Column(Integer, nullable=False, default=0)
    message = Column(Text, nullable=True)
    event_metadata = Column(JSON, default=dict)
    provider_sid = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_crisis_alerts_account_created", "account_id", "created_at"),
    )
