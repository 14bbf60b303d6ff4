"""
Webhook idempotency ledger

Providers deliver at least once. Every handled delivery is recorded under
(provider, event_id) in the same transaction as its side effects, so a
re-delivery is detected before anything is re-applied, and two concurrent
deliveries cannot both commit.
"""
import logging
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from reviewpilot.db.models import WebhookEvent

logger = logging.getLogger(__name__)


class WebhookProvider(str, Enum):
    TWILIO = "twilio"
    STRIPE = "stripe"


class WebhookProcessingResult(str, Enum):
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


def find_processed_event(db: Session, provider: WebhookProvider, event_id: str) -> Optional[WebhookEvent]:
    """
    Check if a delivery has already been handled

    Returns:
        The ledger row for a duplicate, None for a first delivery
    """
    existing = db.query(WebhookEvent).filter(
        WebhookEvent.provider == provider.value,
        WebhookEvent.event_id == event_id
    ).first()

    if existing:
        logger.info(
            f"Duplicate webhook detected: provider={provider.value}, event_id={event_id}, "
            f"original_processed_at={existing.processed_at}"
        )
    return existing


def record_event(db: Session, provider: WebhookProvider, event_id: str, event_type: str,
                 result: WebhookProcessingResult, response_body: Optional[str] = None) -> WebhookEvent:
    """Add a ledger row to the current transaction; the caller commits"""
    record = WebhookEvent(
        provider=provider.value,
        event_id=event_id,
        event_type=event_type,
        processing_result=result.value,
        response_body=response_body,
    )
    db.add(record)
    return record
