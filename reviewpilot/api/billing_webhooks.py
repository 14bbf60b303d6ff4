"""
Stripe billing webhook

Verifies the Stripe-Signature header before trusting the payload, then
hands the event to the subscription synchronizer. Verified events are
acknowledged with 200 even when processing fails, so Stripe does not
retry a poison event forever.
"""
import json
import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from reviewpilot.db.database import get_db
from reviewpilot.services.stripe_service import StripeError, StripeService, get_stripe_service
from reviewpilot.services.subscription_sync_service import SubscriptionStateSynchronizer
from reviewpilot.services.system_metrics import track_billing_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["billing"])


def get_synchronizer(db: Session = Depends(get_db)) -> SubscriptionStateSynchronizer:
    return SubscriptionStateSynchronizer(db)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
    synchronizer: SubscriptionStateSynchronizer = Depends(get_synchronizer),
):
    """
    Handle Stripe webhook events

    Supported events:
    - customer.subscription.created
    - customer.subscription.updated
    - customer.subscription.deleted
    - invoice.payment_succeeded
    - invoice.payment_failed
    - checkout.session.completed
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing stripe-signature header"
        )

    try:
        stripe_service.construct_event(payload, sig_header)
    except StripeError as e:
        logger.error(f"Stripe webhook rejected: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured"
        )
    except ValueError as e:
        logger.error(f"Invalid payload: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload"
        )
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid signature: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature"
        )

    # Signature verified; work on the plain JSON rather than StripeObject
    event = json.loads(payload)
    event_type = event.get("type", "unknown")
    logger.info(f"Processing Stripe webhook: {event_type} ({event.get('id')})")

    try:
        outcome = await run_in_threadpool(synchronizer.process_event, event)
    except Exception as e:
        db.rollback()
        track_billing_webhook(event_type, "failed")
        logger.error(f"Error processing Stripe event {event.get('id')} ({event_type}): {e}", exc_info=True)
        return {"received": True, "processed": False}

    return {"received": True, "processed": outcome.result in ("processed", "ignored"), "result": outcome.result}
