"""
Twilio SMS webhooks

- POST /webhooks/twilio/inbound: owner commands, answered with TwiML
- POST /webhooks/twilio/status: delivery status callbacks

Twilio retries on non-2xx responses, so only malformed or unauthenticated
requests are rejected; processing errors still answer 200.
"""
import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import Response
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from twilio.request_validator import RequestValidator
from twilio.twiml.messaging_response import MessagingResponse

from reviewpilot.core.config import get_settings
from reviewpilot.db.database import get_db
from reviewpilot.services.messaging_service import ApprovalMessagingEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/twilio", tags=["sms"])

APOLOGY_MESSAGE = "Sorry, something went wrong on our side. Please try again in a few minutes."

DELIVERY_STATUSES = {"queued", "sent", "delivered", "undelivered", "failed"}


def twiml_response(message: str = "") -> Response:
    reply = MessagingResponse()
    if message:
        reply.message(message)
    return Response(content=str(reply), media_type="application/xml")


def _verify_twilio_signature(request: Request, params: Dict[str, str]) -> None:
    settings = get_settings()
    if not settings.twilio_validate_signature:
        return

    if not settings.twilio_auth_token:
        logger.error("TWILIO_VALIDATE_SIGNATURE is on but TWILIO_AUTH_TOKEN is not configured")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Signature validation unavailable")

    if settings.public_base_url:
        url = f"{settings.public_base_url.rstrip('/')}{request.url.path}"
    else:
        url = str(request.url)

    signature = request.headers.get("X-Twilio-Signature", "")
    validator = RequestValidator(settings.twilio_auth_token)
    if not validator.validate(url, params, signature):
        logger.warning(f"Rejected Twilio webhook with invalid signature for {request.url.path}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid Twilio signature")


def get_engine(db: Session = Depends(get_db)) -> ApprovalMessagingEngine:
    return ApprovalMessagingEngine(db)


@router.post("/inbound")
async def inbound_sms(request: Request, db: Session = Depends(get_db),
                      engine: ApprovalMessagingEngine = Depends(get_engine)):
    """
    Handle an inbound owner SMS

    Expects form fields From, Body and MessageSid. Re-deliveries of the same
    MessageSid get the original reply without re-applying the command.
    """
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    _verify_twilio_signature(request, params)

    from_phone = params.get("From", "").strip()
    body = params.get("Body")
    message_sid = params.get("MessageSid", "").strip()

    if not from_phone or body is None or not message_sid:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="From, Body and MessageSid are required"
        )

    try:
        reply = await run_in_threadpool(engine.handle_incoming, from_phone, body, message_sid)
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to handle inbound SMS {message_sid} from {from_phone}: {e}", exc_info=True)
        return twiml_response(APOLOGY_MESSAGE)

    return twiml_response(reply)


@router.post("/status")
async def delivery_status(request: Request, db: Session = Depends(get_db),
                          engine: ApprovalMessagingEngine = Depends(get_engine)):
    """Record a delivery status callback; always acknowledged"""
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    _verify_twilio_signature(request, params)

    message_sid = params.get("MessageSid", "").strip()
    message_status = params.get("MessageStatus", "").strip().lower()

    if not message_sid or message_status not in DELIVERY_STATUSES:
        logger.warning(f"Ignoring status callback sid={message_sid!r} status={message_status!r}")
        return twiml_response()

    try:
        updated = await run_in_threadpool(engine.update_delivery_status, message_sid, message_status)
        if not updated:
            logger.info(f"Status callback for unknown message {message_sid}")
    except Exception as e:
        db.rollback()
        logger.error(f"Failed to record status {message_status} for {message_sid}: {e}", exc_info=True)

    return twiml_response()
