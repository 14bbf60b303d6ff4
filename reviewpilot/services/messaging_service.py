"""
Approval Messaging Engine

Drives the owner-facing SMS conversation: review alerts go out, owner
commands come back, and each command moves the phone's conversation state
and the pending draft.

Conversation states:
- IDLE: nothing in flight
- AWAITING_APPROVAL: an alert was sent for one (review, draft)
- AWAITING_CUSTOM_REPLY: owner chose EDIT, the next message is the reply
- AWAITING_CANCEL_CONFIRM: owner chose CANCEL, only YES confirms

Every read-modify-write of a phone's state happens under
conversation_lock(phone), and inbound messages are deduplicated by
MessageSid before any command is applied.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reviewpilot.core.locks import LockNotAcquired, conversation_lock
from reviewpilot.core.observability import capture_alert
from reviewpilot.db.models import (
    Account, ConversationState, ConversationStateType, DraftStatus,
    ReplyDraft, Review, SmsLog,
)
from reviewpilot.services.command_parser import CommandType, ParsedCommand, parse_command
from reviewpilot.services.conversation_store import load_state, transition
from reviewpilot.services.sms_client import SmsClient, SmsDeliveryError, get_sms_client
from reviewpilot.services.stripe_service import StripeError, StripeService, get_stripe_service
from reviewpilot.services.system_metrics import track_inbound_command, track_sms
from reviewpilot.services.webhook_idempotency import (
    WebhookProcessingResult, WebhookProvider, find_processed_event, record_event,
)

logger = logging.getLogger(__name__)

HELP_SUFFIX = "\nReply HELP anytime."

COMMAND_LIST = (
    "ReviewPilot Commands:\n"
    "Review: APPROVE, EDIT, IGNORE\n"
    "Account: PAUSE, RESUME, STATUS\n"
    "Billing: BILLING, CANCEL\n"
    "Opt out: STOP"
)


class Messages:
    HELP = COMMAND_LIST + HELP_SUFFIX
    UNKNOWN = "Sorry, I didn't understand that command.\n\n" + COMMAND_LIST + HELP_SUFFIX
    STOP = "You've been unsubscribed from ReviewPilot alerts and monitoring is paused. Text RESUME to turn them back on."
    APPROVE = "✅ Response approved! We'll post it shortly." + HELP_SUFFIX
    EDIT_PROMPT = "✏️ Type your custom reply now. Your next message will be posted as the response." + HELP_SUFFIX
    EMPTY_CUSTOM_REPLY = "Your reply was empty. Type the response you want posted, or text HELP." + HELP_SUFFIX
    CUSTOM_REPLY_CONFIRM = "✅ Your custom response has been approved and will be posted shortly." + HELP_SUFFIX
    IGNORE = "👍 Review dismissed. No reply will be posted." + HELP_SUFFIX
    PAUSE = "⏸️ Review monitoring paused. Text RESUME to restart." + HELP_SUFFIX
    RESUME = "▶️ Review monitoring resumed! You'll receive alerts for new reviews." + HELP_SUFFIX
    CANCEL_PROMPT = (
        "⚠️ Are you sure you want to cancel your ReviewPilot subscription? "
        "Reply YES to confirm or NO to keep your account." + HELP_SUFFIX
    )
    CANCEL_CONFIRM = "Your subscription has been canceled and monitoring is stopped. We're sorry to see you go." + HELP_SUFFIX
    CANCEL_FAILED = "Cancellation failed. Please try again or contact support." + HELP_SUFFIX
    CANCEL_DENY = "Great, your account remains active!" + HELP_SUFFIX
    NO_PENDING_REVIEW = "No pending review to respond to. We'll notify you when the next one arrives." + HELP_SUFFIX
    NO_ACCOUNT = "No account found for this phone number. Contact support for help." + HELP_SUFFIX
    NO_BILLING_ACCOUNT = "No billing account is linked yet. Contact support to set up billing." + HELP_SUFFIX
    BILLING_UNAVAILABLE = "We couldn't open the billing portal right now. Please try again shortly." + HELP_SUFFIX
    BUSY = "We're still processing your last message. Please try again in a moment."


REVIEW_SNIPPET_LENGTH = 120
DRAFT_SNIPPET_LENGTH = 300


def format_review_alert(review: Review, draft: ReplyDraft) -> str:
    """Build the outbound alert for a new review"""
    text = review.text or ""
    snippet = text[:REVIEW_SNIPPET_LENGTH] + ("..." if len(text) > REVIEW_SNIPPET_LENGTH else "")
    lines = [
        f"New {review.platform.title()} review from {review.author or 'Anonymous'}: "
        f"\"{snippet}\" ({review.rating}★)",
    ]
    if draft.escalation_flag:
        reasons = ", ".join(r.replace("_", " ") for r in (draft.escalation_reasons or []))
        lines.append(f"⚠️ Needs attention: {reasons}")
    lines.append(f"Draft reply: \"{draft.draft_text[:DRAFT_SNIPPET_LENGTH]}\"")
    lines.append("APPROVE to post | EDIT for custom reply | IGNORE to skip." + HELP_SUFFIX)
    return "\n".join(lines)


def _enqueue_posting(draft_id: int) -> None:
    from reviewpilot.tasks.notification_tasks import post_approved_reply
    post_approved_reply.delay(draft_id)


@dataclass
class CommandOutcome:
    reply: str
    post_draft_id: Optional[int] = None


class ApprovalMessagingEngine:
    """SMS approval workflow for review reply drafts"""

    def __init__(self, db: Session, sms_client: Optional[SmsClient] = None,
                 stripe_service: Optional[StripeService] = None,
                 on_reply_approved: Optional[Callable[[int], None]] = None):
        self.db = db
        self.sms = sms_client or get_sms_client()
        self._stripe = stripe_service
        self.on_reply_approved = on_reply_approved or _enqueue_posting

    @property
    def stripe(self) -> StripeService:
        if self._stripe is None:
            self._stripe = get_stripe_service()
        return self._stripe

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send_review_alert(self, review: Review, draft: ReplyDraft, account: Account, phone: str) -> str:
        """
        Alert the owner about a new review and open it for approval

        Args:
            review: Persisted review
            draft: Its reply draft
            account: Owning account
            phone: Owner phone in E.164

        Returns:
            Provider message SID

        Raises:
            SmsDeliveryError: If the alert was not accepted by the provider.
                Callers hand the failure to the notification retry scheduler.
        """
        if account.sms_opted_out:
            raise SmsDeliveryError(f"Account {account.id} has opted out of SMS", transient=False)

        body = format_review_alert(review, draft)

        try:
            with conversation_lock(phone):
                try:
                    sid = self.sms.send(phone, body)
                except SmsDeliveryError as e:
                    self._log_sms("outbound", self.sms.from_number, phone, body,
                                  status="failed", account_id=account.id)
                    self.db.commit()
                    track_sms("outbound", "failed")
                    logger.warning(f"Review alert for review {review.id} to {phone} failed: {e}")
                    raise

                state = load_state(self.db, phone, account.id)
                transition(state, ConversationStateType.AWAITING_APPROVAL, review.id, draft.id)
                self._log_sms("outbound", self.sms.from_number, phone, body,
                              status="sent", sid=sid, account_id=account.id)
                self.db.commit()
        except LockNotAcquired as e:
            raise SmsDeliveryError(f"Conversation for {phone} is busy: {e}") from e

        track_sms("outbound", "sent")
        logger.info(f"Review alert sent for review {review.id} (draft {draft.id}) to {phone}: {sid}")
        return sid

    def send_owner_message(self, account: Account, body: str) -> Optional[str]:
        """
        Send a one-off notice (billing, digest) without touching conversation state

        Returns:
            Message SID, or None when the owner has no phone or opted out
        """
        if not account.owner_phone or account.sms_opted_out:
            logger.info(f"Skipping SMS to account {account.id}: no phone or opted out")
            return None

        try:
            sid = self.sms.send(account.owner_phone, body)
        except SmsDeliveryError:
            self._log_sms("outbound", self.sms.from_number, account.owner_phone, body,
                          status="failed", account_id=account.id)
            track_sms("outbound", "failed")
            raise

        self._log_sms("outbound", self.sms.from_number, account.owner_phone, body,
                      status="sent", sid=sid, account_id=account.id)
        track_sms("outbound", "sent")
        return sid

    def update_delivery_status(self, message_sid: str, message_status: str) -> int:
        """Apply a provider delivery-status callback; returns rows updated"""
        updated = self.db.query(SmsLog).filter(
            SmsLog.provider_sid == message_sid
        ).update({SmsLog.status: message_status}, synchronize_session=False)
        self.db.commit()

        if message_status in ("failed", "undelivered"):
            track_sms("outbound", message_status)
            logger.warning(f"SMS {message_sid} reported {message_status}")
        return updated

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_incoming(self, from_phone: str, body: str, message_sid: str) -> str:
        """
        Apply one inbound SMS and return the reply text

        Re-deliveries of the same MessageSid return the original reply
        without re-applying the command.
        """
        previous = find_processed_event(self.db, WebhookProvider.TWILIO, message_sid)
        if previous is not None:
            return previous.response_body or ""

        try:
            with conversation_lock(from_phone):
                # A concurrent delivery may have finished while we waited
                previous = find_processed_event(self.db, WebhookProvider.TWILIO, message_sid)
                if previous is not None:
                    return previous.response_body or ""

                outcome, command = self._apply_command(from_phone, body, message_sid)
        except LockNotAcquired:
            logger.warning(f"Conversation lock busy for {from_phone}, message {message_sid} not applied")
            return Messages.BUSY

        if outcome.post_draft_id is not None:
            try:
                self.on_reply_approved(outcome.post_draft_id)
            except Exception as e:
                # Draft stays approved; the posting sweep picks it up
                logger.error(f"Failed to enqueue posting for draft {outcome.post_draft_id}: {e}")

        logger.info(f"Handled {command.type.value} from {from_phone} ({message_sid})")
        return outcome.reply

    def _apply_command(self, from_phone: str, body: str, message_sid: str):
        account = self._find_account(from_phone)
        state = load_state(self.db, from_phone, account.id if account else None)
        command = parse_command(body, state.state)
        track_inbound_command(command.type.value)

        outcome = self._dispatch(command, state, account)

        self._log_sms("inbound", from_phone, self.sms.from_number, body, status="received",
                      sid=message_sid, command=command.type.value,
                      account_id=account.id if account else None)
        self._log_sms("outbound", self.sms.from_number, from_phone, outcome.reply, status="replied",
                      account_id=account.id if account else None)
        record_event(self.db, WebhookProvider.TWILIO, message_sid, command.type.value,
                     WebhookProcessingResult.PROCESSED, outcome.reply)

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            previous = find_processed_event(self.db, WebhookProvider.TWILIO, message_sid)
            if previous is None:
                raise
            return CommandOutcome(reply=previous.response_body or ""), command

        return outcome, command

    def _find_account(self, phone: str) -> Optional[Account]:
        state = self.db.query(ConversationState).filter(ConversationState.phone == phone).first()
        if state is not None and state.account_id is not None:
            account = self.db.query(Account).filter(Account.id == state.account_id).first()
            if account is not None:
                return account
        return self.db.query(Account).filter(Account.owner_phone == phone).order_by(Account.id).first()

    def _dispatch(self, command: ParsedCommand, state: ConversationState,
                  account: Optional[Account]) -> CommandOutcome:
        handlers = {
            CommandType.APPROVE: self._handle_approve,
            CommandType.EDIT: self._handle_edit,
            CommandType.IGNORE: self._handle_ignore,
            CommandType.CUSTOM_REPLY: self._handle_custom_reply,
            CommandType.PAUSE: self._handle_pause,
            CommandType.RESUME: self._handle_resume,
            CommandType.STATUS: self._handle_status,
            CommandType.BILLING: self._handle_billing,
            CommandType.CANCEL: self._handle_cancel,
            CommandType.CANCEL_CONFIRM: self._handle_cancel_confirm,
            CommandType.CANCEL_DENY: self._handle_cancel_deny,
            CommandType.STOP: self._handle_stop,
        }

        if command.type == CommandType.HELP:
            return CommandOutcome(Messages.HELP)
        handler = handlers.get(command.type)
        if handler is None:
            return CommandOutcome(Messages.UNKNOWN)
        if account is None:
            return CommandOutcome(Messages.NO_ACCOUNT)
        return handler(command, state, account)

    # ------------------------------------------------------------------
    # Command handlers
    # ------------------------------------------------------------------

    def _pending_draft(self, state: ConversationState,
                       *expected: ConversationStateType) -> Optional[ReplyDraft]:
        if state.state not in [s.value for s in expected] or state.pending_draft_id is None:
            return None
        draft = self.db.query(ReplyDraft).filter(ReplyDraft.id == state.pending_draft_id).first()
        if draft is None or draft.status != DraftStatus.PENDING.value:
            return None
        return draft

    def _handle_approve(self, command, state, account) -> CommandOutcome:
        draft = self._pending_draft(state, ConversationStateType.AWAITING_APPROVAL,
                                   ConversationStateType.AWAITING_CUSTOM_REPLY)
        if draft is None:
            return CommandOutcome(Messages.NO_PENDING_REVIEW)

        draft.status = DraftStatus.APPROVED.value
        draft.approved_at = datetime.now(timezone.utc)
        transition(state, ConversationStateType.IDLE)
        return CommandOutcome(Messages.APPROVE, post_draft_id=draft.id)

    def _handle_edit(self, command, state, account) -> CommandOutcome:
        draft = self._pending_draft(state, ConversationStateType.AWAITING_APPROVAL)
        if draft is None:
            return CommandOutcome(Messages.NO_PENDING_REVIEW)

        transition(state, ConversationStateType.AWAITING_CUSTOM_REPLY)
        return CommandOutcome(Messages.EDIT_PROMPT)

    def _handle_ignore(self, command, state, account) -> CommandOutcome:
        draft = self._pending_draft(state, ConversationStateType.AWAITING_APPROVAL,
                                   ConversationStateType.AWAITING_CUSTOM_REPLY)
        if draft is None:
            return CommandOutcome(Messages.NO_PENDING_REVIEW)

        draft.status = DraftStatus.SKIPPED.value
        transition(state, ConversationStateType.IDLE)
        return CommandOutcome(Messages.IGNORE)

    def _handle_custom_reply(self, command, state, account) -> CommandOutcome:
        draft = self._pending_draft(state, ConversationStateType.AWAITING_CUSTOM_REPLY)
        if draft is None:
            transition(state, ConversationStateType.IDLE)
            return CommandOutcome(Messages.NO_PENDING_REVIEW)

        if not command.body:
            return CommandOutcome(Messages.EMPTY_CUSTOM_REPLY)

        metadata = dict(draft.draft_metadata or {})
        metadata["custom_response"] = True
        metadata["original_draft_text"] = draft.draft_text
        draft.draft_metadata = metadata
        draft.draft_text = command.body
        draft.status = DraftStatus.EDITED.value
        draft.approved_at = datetime.now(timezone.utc)
        transition(state, ConversationStateType.IDLE)
        return CommandOutcome(Messages.CUSTOM_REPLY_CONFIRM, post_draft_id=draft.id)

    def _handle_pause(self, command, state, account) -> CommandOutcome:
        account.monitoring_paused = True
        logger.info(f"Monitoring paused by owner for account {account.id}")
        return CommandOutcome(Messages.PAUSE)

    def _handle_resume(self, command, state, account) -> CommandOutcome:
        account.monitoring_paused = False
        account.sms_opted_out = False
        logger.info(f"Monitoring resumed by owner for account {account.id}")
        return CommandOutcome(Messages.RESUME)

    def _handle_status(self, command, state, account) -> CommandOutcome:
        pending_count = self.db.query(ReplyDraft).join(Review).filter(
            Review.account_id == account.id,
            ReplyDraft.status == DraftStatus.PENDING.value
        ).count()
        week_ago = datetime.now(timezone.utc) - timedelta(days=7)
        weekly_count = self.db.query(Review).filter(
            Review.account_id == account.id,
            Review.review_date >= week_ago
        ).count()
        total_count = self.db.query(Review).filter(Review.account_id == account.id).count()

        monitoring = "⏸️ Paused" if account.monitoring_paused else "✅ Active"
        lines = [
            f"📊 {account.name}",
            f"Monitoring: {monitoring}",
            f"Plan: {account.subscription_state.replace('_', ' ')}",
            f"Reviews tracked: {total_count} ({weekly_count} this week)",
            f"Awaiting your reply: {pending_count}",
        ]

        if state.pending_review_id is not None:
            review = self.db.query(Review).filter(Review.id == state.pending_review_id).first()
            if review is not None:
                lines.append(f"Current: {review.rating}★ from {review.author or 'Anonymous'} on {review.platform.title()}")

        return CommandOutcome("\n".join(lines) + HELP_SUFFIX)

    def _handle_billing(self, command, state, account) -> CommandOutcome:
        if not account.stripe_customer_id:
            return CommandOutcome(Messages.NO_BILLING_ACCOUNT)
        try:
            url = self.stripe.create_customer_portal_session(account)
        except StripeError as e:
            logger.error(f"Billing portal unavailable for account {account.id}: {e}")
            return CommandOutcome(Messages.BILLING_UNAVAILABLE)
        return CommandOutcome(f"💳 Manage your billing here: {url}" + HELP_SUFFIX)

    def _handle_cancel(self, command, state, account) -> CommandOutcome:
        transition(state, ConversationStateType.AWAITING_CANCEL_CONFIRM)
        return CommandOutcome(Messages.CANCEL_PROMPT)

    def _handle_cancel_confirm(self, command, state, account) -> CommandOutcome:
        transition(state, ConversationStateType.IDLE)
        try:
            self.stripe.cancel_subscription(account)
        except StripeError as e:
            capture_alert(
                "Subscription cancellation via SMS failed",
                level="fatal",
                account_id=account.id,
                stripe_subscription_id=account.stripe_subscription_id,
                error=str(e),
            )
            return CommandOutcome(Messages.CANCEL_FAILED)

        logger.info(f"Account {account.id} canceled its subscription by SMS")
        return CommandOutcome(Messages.CANCEL_CONFIRM)

    def _handle_cancel_deny(self, command, state, account) -> CommandOutcome:
        transition(state, ConversationStateType.IDLE)
        return CommandOutcome(Messages.CANCEL_DENY)

    def _handle_stop(self, command, state, account) -> CommandOutcome:
        account.monitoring_paused = True
        account.sms_opted_out = True
        logger.info(f"Account {account.id} opted out of SMS")
        return CommandOutcome(Messages.STOP)

    # ------------------------------------------------------------------

    def _log_sms(self, direction: str, from_phone: Optional[str], to_phone: Optional[str], body: str,
                 status: str, sid: Optional[str] = None, command: Optional[str] = None,
                 account_id: Optional[int] = None) -> None:
        self.db.add(SmsLog(
            account_id=account_id,
            direction=direction,
            from_phone=from_phone,
            to_phone=to_phone,
            body=body,
            command_parsed=command,
            status=status,
            provider_sid=sid,
        ))
