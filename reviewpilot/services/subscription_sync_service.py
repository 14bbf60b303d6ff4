"""
Subscription State Synchronizer

Applies Stripe billing lifecycle events to the local account. Each event id
is applied at most once: the ledger row is written in the same transaction
as the state change, and owner notifications go out only after that commit.

Events handled:
- customer.subscription.created / updated: sync state from provider status
- customer.subscription.deleted: canceled, monitoring paused
- invoice.payment_succeeded: past_due accounts become active and resume
- invoice.payment_failed: past_due, monitoring paused, owner notified by SMS
- checkout.session.completed: link customer and subscription to the account
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from reviewpilot.db.models import Account, SubscriptionState
from reviewpilot.services.sms_client import SmsDeliveryError
from reviewpilot.services.stripe_service import map_subscription_status
from reviewpilot.services.system_metrics import track_billing_webhook
from reviewpilot.services.webhook_idempotency import (
    WebhookProcessingResult, WebhookProvider, find_processed_event, record_event,
)

logger = logging.getLogger(__name__)

PAYMENT_FAILED_MESSAGE = (
    "⚠️ Your ReviewPilot payment failed. Review monitoring is paused. "
    "Please update your payment method: text BILLING to get a link.\nReply HELP anytime."
)

PAUSING_STATES = (SubscriptionState.CANCELED, SubscriptionState.PAST_DUE)
RUNNING_STATES = (SubscriptionState.ACTIVE, SubscriptionState.TRIALING)


@dataclass
class EventOutcome:
    event_id: str
    event_type: str
    result: str  # processed, ignored, duplicate, failed
    account_id: Optional[int] = None
    detail: Optional[str] = None


def _object_id(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object"""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest it under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _object_id(details.get("subscription"))


def _period_end(subscription: Dict[str, Any]) -> Optional[int]:
    if subscription.get("current_period_end"):
        return subscription["current_period_end"]
    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return items[0].get("current_period_end")
    return None


class SubscriptionStateSynchronizer:
    """Idempotent billing event processor"""

    def __init__(self, db: Session, messaging_engine=None):
        self.db = db
        self._messaging_engine = messaging_engine

    @property
    def messaging_engine(self):
        if self._messaging_engine is None:
            from reviewpilot.services.messaging_service import ApprovalMessagingEngine
            self._messaging_engine = ApprovalMessagingEngine(self.db)
        return self._messaging_engine

    def process_event(self, event: Dict[str, Any]) -> EventOutcome:
        """
        Apply one verified Stripe event

        Args:
            event: Event payload with id, type and data.object

        Returns:
            EventOutcome describing what happened. Re-deliveries return a
            "duplicate" outcome and change nothing.
        """
        event_id = event["id"]
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}

        if find_processed_event(self.db, WebhookProvider.STRIPE, event_id) is not None:
            track_billing_webhook(event_type, "duplicate")
            return EventOutcome(event_id, event_type, "duplicate")

        handlers = {
            "customer.subscription.created": self._handle_subscription_synced,
            "customer.subscription.updated": self._handle_subscription_synced,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.payment_succeeded": self._handle_payment_succeeded,
            "invoice.payment_failed": self._handle_payment_failed,
            "checkout.session.completed": self._handle_checkout_completed,
        }
        handler = handlers.get(event_type)

        notify_account: Optional[Account] = None
        if handler is None:
            logger.info(f"Unhandled Stripe event type: {event_type} ({event_id})")
            account, result = None, WebhookProcessingResult.IGNORED
        else:
            account, notify = handler(obj)
            result = WebhookProcessingResult.PROCESSED if account else WebhookProcessingResult.IGNORED
            if notify:
                notify_account = account

        record_event(self.db, WebhookProvider.STRIPE, event_id, event_type, result)
        try:
            self.db.commit()
        except IntegrityError:
            # A concurrent delivery of the same event committed first
            self.db.rollback()
            logger.info(f"Stripe event {event_id} was processed concurrently")
            track_billing_webhook(event_type, "duplicate")
            return EventOutcome(event_id, event_type, "duplicate")

        track_billing_webhook(event_type, result.value)
        account_id = account.id if account else None
        logger.info(f"Stripe event {event_type} ({event_id}) {result.value} for account {account_id}")

        if notify_account is not None:
            self._notify_payment_failed(notify_account)

        return EventOutcome(event_id, event_type, result.value, account_id)

    # ------------------------------------------------------------------

    def _find_account(self, metadata: Optional[Dict[str, Any]] = None,
                      subscription_id: Optional[str] = None,
                      customer_id: Optional[str] = None) -> Optional[Account]:
        account_id = (metadata or {}).get("account_id")
        if account_id:
            try:
                account = self.db.query(Account).filter(Account.id == int(account_id)).first()
            except (TypeError, ValueError):
                logger.warning(f"Ignoring malformed account_id metadata: {account_id!r}")
                account = None
            if account is not None:
                return account

        if subscription_id:
            account = self.db.query(Account).filter(Account.stripe_subscription_id == subscription_id).first()
            if account is not None:
                return account

        if customer_id:
            return self.db.query(Account).filter(Account.stripe_customer_id == customer_id).first()
        return None

    def _handle_subscription_synced(self, subscription: Dict[str, Any]):
        account = self._find_account(
            subscription.get("metadata"),
            subscription.get("id"),
            _object_id(subscription.get("customer")),
        )
        if account is None:
            logger.warning(f"No account for Stripe subscription {subscription.get('id')}")
            return None, False

        state = map_subscription_status(subscription.get("status"))
        account.subscription_state = state.value
        account.stripe_subscription_id = subscription.get("id") or account.stripe_subscription_id
        account.stripe_customer_id = _object_id(subscription.get("customer")) or account.stripe_customer_id
        account.trial_ends_at = _timestamp(subscription.get("trial_end"))
        account.current_period_end = _timestamp(_period_end(subscription))

        if state in PAUSING_STATES:
            account.monitoring_paused = True
        elif state in RUNNING_STATES:
            account.monitoring_paused = False

        logger.info(f"Account {account.id} -> subscription_state={state.value}")
        return account, False

    def _handle_subscription_deleted(self, subscription: Dict[str, Any]):
        account = self._find_account(
            subscription.get("metadata"),
            subscription.get("id"),
            _object_id(subscription.get("customer")),
        )
        if account is None:
            logger.warning(f"No account for deleted subscription {subscription.get('id')}")
            return None, False

        account.subscription_state = SubscriptionState.CANCELED.value
        account.monitoring_paused = True
        logger.info(f"Subscription canceled for account {account.id}")
        return account, False

    def _handle_payment_succeeded(self, invoice: Dict[str, Any]):
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return None, False  # Not a subscription invoice

        account = self._find_account(None, subscription_id, _object_id(invoice.get("customer")))
        if account is None:
            logger.warning(f"No account for paid invoice on subscription {subscription_id}")
            return None, False

        if account.subscription_state == SubscriptionState.PAST_DUE.value:
            account.subscription_state = SubscriptionState.ACTIVE.value
            account.monitoring_paused = False
            logger.info(f"Payment succeeded, account {account.id} resumed")
        return account, False

    def _handle_payment_failed(self, invoice: Dict[str, Any]):
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return None, False

        account = self._find_account(None, subscription_id, _object_id(invoice.get("customer")))
        if account is None:
            logger.warning(f"No account for failed invoice on subscription {subscription_id}")
            return None, False

        account.subscription_state = SubscriptionState.PAST_DUE.value
        account.monitoring_paused = True
        logger.warning(f"Payment failed, account {account.id} set to past_due")
        return account, True

    def _handle_checkout_completed(self, session: Dict[str, Any]):
        metadata = session.get("metadata") or {}
        if not metadata.get("account_id"):
            logger.warning(f"checkout.session.completed {session.get('id')} has no account_id metadata")
            return None, False

        account = self._find_account(metadata)
        if account is None:
            logger.warning(f"checkout.session.completed references unknown account {metadata.get('account_id')}")
            return None, False

        customer_id = _object_id(session.get("customer"))
        subscription_id = _object_id(session.get("subscription"))
        if customer_id:
            account.stripe_customer_id = customer_id
        if subscription_id:
            account.stripe_subscription_id = subscription_id

        logger.info(f"Checkout completed: account={account.id} customer={customer_id}")
        return account, False

    def _notify_payment_failed(self, account: Account) -> None:
        try:
            self.messaging_engine.send_owner_message(account, PAYMENT_FAILED_MESSAGE)
            self.db.commit()
        except SmsDeliveryError as e:
            self.db.commit()
            logger.error(f"Failed to send payment failure SMS to account {account.id}: {e}")
