"""
Stripe billing service
Handles customer portal links, cancellations and webhook verification
"""
import logging
from typing import Any, Dict, Optional

import stripe

from reviewpilot.core.config import get_settings
from reviewpilot.db.models import Account, SubscriptionState

logger = logging.getLogger(__name__)


class StripeError(Exception):
    """Base exception for Stripe operations"""
    pass


class StripeCustomerError(StripeError):
    """Customer-related Stripe error"""
    pass


class StripeSubscriptionError(StripeError):
    """Subscription-related Stripe error"""
    pass


# Provider subscription status -> local subscription_state
STATUS_MAP = {
    "trialing": SubscriptionState.TRIALING,
    "active": SubscriptionState.ACTIVE,
    "past_due": SubscriptionState.PAST_DUE,
    "canceled": SubscriptionState.CANCELED,
    "unpaid": SubscriptionState.CANCELED,
    "incomplete_expired": SubscriptionState.CANCELED,
}


def map_subscription_status(provider_status: Optional[str]) -> SubscriptionState:
    """Map a Stripe subscription status onto the local state; unknown values count as active"""
    return STATUS_MAP.get(provider_status or "", SubscriptionState.ACTIVE)


class StripeService:
    """
    Stripe integration for account billing

    Features:
    - Customer portal sessions (BILLING command)
    - Subscription cancellation (CANCEL flow)
    - Webhook signature verification
    """

    def __init__(self):
        self.settings = get_settings()

        stripe.api_key = self.settings.stripe_secret_key
        if not stripe.api_key:
            logger.warning("STRIPE_SECRET_KEY not configured - Stripe functionality will be disabled")
            self.enabled = False
        else:
            stripe.default_http_client = stripe.new_default_http_client(
                timeout=self.settings.http_timeout_seconds
            )
            stripe.max_network_retries = 1
            self.enabled = True

    def is_enabled(self) -> bool:
        """Check if Stripe is properly configured and enabled"""
        return self.enabled

    def create_customer_portal_session(self, account: Account, return_url: Optional[str] = None) -> str:
        """
        Create a Stripe customer portal session for subscription management

        Args:
            account: Account with a linked Stripe customer
            return_url: URL to return to from the portal

        Returns:
            Customer portal URL
        """
        if not self.is_enabled():
            raise StripeError("Stripe is not configured")

        if not account.stripe_customer_id:
            raise StripeCustomerError("Account has no Stripe customer ID")

        try:
            session = stripe.billing_portal.Session.create(
                customer=account.stripe_customer_id,
                return_url=return_url or self.settings.app_base_url,
            )
            logger.info(f"Created customer portal session for account {account.id}")
            return session.url

        except stripe.StripeError as e:
            logger.error(f"Failed to create customer portal session: {e}")
            raise StripeCustomerError(f"Failed to create customer portal session: {e}") from e

    def cancel_subscription(self, account: Account) -> Dict[str, Any]:
        """
        Cancel the account's subscription immediately

        Local state is updated only after Stripe confirms; the caller commits.
        The subscription.deleted webhook that follows applies the same state.

        Raises:
            StripeSubscriptionError: If there is nothing to cancel or Stripe fails
        """
        if not self.is_enabled():
            raise StripeError("Stripe is not configured")

        if not account.stripe_subscription_id:
            raise StripeSubscriptionError("Account has no active subscription to cancel")

        try:
            subscription = stripe.Subscription.cancel(account.stripe_subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Failed to cancel subscription {account.stripe_subscription_id}: {e}")
            raise StripeSubscriptionError(f"Failed to cancel subscription: {e}") from e

        account.subscription_state = SubscriptionState.CANCELED.value
        account.monitoring_paused = True

        logger.info(f"Canceled subscription {subscription.id} for account {account.id}")
        return {"subscription_id": subscription.id, "status": subscription.status}

    def construct_event(self, payload: bytes, sig_header: str) -> Dict[str, Any]:
        """
        Verify a webhook payload against the endpoint secret

        Raises:
            StripeError: If the webhook secret is not configured
            ValueError: Malformed payload
            stripe.SignatureVerificationError: Bad signature
        """
        secret = self.settings.stripe_webhook_secret
        if not secret:
            raise StripeError("STRIPE_WEBHOOK_SECRET not configured")
        return stripe.Webhook.construct_event(payload, sig_header, secret)


def get_stripe_service() -> StripeService:
    """Get Stripe service instance"""
    return StripeService()
