import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import stripe
from pydantic import ValidationError

from guildmaster.config import get_settings
from guildmaster.exceptions import BillingProviderError, WebhookSignatureError
from guildmaster.schemas import ProviderSubscription, WebhookEvent

logger = logging.getLogger(__name__)


def _plain(obj: Any) -> Mapping[str, Any]:
    if isinstance(obj, Mapping) and not isinstance(obj, stripe.StripeObject):
        return obj
    # StripeObject renders itself as JSON
    return json.loads(str(obj))


def _timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def subscription_from_stripe(obj: Any) -> ProviderSubscription:
    """Flatten a Stripe subscription (API object or webhook payload dict)."""
    sub = _plain(obj)
    items = (sub.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    price = first_item.get("price") or {}

    # Newer API versions moved the billing period onto the subscription item
    period_end = sub.get("current_period_end") or first_item.get("current_period_end")

    customer = sub.get("customer")
    if isinstance(customer, Mapping):
        customer = customer.get("id")

    return ProviderSubscription(
        id=sub["id"],
        customer=customer,
        status=sub.get("status") or "unknown",
        price_id=price.get("id") if isinstance(price, Mapping) else price,
        current_period_end=_timestamp(period_end),
        cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
        metadata={str(k): str(v) for k, v in (sub.get("metadata") or {}).items() if v is not None},
    )


def construct_webhook_event(payload: bytes, sig_header: str, webhook_secret: str) -> WebhookEvent:
    """Verify the Stripe-Signature header, then parse the payload. Nothing is read before verification."""
    try:
        stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except stripe.SignatureVerificationError as e:
        raise WebhookSignatureError(str(e)) from e
    except ValueError as e:
        raise WebhookSignatureError(f"Invalid payload: {e}") from e

    try:
        return WebhookEvent.model_validate_json(payload)
    except ValidationError as e:
        raise WebhookSignatureError(f"Invalid payload: {e}") from e


class StripeService:
    def __init__(self, secret_key: Optional[str] = None, api_version: Optional[str] = None):
        self._secret_key = secret_key
        self._api_version = api_version
        self._configured = False

    def get_stripe_client(self):
        if not self._configured:
            settings = get_settings()
            secret_key = self._secret_key or settings.stripe_secret_key
            if not secret_key:
                logger.error("STRIPE_SECRET_KEY is not set; Stripe calls will fail")
            stripe.api_key = secret_key
            stripe.api_version = self._api_version or settings.stripe_api_version
            stripe.default_http_client = stripe.HTTPXClient()
            self._configured = True
        return stripe

    async def create_customer(self, guild_id: str) -> str:
        client = self.get_stripe_client()
        try:
            customer = await client.Customer.create_async(metadata={"guildId": guild_id})
        except stripe.StripeError as e:
            raise BillingProviderError(e.user_message or str(e)) from e
        return customer.id

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        guild_id: str,
        user_id: str,
        success_url: str,
        cancel_url: str,
    ) -> str:
        client = self.get_stripe_client()
        metadata = {"guildId": guild_id, "userId": user_id}
        try:
            session = await client.checkout.Session.create_async(
                customer=customer_id,
                client_reference_id=guild_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                # so customer.subscription.* events carry the guild too
                subscription_data={"metadata": metadata},
            )
        except stripe.StripeError as e:
            raise BillingProviderError(e.user_message or str(e)) from e
        return session.id

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        client = self.get_stripe_client()
        try:
            portal = await client.billing_portal.Session.create_async(
                customer=customer_id,
                return_url=return_url,
            )
        except stripe.StripeError as e:
            raise BillingProviderError(e.user_message or str(e)) from e
        return portal.url

    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription:
        client = self.get_stripe_client()
        try:
            subscription = await client.Subscription.retrieve_async(subscription_id)
        except stripe.StripeError as e:
            raise BillingProviderError(e.user_message or str(e)) from e
        return subscription_from_stripe(subscription)


stripe_service = StripeService()
