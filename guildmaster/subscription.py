"""
Subscription state reconciliation.

Stripe webhook deliveries are at-least-once and may arrive out of order.
Every transition writes absolute field values, so re-applying an event is a
no-op. With ``enforce_event_order`` on, an event older than the last one
applied to the guild is skipped; the check and the write go through
compare-and-swap on the guild's version.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Protocol

from guildmaster.exceptions import (
    GuildNotFound,
    IncompleteSubscription,
    MissingGuildReference,
    TrialUnavailable,
)
from guildmaster.schemas import (
    GuildRecord,
    Plan,
    ProviderSubscription,
    SubscriptionState,
    WebhookEvent,
)
from guildmaster.services.audit import AuditActionType
from guildmaster.services.stripe_service import subscription_from_stripe
from guildmaster.storage import DELETE_FIELD, GuildStore

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAID = "invoice.paid"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

HANDLED_EVENTS = frozenset(
    {CHECKOUT_COMPLETED, INVOICE_PAYMENT_SUCCEEDED, INVOICE_PAID, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED}
)

MAX_CAS_ATTEMPTS = 5


class BillingGateway(Protocol):
    async def retrieve_subscription(self, subscription_id: str) -> ProviderSubscription: ...


class AuditSink(Protocol):
    async def log_standalone(self, guild_id: str, action: AuditActionType, **kwargs: Any) -> Any: ...


@dataclass
class ReconcileResult:
    outcome: str  # applied | duplicate | ignored | stale
    event_type: str
    guild_id: Optional[str] = None
    plan: Optional[Plan] = None


def effective_plan(state: SubscriptionState, now: Optional[datetime] = None) -> Plan:
    """Plan the guild is entitled to right now; a running trial counts as Pro."""
    if state.plan == Plan.PRO:
        return Plan.PRO
    now = now or datetime.now(timezone.utc)
    if state.trial_ends_at is not None and state.trial_ends_at > now:
        return Plan.PRO
    return Plan.FREE


# -------------------------
# Transitions
# -------------------------

def pro_fields(subscription: ProviderSubscription) -> dict[str, Any]:
    # a Pro guild always carries both ids
    if not (subscription.id and subscription.price_id):
        raise IncompleteSubscription(f"Subscription {subscription.id or '?'} has no price")
    return {
        "plan": Plan.PRO,
        "stripe_subscription_id": subscription.id,
        "stripe_price_id": subscription.price_id,
        "stripe_status": subscription.status,
        "cancel_at_period_end": subscription.cancel_at_period_end,
        "current_period_end": subscription.current_period_end,
    }


def free_fields(status: Optional[str] = None) -> dict[str, Any]:
    return {
        "plan": Plan.FREE,
        "stripe_subscription_id": DELETE_FIELD,
        "stripe_price_id": DELETE_FIELD,
        "current_period_end": DELETE_FIELD,
        "cancel_at_period_end": DELETE_FIELD,
        "stripe_status": status or DELETE_FIELD,
    }


def checkout_completed_fields(subscription: ProviderSubscription) -> dict[str, Any]:
    fields = pro_fields(subscription)
    if subscription.customer:
        fields["stripe_customer_id"] = subscription.customer
    fields["trial_ends_at"] = DELETE_FIELD
    fields["pro_trial_used"] = True
    return fields


def payment_succeeded_fields(subscription: ProviderSubscription) -> dict[str, Any]:
    if subscription.status == "active":
        return pro_fields(subscription)
    return {"stripe_status": subscription.status}


def subscription_changed_fields(subscription: ProviderSubscription) -> dict[str, Any]:
    if subscription.status == "active":
        return pro_fields(subscription)
    return free_fields(subscription.status)


def _guild_id_from(obj: Mapping[str, Any]) -> Optional[str]:
    metadata = obj.get("metadata") or {}
    guild_id = metadata.get("guildId")
    if guild_id:
        return str(guild_id)

    # Invoices copy the subscription's metadata; location depends on API version
    for details in (
        obj.get("subscription_details"),
        (obj.get("parent") or {}).get("subscription_details"),
    ):
        guild_id = ((details or {}).get("metadata") or {}).get("guildId")
        if guild_id:
            return str(guild_id)
    return None


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription")
    if not subscription:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        subscription = details.get("subscription")
    if isinstance(subscription, Mapping):
        subscription = subscription.get("id")
    return subscription or None


class SubscriptionReconciler:
    def __init__(
        self,
        store: GuildStore,
        gateway: BillingGateway,
        audit: Optional[AuditSink] = None,
        enforce_event_order: bool = True,
    ):
        self.store = store
        self.gateway = gateway
        self.audit = audit
        self.enforce_event_order = enforce_event_order

    async def _resolve_guild(self, event: WebhookEvent) -> GuildRecord:
        guild_id = _guild_id_from(event.object)
        if not guild_id:
            raise MissingGuildReference(f"{event.type} {event.id} has no guildId in metadata")

        guild = await self.store.get(guild_id)
        if guild is None:
            raise GuildNotFound(guild_id)
        return guild

    async def _transition(self, event: WebhookEvent) -> Optional[dict[str, Any]]:
        obj = event.object

        if event.type == CHECKOUT_COMPLETED:
            subscription_id = obj.get("subscription")
            if not subscription_id:
                logger.warning("Checkout session %s has no subscription, ignoring", obj.get("id"))
                return None
            subscription = await self.gateway.retrieve_subscription(subscription_id)
            return checkout_completed_fields(subscription)

        if event.type in (INVOICE_PAYMENT_SUCCEEDED, INVOICE_PAID):
            subscription_id = _invoice_subscription_id(obj)
            if not subscription_id:
                logger.warning("Invoice %s is not tied to a subscription, ignoring", obj.get("id"))
                return None
            subscription = await self.gateway.retrieve_subscription(subscription_id)
            return payment_succeeded_fields(subscription)

        if event.type == SUBSCRIPTION_UPDATED:
            return subscription_changed_fields(subscription_from_stripe(obj))

        if event.type == SUBSCRIPTION_DELETED:
            return free_fields(obj.get("status") or "canceled")

        return None

    async def handle_event(self, event: WebhookEvent) -> ReconcileResult:
        if event.type not in HANDLED_EVENTS:
            logger.info("Unhandled Stripe event type %s", event.type)
            return ReconcileResult("ignored", event.type)

        if await self.store.has_processed_event(event.id):
            logger.info("Stripe event %s already processed", event.id)
            return ReconcileResult("duplicate", event.type)

        guild = await self._resolve_guild(event)
        fields = await self._transition(event)
        if fields is None:
            await self.store.mark_event_processed(event.id, event.type)
            return ReconcileResult("ignored", event.type, guild.id)

        event_at = event.created_at
        for _ in range(MAX_CAS_ATTEMPTS):
            last_at = guild.last_stripe_event_at
            if last_at is not None and last_at.tzinfo is None:
                last_at = last_at.replace(tzinfo=timezone.utc)

            if self.enforce_event_order and last_at is not None and event_at < last_at:
                logger.warning(
                    "Skipping stale %s %s for guild %s (created %s, last applied %s)",
                    event.type, event.id, guild.id, event_at.isoformat(), last_at.isoformat(),
                )
                await self.store.mark_event_processed(event.id, event.type)
                return ReconcileResult("stale", event.type, guild.id, guild.subscription.plan)

            write = dict(fields)
            write["last_stripe_event_at"] = event_at if last_at is None else max(event_at, last_at)

            if not self.enforce_event_order:
                await self.store.update(guild.id, write)
                break
            if await self.store.compare_and_swap(guild.id, guild.version, write):
                break

            guild_id = guild.id
            guild = await self.store.get(guild_id)
            if guild is None:
                raise GuildNotFound(guild_id)
        else:
            raise RuntimeError(f"Guild {guild.id} kept changing while applying {event.id}")

        await self.store.mark_event_processed(event.id, event.type)

        old_plan = guild.subscription.plan
        new_plan = Plan(fields.get("plan", old_plan))
        logger.info("Applied %s %s to guild %s (plan %s -> %s)", event.type, event.id, guild.id, old_plan.value, new_plan.value)
        if new_plan != old_plan:
            await self._audit_plan_change(guild.id, old_plan, new_plan, {"stripeEventId": event.id, "type": event.type})

        return ReconcileResult("applied", event.type, guild.id, new_plan)

    async def grant_trial(
        self,
        guild_id: str,
        days: int,
        now: Optional[datetime] = None,
        actor_id: Optional[str] = None,
    ) -> SubscriptionState:
        """Give a free guild ``days`` of Pro, extending any running trial."""
        if days <= 0:
            raise ValueError("days must be positive")
        now = now or datetime.now(timezone.utc)

        for _ in range(MAX_CAS_ATTEMPTS):
            guild = await self.store.get(guild_id)
            if guild is None:
                raise GuildNotFound(guild_id)
            state = guild.subscription
            if state.plan == Plan.PRO:
                raise TrialUnavailable("Guild already has an active Pro subscription")
            if state.pro_trial_used:
                raise TrialUnavailable("Guild has already used its Pro trial")

            start = now
            if state.trial_ends_at is not None and state.trial_ends_at > now:
                start = state.trial_ends_at
            trial_ends_at = start + timedelta(days=days)

            if await self.store.compare_and_swap(guild_id, guild.version, {"trial_ends_at": trial_ends_at}):
                break
        else:
            raise RuntimeError(f"Guild {guild_id} kept changing while granting a trial")

        granted = state.model_copy(update={"trial_ends_at": trial_ends_at})
        await self._audit_plan_change(
            guild_id,
            effective_plan(state, now),
            effective_plan(granted, now),
            {"daysAdded": days, "newEndDate": trial_ends_at},
            actor_id=actor_id,
        )
        return granted

    async def _audit_plan_change(
        self,
        guild_id: str,
        old_plan: Plan,
        new_plan: Plan,
        details: dict,
        actor_id: Optional[str] = None,
    ) -> None:
        if self.audit is None:
            return
        await self.audit.log_standalone(
            guild_id,
            AuditActionType.GUILD_PLAN_CHANGED,
            actor_id=actor_id,
            details={"oldValue": old_plan.value, "newValue": new_plan.value, **details},
        )
