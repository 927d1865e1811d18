from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field

from guildmaster.permissions import CustomRole


class Plan(str, enum.Enum):
    FREE = "free"
    PRO = "pro"


class SubscriptionStatus(str, enum.Enum):
    FREE = "FREE"
    FREE_TRIAL = "FREE_TRIAL"
    PRO_ACTIVE = "PRO_ACTIVE"
    PRO_PAST_DUE_OR_CANCELLING = "PRO_PAST_DUE_OR_CANCELLING"


SUBSCRIPTION_FIELDS = (
    "plan",
    "stripe_customer_id",
    "stripe_subscription_id",
    "stripe_price_id",
    "stripe_status",
    "cancel_at_period_end",
    "current_period_end",
    "trial_ends_at",
    "pro_trial_used",
)


class SubscriptionState(BaseModel):
    plan: Plan = Plan.FREE
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_status: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    pro_trial_used: bool = False

    @property
    def status(self) -> SubscriptionStatus:
        if self.plan == Plan.PRO:
            if self.cancel_at_period_end:
                return SubscriptionStatus.PRO_PAST_DUE_OR_CANCELLING
            return SubscriptionStatus.PRO_ACTIVE
        if self.trial_ends_at is not None:
            return SubscriptionStatus.FREE_TRIAL
        return SubscriptionStatus.FREE


class GuildRecord(BaseModel):
    """A guild document as seen by the permission and billing code."""

    id: str
    name: str = ""
    owner_id: str
    custom_roles: dict[str, CustomRole] = Field(default_factory=dict)
    member_roles: dict[str, str] = Field(default_factory=dict)
    subscription: SubscriptionState = Field(default_factory=SubscriptionState)
    last_stripe_event_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def from_document(cls, guild_id: str, doc: Mapping[str, Any]) -> "GuildRecord":
        return cls(
            id=guild_id,
            name=doc.get("name") or "",
            owner_id=doc["owner_id"],
            custom_roles=doc.get("custom_roles") or {},
            member_roles=doc.get("member_roles") or {},
            subscription=SubscriptionState(
                **{k: doc[k] for k in SUBSCRIPTION_FIELDS if doc.get(k) is not None}
            ),
            last_stripe_event_at=doc.get("last_stripe_event_at"),
            version=doc.get("version") or 0,
        )


class ProviderSubscription(BaseModel):
    """The fields of a Stripe subscription the reconciler relies on."""

    id: str
    customer: Optional[str] = None
    status: str
    price_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    metadata: dict[str, str] = Field(default_factory=dict)


class WebhookEvent(BaseModel):
    id: str
    type: str
    created: int = 0
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def object(self) -> dict[str, Any]:
        obj = self.data.get("object")
        return obj if isinstance(obj, dict) else {}

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.created, tz=timezone.utc)
