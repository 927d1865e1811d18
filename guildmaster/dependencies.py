from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from guildmaster.config import get_settings
from guildmaster.database import get_db
from guildmaster.services.audit import AuditService, audit_service
from guildmaster.services.stripe_service import StripeService, stripe_service
from guildmaster.storage import GuildStore, SqlGuildStore
from guildmaster.subscription import SubscriptionReconciler


async def get_guild_store(db: AsyncSession = Depends(get_db)) -> GuildStore:
    return SqlGuildStore(db)


def get_stripe_service() -> StripeService:
    return stripe_service


def get_audit_service() -> AuditService:
    return audit_service


def get_reconciler(
    store: GuildStore = Depends(get_guild_store),
    gateway: StripeService = Depends(get_stripe_service),
    audit: AuditService = Depends(get_audit_service),
) -> SubscriptionReconciler:
    return SubscriptionReconciler(
        store,
        gateway,
        audit=audit,
        enforce_event_order=get_settings().stripe_enforce_event_order,
    )
