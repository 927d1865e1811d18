from guildmaster.services.stripe_service import StripeService
from guildmaster.services.audit import AuditService

__all__ = ["StripeService", "AuditService"]
