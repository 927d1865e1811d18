from guildmaster.models.guild import Guild
from guildmaster.models.audit_log import AuditLog
from guildmaster.models.stripe_event import StripeEvent

__all__ = ["Guild", "AuditLog", "StripeEvent"]
