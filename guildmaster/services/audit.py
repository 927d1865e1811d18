import enum
import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from guildmaster.models.audit_log import AuditLog
from guildmaster.database import async_session_maker

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_ID = "system"
SYSTEM_ACTOR_NAME = "Sistema"


class AuditActionType(str, enum.Enum):
    GUILD_PLAN_CHANGED = "GUILD_PLAN_CHANGED"
    BILLING_CUSTOMER_CREATED = "BILLING_CUSTOMER_CREATED"


def _clean_details(details: Optional[dict]) -> dict:
    cleaned: dict[str, Any] = {}
    for key, value in (details or {}).items():
        if value is None:
            continue
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, enum.Enum):
            value = value.value
        cleaned[key] = value
    return cleaned


class AuditService:
    """Best-effort guild activity log. A failed write never fails the caller."""

    def __init__(self, session_factory=async_session_maker):
        self._session_factory = session_factory

    async def log_standalone(
        self,
        guild_id: str,
        action: AuditActionType,
        actor_id: Optional[str] = None,
        actor_display_name: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> Optional[AuditLog]:
        try:
            async with self._session_factory() as session:
                log_entry = AuditLog(
                    id=str(uuid.uuid4()),
                    guild_id=guild_id,
                    actor_id=actor_id or SYSTEM_ACTOR_ID,
                    actor_display_name=actor_display_name or SYSTEM_ACTOR_NAME,
                    action=action.value,
                    details=_clean_details(details),
                )
                session.add(log_entry)
                await session.commit()
                return log_entry
        except Exception:
            logger.exception("Failed to write audit log %s for guild %s", action.value, guild_id)
            return None


audit_service = AuditService()
