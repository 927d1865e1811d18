"""
Guild permission evaluation.

Every check here is fail-closed: missing or malformed guild data means
"no permission", never an exception. Ownership is a separate authority
channel and is never derived from the role table.
"""
from __future__ import annotations

import enum
from typing import Any, Mapping, Optional

from pydantic import BaseModel, Field, field_validator


class GuildPermission(str, enum.Enum):
    MANAGE_MEMBERS_VIEW = "MANAGE_MEMBERS_VIEW"
    MANAGE_MEMBERS_EDIT_ROLE = "MANAGE_MEMBERS_EDIT_ROLE"
    MANAGE_MEMBERS_EDIT_STATUS = "MANAGE_MEMBERS_EDIT_STATUS"
    MANAGE_MEMBERS_EDIT_NOTES = "MANAGE_MEMBERS_EDIT_NOTES"
    MANAGE_MEMBERS_KICK = "MANAGE_MEMBERS_KICK"
    MANAGE_MEMBERS_ASSIGN_SUB_GUILD = "MANAGE_MEMBERS_ASSIGN_SUB_GUILD"
    MANAGE_EVENTS_CREATE = "MANAGE_EVENTS_CREATE"
    MANAGE_EVENTS_EDIT = "MANAGE_EVENTS_EDIT"
    MANAGE_EVENTS_DELETE = "MANAGE_EVENTS_DELETE"
    MANAGE_EVENTS_VIEW_PIN = "MANAGE_EVENTS_VIEW_PIN"
    MANAGE_GUILD_SETTINGS_GENERAL = "MANAGE_GUILD_SETTINGS_GENERAL"
    MANAGE_GUILD_SETTINGS_APPEARANCE = "MANAGE_GUILD_SETTINGS_APPEARANCE"
    MANAGE_ROLES_PERMISSIONS = "MANAGE_ROLES_PERMISSIONS"
    MANAGE_SUB_GUILDS = "MANAGE_SUB_GUILDS"
    MANAGE_GROUPS_CREATE = "MANAGE_GROUPS_CREATE"
    MANAGE_GROUPS_EDIT = "MANAGE_GROUPS_EDIT"
    MANAGE_GROUPS_DELETE = "MANAGE_GROUPS_DELETE"
    VIEW_AUDIT_LOG = "VIEW_AUDIT_LOG"
    MANAGE_RECRUITMENT_VIEW_APPLICATIONS = "MANAGE_RECRUITMENT_VIEW_APPLICATIONS"
    MANAGE_RECRUITMENT_PROCESS_APPLICATIONS = "MANAGE_RECRUITMENT_PROCESS_APPLICATIONS"
    VIEW_MEMBER_DETAILED_INFO = "VIEW_MEMBER_DETAILED_INFO"
    MANAGE_DKP_SETTINGS = "MANAGE_DKP_SETTINGS"
    MANAGE_DKP_DECAY_SETTINGS = "MANAGE_DKP_DECAY_SETTINGS"
    MANAGE_MANUAL_CONFIRMATIONS_APPROVE = "MANAGE_MANUAL_CONFIRMATIONS_APPROVE"
    MANAGE_MEMBER_DKP_BALANCE = "MANAGE_MEMBER_DKP_BALANCE"
    MANAGE_LOOT_BANK_ADD = "MANAGE_LOOT_BANK_ADD"
    MANAGE_LOOT_BANK_MANAGE = "MANAGE_LOOT_BANK_MANAGE"
    MANAGE_LOOT_AUCTIONS_CREATE = "MANAGE_LOOT_AUCTIONS_CREATE"
    MANAGE_LOOT_AUCTIONS_EDIT = "MANAGE_LOOT_AUCTIONS_EDIT"
    MANAGE_LOOT_AUCTIONS_DELETE = "MANAGE_LOOT_AUCTIONS_DELETE"
    MANAGE_LOOT_ROLLS_CREATE = "MANAGE_LOOT_ROLLS_CREATE"
    MANAGE_LOOT_ROLLS_MANAGE = "MANAGE_LOOT_ROLLS_MANAGE"
    MANAGE_LOOT_SETTINGS = "MANAGE_LOOT_SETTINGS"
    MANAGE_BILLING = "MANAGE_BILLING"
    MANAGE_GEAR_SCREENSHOT_REQUESTS = "MANAGE_GEAR_SCREENSHOT_REQUESTS"
    MANAGE_VOD_REVIEWS = "MANAGE_VOD_REVIEWS"


class CustomRole(BaseModel):
    permissions: list[GuildPermission] = Field(default_factory=list)
    description: Optional[str] = None

    @field_validator("permissions", mode="before")
    @classmethod
    def _drop_unknown(cls, value: Any) -> list:
        if not isinstance(value, (list, tuple, set, frozenset)):
            return []
        known = {p.value for p in GuildPermission}
        return [p for p in value if isinstance(p, str) and p in known]


def _field(obj: Any, *names: str) -> Any:
    # Accepts pydantic/ORM objects as well as raw document mappings
    for name in names:
        if isinstance(obj, Mapping):
            if name in obj:
                return obj[name]
        elif hasattr(obj, name):
            return getattr(obj, name)
    return None


def _role_permissions(role_name: Any, custom_roles: Any) -> list:
    if not role_name or not isinstance(role_name, str):
        return []
    if not custom_roles or not isinstance(custom_roles, Mapping):
        return []
    role = custom_roles.get(role_name)
    if role is None:
        return []
    permissions = _field(role, "permissions")
    if not permissions or isinstance(permissions, (str, bytes)):
        return []
    try:
        return list(permissions)
    except TypeError:
        return []


def has_permission(
    role_name: Optional[str],
    custom_roles: Optional[Mapping[str, Any]],
    required_permission: GuildPermission,
) -> bool:
    """True when ``role_name`` exists in ``custom_roles`` and grants ``required_permission``."""
    for permission in _role_permissions(role_name, custom_roles):
        if isinstance(permission, (str, GuildPermission)) and permission == required_permission:
            return True
    return False


def permissions_for_role(
    role_name: Optional[str],
    custom_roles: Optional[Mapping[str, Any]],
) -> frozenset[GuildPermission]:
    """All known permissions granted to ``role_name``; unknown tags are dropped."""
    granted = set()
    for permission in _role_permissions(role_name, custom_roles):
        try:
            granted.add(GuildPermission(permission))
        except ValueError:
            continue
    return frozenset(granted)


def is_owner(user_id: Optional[str], guild: Any) -> bool:
    if not user_id or guild is None:
        return False
    owner_id = _field(guild, "owner_id", "ownerId")
    return bool(owner_id) and owner_id == user_id


def role_name_for(user_id: Optional[str], guild: Any) -> Optional[str]:
    if not user_id or guild is None:
        return None
    member_roles = _field(guild, "member_roles", "memberRoles")
    if not isinstance(member_roles, Mapping):
        return None
    role_name = member_roles.get(user_id)
    return role_name if isinstance(role_name, str) and role_name else None


def can_act(user_id: Optional[str], guild: Any, required_permission: GuildPermission) -> bool:
    """Server-side gate for mutating guild operations: owner, or a role holding the permission."""
    if is_owner(user_id, guild):
        return True
    return has_permission(
        role_name_for(user_id, guild),
        _field(guild, "custom_roles", "customRoles"),
        required_permission,
    )
