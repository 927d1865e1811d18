"""
Guild storage.

Billing and permission code only talks to ``GuildStore``: read one guild,
write one guild, compare-and-swap on the guild's ``version``. Writes are
dicts of absolute field values; ``DELETE_FIELD`` removes a field.
"""
from __future__ import annotations

import copy
import enum
from typing import Any, Mapping, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from guildmaster.models import Guild, StripeEvent
from guildmaster.schemas import GuildRecord, SUBSCRIPTION_FIELDS


class _DeleteField:
    def __repr__(self) -> str:
        return "DELETE_FIELD"


DELETE_FIELD: Any = _DeleteField()

WRITABLE_FIELDS = frozenset(SUBSCRIPTION_FIELDS) | {
    "name",
    "custom_roles",
    "member_roles",
    "last_stripe_event_at",
}


def _check_fields(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - WRITABLE_FIELDS
    if unknown:
        raise KeyError(f"Unknown guild fields: {sorted(unknown)}")


class GuildStore(Protocol):
    async def get(self, guild_id: str) -> Optional[GuildRecord]: ...

    async def update(self, guild_id: str, fields: Mapping[str, Any]) -> None: ...

    async def compare_and_swap(
        self, guild_id: str, expected_version: int, fields: Mapping[str, Any]
    ) -> bool: ...

    async def has_processed_event(self, event_id: str) -> bool: ...

    async def mark_event_processed(self, event_id: str, event_type: Optional[str] = None) -> None: ...


class InMemoryGuildStore:
    """Document store kept in a dict. Cleared fields are removed from the document."""

    def __init__(self) -> None:
        self._documents: dict[str, dict[str, Any]] = {}
        self._events: set[str] = set()

    def add(self, guild_id: str, owner_id: str, **fields: Any) -> GuildRecord:
        _check_fields(fields)
        doc = {"owner_id": owner_id, "plan": "free", "pro_trial_used": False, "version": 0}
        doc.update(fields)
        self._documents[guild_id] = doc
        return GuildRecord.from_document(guild_id, doc)

    def document(self, guild_id: str) -> dict[str, Any]:
        return copy.deepcopy(self._documents[guild_id])

    def _apply(self, doc: dict[str, Any], fields: Mapping[str, Any]) -> None:
        for key, value in fields.items():
            if value is DELETE_FIELD:
                doc.pop(key, None)
            else:
                doc[key] = copy.deepcopy(value)
        doc["version"] = doc.get("version", 0) + 1

    async def get(self, guild_id: str) -> Optional[GuildRecord]:
        doc = self._documents.get(guild_id)
        return GuildRecord.from_document(guild_id, doc) if doc is not None else None

    async def update(self, guild_id: str, fields: Mapping[str, Any]) -> None:
        _check_fields(fields)
        doc = self._documents.get(guild_id)
        if doc is None:
            raise KeyError(guild_id)
        self._apply(doc, fields)

    async def compare_and_swap(
        self, guild_id: str, expected_version: int, fields: Mapping[str, Any]
    ) -> bool:
        _check_fields(fields)
        # no await between the check and the write
        doc = self._documents.get(guild_id)
        if doc is None or doc.get("version", 0) != expected_version:
            return False
        self._apply(doc, fields)
        return True

    async def has_processed_event(self, event_id: str) -> bool:
        return event_id in self._events

    async def mark_event_processed(self, event_id: str, event_type: Optional[str] = None) -> None:
        self._events.add(event_id)


def _guild_to_record(guild: Guild) -> GuildRecord:
    doc = {column: getattr(guild, column) for column in WRITABLE_FIELDS}
    doc["owner_id"] = guild.owner_id
    doc["version"] = guild.version
    return GuildRecord.from_document(guild.id, doc)


def _column_values(fields: Mapping[str, Any]) -> dict[str, Any]:
    values = {}
    for key, value in fields.items():
        if value is DELETE_FIELD:
            # booleans are NOT NULL columns
            value = False if key in ("pro_trial_used", "cancel_at_period_end") else None
        values[key] = value.value if isinstance(value, enum.Enum) else value
    return values


class SqlGuildStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _one(self, *criteria) -> Optional[GuildRecord]:
        result = await self.db.execute(
            select(Guild).where(*criteria).limit(1).execution_options(populate_existing=True)
        )
        guild = result.scalar_one_or_none()
        return _guild_to_record(guild) if guild else None

    async def get(self, guild_id: str) -> Optional[GuildRecord]:
        return await self._one(Guild.id == guild_id)

    async def update(self, guild_id: str, fields: Mapping[str, Any]) -> None:
        _check_fields(fields)
        result = await self.db.execute(
            update(Guild)
            .where(Guild.id == guild_id)
            .values(**_column_values(fields), version=Guild.version + 1)
        )
        await self.db.commit()
        if result.rowcount == 0:
            raise KeyError(guild_id)

    async def compare_and_swap(
        self, guild_id: str, expected_version: int, fields: Mapping[str, Any]
    ) -> bool:
        _check_fields(fields)
        result = await self.db.execute(
            update(Guild)
            .where(Guild.id == guild_id, Guild.version == expected_version)
            .values(**_column_values(fields), version=Guild.version + 1)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def has_processed_event(self, event_id: str) -> bool:
        result = await self.db.execute(select(StripeEvent.id).where(StripeEvent.id == event_id))
        return result.scalar_one_or_none() is not None

    async def mark_event_processed(self, event_id: str, event_type: Optional[str] = None) -> None:
        await self.db.execute(
            insert(StripeEvent)
            .values(id=event_id, event_type=event_type)
            .on_conflict_do_nothing(index_elements=["id"])
        )
        await self.db.commit()
