import pytest

from guildmaster.database import to_async_url
from guildmaster.schemas import Plan
from guildmaster.storage import DELETE_FIELD, InMemoryGuildStore, _column_values


class TestInMemoryGuildStore:

    @pytest.mark.asyncio
    async def test_delete_field_removes_key(self, store):
        await store.update("g1", {"stripe_price_id": "price_pro"})
        await store.update("g1", {"stripe_price_id": DELETE_FIELD})

        assert "stripe_price_id" not in store.document("g1")
        guild = await store.get("g1")
        assert guild.subscription.stripe_price_id is None

    @pytest.mark.asyncio
    async def test_writes_bump_version(self, store):
        await store.update("g1", {"name": "Dawn Watch"})
        guild = await store.get("g1")
        assert guild.version == 1
        assert guild.name == "Dawn Watch"

    @pytest.mark.asyncio
    async def test_compare_and_swap_rejects_stale_version(self, store):
        assert await store.compare_and_swap("g1", 0, {"stripe_status": "active"}) is True
        assert await store.compare_and_swap("g1", 0, {"stripe_status": "canceled"}) is False
        assert store.document("g1")["stripe_status"] == "active"

    @pytest.mark.asyncio
    async def test_compare_and_swap_unknown_guild(self, store):
        assert await store.compare_and_swap("missing", 0, {"stripe_status": "active"}) is False

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, store):
        with pytest.raises(KeyError):
            await store.update("g1", {"owner_id": "someone_else"})
        assert store.document("g1")["owner_id"] == "owner"

    @pytest.mark.asyncio
    async def test_update_unknown_guild(self, store):
        with pytest.raises(KeyError):
            await store.update("missing", {"name": "x"})

    @pytest.mark.asyncio
    async def test_processed_events(self):
        store = InMemoryGuildStore()
        assert await store.has_processed_event("evt_1") is False
        await store.mark_event_processed("evt_1", "invoice.paid")
        assert await store.has_processed_event("evt_1") is True

    def test_document_is_a_copy(self, store):
        store.document("g1")["member_roles"]["intruder"] = "Leader"
        assert "intruder" not in store.document("g1")["member_roles"]


class TestColumnValues:

    def test_cleared_fields_become_null_or_false(self):
        values = _column_values({
            "stripe_price_id": DELETE_FIELD,
            "pro_trial_used": DELETE_FIELD,
            "cancel_at_period_end": DELETE_FIELD,
        })
        assert values == {"stripe_price_id": None, "pro_trial_used": False, "cancel_at_period_end": False}

    def test_enums_are_stored_by_value(self):
        assert _column_values({"plan": Plan.PRO}) == {"plan": "pro"}


class TestAsyncUrl:

    @pytest.mark.parametrize("url, expected", [
        ("postgres://u:p@db:5432/gm", "postgresql+asyncpg://u:p@db:5432/gm"),
        ("postgresql://u:p@db/gm?sslmode=require", "postgresql+asyncpg://u:p@db/gm"),
        ("postgresql://u:p@db/gm?sslmode=require&application_name=gm", "postgresql+asyncpg://u:p@db/gm?application_name=gm"),
        ("sqlite+aiosqlite:///guildmaster.db", "sqlite+aiosqlite:///guildmaster.db"),
    ])
    def test_rewrites_postgres_urls(self, url, expected):
        assert to_async_url(url) == expected
