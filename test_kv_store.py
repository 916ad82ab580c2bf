"""Tests for the key-value store clients."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import httpx
import pytest
from postgrest.exceptions import APIError

from function_server.config import MAX_VALUE_BYTES, Settings
from store_clients.kv_store import (
    InMemoryKeyValueStore,
    StoreError,
    StoreUnavailableError,
    SupabaseKeyValueStore,
    check_value,
    create_store,
    load_supabase_config,
)

SUPABASE_SETTINGS = Settings(
    demo_mode=False,
    supabase_url="https://example.supabase.co",
    supabase_service_role_key="service-key",
)


class TestCheckValue:
    def test_none_is_always_allowed(self) -> None:
        check_value("k", None)

    def test_unserializable_value(self) -> None:
        with pytest.raises(StoreError, match="not JSON-serializable"):
            check_value("k", {"when": object()})

    def test_size_limit(self) -> None:
        check_value("k", "x" * (MAX_VALUE_BYTES - 2))
        with pytest.raises(StoreError, match="limit"):
            check_value("k", "x" * MAX_VALUE_BYTES)


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_get_missing_is_none(self, store) -> None:
        assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_set_then_get(self, store) -> None:
        await store.set("account-a1", {"user_name": "x"}, 10080)
        assert await store.get("account-a1") == {"user_name": "x"}

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, store, clock) -> None:
        await store.set("k", 1, ttl_minutes=1)
        clock.advance(59)
        assert await store.get("k") == 1
        clock.advance(1)
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_no_ttl_never_expires(self, store, clock) -> None:
        await store.set("k", "v")
        clock.advance(10 ** 9)
        assert await store.get("k") == "v"

    @pytest.mark.asyncio
    async def test_null_is_tombstone(self, store) -> None:
        await store.set("k", {"a": 1}, 5)
        await store.set("k", None)
        assert await store.get("k") is None
        value, version = await store.get_versioned("k")
        assert value is None
        assert version == 2

    @pytest.mark.asyncio
    async def test_oversized_write_rejected(self, store) -> None:
        with pytest.raises(StoreError):
            await store.set("k", "x" * MAX_VALUE_BYTES)
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_counter_defaults_to_zero(self, store) -> None:
        assert await store.get_counter("c") == 0

    @pytest.mark.asyncio
    async def test_counter_sequential_increments(self, store) -> None:
        values = [await store.incr_counter("c") for _ in range(5)]
        assert values == [1, 2, 3, 4, 5]
        assert await store.get_counter("c") == 5

    @pytest.mark.asyncio
    async def test_counter_concurrent_increments_are_not_lost(self, store) -> None:
        values = await asyncio.gather(*(store.incr_counter("c") for _ in range(50)))
        assert sorted(values) == list(range(1, 51))
        assert await store.get_counter("c") == 50

    @pytest.mark.asyncio
    async def test_versioned_read_of_missing_key(self, store) -> None:
        assert await store.get_versioned("k") == (None, 0)

    @pytest.mark.asyncio
    async def test_compare_and_set_creates_and_updates(self, store) -> None:
        assert await store.compare_and_set("k", {"v": 1}, 0)
        assert await store.get_versioned("k") == ({"v": 1}, 1)
        assert await store.compare_and_set("k", {"v": 2}, 1)
        assert await store.get("k") == {"v": 2}

    @pytest.mark.asyncio
    async def test_compare_and_set_rejects_stale_version(self, store) -> None:
        await store.set("k", "first")
        _, version = await store.get_versioned("k")
        await store.set("k", "second")
        assert not await store.compare_and_set("k", "third", version)
        assert await store.get("k") == "second"

    @pytest.mark.asyncio
    async def test_expired_entry_keeps_its_version(self, store, clock) -> None:
        await store.set("k", "v", ttl_minutes=1)
        clock.advance(120)
        assert await store.get_versioned("k") == (None, 1)

    @pytest.mark.asyncio
    async def test_timeout_is_store_unavailable(self) -> None:
        class SlowStore(InMemoryKeyValueStore):
            async def _get(self, key):
                await asyncio.sleep(1)

        slow = SlowStore(timeout_seconds=0.01)
        with pytest.raises(StoreUnavailableError, match="timed out"):
            await slow.get("k")


class TestCreateStore:
    def test_demo_mode_uses_memory(self) -> None:
        assert create_store(Settings(demo_mode=True)).mode == "demo"

    def test_missing_credentials_fall_back_to_memory(self) -> None:
        assert create_store(Settings(demo_mode=False)).mode == "demo"

    def test_supabase_when_configured(self) -> None:
        assert create_store(SUPABASE_SETTINGS).mode == "supabase"


class TestLoadSupabaseConfig:
    def test_requires_url(self) -> None:
        with pytest.raises(ValueError, match="SUPABASE_URL"):
            load_supabase_config(Settings(supabase_service_role_key="k"))

    def test_requires_service_role_key(self) -> None:
        with pytest.raises(ValueError, match="SUPABASE_SERVICE_ROLE_KEY"):
            load_supabase_config(Settings(supabase_url="https://x.supabase.co"))

    def test_carries_table_names(self) -> None:
        config = load_supabase_config(SUPABASE_SETTINGS)
        assert config["table"] == "kv_entries"
        assert config["counter_rpc"] == "kv_incr_counter"


def _future(minutes: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(minutes=minutes)).isoformat()


class TestSupabaseStore:
    """Exercises query construction against a mocked supabase client"""

    def _store(self):
        client = MagicMock()
        return SupabaseKeyValueStore(SUPABASE_SETTINGS, client=client), client

    def _select_result(self, client, rows):
        chain = client.table.return_value.select.return_value.eq.return_value.limit.return_value
        chain.execute.return_value = MagicMock(data=rows)

    @pytest.mark.asyncio
    async def test_get_live_row(self) -> None:
        store, client = self._store()
        self._select_result(client, [{"value": {"user_name": "x"}, "version": 3, "expires_at": _future(5)}])
        assert await store.get("account-a1") == {"user_name": "x"}
        client.table.assert_called_with("kv_entries")
        client.table.return_value.select.return_value.eq.assert_called_with("key", "account-a1")

    @pytest.mark.asyncio
    async def test_get_expired_row_is_none(self) -> None:
        store, client = self._store()
        self._select_result(client, [{"value": 1, "version": 1, "expires_at": _future(-5)}])
        assert await store.get("k") is None
        assert await store.get_versioned("k") == (None, 1)

    @pytest.mark.asyncio
    async def test_get_missing_row(self) -> None:
        store, client = self._store()
        self._select_result(client, [])
        assert await store.get("k") is None
        assert await store.get_versioned("k") == (None, 0)

    @pytest.mark.asyncio
    async def test_set_upserts_with_expiry(self) -> None:
        store, client = self._store()
        await store.set("k", {"a": 1}, ttl_minutes=10)
        record = client.table.return_value.upsert.call_args.args[0]
        assert record["key"] == "k"
        assert record["value"] == {"a": 1}
        assert record["expires_at"] is not None
        assert client.table.return_value.upsert.call_args.kwargs == {"on_conflict": "key"}

    @pytest.mark.asyncio
    async def test_tombstone_has_no_expiry(self) -> None:
        store, client = self._store()
        await store.set("k", None)
        record = client.table.return_value.upsert.call_args.args[0]
        assert record == {"key": "k", "value": None, "expires_at": None}

    @pytest.mark.asyncio
    async def test_incr_counter_uses_rpc(self) -> None:
        store, client = self._store()
        client.rpc.return_value.execute.return_value = MagicMock(data=7)
        assert await store.incr_counter("c") == 7
        client.rpc.assert_called_with("kv_incr_counter", {"counter_id": "c"})

    @pytest.mark.asyncio
    async def test_get_counter_defaults_to_zero(self) -> None:
        store, client = self._store()
        self._select_result(client, [])
        assert await store.get_counter("c") == 0

    @pytest.mark.asyncio
    async def test_compare_and_set_insert_conflict(self) -> None:
        store, client = self._store()
        client.table.return_value.insert.return_value.execute.side_effect = APIError(
            {"message": "duplicate key", "code": "23505", "hint": None, "details": None}
        )
        assert not await store.compare_and_set("k", {"a": 1}, 0)

    @pytest.mark.asyncio
    async def test_compare_and_set_conditional_update(self) -> None:
        store, client = self._store()
        chain = client.table.return_value.update.return_value.eq.return_value.eq.return_value
        chain.execute.return_value = MagicMock(data=[{"key": "k"}])
        assert await store.compare_and_set("k", {"a": 1}, 4)
        client.table.return_value.update.return_value.eq.return_value.eq.assert_called_with("version", 4)

        chain.execute.return_value = MagicMock(data=[])
        assert not await store.compare_and_set("k", {"a": 1}, 4)

    @pytest.mark.asyncio
    async def test_api_error_is_store_error(self) -> None:
        store, client = self._store()
        client.table.return_value.upsert.return_value.execute.side_effect = APIError(
            {"message": "permission denied", "code": "42501", "hint": None, "details": None}
        )
        with pytest.raises(StoreError) as excinfo:
            await store.set("k", 1)
        assert not isinstance(excinfo.value, StoreUnavailableError)

    @pytest.mark.asyncio
    async def test_transport_error_is_unavailable(self) -> None:
        store, client = self._store()
        client.table.return_value.upsert.return_value.execute.side_effect = httpx.ConnectError("refused")
        with pytest.raises(StoreUnavailableError):
            await store.set("k", 1)
