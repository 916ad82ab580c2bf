#!/usr/bin/env python3
"""
Key-value store clients for the REST function.

Two implementations share one async interface:

- ``InMemoryKeyValueStore``: process-local dicts, used in demo mode and tests
- ``SupabaseKeyValueStore``: hosted store on Supabase tables plus one RPC
  function for atomic counters (schema in ``setup_supabase.py``)

Every call is bounded by a timeout; a hung store surfaces as
``StoreUnavailableError`` instead of blocking the request.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
from postgrest.exceptions import APIError
from supabase import Client, ClientOptions, create_client

from function_server.config import MAX_VALUE_BYTES, Settings

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


class StoreError(Exception):
    """Store rejected the operation (bad value, bad data, rejected write)"""


class StoreUnavailableError(StoreError):
    """Store could not be reached or did not answer in time"""


def check_value(key: str, value: Any) -> None:
    """Validate a value before writing it.

    Raises:
        StoreError: If the value is not JSON-serializable or exceeds MAX_VALUE_BYTES
    """
    if value is None:
        return
    try:
        encoded = json.dumps(value)
    except (TypeError, ValueError) as e:
        raise StoreError(f"Value for {key!r} is not JSON-serializable: {e}")
    size = len(encoded.encode("utf-8"))
    if size > MAX_VALUE_BYTES:
        raise StoreError(f"Value for {key!r} is {size} bytes, limit is {MAX_VALUE_BYTES}")


class KeyValueStore:
    """Async store interface. Subclasses implement the underscored coroutines."""

    mode = "abstract"

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds

    async def _bounded(self, operation: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            raise StoreUnavailableError(
                f"Store {operation} timed out after {self.timeout_seconds}s"
            )

    async def get(self, key: str) -> Any:
        """Return the live value for key, or None if absent, expired or tombstoned"""
        return await self._bounded("get", self._get(key))

    async def set(self, key: str, value: Any, ttl_minutes: Optional[int] = None) -> None:
        """Write value; ttl_minutes=None means no expiry, value=None writes a tombstone"""
        check_value(key, value)
        await self._bounded("set", self._set(key, value, ttl_minutes))

    async def get_counter(self, counter_id: str) -> int:
        return await self._bounded("get_counter", self._get_counter(counter_id))

    async def incr_counter(self, counter_id: str) -> int:
        """Atomically increment the counter and return the new value"""
        return await self._bounded("incr_counter", self._incr_counter(counter_id))

    async def get_versioned(self, key: str) -> Tuple[Any, int]:
        """Return (value, version). Version 0 means the key was never written."""
        return await self._bounded("get_versioned", self._get_versioned(key))

    async def compare_and_set(
        self,
        key: str,
        value: Any,
        expected_version: int,
        ttl_minutes: Optional[int] = None,
    ) -> bool:
        """Write value only if the stored version still equals expected_version"""
        check_value(key, value)
        return await self._bounded(
            "compare_and_set",
            self._compare_and_set(key, value, expected_version, ttl_minutes),
        )

    async def _get(self, key):
        raise NotImplementedError

    async def _set(self, key, value, ttl_minutes):
        raise NotImplementedError

    async def _get_counter(self, counter_id):
        raise NotImplementedError

    async def _incr_counter(self, counter_id):
        raise NotImplementedError

    async def _get_versioned(self, key):
        raise NotImplementedError

    async def _compare_and_set(self, key, value, expected_version, ttl_minutes):
        raise NotImplementedError


@dataclass
class _Entry:
    value: Any
    version: int
    expires_at: Optional[float] = None


class InMemoryKeyValueStore(KeyValueStore):
    """Demo mode: in-memory storage, lost on restart"""

    mode = "demo"

    def __init__(
        self,
        timeout_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(timeout_seconds)
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._counters: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    def _expires_at(self, ttl_minutes: Optional[int]) -> Optional[float]:
        if ttl_minutes is None:
            return None
        return self._clock() + ttl_minutes * 60

    def _live_value(self, entry: Optional[_Entry]) -> Any:
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            return None
        return entry.value

    def _write(self, key: str, value: Any, ttl_minutes: Optional[int]) -> None:
        previous = self._entries.get(key)
        version = previous.version + 1 if previous else 1
        self._entries[key] = _Entry(value, version, self._expires_at(ttl_minutes))

    async def _get(self, key):
        return self._live_value(self._entries.get(key))

    async def _set(self, key, value, ttl_minutes):
        async with self._lock:
            self._write(key, value, ttl_minutes)

    async def _get_counter(self, counter_id):
        return self._counters.get(counter_id, 0)

    async def _incr_counter(self, counter_id):
        async with self._lock:
            value = self._counters.get(counter_id, 0) + 1
            self._counters[counter_id] = value
            return value

    async def _get_versioned(self, key):
        entry = self._entries.get(key)
        if entry is None:
            return None, 0
        return self._live_value(entry), entry.version

    async def _compare_and_set(self, key, value, expected_version, ttl_minutes):
        async with self._lock:
            entry = self._entries.get(key)
            current_version = entry.version if entry else 0
            if current_version != expected_version:
                return False
            self._write(key, value, ttl_minutes)
            return True


def load_supabase_config(settings: Settings) -> Dict[str, str]:
    """Collect Supabase connection settings.

    Raises:
        ValueError: If the URL or service role key is missing
    """
    if not settings.supabase_url:
        raise ValueError("Supabase configuration missing. Set SUPABASE_URL")
    if not settings.supabase_service_role_key:
        raise ValueError("Supabase service role key missing. Set SUPABASE_SERVICE_ROLE_KEY")
    return {
        "url": settings.supabase_url,
        "service_role_key": settings.supabase_service_role_key,
        "table": settings.kv_table,
        "counter_table": settings.kv_counter_table,
        "counter_rpc": settings.kv_counter_rpc,
    }


def _expiry_timestamp(ttl_minutes: Optional[int]) -> Optional[str]:
    if ttl_minutes is None:
        return None
    return (datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes)).isoformat()


def _is_expired(expires_at: Optional[str]) -> bool:
    if not expires_at:
        return False
    moment = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment <= datetime.now(timezone.utc)


class SupabaseKeyValueStore(KeyValueStore):
    """Hosted store backed by Supabase.

    The sync supabase client runs in a worker thread so the dispatcher
    never blocks on network I/O. Row versions are bumped by a database
    trigger, which lets compare_and_set use a conditional update.
    """

    mode = "supabase"

    def __init__(self, settings: Settings, client: Optional[Client] = None):
        super().__init__(settings.store_timeout_seconds)
        self.config = load_supabase_config(settings)
        self._client = client

    @property
    def client(self) -> Client:
        # Created on first use; creating it at import time breaks cold starts
        if self._client is None:
            options = ClientOptions(auto_refresh_token=False, persist_session=False)
            try:
                self._client = create_client(
                    self.config["url"], self.config["service_role_key"], options=options
                )
            except Exception as e:
                raise StoreUnavailableError(f"Failed to create Supabase client: {e}")
            logger.info(f"Supabase client initialized for host: {self.config['url']}")
        return self._client

    async def _call(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except APIError as e:
            raise StoreError(f"Supabase rejected request: {e.message}") from e
        except httpx.TransportError as e:
            raise StoreUnavailableError(f"Supabase unreachable: {e}") from e

    def _select_row(self, key: str) -> Optional[Dict[str, Any]]:
        result = (
            self.client.table(self.config["table"])
            .select("value, version, expires_at")
            .eq("key", key)
            .limit(1)
            .execute()
        )
        rows = result.data or []
        return rows[0] if rows else None

    def _get_sync(self, key):
        row = self._select_row(key)
        if row is None or _is_expired(row.get("expires_at")):
            return None
        return row.get("value")

    def _set_sync(self, key, value, ttl_minutes):
        record = {"key": key, "value": value, "expires_at": _expiry_timestamp(ttl_minutes)}
        self.client.table(self.config["table"]).upsert(record, on_conflict="key").execute()

    def _get_counter_sync(self, counter_id):
        result = (
            self.client.table(self.config["counter_table"])
            .select("value")
            .eq("id", counter_id)
            .limit(1)
            .execute()
        )
        rows = result.data or []
        return int(rows[0]["value"]) if rows else 0

    def _incr_counter_sync(self, counter_id):
        result = self.client.rpc(self.config["counter_rpc"], {"counter_id": counter_id}).execute()
        data = result.data
        if isinstance(data, list):
            data = data[0] if data else None
        if isinstance(data, dict):
            data = next(iter(data.values()), None)
        if data is None:
            raise StoreError(f"Counter RPC returned no value for {counter_id!r}")
        return int(data)

    def _get_versioned_sync(self, key):
        row = self._select_row(key)
        if row is None:
            return None, 0
        value = None if _is_expired(row.get("expires_at")) else row.get("value")
        return value, int(row["version"])

    def _compare_and_set_sync(self, key, value, expected_version, ttl_minutes):
        table = self.client.table(self.config["table"])
        expires_at = _expiry_timestamp(ttl_minutes)
        if expected_version == 0:
            try:
                table.insert({"key": key, "value": value, "expires_at": expires_at}).execute()
            except APIError as e:
                if e.code == UNIQUE_VIOLATION:
                    return False
                raise
            return True

        result = (
            table.update({"value": value, "expires_at": expires_at})
            .eq("key", key)
            .eq("version", expected_version)
            .execute()
        )
        return bool(result.data)

    async def _get(self, key):
        return await self._call(self._get_sync, key)

    async def _set(self, key, value, ttl_minutes):
        await self._call(self._set_sync, key, value, ttl_minutes)

    async def _get_counter(self, counter_id):
        return await self._call(self._get_counter_sync, counter_id)

    async def _incr_counter(self, counter_id):
        return await self._call(self._incr_counter_sync, counter_id)

    async def _get_versioned(self, key):
        return await self._call(self._get_versioned_sync, key)

    async def _compare_and_set(self, key, value, expected_version, ttl_minutes):
        return await self._call(
            self._compare_and_set_sync, key, value, expected_version, ttl_minutes
        )


def create_store(settings: Settings) -> KeyValueStore:
    """Pick the store for the current settings.

    Demo mode, or a Supabase configuration error, gives the in-memory store.
    """
    if settings.demo_mode:
        logger.info("Running in DEMO MODE (in-memory storage)")
        return InMemoryKeyValueStore(timeout_seconds=settings.store_timeout_seconds)

    try:
        return SupabaseKeyValueStore(settings)
    except ValueError as e:
        logger.error(f"Supabase initialization failed (config error): {e}")
        logger.warning("Falling back to DEMO MODE")
        return InMemoryKeyValueStore(timeout_seconds=settings.store_timeout_seconds)
