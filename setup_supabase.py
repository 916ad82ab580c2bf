#!/usr/bin/env python3
"""
Supabase Configuration Script
Prints the key-value store schema and verifies that the hosted store works.
"""

import argparse
import asyncio
import sys
import uuid

from function_server.config import Settings, load_settings
from store_clients.kv_store import StoreError, SupabaseKeyValueStore

SCHEMA_TEMPLATE = """
create table if not exists public.{table} (
    key text primary key,
    value jsonb,
    version bigint not null default 1,
    expires_at timestamptz
);

create or replace function public.{table}_bump_version()
returns trigger language plpgsql as $$
begin
    new.version := old.version + 1;
    return new;
end;
$$;

drop trigger if exists {table}_bump_version on public.{table};
create trigger {table}_bump_version
    before update on public.{table}
    for each row execute function public.{table}_bump_version();

create table if not exists public.{counter_table} (
    id text primary key,
    value bigint not null default 0
);

create or replace function public.{counter_rpc}(counter_id text)
returns bigint language sql as $$
    insert into public.{counter_table} as c (id, value)
    values (counter_id, 1)
    on conflict (id) do update set value = c.value + 1
    returning c.value;
$$;
"""


def render_schema(settings: Settings) -> str:
    """Render the SQL to run once in the Supabase SQL editor"""
    return SCHEMA_TEMPLATE.format(
        table=settings.kv_table,
        counter_table=settings.kv_counter_table,
        counter_rpc=settings.kv_counter_rpc,
    ).strip() + "\n"


def check_environment(settings: Settings) -> bool:
    """Check that Supabase credentials are configured"""
    missing = []
    if not settings.supabase_url:
        missing.append("SUPABASE_URL")
    if not settings.supabase_service_role_key:
        missing.append("SUPABASE_SERVICE_ROLE_KEY")

    if missing:
        print(f"[X] Missing variables in environment or .env: {', '.join(missing)}")
        return False

    print("[OK] Supabase credentials are configured")
    if settings.demo_mode:
        print("[!] DEMO_MODE is true; set DEMO_MODE=false to use Supabase at runtime")
    return True


async def verify_setup(settings: Settings) -> bool:
    """Round-trip a value, a versioned write and a counter through the store"""
    store = SupabaseKeyValueStore(settings)
    probe = f"setup-check-{uuid.uuid4().hex}"

    try:
        await store.set(probe, {"ok": True}, ttl_minutes=1)
        if await store.get(probe) != {"ok": True}:
            print(f"[X] Read-back mismatch on '{settings.kv_table}'")
            return False
        print(f"[OK] '{settings.kv_table}' table accepts reads and writes")

        _, version = await store.get_versioned(probe)
        if not await store.compare_and_set(probe, {"ok": "again"}, version, ttl_minutes=1):
            print("[X] compare_and_set failed; is the version trigger installed?")
            return False
        if await store.compare_and_set(probe, {"ok": "stale"}, version, ttl_minutes=1):
            print("[X] Stale compare_and_set succeeded; is the version trigger installed?")
            return False
        print("[OK] Version trigger is installed")
        await store.set(probe, None)

        first = await store.incr_counter(probe)
        second = await store.incr_counter(probe)
        if second != first + 1:
            print(f"[X] Counter RPC '{settings.kv_counter_rpc}' returned {first}, {second}")
            return False
        print(f"[OK] Counter RPC '{settings.kv_counter_rpc}' increments atomically")
        return True
    except StoreError as e:
        print(f"[X] Verification failed: {e}")
        print("    Run the schema (python setup_supabase.py --print-schema) in the Supabase SQL Editor")
        return False


def main(argv=None) -> int:
    """Main setup function"""
    parser = argparse.ArgumentParser(description="Configure the Supabase key-value store")
    parser.add_argument("--print-schema", action="store_true", help="print the schema SQL and exit")
    args = parser.parse_args(argv)

    settings = load_settings()
    if args.print_schema:
        print(render_schema(settings))
        return 0

    print("=" * 60)
    print("Supabase Configuration Script")
    print("=" * 60)

    if not check_environment(settings):
        return 1

    if asyncio.run(verify_setup(settings)):
        print("\n" + "=" * 60)
        print("[OK] Setup Complete!")
        print("=" * 60)
        print("\nStart the server: python -m function_server.server")
        return 0

    print("\n" + "=" * 60)
    print("[!] Setup Incomplete")
    print("=" * 60)
    return 1


if __name__ == "__main__":
    sys.exit(main())
