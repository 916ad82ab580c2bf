#!/usr/bin/env python3
"""
Route handlers.

Each handler is a coroutine taking a HandlerContext and finishing with
exactly one response.send(). Failures that happen before sending are
raised and turned into a response by the dispatcher.
"""

import functools
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Optional

from function_server.config import (
    ACCOUNT_KEY_PREFIX,
    ACCOUNT_TTL_MINUTES,
    INDEX_HTML,
    TRUTHY_EXCLUDED,
    Settings,
)
from function_server.messages import Request, Response, ok, unauthorized
from store_clients.fetch_client import FetchClient
from store_clients.kv_store import KeyValueStore
from store_clients.vault import EnvironmentVault, SecretNotFoundError

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "


class InvalidRequestError(ValueError):
    """Request params or body failed validation"""


class UpdateConflictError(RuntimeError):
    """Optimistic update kept losing to concurrent writers"""


@dataclass
class HandlerContext:
    """Everything a handler may touch during one invocation"""
    request: Request
    response: Response
    store: KeyValueStore
    fetch_client: FetchClient
    vault: Optional[EnvironmentVault]
    settings: Settings


def account_key(account_id: str) -> str:
    return f"{ACCOUNT_KEY_PREFIX}{account_id}"


def require_id(value: Any) -> str:
    """Normalize an id from params or body.

    Raises:
        InvalidRequestError: If the id is missing, empty or not a string/number
    """
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise InvalidRequestError("id is required")
    account_id = str(value).strip()
    if not account_id:
        raise InvalidRequestError("id is required")
    return account_id


def is_truthy(value: Any) -> bool:
    """Query-param truthiness: "false", "0", "no", "off" and "" are false"""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() not in TRUTHY_EXCLUDED


def is_authorized(ctx: HandlerContext) -> bool:
    """Check the bearer token when API_AUTH_TOKEN is configured"""
    if not ctx.settings.auth_enabled:
        return True

    auth_header = ctx.request.header("Authorization")
    if not auth_header or not auth_header.startswith(BEARER_PREFIX):
        return False

    token = auth_header[len(BEARER_PREFIX):].strip()
    return hmac.compare_digest(token.encode("utf-8"), ctx.settings.api_auth_token.encode("utf-8"))


def requires_authorization(handler):
    @functools.wraps(handler)
    async def wrapper(ctx: HandlerContext):
        if not is_authorized(ctx):
            logger.info(f"Rejected unauthorized {ctx.request.method} {ctx.request.route}")
            return unauthorized(ctx.response)
        return await handler(ctx)

    return wrapper


async def default_get(ctx: HandlerContext) -> Response:
    ctx.response.status = 200
    return ctx.response.send()


# Example: HTML

async def index_get(ctx: HandlerContext) -> Response:
    ctx.response.status = 200
    ctx.response.headers["Content-Type"] = "text/html; charset=utf-8"
    return ctx.response.send(INDEX_HTML)


# Example: CRUD REST API

@requires_authorization
async def account_get(ctx: HandlerContext) -> Response:
    """Read an account object by its `id` param"""
    account_id = require_id(ctx.request.params.get("id"))
    account_data = await ctx.store.get(account_key(account_id))
    ctx.response.status = 200
    return ctx.response.send({"account_data": account_data})


@requires_authorization
async def account_post(ctx: HandlerContext) -> Response:
    """Create an account object from the body `{id, account_data}`"""
    body = ctx.request.json()
    account_id = require_id(body.get("id"))
    account_data = body.get("account_data")
    if not isinstance(account_data, dict):
        raise InvalidRequestError("account_data must be an object")

    await ctx.store.set(account_key(account_id), account_data, ACCOUNT_TTL_MINUTES)
    return ok(ctx.response)


@requires_authorization
async def account_put(ctx: HandlerContext) -> Response:
    """Update the user name attribute of an account object.

    Other fields of the stored object are preserved. The write is a
    compare-and-set against the version that was read, so a concurrent
    writer forces a re-read instead of being overwritten.
    """
    body = ctx.request.json()
    account_id = require_id(body.get("id"))
    user_name = body.get("user_name")
    if not isinstance(user_name, str):
        raise InvalidRequestError("user_name must be a string")

    key = account_key(account_id)
    for attempt in range(1, ctx.settings.put_max_attempts + 1):
        current, version = await ctx.store.get_versioned(key)
        account_data = dict(current) if isinstance(current, dict) else {}
        account_data["user_name"] = user_name

        if await ctx.store.compare_and_set(key, account_data, version, ACCOUNT_TTL_MINUTES):
            return ok(ctx.response)
        logger.warning(f"Version conflict updating {key} (attempt {attempt})")

    raise UpdateConflictError(f"Gave up updating {key} after {ctx.settings.put_max_attempts} attempts")


@requires_authorization
async def account_delete(ctx: HandlerContext) -> Response:
    """Destroy an account object by writing a null tombstone"""
    account_id = require_id(ctx.request.params.get("id"))
    await ctx.store.set(account_key(account_id), None)
    return ok(ctx.response)


# Example: State Counter

@requires_authorization
async def counter_get(ctx: HandlerContext) -> Response:
    """Get the value of a counter by `id`, incrementing it first if `increment` is set"""
    counter_id = require_id(ctx.request.params.get("id"))

    if is_truthy(ctx.request.params.get("increment")):
        counter = await ctx.store.incr_counter(counter_id)
    else:
        counter = await ctx.store.get_counter(counter_id)

    ctx.response.status = 200
    return ctx.response.send(counter)


# Example: Query an external API

async def kitty_get(ctx: HandlerContext) -> Response:
    """Redirect to a random cat image.

    Vault authorization is off unless KITTY_API_KEY_SECRET names a secret.
    """
    headers = {}
    secret_name = ctx.settings.kitty_api_key_secret
    if secret_name:
        if ctx.vault is None:
            raise SecretNotFoundError(secret_name)
        headers["Authorization"] = await ctx.vault.get(secret_name)

    result = await ctx.fetch_client.fetch(ctx.settings.kitty_url, method="GET", headers=headers)
    ctx.response.status = 302
    ctx.response.headers["Location"] = result.url
    return ctx.response.send()
