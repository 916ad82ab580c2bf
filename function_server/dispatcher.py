#!/usr/bin/env python3
"""
Route dispatch: maps (route, method) to a handler and guarantees that
every invocation ends with exactly one sent response.
"""

import functools
import logging
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from function_server import handlers
from function_server.config import ERROR_MESSAGES, Settings, load_settings
from function_server.handlers import HandlerContext, InvalidRequestError, UpdateConflictError
from function_server.messages import (
    MalformedBodyError,
    Request,
    Response,
    apply_cors_headers,
    bad_request,
    not_found,
    server_error,
)
from store_clients.fetch_client import FetchClient, FetchError, FetchTimeoutError
from store_clients.kv_store import KeyValueStore, StoreError, StoreUnavailableError
from store_clients.vault import EnvironmentVault, SecretNotFoundError

logger = logging.getLogger(__name__)

Handler = Callable[[HandlerContext], Awaitable[Response]]


class Route(str, Enum):
    DEFAULT = "default"
    INDEX = "index"
    ACCOUNT = "account"
    COUNTER = "counter"
    KITTY = "kitty"


class Method(str, Enum):
    GET = "get"
    POST = "post"
    PUT = "put"
    DELETE = "delete"
    OPTIONS = "options"


def _coerce(enum_cls, value, fold_case: bool = False):
    if isinstance(value, enum_cls):
        return value
    text = str(value)
    if fold_case:
        text = text.lower()
    try:
        return enum_cls(text)
    except ValueError:
        return None


class RouteTable:
    """Finite mapping from (Route, Method) to a handler"""

    def __init__(self) -> None:
        self._handlers: Dict[Tuple[Route, Method], Handler] = {}

    def register(self, route: Union[Route, str], method: Union[Method, str], handler: Handler) -> None:
        route_key = _coerce(Route, route)
        method_key = _coerce(Method, method, fold_case=True)
        if route_key is None or method_key is None:
            raise ValueError(f"Unknown route or method: {route!r} {method!r}")
        if (route_key, method_key) in self._handlers:
            raise ValueError(f"Handler already registered for {route_key.value}.{method_key.value}")
        self._handlers[(route_key, method_key)] = handler

    def lookup(self, route: Union[Route, str], method: Union[Method, str]) -> Optional[Handler]:
        route_key = _coerce(Route, route)
        method_key = _coerce(Method, method, fold_case=True)
        if route_key is None or method_key is None:
            return None
        return self._handlers.get((route_key, method_key))

    def entries(self) -> List[Tuple[Route, Method]]:
        return list(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)


def build_route_table() -> RouteTable:
    table = RouteTable()
    table.register(Route.DEFAULT, Method.GET, handlers.default_get)
    table.register(Route.INDEX, Method.GET, handlers.index_get)
    table.register(Route.ACCOUNT, Method.GET, handlers.account_get)
    table.register(Route.ACCOUNT, Method.POST, handlers.account_post)
    table.register(Route.ACCOUNT, Method.PUT, handlers.account_put)
    table.register(Route.ACCOUNT, Method.DELETE, handlers.account_delete)
    table.register(Route.COUNTER, Method.GET, handlers.counter_get)
    table.register(Route.KITTY, Method.GET, handlers.kitty_get)
    return table


class Dispatcher:
    """Selects and runs the handler for a request.

    Clients are injected so tests can substitute doubles. The route
    table is built once per dispatcher, not per request.
    """

    def __init__(
        self,
        store: KeyValueStore,
        fetch_client: FetchClient,
        vault: Optional[EnvironmentVault] = None,
        settings: Optional[Settings] = None,
        route_table: Optional[RouteTable] = None,
    ):
        self.store = store
        self.fetch_client = fetch_client
        self.vault = vault
        self.settings = settings or load_settings()
        self.route_table = route_table or build_route_table()

    def select(self, request: Request) -> Optional[Handler]:
        route = request.route
        method = request.method
        if not route and method == Method.GET.value:
            return self.route_table.lookup(Route.DEFAULT, Method.GET)
        if route and method:
            return self.route_table.lookup(route, method)
        return None

    async def dispatch(self, request: Request) -> Response:
        response = apply_cors_headers(Response(), allow_authorization=self.settings.auth_enabled)

        handler = self.select(request)
        if handler is None:
            return not_found(response)

        ctx = HandlerContext(
            request=request,
            response=response,
            store=self.store,
            fetch_client=self.fetch_client,
            vault=self.vault,
            settings=self.settings,
        )
        run = functools.partial(handler, ctx)
        try:
            await run()
        except Exception as e:
            if response.sent:
                logger.error(f"Handler for {request.route}.{request.method} failed after sending: {e}", exc_info=True)
                return response
            return self._handle_error(request, response, e)

        if not response.sent:
            logger.error(f"Handler for {request.route}.{request.method} returned without sending")
            return server_error(response, 500, {"error": ERROR_MESSAGES["internal"]})
        return response

    def _handle_error(self, request: Request, response: Response, error: Exception) -> Response:
        where = f"{request.method.upper()} {request.route or '/'}"

        if isinstance(error, (MalformedBodyError, InvalidRequestError)):
            logger.info(f"Bad request on {where}: {error}")
            return bad_request(response)
        if isinstance(error, StoreUnavailableError):
            logger.error(f"Store unavailable on {where}: {error}")
            return server_error(response, 503, {"error": ERROR_MESSAGES["store_unavailable"]})
        if isinstance(error, StoreError):
            logger.error(f"Store error on {where}: {error}")
            return bad_request(response)
        if isinstance(error, FetchTimeoutError):
            logger.error(f"Upstream timeout on {where}: {error}")
            return server_error(response, 504, {"error": ERROR_MESSAGES["upstream_timeout"]})
        if isinstance(error, FetchError):
            logger.error(f"Upstream failure on {where}: {error}")
            return server_error(response, 502, {"error": ERROR_MESSAGES["upstream_failed"]})
        if isinstance(error, SecretNotFoundError):
            logger.error(f"Secret not configured on {where}: {error}")
            return server_error(response, 500, {"error": ERROR_MESSAGES["secret_missing"]})
        if isinstance(error, UpdateConflictError):
            logger.warning(f"Update conflict on {where}: {error}")
            return server_error(response, 409, {"error": ERROR_MESSAGES["conflict"]})

        logger.error(f"Unhandled exception on {where}: {error}", exc_info=True)
        return server_error(response, 500, {"error": ERROR_MESSAGES["internal"]})
