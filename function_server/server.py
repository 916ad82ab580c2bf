#!/usr/bin/env python3
"""
Flask adapter for the REST function.
Turns Flask requests into dispatcher requests and dispatcher responses
back into Flask responses. Runs locally via main() and on Vercel via
api/index.py.
"""

import logging
from typing import Dict, Optional

from flask import Flask, Response as FlaskResponse, jsonify, request
from werkzeug.exceptions import HTTPException

from function_server.config import (
    ERROR_MESSAGES,
    LOG_DATE_FORMAT,
    LOG_FORMAT,
    load_settings,
)
from function_server.dispatcher import Dispatcher
from function_server.messages import (
    ParamValue,
    Request,
    Response,
    apply_cors_headers,
    not_found,
)
from store_clients.fetch_client import FetchClient
from store_clients.kv_store import create_store
from store_clients.vault import EnvironmentVault

logging.basicConfig(
    level=logging.INFO,
    format=LOG_FORMAT,
    datefmt=LOG_DATE_FORMAT,
)
logger = logging.getLogger(__name__)

DISPATCH_METHODS = ["GET", "POST", "PUT", "DELETE"]


def create_dispatcher() -> Dispatcher:
    """Wire the dispatcher to clients chosen from environment settings"""
    settings = load_settings()
    return Dispatcher(
        store=create_store(settings),
        fetch_client=FetchClient(timeout_seconds=settings.fetch_timeout_seconds),
        vault=EnvironmentVault(),
        settings=settings,
    )


def build_request(route: Optional[str], item_id: Optional[str]) -> Request:
    """Flatten the Flask request into a dispatcher request.

    Query string values come first; path segments override `route` and `id`.
    """
    params: Dict[str, ParamValue] = {key: value for key, value in request.args.items()}
    if route is not None:
        params["route"] = route
    if item_id is not None:
        params["id"] = item_id

    return Request(
        method=request.method,
        params=params,
        body=request.get_data(as_text=True),
        headers={key: value for key, value in request.headers.items()},
    )


def to_flask_response(response: Response) -> FlaskResponse:
    flask_response = FlaskResponse(
        response.encoded_body(),
        status=response.status,
        content_type=response.content_type(),
    )
    for name, value in response.headers.items():
        if name.lower() == "content-type":
            continue
        flask_response.headers[name] = value
    return flask_response


def create_app(dispatcher: Optional[Dispatcher] = None) -> Flask:
    """Create the Flask app around a dispatcher (built from env if omitted)"""
    app = Flask(__name__)
    app.extensions["dispatcher"] = dispatcher or create_dispatcher()

    def with_cors_headers() -> Response:
        settings = app.extensions["dispatcher"].settings
        return apply_cors_headers(Response(), allow_authorization=settings.auth_enabled)

    @app.before_request
    def answer_preflight():
        # The dispatcher answers OPTIONS with 404, so preflight stops here
        if request.method == "OPTIONS":
            preflight = with_cors_headers()
            preflight.status = 204
            return to_flask_response(preflight.send())
        return None

    # Unknown paths and methods outside DISPATCH_METHODS get the dispatcher's bare 404
    @app.errorhandler(404)
    @app.errorhandler(405)
    def not_found_error(error):
        return to_flask_response(not_found(with_cors_headers()))

    @app.errorhandler(Exception)
    def handle_exception(error):
        if isinstance(error, HTTPException):
            return error
        logger.error(f"Unhandled exception: {error}", exc_info=True)
        return jsonify({"error": ERROR_MESSAGES["internal"]}), 500

    @app.route("/health", methods=["GET"])
    def health():
        """Health check endpoint"""
        current = app.extensions["dispatcher"]
        return jsonify(
            {
                "status": "healthy",
                "service": "kv-rest-function",
                "store": current.store.mode,
                "routes": sorted(
                    f"{route.value}.{method.value}" for route, method in current.route_table.entries()
                ),
            }
        )

    @app.route("/", defaults={"route": None, "item_id": None}, methods=DISPATCH_METHODS)
    @app.route("/<route>", defaults={"item_id": None}, methods=DISPATCH_METHODS)
    @app.route("/<route>/<item_id>", methods=DISPATCH_METHODS)
    async def dispatch(route, item_id):
        current = app.extensions["dispatcher"]
        response = await current.dispatch(build_request(route, item_id))
        logger.info(f"{request.method} {request.path} -> {response.status}")
        return to_flask_response(response)

    return app


def main() -> None:
    """Run the Flask development server"""
    settings = load_settings()
    app = create_app()

    logger.info("=" * 60)
    logger.info("KV REST Function")
    logger.info("=" * 60)
    logger.info(f"Server starting on http://{settings.host}:{settings.port}")
    logger.info(f"Debug mode: {settings.debug}")
    logger.info(f"Store: {app.extensions['dispatcher'].store.mode}")
    logger.info(f"Request authorization: {'enabled' if settings.auth_enabled else 'disabled'}")
    logger.info("=" * 60)

    app.run(host=settings.host, port=settings.port, debug=settings.debug)


if __name__ == "__main__":
    main()
