#!/usr/bin/env python3
"""
Request and response objects handed to route handlers, plus the
response helpers shared by every handler.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from function_server.config import (
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGIN,
)

ParamValue = Union[str, bool]


class MalformedBodyError(ValueError):
    """Raised when a request body is not a JSON object"""


class ResponseAlreadySentError(RuntimeError):
    """Raised when send() is called on a finalized response"""


@dataclass
class Request:
    """Inbound request: method, flat params, raw body and headers"""
    method: str
    params: Dict[str, ParamValue] = field(default_factory=dict)
    body: str = ""
    headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.method = (self.method or "").lower()
        if self.body is None:
            self.body = ""

    @property
    def route(self) -> str:
        route = self.params.get("route")
        return route if isinstance(route, str) else ""

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Case-insensitive header lookup"""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return default

    def json(self) -> Dict[str, Any]:
        """Parse the body as a JSON object.

        Returns:
            Parsed object, or an empty dict for an empty body

        Raises:
            MalformedBodyError: If the body is not valid JSON or not an object
        """
        if not self.body.strip():
            return {}
        try:
            data = json.loads(self.body)
        except json.JSONDecodeError as e:
            raise MalformedBodyError(f"Request body is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise MalformedBodyError("Request body must be a JSON object")
        return data


class Response:
    """Mutable response finalized by exactly one call to send()"""

    def __init__(self) -> None:
        self.status = 200
        self.headers: Dict[str, str] = {}
        self.body: Any = None
        self.sent = False

    def send(self, payload: Any = None) -> "Response":
        if self.sent:
            raise ResponseAlreadySentError("Response has already been sent")
        self.body = payload
        self.sent = True
        return self

    def content_type(self) -> Optional[str]:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        if self.body is None:
            return None
        if isinstance(self.body, str):
            return "text/plain; charset=utf-8"
        return "application/json"

    def encoded_body(self) -> bytes:
        """Body in wire form: strings as-is, everything else as JSON"""
        if self.body is None:
            return b""
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return json.dumps(self.body).encode("utf-8")


def apply_cors_headers(response: Response, allow_authorization: bool = False) -> Response:
    allow_headers = CORS_ALLOW_HEADERS
    if allow_authorization:
        allow_headers = f"{allow_headers}, Authorization"
    response.headers["Access-Control-Allow-Origin"] = CORS_ALLOW_ORIGIN
    response.headers["Access-Control-Allow-Headers"] = allow_headers
    response.headers["Access-Control-Allow-Methods"] = CORS_ALLOW_METHODS
    return response


# Response helpers

def ok(response: Response) -> Response:
    response.status = 200
    return response.send()


def unauthorized(response: Response) -> Response:
    response.status = 401
    return response.send()


def bad_request(response: Response) -> Response:
    response.status = 400
    return response.send()


def not_found(response: Response) -> Response:
    response.status = 404
    return response.send()


def server_error(response: Response, code: int, error_to_client: Any = None) -> Response:
    response.status = code
    return response.send(error_to_client)
