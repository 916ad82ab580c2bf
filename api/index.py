#!/usr/bin/env python3
"""WSGI entry point for Vercel deployment."""

import sys
import json
from io import BytesIO
from urllib.parse import urlsplit
from pathlib import Path
from http.server import BaseHTTPRequestHandler

print("[lambda] cold start", flush=True)
print(f"[lambda] python={sys.version}", flush=True)

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from function_server.config import (  # noqa: E402
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGIN,
)

import_error: Exception | None = None

try:
    from function_server.server import create_app

    wsgi_app = create_app()
    print("[lambda] created function_server app", flush=True)
except Exception as exc:  # pragma: no cover
    print(f"[lambda] function_server import failed: {type(exc).__name__}: {exc}", flush=True)
    wsgi_app = None
    import_error = exc

# Vercel rewrites every path to this function; strip the prefix before Flask routing
ROUTE_PREFIXES = ("/api/index", "/api")


def strip_route_prefix(path: str) -> str:
    for prefix in ROUTE_PREFIXES:
        if path == prefix or path.startswith(prefix + "/"):
            return path[len(prefix):] or "/"
    return path or "/"


def _error_payload(message: str, error_type: str = "Error"):
    return {
        "error": error_type,
        "message": message,
    }


class handler(BaseHTTPRequestHandler):  # pragma: no cover - executed in production
    server_version = "VercelPythonWSGI/1.0"

    def _read_body(self) -> bytes:
        length = int(self.headers.get("content-length", 0) or 0)
        if length > 0:
            return self.rfile.read(length)
        return b""

    def _send_cors_headers(self) -> None:
        self.send_header("Access-Control-Allow-Origin", CORS_ALLOW_ORIGIN)
        self.send_header("Access-Control-Allow-Headers", f"{CORS_ALLOW_HEADERS}, Authorization")
        self.send_header("Access-Control-Allow-Methods", CORS_ALLOW_METHODS)

    def _build_environ(self, body: bytes) -> dict:
        split_url = urlsplit(self.path)
        environ = {
            "wsgi.version": (1, 0),
            "wsgi.url_scheme": "https",
            "wsgi.input": BytesIO(body),
            "wsgi.errors": sys.stderr,
            "wsgi.multithread": False,
            "wsgi.multiprocess": False,
            "wsgi.run_once": False,
            "REQUEST_METHOD": self.command,
            "SCRIPT_NAME": "",
            "PATH_INFO": strip_route_prefix(split_url.path),
            "QUERY_STRING": split_url.query or "",
            "SERVER_NAME": self.headers.get("host", "localhost"),
            "SERVER_PORT": "443",
            "SERVER_PROTOCOL": self.request_version,
            "CONTENT_TYPE": self.headers.get("content-type", ""),
            "CONTENT_LENGTH": str(len(body)),
        }

        for key, value in self.headers.items():
            header_key = f"HTTP_{key.upper().replace('-', '_')}"
            if header_key in ("HTTP_CONTENT_TYPE", "HTTP_CONTENT_LENGTH"):
                continue
            environ[header_key] = value

        return environ

    def _send_response(self, status: str, headers: list[tuple[str, str]], body_chunks: list[bytes]) -> None:
        status_code, _, status_text = status.partition(" ")

        self.send_response(int(status_code), status_text)
        header_names = {name.lower() for name, _ in headers}

        body = b"".join(body_chunks)
        if "content-length" not in header_names:
            headers.append(("Content-Length", str(len(body))))

        for name, value in headers:
            self.send_header(name, value)
        if "access-control-allow-origin" not in header_names:
            self._send_cors_headers()
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _send_json(self, code: int, payload: dict) -> None:
        body = json.dumps(payload).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self._send_cors_headers()
        self.end_headers()
        self.wfile.write(body)

    def _handle_error(self, exc: Exception) -> None:
        print(f"[lambda] request error: {type(exc).__name__}: {exc}", flush=True)
        self._send_json(500, _error_payload(str(exc), type(exc).__name__))

    def do_OPTIONS(self):
        self.send_response(204)
        self._send_cors_headers()
        self.end_headers()

    def do_GET(self):
        self._dispatch()

    def do_POST(self):
        self._dispatch()

    def do_PUT(self):
        self._dispatch()

    def do_DELETE(self):
        self._dispatch()

    def do_PATCH(self):
        self._dispatch()

    def log_message(self, format, *args):  # pragma: no cover - silence default logging
        print(f"[lambda] {self.address_string()} - {format % args}", flush=True)

    def _dispatch(self):
        try:
            if import_error is not None:
                self._send_json(500, _error_payload(str(import_error), type(import_error).__name__))
                return

            body = self._read_body()
            environ = self._build_environ(body)

            status_headers: dict[str, object] = {}
            chunks: list[bytes] = []

            def start_response(status: str, response_headers: list[tuple[str, str]], exc_info=None):
                status_headers["status"] = status
                status_headers["headers"] = response_headers
                return chunks.append

            result = wsgi_app(environ, start_response)
            try:
                chunks.extend(result)
            finally:
                if hasattr(result, "close"):
                    result.close()

            status = status_headers.get("status", "500 Internal Server Error")
            headers = list(status_headers.get("headers", []))

            self._send_response(status, headers, chunks)
        except Exception as exc:  # pragma: no cover
            self._handle_error(exc)
