"""HTTP front end for a Kubernetes scheduler extender."""

from __future__ import annotations

import logging
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Mapping
from urllib.parse import urlsplit

log = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 1 * 1000 * 1000 * 1000
JSON_CONTENT_TYPE = "application/json"
WRITE_TIMEOUT = 10
CIPHER_SUITES = "ECDHE-RSA-AES256-GCM-SHA384:ECDHE-ECDSA-AES256-GCM-SHA384"


@dataclass
class Response:
    """An HTTP response produced by the extender."""

    status: int = HTTPStatus.OK
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)


class Scheduler(ABC):
    """What an extender must provide to answer the scheduler's requests."""

    @abstractmethod
    def filter(self, body: bytes) -> Response:
        """Answer a filter request."""

    @abstractmethod
    def prioritize(self, body: bytes) -> Response:
        """Answer a prioritize request."""

    @abstractmethod
    def bind(self, body: bytes) -> Response:
        """Answer a bind request."""


def _not_found() -> Response:
    return Response(HTTPStatus.NOT_FOUND, b"", {"Content-Type": JSON_CONTENT_TYPE})


def configure_tls_context(cert_file: str, key_file: str, ca_file: str) -> ssl.SSLContext:
    """Build a server TLS context that requires verified client certificates."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.set_ciphers(CIPHER_SUITES)
    context.options |= ssl.OP_CIPHER_SERVER_PREFERENCE
    context.verify_mode = ssl.CERT_REQUIRED
    try:
        context.load_verify_locations(cafile=ca_file)
    except (OSError, ssl.SSLError) as exc:
        log.info("caCert read failed: %s", exc)
    context.load_cert_chain(certfile=cert_file, keyfile=key_file)
    return context


class Server:
    """Routes scheduler requests to a :class:`Scheduler` after pre-checks."""

    def __init__(self, scheduler: Scheduler) -> None:
        self.scheduler = scheduler
        self._routes: dict[str, Callable[[bytes], Response]] = {
            "/scheduler/prioritize": scheduler.prioritize,
            "/scheduler/filter": scheduler.filter,
            "/scheduler/bind": scheduler.bind,
        }

    def dispatch(
        self, method: str, path: str, headers: Mapping[str, str], body: bytes = b""
    ) -> Response:
        """Check a request and hand it to the matching scheduler endpoint.

        Checks run in order: content type, content length, method. The first
        failing check decides the response.
        """
        lowered = {key.lower(): value for key, value in headers.items()}
        if lowered.get("content-type") != JSON_CONTENT_TYPE:
            log.info("request content type not application/json")
            return Response(HTTPStatus.NOT_FOUND)
        try:
            length = int(lowered.get("content-length", len(body)))
        except ValueError:
            return Response(HTTPStatus.BAD_REQUEST)
        if length > MAX_CONTENT_LENGTH:
            log.info("request size too large")
            return Response(HTTPStatus.INTERNAL_SERVER_ERROR)
        if method != "POST":
            log.info("method type not POST")
            return Response(HTTPStatus.METHOD_NOT_ALLOWED)
        route_path = urlsplit(path).path
        handler = self._routes.get(route_path)
        if handler is None:
            log.info("Requested resource: '%s' not found", route_path)
            return _not_found()
        return handler(body)

    def make_http_server(
        self, port: str, cert_file: str, key_file: str, ca_file: str, unsafe: bool
    ) -> ThreadingHTTPServer:
        """Create a bound HTTP server, wrapped in TLS unless ``unsafe``."""
        extender = self

        class _Handler(BaseHTTPRequestHandler):
            timeout = WRITE_TIMEOUT

            def _handle(self) -> None:
                try:
                    length = int(self.headers.get("Content-Length") or 0)
                except ValueError:
                    length = 0
                body = b""
                if 0 < length <= MAX_CONTENT_LENGTH:
                    body = self.rfile.read(length)
                response = extender.dispatch(
                    self.command, self.path, dict(self.headers.items()), body
                )
                self.send_response(response.status)
                for name, value in response.headers.items():
                    self.send_header(name, value)
                self.send_header("Content-Length", str(len(response.body)))
                self.end_headers()
                self.wfile.write(response.body)

            do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = do_OPTIONS = _handle

            def log_message(self, format: str, *args: object) -> None:
                log.debug(format, *args)

        httpd = ThreadingHTTPServer(("", int(port)), _Handler)
        if not unsafe:
            context = configure_tls_context(cert_file, key_file, ca_file)
            httpd.socket = context.wrap_socket(httpd.socket, server_side=True)
        return httpd

    def start_server(
        self, port: str, cert_file: str, key_file: str, ca_file: str, unsafe: bool
    ) -> None:
        """Serve forever. Plain-HTTP failures are logged; TLS failures are raised."""
        if unsafe:
            log.info("Extender Listening on HTTP %s", port)
            try:
                with self.make_http_server(port, cert_file, key_file, ca_file, True) as httpd:
                    httpd.serve_forever()
            except OSError as exc:
                log.info("Listening on HTTP failed: %s", exc)
            return
        log.info("Extender Listening on HTTPS %s", port)
        with self.make_http_server(port, cert_file, key_file, ca_file, False) as httpd:
            httpd.serve_forever()