"""
Registry HTTP API

This module provides:
- make_handler: builds a request handler class bound to one registry
- start_registry_server: plain HTTP ThreadingHTTPServer in a daemon thread
- start_secure_server: the same behind TLS, skipped if key/cert are unusable;
  the handshake runs per connection in SecureHTTPServer
- serve: starts both listeners from a RollcallConfig
"""

import json
import logging
import re
import ssl
import threading
import urllib.parse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, List, Optional

from .config import RollcallConfig
from .registry import InMemoryRegistry, NotFoundError, ValidationError, register

logger = logging.getLogger(__name__)

INDEX = {
    "self": "/",
    "services": "/services",
}

NO_SUCH_INSTANCE = {"message": "No such instance"}

_BRACKETED = re.compile(r"\[([^\]]*)\]")


class BadRequest(Exception):
    """The request body could not be parsed."""


def parse_form(text: str) -> dict:
    """Parse a form-encoded body, nesting bracketed keys.

    ``meta[zone]=eu&meta[rack][row]=3`` becomes
    ``{"meta": {"zone": "eu", "rack": {"row": "3"}}}``. For a repeated
    plain key the first value wins.
    """
    body: dict = {}
    for key, value in urllib.parse.parse_qsl(text, keep_blank_values=True):
        head, bracket, rest = key.partition("[")
        if not bracket or not head:
            body.setdefault(key, value)
            continue
        path = [head] + _BRACKETED.findall(bracket + rest)
        target = body
        for part in path[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = target[part] = {}
            target = child
        target[path[-1]] = value
    return body


class SecureHTTPServer(ThreadingHTTPServer):
    """ThreadingHTTPServer that runs the TLS handshake in the request thread.

    The listening socket stays plain, so a peer that connects and never
    completes the handshake only ties up its own thread until
    ``request_timeout`` expires.
    """

    request_timeout = 10

    def __init__(self, server_address, handler_class, context: ssl.SSLContext):
        self.context = context
        super().__init__(server_address, handler_class)

    def finish_request(self, request, client_address):
        request.settimeout(self.request_timeout)
        try:
            tls = self.context.wrap_socket(request, server_side=True)
        except OSError as e:
            logger.debug("TLS handshake with %s failed: %s", client_address[0], e)
            return
        try:
            self.RequestHandlerClass(tls, client_address, self)
        finally:
            self.shutdown_request(tls)


def make_handler(registry: InMemoryRegistry):
    """Create a handler class bound to the given registry instance."""

    class RegistryHTTPHandler(BaseHTTPRequestHandler):

        def log_message(self, format, *args):
            logger.debug("%s - %s", self.address_string(), format % args)

        def _json_response(self, data: Any, status: int = 200):
            body = json.dumps(data).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def _segments(self) -> tuple[list[str], dict[str, list[str]]]:
            parsed = urllib.parse.urlparse(self.path)
            parts = [urllib.parse.unquote(p) for p in parsed.path.split("/") if p]
            return parts, urllib.parse.parse_qs(parsed.query)

        def _read_body(self) -> dict:
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                raise BadRequest("Invalid Content-Length header.") from None
            if length < 0:
                raise BadRequest("Invalid Content-Length header.")
            raw = self.rfile.read(length) if length > 0 else b""
            ctype = (self.headers.get("Content-Type") or "").split(";")[0].strip()

            if ctype == "application/x-www-form-urlencoded":
                try:
                    return parse_form(raw.decode())
                except UnicodeDecodeError:
                    raise BadRequest("Form body is not valid UTF-8.") from None

            if not raw.strip():
                return {}
            try:
                body = json.loads(raw)
            except ValueError:
                raise BadRequest("Malformed JSON body.") from None
            if not isinstance(body, dict):
                raise BadRequest("Request body must be a JSON object.")
            return body

        def _dispatch(self, method):
            try:
                method()
            except Exception:
                logger.exception("Unhandled error serving %s %s", self.command, self.path)
                self._json_response({"message": "Internal server error"}, status=500)

        def do_GET(self):
            self._dispatch(self._get)

        def do_POST(self):
            self._dispatch(self._post)

        def do_DELETE(self):
            self._dispatch(self._delete)

        def _get(self):
            parts, qs = self._segments()

            if not parts:
                self._json_response(INDEX)

            elif parts == ["services"]:
                self._json_response([i.to_dict() for i in registry.find_all()])

            elif len(parts) == 2 and parts[0] == "services":
                version = qs.get("version", [None])[0] or None
                found = registry.find_by_name(parts[1], version=version)
                self._json_response([i.to_dict() for i in found])

            else:
                self._json_response({"message": "Not found"}, status=404)

        def _post(self):
            parts, _ = self._segments()

            if parts == ["services"]:
                try:
                    body = self._read_body()
                    instance = register(
                        registry,
                        name=body.get("name"),
                        host=body.get("host"),
                        port=body.get("port"),
                        meta=body.get("meta"),
                        remote_addr=self.client_address[0],
                    )
                except (BadRequest, ValidationError) as e:
                    self._json_response({"message": str(e)}, status=400)
                    return
                self._json_response(instance.to_dict(), status=201)

            elif len(parts) == 2 and parts[0] == "services":
                try:
                    instance = registry.heartbeat(parts[1])
                except NotFoundError:
                    self._json_response(NO_SUCH_INSTANCE, status=404)
                    return
                self._json_response({
                    "success": True,
                    "message": "heartbeat accepted",
                    "doc": instance.to_dict(),
                }, status=202)

            else:
                self._json_response({"message": "Not found"}, status=404)

        def _delete(self):
            parts, _ = self._segments()

            if len(parts) == 2 and parts[0] == "services":
                try:
                    registry.remove(parts[1])
                except NotFoundError:
                    self._json_response(NO_SUCH_INSTANCE, status=404)
                    return
                except Exception:
                    logger.exception("Failed to deregister instance %s", parts[1])
                    self._json_response({"success": False})
                    return
                self._json_response({"success": True})

            else:
                self._json_response({"message": "Not found"}, status=404)

    return RegistryHTTPHandler


def _serve_in_thread(server: ThreadingHTTPServer) -> ThreadingHTTPServer:
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server


def start_registry_server(
    registry: InMemoryRegistry,
    host: str = "0.0.0.0",
    port: int = 8001,
) -> ThreadingHTTPServer:
    """Start a ThreadingHTTPServer in a daemon thread and return the server."""
    server = ThreadingHTTPServer((host, port), make_handler(registry))
    return _serve_in_thread(server)


def start_secure_server(
    registry: InMemoryRegistry,
    host: str,
    port: int,
    key_path: str,
    cert_path: str,
) -> Optional[ThreadingHTTPServer]:
    """Start the TLS listener, or return None if it cannot be set up.

    Unreadable key/cert files and bind failures are logged and leave the
    process serving plain HTTP only.
    """
    try:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(certfile=cert_path, keyfile=key_path)
    except OSError as e:
        logger.warning("could not read ssl cert + key: %s", e)
        return None

    try:
        server = SecureHTTPServer((host, port), make_handler(registry), context)
    except OSError as e:
        logger.warning("could not bind secure server on %s:%d: %s", host, port, e)
        return None
    return _serve_in_thread(server)


def serve(config: RollcallConfig,
          registry: Optional[InMemoryRegistry] = None) -> List[ThreadingHTTPServer]:
    """Start the plain and (when possible) TLS listeners for *registry*."""
    if registry is None:
        registry = InMemoryRegistry()

    server = start_registry_server(registry, host=config.host, port=config.port)
    servers = [server]
    logger.info("server running at http://%s:%d", config.host, server.server_address[1])

    secure = start_secure_server(
        registry,
        host=config.host,
        port=config.secure_port,
        key_path=config.secure_key_path,
        cert_path=config.secure_cert_path,
    )
    if secure is not None:
        servers.append(secure)
        logger.info("secure server running at https://%s:%d",
                    config.host, secure.server_address[1])
    else:
        logger.info("TLS disabled, serving plain HTTP only")
    return servers
