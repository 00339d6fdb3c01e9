"""Main HTTPS server.

Threaded daemon: each connection is handled on its own thread. Requests pass
through the gateway (route tier + authentication) before reaching the
route handler in server.handlers.
"""

import json
import logging
import signal
import ssl
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import parse_qs, urlparse

from project.errors import DeployerError
from server.auth import AuthError
from server.context import DaemonContext
from server.handlers import ROUTES, Request, RequestError
from server.tls import TLSConfig
from server.tokens import TokenError
from server.users import UserError
from server.webhook import WebhookError

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_PORT = 4303
DEFAULT_BIND = "0.0.0.0"
MAX_BODY_BYTES = 1024 * 1024

# Errors that carry code/message/http_status and are safe to show clients
API_ERRORS = (AuthError, DeployerError, RequestError, TokenError, UserError, WebhookError)


class ChunkedWriter:
    """Text sink writing a chunked text/plain response.

    Headers are sent on the first write, so a handler that fails before
    producing output can still answer with a JSON error. A client that goes
    away only stops delivery; writes after a disconnect are dropped.
    """

    def __init__(self, handler: BaseHTTPRequestHandler, status: int = 200):
        self.handler = handler
        self.status = status
        self.started = False
        self.disconnected = False

    def _start(self):
        self.handler.send_response(self.status)
        self.handler.send_header("Content-Type", "text/plain; charset=utf-8")
        self.handler.send_header("Transfer-Encoding", "chunked")
        self.handler.send_header("X-Content-Type-Options", "nosniff")
        self.handler.end_headers()
        self.started = True

    def _send(self, data: bytes):
        if self.disconnected:
            return
        try:
            self.handler.wfile.write(b"%x\r\n%s\r\n" % (len(data), data))
            self.handler.wfile.flush()
        except OSError as e:
            self.disconnected = True
            logger.info("Client %s disconnected during stream: %s", self.handler.address_string(), e)

    def write(self, text: str) -> int:
        if not text:
            return 0
        if not self.started:
            try:
                self._start()
            except OSError:
                self.started = True
                self.disconnected = True
        self._send(text.encode("utf-8"))
        return len(text)

    def flush(self):
        pass

    def close(self):
        """Send the terminating chunk."""
        if self.started and not self.disconnected:
            try:
                self.handler.wfile.write(b"0\r\n\r\n")
                self.handler.wfile.flush()
            except OSError:
                self.disconnected = True


def _error_response(code: str, message: str) -> dict:
    """Build error response dict."""
    return {"error": {"code": code, "message": message}}


class DaemonHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the daemon."""

    protocol_version = "HTTP/1.1"
    server_version = "inertiad"

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.info("%s - %s", self.address_string(), format % args)

    @property
    def context(self) -> DaemonContext:
        return self.server.context

    def send_json(self, data: dict, status: int = 200):
        """Send JSON response."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        self._dispatch()

    def do_POST(self):
        self._dispatch()

    def _read_body(self) -> Optional[bytes]:
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            length = -1
        if length < 0:
            self.close_connection = True
            self.send_json(_error_response("E100", "Invalid Content-Length"), 400)
            return None
        if length > MAX_BODY_BYTES:
            self.close_connection = True
            self.send_json(_error_response("E100", "Request body too large"), 413)
            return None
        return self.rfile.read(length) if length else b""

    def _dispatch(self):
        parsed = urlparse(self.path)
        path = parsed.path.rstrip("/") or "/"
        remote_addr = self.client_address[0]

        body = self._read_body()
        if body is None:
            return

        try:
            identity = self.context.gateway.check(
                path, self.headers.get("Authorization", ""), remote_addr
            )
        except AuthError as e:
            self.send_json(_error_response(e.code, e.message), e.http_status)
            return

        route = ROUTES[path]
        handler = route.methods.get(self.command)
        if handler is None:
            self.send_json(
                _error_response("E102", f"Method {self.command} not allowed for {path}"), 405
            )
            return

        stream = None

        def stream_factory():
            nonlocal stream
            stream = ChunkedWriter(self)
            return stream

        req = Request(
            method=self.command,
            path=path,
            query=parse_qs(parsed.query),
            headers=self.headers,
            body=body,
            remote_addr=remote_addr,
            identity=identity,
            stream_factory=stream_factory,
        )

        try:
            result = handler(self.context, req)
        except API_ERRORS as e:
            logger.info("%s %s failed: %s %s", self.command, path, e.code, e.message)
            self._send_error(stream, e.code, e.message, e.http_status)
            return
        except Exception:
            logger.exception("Unexpected error handling %s %s", self.command, path)
            self._send_error(stream, "E500", "Internal server error", 500)
            return

        if stream is not None and stream.started:
            stream.close()
        elif result is None:
            self.send_json({"status": "ok"}, 200)
        else:
            data, status = result
            self.send_json(data, status)

    def _send_error(self, stream: Optional[ChunkedWriter], code: str, message: str, status: int):
        if stream is not None and stream.started:
            stream.write(f"error: {code}: {message}\n")
            stream.close()
            return
        self.send_json(_error_response(code, message), status)


class DaemonHTTPServer(ThreadingHTTPServer):
    """Threaded HTTP server carrying the daemon context."""

    daemon_threads = True

    def __init__(self, address, handler_class, context: DaemonContext):
        self.context = context
        super().__init__(address, handler_class)


class Server:
    """HTTPS daemon server."""

    def __init__(
        self,
        context: DaemonContext,
        tls_config: TLSConfig,
        bind: str = DEFAULT_BIND,
        port: int = DEFAULT_PORT,
    ):
        """Initialize server.

        Args:
            context: Daemon context shared by all handlers
            tls_config: TLS configuration (provisioned by bootstrap)
            bind: Address to bind to
            port: Port to listen on
        """
        self.context = context
        self.tls_config = tls_config
        self.bind = bind
        self.port = port
        self.server: Optional[DaemonHTTPServer] = None

    def start(self, install_signal_handlers: bool = True):
        """Bind the listener and wrap it with TLS.

        Raises:
            RuntimeError: If server cannot be started
        """
        try:
            self.server = DaemonHTTPServer((self.bind, self.port), DaemonHandler, self.context)
        except OSError as e:
            raise RuntimeError(f"Cannot listen on {self.bind}:{self.port}: {e}") from e

        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        try:
            context.load_cert_chain(
                certfile=str(self.tls_config.cert_path),
                keyfile=str(self.tls_config.key_path),
            )
        except (OSError, ssl.SSLError) as e:
            self.server.server_close()
            self.server = None
            raise RuntimeError(f"TLS init failed: {e}") from e
        self.server.socket = context.wrap_socket(
            self.server.socket,
            server_side=True,
        )

        logger.info("Serving daemon on https://%s:%d", self.bind, self.server.server_address[1])
        logger.info("Certificate fingerprint: %s", self.tls_config.fingerprint)

        if install_signal_handlers:
            self._setup_signal_handlers()

    def serve_forever(self):
        """Start serving requests."""
        if not self.server:
            raise RuntimeError("Server not started")

        try:
            self.server.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutdown requested")
        finally:
            self.shutdown()

    def shutdown(self):
        """Shutdown the server and cleanup. Safe to call more than once."""
        server, self.server = self.server, None
        if server is None:
            return
        logger.info("Shutting down server")
        server.shutdown()
        server.server_close()
        self.context.shutdown()

    def _setup_signal_handlers(self):
        """Setup signal handler for graceful shutdown."""

        def handle_sigterm(signum, frame):
            """Stop serve_forever; cleanup runs in its finally block."""
            logger.info("Received SIGTERM")
            raise KeyboardInterrupt

        signal.signal(signal.SIGTERM, handle_sigterm)


def create_server(
    context: DaemonContext,
    tls_config: TLSConfig,
    bind: str = DEFAULT_BIND,
    port: int = DEFAULT_PORT,
) -> Server:
    """Create a server instance (not yet started)."""
    return Server(context=context, tls_config=tls_config, bind=bind, port=port)
