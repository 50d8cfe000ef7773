"""
authproxy server
Description: Threaded HTTP/1.x front end. Every inbound connection gets its
             own thread; every request read off it is handed to the
             Dispatcher with the handler acting as the response sink.
"""

import logging
import socket
import socketserver
import ssl
import uuid
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Iterable, Optional, Tuple

from authproxy import __version__
from authproxy.model.config import ProxyConfig
from authproxy.model.Core.body import request_body
from authproxy.model.Core.Dispatcher import Dispatcher
from authproxy.model.Core.header import Hijacker, IncomingRequest, ProtocolViolation, ResponseSink

logger = logging.getLogger(__name__)


class ProxyRequestHandler(BaseHTTPRequestHandler, ResponseSink, Hijacker):
    """
    Reads HTTP/1.x requests off one client connection and writes responses.

    Any method is accepted: ``do_<METHOD>`` lookups all resolve to
    ``handle_proxy_request``.
    """

    protocol_version = "HTTP/1.1"
    server_version = f"authproxy/{__version__}"

    def setup(self):
        self.timeout = self.server.config.timeout
        super().setup()
        self._reset()

    def _reset(self):
        self._headers_sent = False
        self._chunked = False
        self._hijacked = False
        self._body = None

    def __getattr__(self, name):
        if name.startswith("do_"):
            return self.handle_proxy_request
        raise AttributeError(name)

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")

    @property
    def remote(self) -> str:
        host, port = self.client_address[:2]
        return f"{host}:{port}"

    def handle_proxy_request(self):
        self._reset()
        conn_id = str(uuid.uuid4())[:8]

        if self.command != "CONNECT":
            try:
                self._body = request_body(self.rfile, self.headers)
            except ProtocolViolation as e:
                logger.warning(f"[{conn_id}] Malformed request from {self.remote}: {e}")
                self.close_connection = True
                self.respond(400, "Bad Request")
                return

        request = IncomingRequest(
            method=self.command,
            target=self.path,
            headers=self.headers,
            body=self._body,
            remote=self.remote,
            secure=isinstance(self.connection, ssl.SSLSocket),
            conn_id=conn_id,
        )
        self.server.dispatcher.dispatch(request, self)

        if not self._hijacked and self._unread_body():
            self.close_connection = True

    def _unread_body(self) -> bool:
        return self._body is not None and not self._body.exhausted

    # ------------------------------------------------------------------
    # ResponseSink
    # ------------------------------------------------------------------

    @property
    def headers_sent(self) -> bool:
        return self._headers_sent

    def respond(self, status: int, message: str,
                headers: Optional[Iterable[Tuple[str, str]]] = None):
        body = (message + "\n").encode("utf-8")
        self.send_response(status)
        for name, value in headers or ():
            self.send_header(name, value)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("X-Content-Type-Options", "nosniff")
        self.send_header("Content-Length", str(len(body)))
        if self._unread_body():
            self.send_header("Connection", "close")
        self.end_headers()
        self._headers_sent = True
        if self.command != "HEAD":
            self.wfile.write(body)
        self.wfile.flush()

    def start_response(self, status: int, reason: str,
                       headers: Iterable[Tuple[str, str]], has_body: bool = True):
        client_close = self.close_connection
        upstream_close = False
        has_length = False

        self.send_response_only(status, reason or None)
        for name, value in headers:
            key = name.lower()
            if key == "content-length":
                has_length = True
            elif key == "connection" and "close" in value.lower():
                upstream_close = True
            self.send_header(name, value)

        self._chunked = False
        if has_body and not has_length:
            if self.request_version == "HTTP/1.1":
                self.send_header("Transfer-Encoding", "chunked")
                self._chunked = True
            else:
                upstream_close = True
        self.end_headers()
        self._headers_sent = True
        # send_header() flips close_connection on a copied Connection header
        self.close_connection = client_close or upstream_close

    def write(self, data: bytes):
        if not data:
            return
        if self._chunked:
            self.wfile.write(b"%x\r\n" % len(data) + data + b"\r\n")
        else:
            self.wfile.write(data)

    def end_response(self):
        if self._chunked:
            self.wfile.write(b"0\r\n\r\n")
            self._chunked = False
        self.wfile.flush()

    def abort(self):
        self.close_connection = True

    # ------------------------------------------------------------------
    # Hijacker
    # ------------------------------------------------------------------

    def hijack(self) -> Tuple[socket.socket, bytes]:
        if self._hijacked:
            raise ProtocolViolation("connection already hijacked", status=500)
        if self._headers_sent:
            raise ProtocolViolation("response already started", status=500)

        self.wfile.flush()
        pending = self._buffered_input()
        self._hijacked = True
        self._headers_sent = True
        self.close_connection = True
        return self.connection, pending

    def _buffered_input(self) -> bytes:
        """Bytes the client pipelined behind the request head, without blocking."""
        conn = self.connection
        timeout = conn.gettimeout()
        conn.setblocking(False)
        try:
            return self.rfile.peek()
        except OSError:
            return b""
        finally:
            conn.settimeout(timeout)


class ProxyServer(ThreadingHTTPServer):
    """
    A proxy server that handles HTTP requests and CONNECT tunnels on behalf
    of one authenticated client identity.

    Attributes:
        config (ProxyConfig): Immutable proxy configuration
        dispatcher (Dispatcher): Authorization gate and request router
    """

    daemon_threads = True

    def __init__(self, config: ProxyConfig, dispatcher: Optional[Dispatcher] = None,
                 bind_and_activate: bool = True):
        self.config = config
        self.dispatcher = dispatcher or Dispatcher(config)
        host, port = config.listen_address
        if ":" in host:
            self.address_family = socket.AF_INET6
        super().__init__((host, port), ProxyRequestHandler, bind_and_activate)

    def server_bind(self):
        # skip HTTPServer's getfqdn() lookup
        socketserver.TCPServer.server_bind(self)
        host, port = self.server_address[:2]
        self.server_name = host
        self.server_port = port

    def handle_error(self, request, client_address):
        logger.exception(f"Error while handling connection from {client_address[0]}:{client_address[1]}")

    def start(self):
        """Serve until ``stop`` is called."""
        host, port = self.server_address[:2]
        logger.info(f"📍 Listening on {host}:{port}")
        self.serve_forever()

    def stop(self):
        """Stop the proxy server gracefully."""
        logger.info("🛑 Stopping proxy...")
        self.shutdown()
        self.server_close()
