import base64
import socket
import time
from typing import Iterable, List, Optional, Tuple

from authproxy.model.Core.header import Hijacker, ResponseSink

USERNAME = "alice"
PASSWORD = "s3cret:with-colon"


def basic_auth(username: str = USERNAME, password: str = PASSWORD) -> str:
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def recv_exactly(sock: socket.socket, n: int) -> bytes:
    data = b""
    while len(data) < n:
        chunk = sock.recv(n - len(data))
        if not chunk:
            break
        data += chunk
    return data


def recv_head(sock: socket.socket) -> bytes:
    """Read up to and including the blank line ending a response head."""
    data = b""
    while b"\r\n\r\n" not in data:
        chunk = sock.recv(1)
        if not chunk:
            break
        data += chunk
    return data


def wait_closed(sock: socket.socket, limit: float) -> float:
    """Block until the peer closes ``sock``; returns how long that took."""
    start = time.monotonic()
    sock.settimeout(limit)
    try:
        while sock.recv(4096):
            pass
    except ConnectionResetError:
        pass
    return time.monotonic() - start


def open_tunnel(proxy_address: Tuple[str, int], target: str,
                auth: Optional[str] = None, early: bytes = b"") -> Tuple[socket.socket, bytes]:
    """Send a CONNECT request and return the socket plus the response head."""
    sock = socket.create_connection(proxy_address, timeout=5)
    lines = [f"CONNECT {target} HTTP/1.1", f"Host: {target}"]
    if auth:
        lines.append(f"Proxy-Authorization: {auth}")
    sock.sendall(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1") + early)
    return sock, recv_head(sock)


def proxy_url(server) -> str:
    """Proxy URL with credentials for a running ProxyServer."""
    host, port = server.server_address[:2]
    return f"http://{USERNAME}:{PASSWORD.replace(':', '%3A')}@{host}:{port}"


def closed_port() -> int:
    """A localhost port with nothing listening on it."""
    s = socket.socket()
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


class FakeSink(ResponseSink):
    """Records what a component writes instead of talking to a client."""

    def __init__(self):
        self.responses: List[Tuple[int, str, list]] = []
        self.started: Optional[Tuple[int, str, list, bool]] = None
        self.body = b""
        self.ended = False
        self.aborted = False

    @property
    def headers_sent(self) -> bool:
        return bool(self.responses) or self.started is not None

    def respond(self, status, message, headers=None):
        self.responses.append((status, message, list(headers or ())))

    def start_response(self, status, reason, headers: Iterable[Tuple[str, str]], has_body=True):
        self.started = (status, reason, list(headers), has_body)

    def write(self, data):
        self.body += data

    def end_response(self):
        self.ended = True

    def abort(self):
        self.aborted = True


class FakeHijackSink(FakeSink, Hijacker):
    def __init__(self, conn: Optional[socket.socket] = None, pending: bytes = b"", error: Exception = None):
        super().__init__()
        self.conn = conn
        self.pending = pending
        self.error = error
        self.hijacked = False

    def hijack(self):
        if self.error is not None:
            raise self.error
        self.hijacked = True
        return self.conn, self.pending
