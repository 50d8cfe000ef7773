import logging
import queue
import threading
import time
from typing import Callable, Dict, Iterable, List, Tuple
from urllib.parse import urlsplit, urlunsplit

import requests

from authproxy.model.Core.header import IncomingRequest, ProtocolViolation, ResponseSink, UpstreamUnreachable

logger = logging.getLogger(__name__)

# Hop-specific headers that never reach the origin.
SKIP_HEADERS = frozenset(h.lower() for h in (
    "Connection",
    "Proxy-Connection",
    "Proxy-Authenticate",
    "Proxy-Authorization",
    "Te",
    "Trailers",
    "Upgrade",
))

# Re-derived by the HTTP client from the target URL and the body stream.
DERIVED_HEADERS = frozenset(("host", "content-length", "transfer-encoding"))

BUFFER_SIZE = 65536

# Response chunks buffered between the origin worker and the client writer.
QUEUE_DEPTH = 16
OFFER_INTERVAL = 0.5


def should_skip_header(name: str) -> bool:
    return name.lower() in SKIP_HEADERS


def effective_url(request: IncomingRequest) -> str:
    """
    Resolve the absolute URL a request should be sent to.

    Absolute request targets are used verbatim; origin-form targets are
    rebuilt from the Host header and the inbound transport's scheme.
    """
    parts = urlsplit(request.target)
    if parts.scheme and parts.netloc:
        return request.target

    host = request.headers.get("Host")
    if not host:
        raise ProtocolViolation(f"no Host for relative target {request.target!r}")
    scheme = "https" if request.secure else "http"
    return urlunsplit((scheme, host.strip(), parts.path or "/", parts.query, ""))


def outbound_headers(headers) -> Dict[str, str]:
    """
    Headers for the origin request, keeping inbound order.

    Repeated fields are folded into one line (``Cookie`` with ``"; "``, the
    rest with ``", "``) since the HTTP client keeps one value per name.
    """
    merged: Dict[str, List[str]] = {}
    names: Dict[str, str] = {}
    for name, value in headers.items():
        key = name.lower()
        if key in SKIP_HEADERS or key in DERIVED_HEADERS:
            continue
        names.setdefault(key, name)
        merged.setdefault(key, []).append(value)
    return {
        names[key]: ("; " if key == "cookie" else ", ").join(values)
        for key, values in merged.items()
    }


class HttpForwarder:
    """
    Re-issues plaintext requests against the origin and relays the answer.

    Redirects are returned to the client untouched. One ``requests.Session``
    is opened per request and closed before ``forward`` returns.

    The configured timeout is a total deadline for the exchange. A worker
    thread talks to the origin and hands the response head and body chunks
    over a bounded queue; the calling thread waits on that queue only until
    the deadline, however slowly the origin trickles bytes in. A worker left
    behind after the deadline stops at its next hand-over, or at the latest
    after one per-read timeout.
    """

    def __init__(self, timeout: float, session_factory: Callable[[], requests.Session] = requests.Session):
        self.timeout = timeout
        self.session_factory = session_factory

    def _new_session(self) -> requests.Session:
        session = self.session_factory()
        session.trust_env = False
        session.headers.clear()
        return session

    def forward(self, request: IncomingRequest, sink: ResponseSink):
        """
        Relay one request to its origin.

        Raises:
            ProtocolViolation: no usable target URL (400)
            UpstreamUnreachable: transport failure, or no response head
                before the deadline (502)
        """
        conn_id = request.conn_id
        url = effective_url(request)

        logger.info(f"🌐 [{conn_id}] {request.method} {url} <- {request.remote}")

        deadline = time.monotonic() + self.timeout
        handoff: queue.Queue = queue.Queue(maxsize=QUEUE_DEPTH)
        cancelled = threading.Event()

        with self._new_session() as session:
            worker = threading.Thread(
                target=self._exchange,
                args=(session, request, url, handoff, cancelled),
                name=f"forward-{conn_id}",
                daemon=True,
            )
            worker.start()
            try:
                kind, value = self._next(handoff, deadline)
                if kind == "expired":
                    raise UpstreamUnreachable(f"No response from {url} within {self.timeout:g}s")
                if kind == "error":
                    raise_for(value, url)
                self._relay_response(value, sink, handoff, deadline, conn_id)
            finally:
                cancelled.set()

    def _exchange(self, session: requests.Session, request: IncomingRequest, url: str,
                  handoff: queue.Queue, cancelled: threading.Event):
        """Worker side: send the request, then feed the response into ``handoff``."""

        def offer(item) -> bool:
            while not cancelled.is_set():
                try:
                    handoff.put(item, timeout=OFFER_INTERVAL)
                    return True
                except queue.Full:
                    continue
            return False

        try:
            resp = session.request(
                request.method,
                url,
                data=request.body,
                headers=outbound_headers(request.headers),
                allow_redirects=False,
                stream=True,
                timeout=(self.timeout, self.timeout),
            )
        except Exception as e:
            offer(("error", e))
            return

        with resp:
            if not offer(("response", resp)):
                return
            try:
                for chunk in resp.raw.stream(BUFFER_SIZE, decode_content=False):
                    if not offer(("chunk", chunk)):
                        return
            except Exception as e:
                offer(("error", e))
                return
            offer(("end", None))

    @staticmethod
    def _next(handoff: queue.Queue, deadline: float) -> Tuple[str, object]:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return "expired", None
        try:
            return handoff.get(timeout=remaining)
        except queue.Empty:
            return "expired", None

    def _relay_response(self, resp: requests.Response, sink: ResponseSink, handoff: queue.Queue,
                        deadline: float, conn_id: str):
        headers = response_headers(resp)
        has_body = resp.request.method != "HEAD" and resp.status_code not in (204, 304) \
            and not 100 <= resp.status_code < 200
        sink.start_response(resp.status_code, resp.reason or "", headers, has_body)

        if not has_body:
            sink.end_response()
            return

        while True:
            kind, value = self._next(handoff, deadline)
            if kind == "chunk":
                sink.write(value)
            elif kind == "end":
                sink.end_response()
                return
            else:
                if kind == "expired":
                    logger.warning(f"[{conn_id}] Response body exceeded the {self.timeout:g}s deadline")
                else:
                    logger.warning(f"[{conn_id}] Failed to copy response body: {value}")
                sink.abort()
                return


def raise_for(error: Exception, url: str):
    """Re-raise a worker-side failure as the ProxyError it maps to."""
    if isinstance(error, (requests.exceptions.InvalidURL,
                          requests.exceptions.MissingSchema,
                          requests.exceptions.InvalidSchema)):
        raise ProtocolViolation(f"Failed to build request for {url}: {error}") from error
    if isinstance(error, requests.RequestException):
        raise UpstreamUnreachable(f"Request to {url} failed: {error}") from error
    raise error


def response_headers(resp: requests.Response) -> Iterable[Tuple[str, str]]:
    """Origin headers, one pair per value; framing is left to the sink."""
    return [
        (name, value) for name, value in resp.raw.headers.iteritems()
        if name.lower() != "transfer-encoding"
    ]
