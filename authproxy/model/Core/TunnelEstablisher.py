import logging
import socket
from typing import Callable, Optional, Tuple

from authproxy.model.Core.header import (
    Hijacker,
    IncomingRequest,
    ProtocolViolation,
    ProxyError,
    ResponseSink,
    TunnelState,
    UpstreamUnreachable,
)
from authproxy.model.Core.RelayEngine import RelayEngine, shutdown_quietly

logger = logging.getLogger(__name__)

CONNECTION_ESTABLISHED = b"HTTP/1.1 200 Connection Established\r\n\r\n"


def split_host_port(target: str) -> Tuple[str, int]:
    """
    Split a CONNECT authority into host and port.

    Args:
        target (str): ``host:port`` or ``[v6addr]:port``

    Returns:
        tuple: (host, port)
    """
    host, sep, port = target.rpartition(":")
    # the request line is decoded as latin-1, so "²" and friends show up here
    if not sep or not host or not (port.isascii() and port.isdigit()):
        raise ProtocolViolation(f"CONNECT target must be host:port, got {target!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ProtocolViolation(f"IPv6 CONNECT target must be bracketed, got {target!r}")
    port_num = int(port)
    if not 0 < port_num < 65536:
        raise ProtocolViolation(f"CONNECT port out of range in {target!r}")
    return host, port_num


def close_once(sock: Optional[socket.socket]):
    if sock is None:
        return
    shutdown_quietly(sock)
    sock.close()


class TunnelEstablisher:
    """
    Handles CONNECT requests once the Dispatcher has authorized them.

    Walks ``DIALING -> HIJACKING -> TUNNELING -> CLOSED``. Failures before the
    success line is written are raised as ProxyError for the Dispatcher to
    answer; both sockets are closed on every path.
    """

    def __init__(self, timeout: float, relay: Optional[RelayEngine] = None,
                 dial: Callable[..., socket.socket] = socket.create_connection):
        self.timeout = timeout
        self.relay = relay or RelayEngine(timeout)
        self.dial = dial

    def establish(self, request: IncomingRequest, sink: ResponseSink) -> TunnelState:
        """
        Establish the tunnel and relay until one side finishes.

        Args:
            request (IncomingRequest): An authorized CONNECT request
            sink (ResponseSink): The client's response writer

        Returns:
            TunnelState: CLOSED on a completed tunnel, ERROR if the success
            line could not be written

        Raises:
            ProtocolViolation: malformed target (400)
            UpstreamUnreachable: the dial failed (502)
            ProxyError: the sink cannot hand over its connection (500)
        """
        conn_id = request.conn_id
        host, port = split_host_port(request.target)

        logger.info(f"🔒 [{conn_id}] CONNECT {host}:{port} <- {request.remote}")

        state = TunnelState.DIALING
        try:
            upstream = self.dial((host, port), timeout=self.timeout)
        except OSError as e:
            raise UpstreamUnreachable(f"Failed to connect to {host}:{port}: {e}") from e

        client = None
        try:
            state = TunnelState.HIJACKING
            if not isinstance(sink, Hijacker):
                raise ProxyError(f"Connection hijacking is not supported by {type(sink).__name__}")
            try:
                client, pending = sink.hijack()
            except (OSError, ProtocolViolation) as e:
                raise ProxyError(f"Connection hijack failed: {e}") from e

            state = TunnelState.TUNNELING
            try:
                client.sendall(CONNECTION_ESTABLISHED)
            except OSError as e:
                logger.warning(f"[{conn_id}] Failed to send CONNECT response: {e}")
                state = TunnelState.ERROR
                return state

            outcome = self.relay.relay(client, upstream, conn_id, pending=pending)
            logger.debug(
                f"[{conn_id}] Tunnel {host}:{port} done: first={outcome.first.value} "
                f"timed_out={outcome.timed_out} ↑{outcome.bytes_up} ↓{outcome.bytes_down}"
            )
            state = TunnelState.CLOSED
            return state
        finally:
            close_once(client)
            close_once(upstream)
            if state is not TunnelState.CLOSED:
                logger.debug(f"[{conn_id}] Tunnel aborted in state {state.value}")
