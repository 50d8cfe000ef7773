import socket
import threading

import pytest

from authproxy.model.Core.header import (
    Direction,
    IncomingRequest,
    ProtocolViolation,
    ProxyError,
    RelayOutcome,
    TunnelState,
    UpstreamUnreachable,
)
from authproxy.model.Core.TunnelEstablisher import CONNECTION_ESTABLISHED, TunnelEstablisher, split_host_port
from authproxy.model.Core.RelayEngine import RelayEngine
from tests.helpers import FakeHijackSink, FakeSink, recv_exactly


def connect_request(target="example.com:443"):
    return IncomingRequest(method="CONNECT", target=target, headers=None, body=None,
                           remote="127.0.0.1:5000", conn_id="t1")


class RecordingDial:
    def __init__(self, sock=None, error=None):
        self.sock = sock
        self.error = error
        self.calls = []

    def __call__(self, address, timeout=None):
        self.calls.append((address, timeout))
        if self.error is not None:
            raise self.error
        return self.sock


class SpyRelay(RelayEngine):
    def __init__(self):
        super().__init__(timeout=10)
        self.calls = []

    def relay(self, client, target, conn_id="-", pending=b""):
        self.calls.append(pending)
        return RelayOutcome(first=Direction.BOTH)


@pytest.mark.parametrize("target, expected", [
    ("example.com:443", ("example.com", 443)),
    ("10.0.0.1:8080", ("10.0.0.1", 8080)),
    ("[::1]:8443", ("::1", 8443)),
])
def test_split_host_port(target, expected):
    assert split_host_port(target) == expected


@pytest.mark.parametrize("target", [
    "example.com", "example.com:", ":443", "::1:443", "host:0", "host:65536", "host:abc",
    "host:²", "example.com:¹²", "host:٤٤٣",
])
def test_split_host_port_rejects(target):
    with pytest.raises(ProtocolViolation) as exc:
        split_host_port(target)
    assert exc.value.status == 400


def test_successful_tunnel_writes_line_then_relays():
    client_peer, client = socket.socketpair()
    target, target_peer = socket.socketpair()
    dial = RecordingDial(sock=target)
    sink = FakeHijackSink(conn=client, pending=b"early bytes")
    establisher = TunnelEstablisher(timeout=10, dial=dial)

    result = {}
    thread = threading.Thread(
        target=lambda: result.update(state=establisher.establish(connect_request(), sink)),
        daemon=True,
    )
    thread.start()

    client_peer.settimeout(2)
    target_peer.settimeout(2)
    assert recv_exactly(client_peer, len(CONNECTION_ESTABLISHED)) == CONNECTION_ESTABLISHED
    assert recv_exactly(target_peer, len(b"early bytes")) == b"early bytes"

    client_peer.sendall(b"ping")
    assert recv_exactly(target_peer, 4) == b"ping"
    target_peer.sendall(b"pong")
    assert recv_exactly(client_peer, 4) == b"pong"

    target_peer.close()
    thread.join(2)
    assert result["state"] is TunnelState.CLOSED
    assert dial.calls == [(("example.com", 443), 10)]
    assert sink.responses == []
    assert client.fileno() == -1
    assert target.fileno() == -1
    client_peer.close()


def test_pipelined_bytes_go_to_the_relay():
    target, target_peer = socket.socketpair()
    client_peer, client = socket.socketpair()
    relay = SpyRelay()
    sink = FakeHijackSink(conn=client, pending=b"\x16\x03\x01 hello")
    establisher = TunnelEstablisher(timeout=1, relay=relay, dial=RecordingDial(sock=target))

    assert establisher.establish(connect_request(), sink) is TunnelState.CLOSED
    assert relay.calls == [b"\x16\x03\x01 hello"]
    target_peer.close()
    client_peer.close()


def test_dial_failure_raises_upstream_unreachable_without_hijacking():
    dial = RecordingDial(error=ConnectionRefusedError("refused"))
    sink = FakeHijackSink()
    with pytest.raises(UpstreamUnreachable) as exc:
        TunnelEstablisher(timeout=1, dial=dial).establish(connect_request(), sink)

    assert exc.value.status == 502
    assert sink.responses == []
    assert not sink.hijacked


@pytest.mark.parametrize("target", ["no-port", "example.com:²"])
def test_malformed_target_raises_without_dialing(target):
    dial = RecordingDial()
    sink = FakeHijackSink()
    with pytest.raises(ProtocolViolation):
        TunnelEstablisher(timeout=1, dial=dial).establish(connect_request(target), sink)

    assert dial.calls == []
    assert not sink.hijacked


def test_sink_without_hijack_capability_raises_and_closes_upstream():
    target, target_peer = socket.socketpair()
    sink = FakeSink()
    with pytest.raises(ProxyError) as exc:
        TunnelEstablisher(timeout=1, dial=RecordingDial(sock=target)).establish(connect_request(), sink)

    assert exc.value.status == 500
    assert target.fileno() == -1
    target_peer.close()


def test_hijack_failure_raises_and_closes_upstream():
    target, target_peer = socket.socketpair()
    sink = FakeHijackSink(error=OSError("gone"))
    with pytest.raises(ProxyError) as exc:
        TunnelEstablisher(timeout=1, dial=RecordingDial(sock=target)).establish(connect_request(), sink)

    assert exc.value.status == 500
    assert target.fileno() == -1
    target_peer.close()


def test_reply_write_failure_skips_relay():
    target, target_peer = socket.socketpair()
    client_peer, client = socket.socketpair()
    client.close()
    relay = SpyRelay()
    sink = FakeHijackSink(conn=client)
    establisher = TunnelEstablisher(timeout=1, relay=relay, dial=RecordingDial(sock=target))

    assert establisher.establish(connect_request(), sink) is TunnelState.ERROR
    assert relay.calls == []
    assert target.fileno() == -1
    target_peer.close()
    client_peer.close()
