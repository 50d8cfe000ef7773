# =============================================================================
# Core Types & Errors
# =============================================================================

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from http.client import HTTPMessage
from typing import BinaryIO, Iterable, Optional, Tuple
import logging
import socket


class Direction(Enum):
    CLIENT_TO_TARGET = "client->target"
    TARGET_TO_CLIENT = "target->client"
    BOTH = "both"


class TunnelState(Enum):
    DIALING = "dialing"
    HIJACKING = "hijacking"
    TUNNELING = "tunneling"
    CLOSED = "closed"
    ERROR = "error"


@dataclass
class IncomingRequest:
    method: str
    target: str
    headers: HTTPMessage
    body: Optional[BinaryIO]
    remote: str
    secure: bool = False
    conn_id: str = "-"


@dataclass
class RelayOutcome:
    first: Direction
    error: Optional[BaseException] = None
    timed_out: bool = False
    bytes_up: int = 0
    bytes_down: int = 0


# =============================================================================
# Errors
# =============================================================================

class ProxyError(Exception):
    """
    Base class for failures that end a single request or tunnel.

    Components raise these; the Dispatcher turns ``status`` into the answer
    (or a silent close once a response has started) and logs at ``log_level``.
    """

    status = 500
    log_level = logging.ERROR


class AuthRejected(ProxyError):
    status = 407
    log_level = logging.INFO


class UpstreamUnreachable(ProxyError):
    status = 502
    log_level = logging.WARNING


class ProtocolViolation(ProxyError):
    status = 400
    log_level = logging.WARNING

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


class RelayIOError(ProxyError):
    """Mid-stream failure; there is no channel left to report it on."""

    status = None
    log_level = logging.DEBUG


# =============================================================================
# Response sink capabilities
# =============================================================================

class ResponseSink(ABC):
    """
    Where the Dispatcher and its components write their answer.

    A response is either a short plain-text one (``respond``) or a streamed
    one opened by ``start_response`` and closed by ``end_response``.
    """

    @property
    @abstractmethod
    def headers_sent(self) -> bool:
        ...

    @abstractmethod
    def respond(self, status: int, message: str,
                headers: Optional[Iterable[Tuple[str, str]]] = None) -> None:
        ...

    @abstractmethod
    def start_response(self, status: int, reason: str,
                       headers: Iterable[Tuple[str, str]], has_body: bool = True) -> None:
        ...

    @abstractmethod
    def write(self, data: bytes) -> None:
        ...

    @abstractmethod
    def end_response(self) -> None:
        ...

    @abstractmethod
    def abort(self) -> None:
        """Drop the client connection once the current response is cut short."""


class Hijacker(ABC):
    """Sinks that can hand over the raw client transport."""

    @abstractmethod
    def hijack(self) -> Tuple[socket.socket, bytes]:
        """
        Take exclusive control of the client socket.

        Returns:
            tuple: the socket and any bytes the client already sent past the
            request head. After this call the sink writes nothing more.
        """
