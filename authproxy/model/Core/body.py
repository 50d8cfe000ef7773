"""
Request body streams handed to the outbound HTTP client.

``requests`` sends a body with a known ``len()`` using Content-Length and an
iterable without one using chunked transfer coding, so the inbound framing
maps straight onto the outbound one.
"""

from typing import BinaryIO, Iterator, Optional

from authproxy.model.Core.header import ProtocolViolation

CHUNK_SIZE = 65536


class FixedLengthBody:
    """A body of exactly ``length`` bytes read off the client stream."""

    def __init__(self, rfile: BinaryIO, length: int):
        self.rfile = rfile
        self.length = length
        self.remaining = length

    def __len__(self) -> int:
        return self.length

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0

    def read(self, size: int = -1) -> bytes:
        if self.remaining <= 0:
            return b""
        if size is None or size < 0 or size > self.remaining:
            size = self.remaining
        data = self.rfile.read(size)
        if not data:
            raise ProtocolViolation("client closed before sending the full body")
        self.remaining -= len(data)
        return data

    def __iter__(self) -> Iterator[bytes]:
        while True:
            data = self.read(CHUNK_SIZE)
            if not data:
                return
            yield data


class ChunkedBody:
    """Decodes a chunked request body; trailers are read and dropped."""

    def __init__(self, rfile: BinaryIO):
        self.rfile = rfile
        self.done = False

    @property
    def exhausted(self) -> bool:
        return self.done

    def _chunk_size(self) -> int:
        line = self.rfile.readline(65537)
        if not line:
            raise ProtocolViolation("client closed inside a chunked body")
        size = line.split(b";", 1)[0].strip()
        try:
            return int(size, 16)
        except ValueError:
            raise ProtocolViolation(f"bad chunk size {size!r}")

    def __iter__(self) -> Iterator[bytes]:
        while not self.done:
            size = self._chunk_size()
            if size == 0:
                # trailer section ends with an empty line
                while self.rfile.readline(65537) not in (b"\r\n", b"\n", b""):
                    pass
                self.done = True
                return
            remaining = size
            while remaining:
                data = self.rfile.read(min(remaining, CHUNK_SIZE))
                if not data:
                    raise ProtocolViolation("client closed inside a chunk")
                remaining -= len(data)
                yield data
            self.rfile.readline(65537)


def request_body(rfile: BinaryIO, headers) -> Optional[object]:
    """
    Pick the body reader for an inbound request.

    Args:
        rfile: Buffered client stream positioned after the header block
        headers: The parsed request headers

    Returns:
        FixedLengthBody, ChunkedBody or None when the request has no body
    """
    encoding = headers.get("Transfer-Encoding", "")
    if encoding:
        if encoding.strip().lower().split(",")[-1].strip() != "chunked":
            raise ProtocolViolation(f"unsupported transfer coding {encoding!r}")
        return ChunkedBody(rfile)

    length = headers.get_all("Content-Length") or []
    if not length:
        return None
    if len(set(v.strip() for v in length)) != 1:
        raise ProtocolViolation("conflicting Content-Length headers")
    try:
        size = int(length[0])
    except ValueError:
        raise ProtocolViolation(f"bad Content-Length {length[0]!r}")
    if size < 0:
        raise ProtocolViolation(f"bad Content-Length {length[0]!r}")
    if size == 0:
        return None
    return FixedLengthBody(rfile, size)
