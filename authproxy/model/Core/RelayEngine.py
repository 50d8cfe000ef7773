import logging
import socket
import threading
from typing import Optional

from authproxy.model.Core.header import Direction, RelayIOError, RelayOutcome

logger = logging.getLogger(__name__)


def shutdown_quietly(sock: socket.socket):
    """Shut both halves of a socket down, ignoring already-dead sockets."""
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


class RelayEngine:
    """
    Full-duplex byte copy between two live sockets.

    The ``timeout`` is an absolute session cap: both sockets are shut down
    ``timeout`` seconds after ``relay`` starts, whether or not bytes are still
    flowing. It is never refreshed, so long-lived tunnels are cut at that
    point.

    ``relay`` returns as soon as the first direction finishes and does not
    wait for the other one to drain. The caller owns both sockets and must
    close them, which also unblocks the thread still copying.
    """

    def __init__(self, timeout: float, bufsize: int = 65536):
        self.timeout = timeout
        self.bufsize = bufsize

    def relay(self, client: socket.socket, target: socket.socket, conn_id: str = "-",
              pending: bytes = b"") -> RelayOutcome:
        """
        Tunnel data between client and target.

        Args:
            client (socket): Hijacked client connection
            target (socket): Dialed upstream connection
            conn_id (str): Connection id used in log lines
            pending (bytes): Client bytes already read past the CONNECT head,
                sent to the target ahead of anything else

        Returns:
            RelayOutcome: which direction ended first and why
        """
        finished = threading.Event()
        lock = threading.Lock()
        done = {}
        errors = {}
        counters = {Direction.CLIENT_TO_TARGET: 0, Direction.TARGET_TO_CLIENT: 0}
        expired = threading.Event()

        # blocking I/O; the deadline timer is the only thing that interrupts it
        client.settimeout(None)
        target.settimeout(None)

        def on_deadline():
            expired.set()
            logger.debug(f"Tunnel {conn_id} reached its {self.timeout:g}s deadline")
            shutdown_quietly(client)
            shutdown_quietly(target)

        def pump(direction: Direction, src: socket.socket, dst: socket.socket, first: bytes = b""):
            error: Optional[BaseException] = None
            try:
                if first:
                    dst.sendall(first)
                    counters[direction] += len(first)
                while True:
                    data = src.recv(self.bufsize)
                    if not data:
                        break
                    dst.sendall(data)
                    counters[direction] += len(data)
            except OSError as e:
                error = e
            with lock:
                done[direction] = True
                if error is not None and not expired.is_set():
                    errors[direction] = error
            finished.set()

        timer = threading.Timer(self.timeout, on_deadline)
        timer.daemon = True
        timer.start()

        threads = [
            threading.Thread(target=pump, args=(Direction.CLIENT_TO_TARGET, client, target, pending), daemon=True),
            threading.Thread(target=pump, args=(Direction.TARGET_TO_CLIENT, target, client), daemon=True),
        ]
        for t in threads:
            t.start()

        finished.wait()
        timer.cancel()

        with lock:
            if len(done) == 2:
                first = Direction.BOTH
            else:
                first = next(iter(done))
            error = next(iter(errors.values()), None)

        outcome = RelayOutcome(
            first=first,
            error=RelayIOError(str(error)) if error is not None else None,
            timed_out=expired.is_set(),
            bytes_up=counters[Direction.CLIENT_TO_TARGET],
            bytes_down=counters[Direction.TARGET_TO_CLIENT],
        )
        if outcome.error is not None:
            logger.debug(f"Tunnel {conn_id} closed: {outcome.error}")
        return outcome
