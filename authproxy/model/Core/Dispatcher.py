import logging
from typing import Optional

from authproxy.model.config import ProxyConfig
from authproxy.model.Core.AuthManager import AuthManager
from authproxy.model.Core.header import AuthRejected, IncomingRequest, ProxyError, ResponseSink
from authproxy.model.Core.HttpForwarder import HttpForwarder
from authproxy.model.Core.TunnelEstablisher import TunnelEstablisher

logger = logging.getLogger(__name__)

PROXY_AUTHENTICATE = ("Proxy-Authenticate", 'Basic realm="Proxy"')


class Dispatcher:
    """
    The one authorization gate in front of every upstream operation.

    Checks ``Proxy-Authorization`` and then routes CONNECT to the tunnel
    establisher and every other method to the HTTP forwarder. Components
    report failures by raising ProxyError; its ``status`` becomes the answer
    here.
    """

    def __init__(self, config: ProxyConfig,
                 auth_manager: Optional[AuthManager] = None,
                 forwarder: Optional[HttpForwarder] = None,
                 tunnels: Optional[TunnelEstablisher] = None):
        self.config = config
        self.auth_manager = auth_manager or AuthManager(config.username, config.password)
        self.forwarder = forwarder or HttpForwarder(config.timeout)
        self.tunnels = tunnels or TunnelEstablisher(config.timeout)

    def dispatch(self, request: IncomingRequest, sink: ResponseSink):
        """
        Handle one parsed request.

        Args:
            request (IncomingRequest): The request read off the client connection
            sink (ResponseSink): Where the answer goes
        """
        try:
            self.auth_manager.authorize(request.headers.get("Proxy-Authorization"), request.remote)
        except AuthRejected as e:
            logger.log(e.log_level, f"[{request.conn_id}] {e}")
            sink.respond(e.status, "Proxy Authentication Required", [PROXY_AUTHENTICATE])
            return

        try:
            if request.method == "CONNECT":
                self.tunnels.establish(request, sink)
            else:
                self.forwarder.forward(request, sink)
        except ProxyError as e:
            logger.log(e.log_level, f"[{request.conn_id}] {type(e).__name__}: {e}")
            self._fail(sink, e.status)
        except OSError as e:
            # client went away while we were answering
            logger.warning(f"[{request.conn_id}] Client connection error: {e}")
            sink.abort()
        except Exception:
            logger.exception(f"[{request.conn_id}] Unhandled error for {request.method} {request.target}")
            self._fail(sink, 500)

    @staticmethod
    def _fail(sink: ResponseSink, status: Optional[int]):
        if status is None or sink.headers_sent:
            sink.abort()
            return
        messages = {400: "Bad Request", 500: "Internal Server Error", 502: "Bad Gateway"}
        try:
            sink.respond(status, messages.get(status, "Proxy Error"))
        except OSError:
            sink.abort()
