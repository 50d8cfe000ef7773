"""authproxy: an authenticating forward proxy for HTTP requests and CONNECT tunnels."""

__version__ = "1.0.0"
