from authproxy.model.config import DEFAULT_CONFIG, ProxyConfig, load_config, merge_config
from authproxy.model.ProxyServer import ProxyRequestHandler, ProxyServer

__all__ = [
    "DEFAULT_CONFIG",
    "ProxyConfig",
    "ProxyRequestHandler",
    "ProxyServer",
    "load_config",
    "merge_config",
]
