"""
Proxy configuration.

The proxy reads one JSON file shaped like::

    {
        "port": ":61055",
        "username": "username",
        "password": "password",
        "timeout_seconds": 30
    }

Any field that is missing, empty or of the wrong type falls back to its
default, and a missing or unreadable file means all defaults.
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "proxy_config.json"


def parse_listen_address(address: str) -> Tuple[str, int]:
    """
    Split a listen address into a bindable (host, port) pair.

    Args:
        address (str): ``":port"``, ``"host:port"`` or ``"[v6addr]:port"``

    Returns:
        tuple: (host, port); an empty host means all interfaces
    """
    host, sep, port = address.rpartition(":")
    if not sep or not (port.isascii() and port.isdigit()):
        raise ValueError(f"listen address must end in :port, got {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    port_num = int(port)
    if not 0 <= port_num < 65536:
        raise ValueError(f"port out of range in {address!r}")
    return host, port_num


@dataclass(frozen=True)
class ProxyConfig:
    port: str = ":61055"
    username: str = "username"
    password: str = "password"
    timeout_seconds: int = 30

    @property
    def timeout(self) -> float:
        return float(self.timeout_seconds)

    @property
    def listen_address(self) -> Tuple[str, int]:
        return parse_listen_address(self.port)


DEFAULT_CONFIG = ProxyConfig()


def _valid_port(value: Any) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        parse_listen_address(value)
    except ValueError:
        return False
    return True


def _valid_text(value: Any) -> bool:
    return isinstance(value, str) and value != ""


def _valid_timeout(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def merge_config(partial: Optional[Mapping[str, Any]], defaults: ProxyConfig = DEFAULT_CONFIG) -> ProxyConfig:
    """
    Fill a possibly partial config record from ``defaults``.

    Args:
        partial: Parsed JSON object (or None)
        defaults: Values used for anything missing or invalid

    Returns:
        ProxyConfig: a complete, validated config
    """
    partial = partial if isinstance(partial, Mapping) else {}
    timeout = partial.get("timeout_seconds", partial.get("timeoutSeconds"))

    merged: Dict[str, Any] = {
        "port": partial.get("port"),
        "username": partial.get("username"),
        "password": partial.get("password"),
        "timeout_seconds": timeout,
    }
    checks = {
        "port": _valid_port,
        "username": _valid_text,
        "password": _valid_text,
        "timeout_seconds": _valid_timeout,
    }
    for field, check in checks.items():
        if not check(merged[field]):
            if merged[field] is not None:
                logger.warning(f"Invalid config value for {field!r}, using default")
            merged[field] = getattr(defaults, field)
    return ProxyConfig(**merged)


def load_config(path: Union[str, Path] = DEFAULT_CONFIG_FILE) -> ProxyConfig:
    """Load the JSON config file, falling back to defaults on any problem."""
    config_file = Path(path)
    if not config_file.exists():
        logger.info(f"Config file {config_file} not found, using defaults")
        return DEFAULT_CONFIG

    try:
        data = json.loads(config_file.read_text(encoding="utf-8"))
    except OSError as e:
        logger.warning(f"Failed to read config file {config_file}: {e}, using defaults")
        return DEFAULT_CONFIG
    except ValueError as e:
        logger.warning(f"Failed to parse config file {config_file}: {e}, using defaults")
        return DEFAULT_CONFIG

    if not isinstance(data, dict):
        logger.warning(f"Config file {config_file} is not a JSON object, using defaults")
        return DEFAULT_CONFIG

    logger.info(f"Loaded config file {config_file}")
    return merge_config(data)
