"""
authproxy command line entry point.

Loads ``proxy_config.json`` (or the file given with ``--config``), prints a
startup panel and serves until SIGINT/SIGTERM.
"""

import argparse
import logging
import signal
import sys
import threading

from rich.console import Console
from rich.panel import Panel

from authproxy import __version__
from authproxy.model.config import DEFAULT_CONFIG_FILE, ProxyConfig, load_config
from authproxy.model.logs import setup_logging
from authproxy.model.ProxyServer import ProxyServer


def build_banner(config: ProxyConfig) -> Panel:
    host, port = config.listen_address
    return Panel(
        f"[bold green]🟢 Running[/bold green]\n"
        f"[bold]Listen:[/bold] {host or '0.0.0.0'}:{port}\n"
        f"[bold]Username:[/bold] {config.username}\n"
        f"[bold]Timeout:[/bold] {config.timeout_seconds} sec\n"
        f"[bold]Status:[/bold] proxy authentication enabled",
        title=f"🌐 [bold cyan]authproxy {__version__}[/bold cyan]",
        border_style="green",
        padding=(1, 2),
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Authenticating HTTP/HTTPS forward proxy")
    parser.add_argument("-v", "--version", action="version", version=f"authproxy {__version__}")
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_FILE,
                        help="JSON config file [%(default)s]")
    parser.add_argument("--log-file", default=None, help="also log to this file (rotated)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="log level [%(default)s]")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    console = Console(stderr=True)
    logger = setup_logging(getattr(logging, args.log_level), args.log_file, console)

    config = load_config(args.config)
    try:
        server = ProxyServer(config)
    except OSError as e:
        logger.error(f"Failed to start server on {config.port}: {e}")
        sys.exit(1)

    console.print(build_banner(config))

    def shutdown(signum=None, frame=None):
        logger.warning("Shutting down server...")
        # shutdown() blocks until serve_forever returns, so not from this thread
        threading.Thread(target=server.shutdown, daemon=True).start()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    try:
        server.start()
    finally:
        server.server_close()
        logger.info("Goodbye 👋")


if __name__ == "__main__":
    main()
