"""
Command-line entry point.

    ntlm-proxy -t proxy.corp.example:3128 -u alice --password secret -d CORP

Options left unset on the command line fall back to the environment and
then to the config file (``--config``, default ``.env``).
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List, Optional

import structlog

from ntlmproxy import __version__
from ntlmproxy.core.config import DEFAULT_CONFIG_PATH, build_server_ssl_context, load_config
from ntlmproxy.core.exceptions import ConfigValidationError
from ntlmproxy.core.logging import configure_logging
from ntlmproxy.core.types import ProxyConfig
from ntlmproxy.proxy.listener import ProxyListener
from ntlmproxy.proxy.shutdown import run_until_shutdown

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ntlm-proxy",
        description="Forward proxy that authenticates against an NTLM upstream proxy",
    )
    parser.add_argument("-p", "--port", type=int, help="Listen port (default: 8080)")
    parser.add_argument("-H", "--host", help="Listen host (default: localhost)")
    parser.add_argument("-t", "--target", help="Upstream proxy as host:port")
    parser.add_argument("-u", "--username", help="NTLM username")
    parser.add_argument("--password", help="NTLM password")
    parser.add_argument("-d", "--domain", help="NTLM domain (default: empty)")
    parser.add_argument("-w", "--workstation", help="NTLM workstation (default: localhost)")
    parser.add_argument(
        "--tls", action="store_true", default=None, help="Serve clients over TLS"
    )
    parser.add_argument("--cert", help="TLS certificate file")
    parser.add_argument("--key", help="TLS private key file")
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help=f"Config file path (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--verbose", action="store_true", default=None, help="Log every request and tunnel"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    timeouts = parser.add_argument_group(
        "timeouts", "Seconds; 0 disables the deadline, except a shutdown grace of 0 closes at once"
    )
    timeouts.add_argument("--connect-timeout", type=float, help="Upstream connect (default: 10)")
    timeouts.add_argument(
        "--response-timeout", type=float, help="Upstream response head (default: 30)"
    )
    timeouts.add_argument("--idle-timeout", type=float, help="Tunnel inactivity (default: 300)")
    timeouts.add_argument(
        "--shutdown-grace", type=float, help="Wait for open connections on exit (default: 5)"
    )
    return parser


def banner(config: ProxyConfig, port: int) -> str:
    scheme = "https" if config.tls_enabled else "http"
    return "\n".join(
        [
            f"ntlm-proxy {__version__}",
            f"  Listening:  {scheme}://{config.listen_host}:{port}",
            f"  Upstream:   {config.target}",
            f"  Account:    {config.account}",
            f"  TLS:        {'enabled' if config.tls_enabled else 'disabled'}",
        ]
    )


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run the proxy until interrupted.

    Returns:
        0 after a clean shutdown, 1 on invalid configuration
    """
    args = build_parser().parse_args(argv)
    configure_logging(bool(args.verbose))

    try:
        config = load_config(vars(args))
        ssl_context = build_server_ssl_context(config)
    except ConfigValidationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    configure_logging(config.verbose)

    def started(listener: ProxyListener) -> None:
        print(banner(config, listener.port), flush=True)
        logger.info(
            "proxy_started",
            port=listener.port,
            upstream=config.target,
            account=config.account,
            tls=config.tls_enabled,
        )

    listener = ProxyListener(config, ssl_context=ssl_context)
    try:
        return asyncio.run(
            run_until_shutdown(
                listener,
                config.timeouts.shutdown_grace,
                on_started=started,
            )
        )
    except KeyboardInterrupt:
        return 0
    except OSError as e:
        logger.error(
            "listen_failed", host=config.listen_host, port=config.listen_port, error=str(e)
        )
        return 1


if __name__ == "__main__":
    sys.exit(main())
