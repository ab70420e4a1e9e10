"""
Configuration loading.

Builds the immutable ProxyConfig from three layers, highest priority first:

1. Explicit options (CLI flags or keyword arguments)
2. Process environment
3. A dotenv file (default ``.env``), read with python-dotenv

Request-handling code never reads the environment; it only sees the
ProxyConfig instance built here.
"""

from __future__ import annotations

import os
import ssl
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, TypeVar

import structlog
from dotenv import dotenv_values

from ntlmproxy.core.exceptions import ConfigValidationError
from ntlmproxy.core.types import ProxyConfig, Timeouts

logger = structlog.get_logger()

T = TypeVar("T")

DEFAULT_CONFIG_PATH = ".env"

# option name -> environment variable
ENV_VARS: Dict[str, str] = {
    "port": "PROXY_PORT",
    "host": "PROXY_HOST",
    "target": "TARGET_PROXY",
    "username": "NTLM_USERNAME",
    "password": "NTLM_PASSWORD",
    "domain": "NTLM_DOMAIN",
    "workstation": "NTLM_WORKSTATION",
    "tls": "TLS_ENABLED",
    "cert": "TLS_CERT_PATH",
    "key": "TLS_KEY_PATH",
    "verbose": "VERBOSE",
    "connect_timeout": "CONNECT_TIMEOUT",
    "response_timeout": "RESPONSE_TIMEOUT",
    "idle_timeout": "IDLE_TIMEOUT",
    "shutdown_grace": "SHUTDOWN_GRACE",
    "max_buffered_body": "MAX_BUFFERED_BODY",
}

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


def parse_target(target: Optional[str]) -> Tuple[str, int]:
    """
    Split an upstream target of the form host:port.

    Raises:
        ConfigValidationError: If the target is missing or malformed
    """
    if not target:
        raise ConfigValidationError(
            "Target proxy server is required. Use --target option or set TARGET_PROXY in .env"
        )
    host, sep, port = target.strip().rpartition(":")
    if not sep or not host:
        raise ConfigValidationError(f"Target proxy must be host:port, got {target!r}")
    host = host.strip("[]")
    try:
        port_number = int(port)
    except ValueError:
        raise ConfigValidationError(f"Target proxy port must be an integer, got {port!r}") from None
    if not 1 <= port_number <= 65535:
        raise ConfigValidationError(f"Target proxy port out of range: {port_number}")
    return host, port_number


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def read_config_file(path: str) -> Dict[str, str]:
    """
    Read a dotenv file.

    A missing file yields no values; an unreadable one is logged and
    skipped, matching the behaviour of running without a config file.
    """
    if not Path(path).exists():
        return {}
    try:
        values = {key: value for key, value in dotenv_values(path).items() if value is not None}
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("config_file_unreadable", path=path, error=str(e))
        return {}
    logger.info("config_file_loaded", path=path, keys=len(values))
    return values


def load_config(
    options: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ProxyConfig:
    """
    Build and validate a ProxyConfig.

    Args:
        options: Explicit settings keyed by option name (see ENV_VARS);
            None values are treated as unset
        environ: Environment mapping (default os.environ)

    Raises:
        ConfigValidationError: On any missing or invalid setting
    """
    options = {key: value for key, value in (options or {}).items() if value is not None}
    environ = os.environ if environ is None else environ
    file_values = read_config_file(str(options.get("config", DEFAULT_CONFIG_PATH)))

    def lookup(name: str, convert: Callable[[Any], T], default: T) -> T:
        if name in options:
            raw = options[name]
        else:
            env_name = ENV_VARS[name]
            raw = environ.get(env_name, file_values.get(env_name))
        if raw is None or raw == "":
            return default
        try:
            return convert(raw)
        except (TypeError, ValueError):
            raise ConfigValidationError(f"Invalid value for {name}: {raw!r}") from None

    upstream_host, upstream_port = parse_target(lookup("target", str, ""))
    defaults = Timeouts()
    timeouts = Timeouts(
        connect=lookup("connect_timeout", float, defaults.connect),
        response=lookup("response_timeout", float, defaults.response),
        idle=lookup("idle_timeout", float, defaults.idle),
        shutdown_grace=lookup("shutdown_grace", float, defaults.shutdown_grace),
    )

    return ProxyConfig(
        upstream_host=upstream_host,
        upstream_port=upstream_port,
        username=lookup("username", str, ""),
        password=lookup("password", str, ""),
        domain=lookup("domain", str, ""),
        workstation=lookup("workstation", str, "localhost"),
        listen_host=lookup("host", str, "localhost"),
        listen_port=lookup("port", int, 8080),
        tls_enabled=lookup("tls", parse_bool, False),
        tls_cert_path=lookup("cert", str, None),
        tls_key_path=lookup("key", str, None),
        verbose=lookup("verbose", parse_bool, False),
        timeouts=timeouts,
        max_buffered_body=lookup("max_buffered_body", int, 8 * 1024 * 1024),
    )


def build_server_ssl_context(config: ProxyConfig) -> Optional[ssl.SSLContext]:
    """
    Load the listening socket's certificate and key.

    Returns None when TLS is disabled.

    Raises:
        ConfigValidationError: If the certificate or key cannot be loaded
    """
    if not config.tls_enabled:
        return None
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    try:
        context.load_cert_chain(certfile=config.tls_cert_path, keyfile=config.tls_key_path)
    except (OSError, ssl.SSLError) as e:
        raise ConfigValidationError(f"Could not load TLS certificate/key: {e}") from e
    return context
