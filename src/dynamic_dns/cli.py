#!/usr/bin/env python3
"""dynamic-dns - Dynamic DNS for Cloudflare

Keeps a domain's A/AAAA records pointed at this host's addresses, either
once or on a polling loop.

Supported DNS Providers:
    - cloudflare: Cloudflare DNS (API token with Zone.DNS edit permission)

Address Resolvers (first configured wins):
    1. resolver tree from the YAML config file (see DDNS_CONFIG_PATH)
    2. DDNS_SERVICE_URLS   public IP lookup services, quorum of up to three
    3. DDNS_INTERFACES     addresses of the named local interfaces
    4. DDNS_IP             a literal address
    5. addresses of all local non-loopback interfaces

Environment variables:

    Record:
        DDNS_DOMAIN            DNS name to update (required unless set in the config file)
        DDNS_RECORD_TTL        TTL for created records (default: 60)
        DDNS_RECORD_COMMENT    Comment marking records created by this tool
                               (default: "managed by ddns")

    Credentials:
        CLOUDFLARE_API_TOKEN   API token (optional, overrides DDNS_KEY_FILE)
        DDNS_KEY_FILE          File holding the API token on its first line
                               (default: ~/.cloudflare). Must be mode 0600 or 0400.
                               If missing and stdin is a terminal, the token is
                               prompted for, verified, and written there.

    Resolvers:
        DDNS_IP                Literal IP address to publish
        DDNS_INTERFACES        Comma-separated interface names, e.g. "eth0,wlan0"
        DDNS_SERVICE_URLS      Comma-separated lookup service URLs, e.g.
                               "https://checkip.amazonaws.com/,https://icanhazip.com/,https://ipinfo.io/ip"

    Config file:
        DDNS_CONFIG_PATH       Optional YAML file. Keys override the env vars above.
                               Example:
                                 domain: home.example.com
                                 interval_seconds: 300
                                 record_ttl: 60
                                 resolver:
                                   join:
                                     - web: [https://ipv4.icanhazip.com/]
                                     - web: [https://ipv6.icanhazip.com/]

                               Resolver nodes:
                                 static: "203.0.113.7"
                                 interfaces: [eth0]     (empty list = all interfaces)
                                 web: [url, ...]
                                 join: [node, ...]

    Runtime:
        SYNC_MODE              "once" or "watch" (polling loop) (default: watch)
        POLL_INTERVAL_SECONDS  Poll interval in watch mode, at least 60 (default: 300)
        LOG_LEVEL              DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import getpass
import logging
import os
import signal
import stat
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests
import yaml

from dynamic_dns.context import Context
from dynamic_dns.ddns import MIN_INTERVAL_SECONDS, DDNSClient, run_daemon
from dynamic_dns.errors import ConfigError, DDNSError
from dynamic_dns.options import ClientOptions
from dynamic_dns.providers import (
    DEFAULT_COMMENT,
    DEFAULT_TTL,
    CloudflareDNSProvider,
    DNSProvider,
    Reconciler,
)
from dynamic_dns.resolvers import (
    InterfaceResolver,
    JoinResolver,
    Resolver,
    StaticResolver,
    WebResolver,
)

# =============================================================================
# Configuration
# =============================================================================

DDNS_DOMAIN = os.getenv("DDNS_DOMAIN", "").strip()
DDNS_CONFIG_PATH = os.getenv("DDNS_CONFIG_PATH", "").strip()
DDNS_RECORD_TTL = os.getenv("DDNS_RECORD_TTL", str(DEFAULT_TTL))
DDNS_RECORD_COMMENT = os.getenv("DDNS_RECORD_COMMENT", DEFAULT_COMMENT)

# Credentials
CLOUDFLARE_API_TOKEN = os.getenv("CLOUDFLARE_API_TOKEN", "").strip()
DDNS_KEY_FILE = os.getenv("DDNS_KEY_FILE", str(Path.home() / ".cloudflare"))

# Resolvers
DDNS_IP = os.getenv("DDNS_IP", "").strip()
DDNS_INTERFACES = os.getenv("DDNS_INTERFACES", "")
DDNS_SERVICE_URLS = os.getenv("DDNS_SERVICE_URLS", "")

# Runtime configuration
SYNC_MODE = os.getenv("SYNC_MODE", "watch").lower().strip()
POLL_INTERVAL_SECONDS = os.getenv("POLL_INTERVAL_SECONDS", "300")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

logger = logging.getLogger(__name__)

# =============================================================================
# Logging Setup
# =============================================================================


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_list(value: str) -> List[str]:
    """Parse a comma-separated env var, dropping empty entries."""
    return [item.strip() for item in (value or "").split(",") if item.strip()]


def _parse_int(value: Any, *, name: str) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


def load_config_file(path: str) -> Dict[str, Any]:
    """Load the YAML config file. An empty file is an empty config."""
    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigError(f"config file {path} does not exist")
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to load config from {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping, got {type(data).__name__}")
    return data


def build_resolver(node: Any, options: Optional[ClientOptions] = None) -> Resolver:
    """Build a resolver from a config-file resolver node."""
    if not isinstance(node, dict) or len(node) != 1:
        raise ConfigError(f"resolver must be a mapping with exactly one key, got {node!r}")

    kind, value = next(iter(node.items()))
    if kind == "static":
        if not isinstance(value, str):
            raise ConfigError(f"static resolver expects an address string, got {value!r}")
        return StaticResolver(value)
    if kind == "interfaces":
        names = _as_str_list(kind, value, allow_empty=True)
        return InterfaceResolver(*names, options=options)
    if kind == "web":
        return WebResolver(*_as_str_list(kind, value), options=options)
    if kind == "join":
        if not isinstance(value, list) or not value:
            raise ConfigError(f"join resolver expects a non-empty list, got {value!r}")
        return JoinResolver(*(build_resolver(child, options) for child in value))
    raise ConfigError(
        f"Unsupported resolver: '{kind}'. Supported resolvers: static, interfaces, web, join"
    )


def _as_str_list(kind: str, value: Any, *, allow_empty: bool = False) -> List[str]:
    if value is None and allow_empty:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{kind} resolver expects a list of strings, got {value!r}")
    if not value and not allow_empty:
        raise ConfigError(f"{kind} resolver needs at least one entry")
    return [v.strip() for v in value]


def resolver_from_env(
    *,
    service_urls: str = "",
    interfaces: str = "",
    ip: str = "",
    options: Optional[ClientOptions] = None,
) -> Resolver:
    """Pick a resolver from env-style settings, most specific first."""
    urls = _parse_list(service_urls)
    if urls:
        return WebResolver(*urls, options=options)
    names = _parse_list(interfaces)
    if names:
        return InterfaceResolver(*names, options=options)
    if ip:
        return StaticResolver(ip)
    return InterfaceResolver(options=options)


# =============================================================================
# Credentials
# =============================================================================


def read_key(path: str) -> str:
    """Return the API token stored on the first line of path."""
    try:
        with open(path, "r") as f:
            key = f.readline().strip()
    except OSError as e:
        raise ConfigError(f"error reading key file {path}: {e}") from e
    if not key:
        raise ConfigError(f"key file {path} is empty")
    return key


def verify_permissions(path: str) -> None:
    """Require the key file to be readable by its owner only.

    0600 is expected; 0400 is accepted too, since secret managers often
    provide the file read-only.
    """
    if os.name == "nt":
        return
    try:
        perms = stat.S_IMODE(os.stat(path).st_mode)
    except OSError as e:
        raise ConfigError(f"error checking key file permissions: {e}") from e
    if perms not in (0o600, 0o400):
        raise ConfigError(
            f'invalid permissions for "{path}": expected file permissions "-rw-------"; '
            f'found "{stat.filemode(perms)[1:]}"'
        )


def run_setup(
    path: str,
    *,
    provider_factory: Callable[[str], DNSProvider] = CloudflareDNSProvider,
    prompt: Callable[[str], str] = getpass.getpass,
) -> str:
    """Prompt for an API token, verify it, and store it at path (mode 0600)."""
    logger.info(f"Key file {path} does not exist; running setup")
    key = prompt("Enter Cloudflare API token: ").strip()
    if not key:
        raise ConfigError("key cannot be empty")

    logger.info("Verifying token...")
    if not provider_factory(key).test_connection():
        raise ConfigError("unable to verify API token")

    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    except OSError as e:
        raise ConfigError(f'unable to create "{path}": {e}') from e
    with os.fdopen(fd, "w") as f:
        f.write(key + "\n")
    logger.info(f'Token written to "{path}"')
    return key


def load_token(key_file: str, env_token: str = "") -> str:
    """Return the API token from the environment or the key file."""
    if env_token:
        return env_token
    if not os.path.exists(key_file):
        if not sys.stdin.isatty():
            raise ConfigError(
                f"key file {key_file} does not exist (set CLOUDFLARE_API_TOKEN or DDNS_KEY_FILE)"
            )
        run_setup(key_file)
    verify_permissions(key_file)
    return read_key(key_file)


# =============================================================================
# Main
# =============================================================================


def cancel_on_signal(ctx: Context) -> Callable[[int, Any], None]:
    """Return a signal handler that cancels ctx.

    Handlers run on the main thread, possibly while it holds ctx's lock, so
    the cancel happens on a helper thread.
    """

    def handler(signum: int, frame: Any) -> None:
        threading.Thread(target=ctx.cancel, name="ddns-signal", daemon=True).start()

    return handler


def validate_config(domain: str, sync_mode: str) -> bool:
    """Validate configuration."""
    errors = []

    if not domain:
        errors.append("DDNS_DOMAIN is required (or 'domain' in the config file)")
    elif "." not in domain:
        errors.append(f"domain must have at least one dot, got '{domain}'")

    if sync_mode not in ("once", "watch"):
        errors.append(f"Invalid SYNC_MODE: {sync_mode}. Use 'once' or 'watch'")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main():
    """Main entry point."""
    setup_logging(LOG_LEVEL)

    try:
        file_config = load_config_file(DDNS_CONFIG_PATH) if DDNS_CONFIG_PATH else {}
        domain = str(file_config.get("domain") or DDNS_DOMAIN).strip()
        interval = _parse_int(
            file_config.get("interval_seconds", POLL_INTERVAL_SECONDS), name="interval_seconds"
        )
        ttl = _parse_int(file_config.get("record_ttl", DDNS_RECORD_TTL), name="record_ttl")
        comment = str(file_config.get("record_comment", DDNS_RECORD_COMMENT))
    except ConfigError as e:
        logger.error(str(e))
        logger.error("Configuration validation failed")
        sys.exit(1)

    if not validate_config(domain, SYNC_MODE):
        logger.error("Configuration validation failed")
        sys.exit(1)

    session = requests.Session()
    options = ClientOptions(session=session, logger=logger)

    try:
        if "resolver" in file_config:
            resolver = build_resolver(file_config["resolver"], options)
        else:
            resolver = resolver_from_env(
                service_urls=DDNS_SERVICE_URLS,
                interfaces=DDNS_INTERFACES,
                ip=DDNS_IP,
                options=options,
            )
        token = load_token(DDNS_KEY_FILE, CLOUDFLARE_API_TOKEN)
        dns_provider = CloudflareDNSProvider(token, options=options)
        client = DDNSClient(
            domain,
            Reconciler(dns_provider, ttl=ttl, comment=comment, options=options),
            resolver,
            options=options,
        )
    except DDNSError as e:
        logger.error(f"Failed to configure: {e}")
        sys.exit(1)

    logger.info(f"dynamic-dns: {resolver!r} -> {dns_provider.name}")
    logger.info(f"Domain: {domain}")
    logger.info(f"Sync mode: {SYNC_MODE}")

    ctx = Context.background()
    signal.signal(signal.SIGTERM, cancel_on_signal(ctx))

    try:
        if SYNC_MODE == "watch" and isinstance(resolver, StaticResolver):
            logger.warning("A static address never changes; running once instead of watching")

        if SYNC_MODE == "once" or isinstance(resolver, StaticResolver):
            client.run(ctx)
            return

        logger.info(f"Poll interval: {int(max(interval, MIN_INTERVAL_SECONDS))}s")
        fatal = run_daemon(client, ctx, interval, logger)
        if fatal is not None:
            sys.exit(1)

    except KeyboardInterrupt:
        ctx.cancel()
        logger.info("Shutting down gracefully...")
    except DDNSError as e:
        logger.error(f"DDNS update failed: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        session.close()


if __name__ == "__main__":
    main()
