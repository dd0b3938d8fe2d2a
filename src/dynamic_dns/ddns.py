"""Orchestration: one resolve-then-reconcile cycle, and a daemon repeating it."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Optional

from dynamic_dns.context import Context
from dynamic_dns.errors import (
    ConfigError,
    DDNSError,
    is_authentication_error,
    is_authorization_error,
)
from dynamic_dns.options import ClientOptions
from dynamic_dns.providers import Provider
from dynamic_dns.resolvers import InterfaceResolver, Resolver

MIN_INTERVAL_SECONDS = 60.0


class DDNSClient:
    """Keeps one domain's records pointed at the addresses a resolver finds."""

    def __init__(
        self,
        domain: str,
        provider: Provider,
        resolver: Optional[Resolver] = None,
        *,
        options: Optional[ClientOptions] = None,
    ):
        if not domain:
            raise ConfigError("domain cannot be empty")
        if provider is None:
            raise ConfigError("provider cannot be None")
        self.domain = domain
        self.provider = provider
        self.resolver = resolver if resolver is not None else InterfaceResolver(options=options)
        self._logger = (options or ClientOptions()).get_logger()

    def run(self, ctx: Context) -> None:
        """Resolve our addresses, then converge the domain's records to them."""
        addresses = self.resolver.resolve(ctx)
        if addresses:
            self._logger.info(f"Resolved addresses: {', '.join(map(str, addresses))}")
        else:
            self._logger.warning(f"No addresses resolved; removing all records for {self.domain}")

        self.provider.set_dns_records(ctx, self.domain, addresses)
        self._logger.debug(f"Records for {self.domain} are up to date")


# =============================================================================
# Daemon
# =============================================================================


class DaemonState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class Daemon:
    """Runs a DDNSClient every interval until canceled or a fatal error.

    Authentication and authorization failures stop the daemon rather than
    repeating a failure that will not fix itself. Every other error is logged
    and the next cycle runs as scheduled.
    """

    def __init__(
        self,
        client: DDNSClient,
        interval: float,
        logger: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.interval = max(float(interval), MIN_INTERVAL_SECONDS)
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.state = DaemonState.IDLE
        self.cycles = 0

    def run(self, ctx: Context) -> Optional[BaseException]:
        """Run until ctx is canceled or a fatal error occurs.

        Returns the fatal error that stopped the daemon, or None if it was
        canceled.
        """
        next_run = time.monotonic()
        while not ctx.done():
            self.state = DaemonState.RUNNING
            self.cycles += 1
            fatal = self._run_cycle(ctx)
            if fatal is not None:
                self.state = DaemonState.STOPPED
                return fatal
            self.state = DaemonState.IDLE

            next_run += self.interval
            now = time.monotonic()
            if next_run < now:
                # The cycle overran; skip missed ticks instead of bursting.
                next_run = now + self.interval - ((now - next_run) % self.interval)
            if ctx.wait(next_run - now):
                break

        self.logger.info("Daemon stopped")
        self.state = DaemonState.STOPPED
        return None

    def _run_cycle(self, ctx: Context) -> Optional[BaseException]:
        try:
            self.client.run(ctx)
        except Exception as e:
            if ctx.done():
                self.logger.info(f"DDNS update interrupted: {e}")
                return None
            # Unexpected exception types get a traceback.
            self.logger.error(f"DDNS update failed: {e}", exc_info=not isinstance(e, DDNSError))
            if is_authentication_error(e):
                self.logger.error("Bad credentials detected; stopping daemon")
                return e
            if is_authorization_error(e):
                self.logger.error(
                    "Credentials are not authorized to perform that action; stopping daemon"
                )
                return e
        return None


def run_daemon(
    client: DDNSClient,
    ctx: Context,
    interval: float,
    logger: Optional[logging.Logger] = None,
) -> Optional[BaseException]:
    """Run client every interval (at least one minute) until ctx is canceled."""
    return Daemon(client, interval, logger).run(ctx)
