"""Address resolvers: find the IP addresses our DNS records should point at.

Supported resolvers:
    - StaticResolver:    a single literal address
    - InterfaceResolver: addresses of local network interfaces
    - WebResolver:       public address agreed on by external lookup services
    - JoinResolver:      the combined output of several resolvers
    - FuncResolver:      adapter for a plain function

Results may mix IPv4 and IPv6 but never contain loopback addresses. A failed
resolve raises ResolveError; resolvers whose contract allows partial success
attach what they did resolve to ``ResolveError.addresses``.
"""

from __future__ import annotations

import queue
import socket
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Tuple
from urllib.parse import urlsplit

import psutil
import requests

from dynamic_dns.context import Context
from dynamic_dns.errors import (
    ConfigError,
    LookupFailedError,
    ParseError,
    QuorumError,
    ResolveError,
)
from dynamic_dns.options import Address, ClientOptions, parse_address

# Ceiling for a single public lookup, layered under the caller's deadline so
# resolves finish even when the caller passes a context with no deadline.
LOOKUP_TIMEOUT_SECONDS = 15.0

_IP_FAMILIES = (socket.AF_INET, socket.AF_INET6)

_CANCELED = object()

# =============================================================================
# Resolver Interface
# =============================================================================


class Resolver(ABC):
    """Abstract base class for address resolvers."""

    @abstractmethod
    def resolve(self, ctx: Context) -> List[Address]:
        """Return the current addresses or raise ResolveError."""
        pass


class FuncResolver(Resolver):
    """Adapter that lets an ordinary function act as a resolver."""

    def __init__(self, fn: Callable[[Context], List[Address]]):
        self._fn = fn

    def resolve(self, ctx: Context) -> List[Address]:
        return self._fn(ctx)


# =============================================================================
# Static Resolver
# =============================================================================


class StaticResolver(Resolver):
    """Always resolves to one fixed address."""

    def __init__(self, address: str):
        parsed = parse_address(address)
        if parsed.is_loopback:
            raise ParseError(f"refusing to use loopback address {parsed}")
        self.address = parsed

    def resolve(self, ctx: Context) -> List[Address]:
        return [self.address]

    def __repr__(self) -> str:
        return f"StaticResolver({str(self.address)!r})"


# =============================================================================
# Interface Resolver
# =============================================================================


class InterfaceResolver(Resolver):
    """Resolves to the addresses assigned to local network interfaces.

    With no interface names every interface is used. Loopback addresses are
    always skipped. Addresses that fail to parse, and interface names that do
    not exist, are reported together with whatever did resolve.
    """

    def __init__(self, *interfaces: str, options: Optional[ClientOptions] = None):
        self.interfaces = [i for i in interfaces if i]
        self._logger = (options or ClientOptions()).get_logger()

    def resolve(self, ctx: Context) -> List[Address]:
        ctx.raise_if_done()
        try:
            all_addrs = psutil.net_if_addrs()
        except OSError as e:
            raise ResolveError(f"error getting interface addresses: {e}") from e

        names = self.interfaces or sorted(all_addrs)
        addresses: List[Address] = []
        errors: List[BaseException] = []
        for name in names:
            if name not in all_addrs:
                errors.append(ResolveError(f"network interface {name!r} not found"))
                continue
            for snic in all_addrs[name]:
                if snic.family not in _IP_FAMILIES:
                    continue
                try:
                    address = parse_address(snic.address)
                except ParseError as e:
                    self._logger.warning(f"Error parsing address on {name}: {e}")
                    errors.append(e)
                    continue
                if address.is_loopback:
                    continue
                self._logger.debug(f"Found {address} on {name}")
                addresses.append(address)

        if errors:
            raise ResolveError(
                "errors were encountered while retrieving local IP addresses",
                addresses=addresses,
                errors=errors,
            )
        return addresses

    def __repr__(self) -> str:
        return f"InterfaceResolver({', '.join(self.interfaces) or '*'})"


# =============================================================================
# Web Resolver (quorum of public lookup services)
# =============================================================================


def quorum_size(endpoint_count: int) -> Tuple[int, int]:
    """Return (requests to issue, agreeing answers required)."""
    if endpoint_count == 1:
        return 1, 1
    if endpoint_count == 2:
        return 2, 2
    return 3, 2


class WebResolver(Resolver):
    """Resolves our public address using external lookup services.

    Each URL must answer a GET with "200 OK" and an IP address as the first
    line of the body. With one URL its answer is used as is. With more, up to
    three lookups run concurrently and the resolve succeeds only once two
    successful answers agree; otherwise nothing is returned. Public services
    control what ends up in DNS, so prefer services you run yourself, over
    https.

    With fewer than three URLs configured, lookups are spread round-robin over
    the ones available, so a two-URL resolver hits each service once and a
    one-URL resolver makes a single request.

    A dual-stack host may get an IPv4 answer from one service and an IPv6
    answer from another, which never agree. Use version-specific endpoints
    (e.g. https://ipv4.icanhazip.com/) and combine an IPv4 and an IPv6
    resolver with JoinResolver to publish both.
    """

    def __init__(self, *urls: str, options: Optional[ClientOptions] = None):
        if not urls:
            raise ConfigError("no external IP lookup services were provided")
        for url in urls:
            parts = urlsplit(url)
            if parts.scheme not in ("http", "https") or not parts.netloc:
                raise ParseError(f"invalid lookup service URL {url!r}")
        options = options or ClientOptions()
        self.urls: List[str] = list(urls)
        self._session = options.get_session()
        self._logger = options.get_logger()

    def resolve(self, ctx: Context) -> List[Address]:
        use_count, wait_for = quorum_size(len(self.urls))

        with ctx.with_cancel() as lookup_ctx:
            # Unbounded so that no finished lookup is ever dropped.
            results: queue.Queue = queue.Queue()
            lookup_ctx.on_cancel(lambda: results.put(_CANCELED))

            for i in range(use_count):
                url = self.urls[i % len(self.urls)]
                threading.Thread(
                    target=self._lookup_task,
                    args=(lookup_ctx, url, results),
                    name=f"ddns-lookup-{i}",
                    daemon=True,
                ).start()

            result_count = 0
            first: Optional[Address] = None
            seen: List[Address] = []
            errors: List[BaseException] = []
            for _ in range(use_count):
                item = results.get()
                if item is _CANCELED:
                    raise QuorumError(
                        "lookup canceled before enough services agreed",
                        errors=errors + [lookup_ctx.error()],
                    )
                address, err = item
                if err is not None:
                    errors.append(err)
                    continue
                result_count += 1
                seen.append(address)
                if first is None:
                    first = address
                    if wait_for == 1:
                        return [first]
                    continue
                if address == first:
                    self._logger.debug(f"Lookup services agreed on {first}")
                    return [first]

        if result_count < wait_for:
            raise QuorumError(
                f"not enough lookup services responded without errors "
                f"({result_count} of {wait_for} required)",
                errors=errors,
            )
        raise QuorumError(
            f"lookup services did not agree on our IP (got {', '.join(map(str, seen))})",
            errors=errors,
        )

    def _lookup_task(self, ctx: Context, url: str, results: queue.Queue) -> None:
        try:
            address = self.lookup(ctx, url)
        except Exception as e:
            self._logger.debug(f"Lookup via {url} failed: {e}")
            results.put((None, e))
        else:
            self._logger.debug(f"Lookup via {url} returned {address}")
            results.put((address, None))

    def lookup(self, ctx: Context, url: str) -> Address:
        """Ask one lookup service for our address. No retries."""
        with ctx.with_timeout(LOOKUP_TIMEOUT_SECONDS) as request_ctx:
            timeout = request_ctx.time_left()
            try:
                response = self._session.get(
                    url,
                    headers={"Cache-Control": "no-cache"},
                    timeout=timeout,
                    stream=True,
                )
            except requests.exceptions.RequestException as e:
                raise LookupFailedError(f"http request to {url} failed: {e}") from e

            # Closing the response aborts a read still in flight on cancel.
            request_ctx.on_cancel(response.close)
            try:
                if response.status_code != 200:
                    raise LookupFailedError(
                        f"http request to {url} returned {response.status_code} {response.reason}"
                    )
                first_line = next(response.iter_lines(), b"")
            except requests.exceptions.RequestException as e:
                raise LookupFailedError(f"error reading response from {url}: {e}") from e
            finally:
                response.close()

        if isinstance(first_line, bytes):
            first_line = first_line.decode("utf-8", errors="replace")
        try:
            address = parse_address(first_line)
        except ParseError as e:
            raise LookupFailedError(f"error parsing IP address from {url} response body: {e}") from e
        if address.is_loopback:
            raise LookupFailedError(f"{url} returned loopback address {address}")
        return address

    def __repr__(self) -> str:
        return f"WebResolver({', '.join(self.urls)})"


# =============================================================================
# Join Resolver
# =============================================================================


class JoinResolver(Resolver):
    """Combines the output of several resolvers into one.

    Useful when records for both IPv4 and IPv6 are wanted but a single lookup
    service only answers one of them. Every resolver runs to completion; all
    addresses (including partial results from failing resolvers) are returned
    together with every error.
    """

    def __init__(self, *resolvers: Resolver):
        self.resolvers: List[Resolver] = list(resolvers)

    def resolve(self, ctx: Context) -> List[Address]:
        if not self.resolvers:
            return []

        addresses: List[Address] = []
        errors: List[BaseException] = []
        with ThreadPoolExecutor(
            max_workers=len(self.resolvers), thread_name_prefix="ddns-join"
        ) as pool:
            futures = [pool.submit(r.resolve, ctx) for r in self.resolvers]
            for future in futures:
                try:
                    addresses.extend(future.result())
                except ResolveError as e:
                    addresses.extend(e.addresses)
                    errors.append(e)
                except Exception as e:
                    errors.append(e)

        if errors:
            raise ResolveError(
                f"{len(errors)} of {len(self.resolvers)} resolvers failed",
                addresses=addresses,
                errors=errors,
            )
        return addresses

    def __repr__(self) -> str:
        return f"JoinResolver({', '.join(map(repr, self.resolvers))})"

