"""Shared configuration and value helpers."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional, Union

import requests

from dynamic_dns.errors import ParseError

Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

# The package logger has a NullHandler attached (see __init__), so anything
# logged through the default sink is dropped unless the application
# configures logging.
DEFAULT_LOGGER_NAME = "dynamic_dns"


@dataclass(frozen=True)
class ClientOptions:
    """Explicit configuration accepted by every resolver and provider.

    session: overrides the outbound connection pool. Share one session across
             resolvers, providers and daemon ticks to reuse connections.
    logger:  overrides the default discard sink.
    """

    session: Optional[requests.Session] = None
    logger: Optional[logging.Logger] = None

    def get_session(self) -> requests.Session:
        return self.session if self.session is not None else requests.Session()

    def get_logger(self) -> logging.Logger:
        return self.logger if self.logger is not None else logging.getLogger(DEFAULT_LOGGER_NAME)


def parse_address(value: str) -> Address:
    """Parse an IP address literal, dropping any IPv6 zone (``%eth0``)."""
    text = value.strip()
    if "%" in text:
        text = text.split("%", 1)[0]
    try:
        return ipaddress.ip_address(text)
    except ValueError as e:
        raise ParseError(f"unable to parse IP address {value!r}: {e}") from e


def record_type(address: Address) -> str:
    """Return the DNS record kind for an address: A for IPv4, AAAA for IPv6."""
    return "A" if address.version == 4 else "AAAA"
