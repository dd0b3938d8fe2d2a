"""DNS providers and the reconciliation engine.

A Provider converges a domain's A/AAAA records to a desired address set. The
Reconciler implements that on top of any DNSProvider, which only needs to
offer record-level operations (find zone, list, add, delete).

Supported DNS providers:
    - cloudflare: Cloudflare v4 API (API token with Zone.DNS edit permission)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set, Type

import requests

from dynamic_dns.context import Context
from dynamic_dns.errors import (
    AuthenticationError,
    AuthorizationError,
    ProviderError,
    RecordMutationError,
    ZoneLookupError,
)
from dynamic_dns.options import Address, ClientOptions, parse_address, record_type

DEFAULT_TTL = 60
DEFAULT_COMMENT = "managed by ddns"

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DNSRecord:
    """A provider-side A or AAAA record."""

    type: str
    name: str
    content: str
    id: str = ""
    ttl: int = DEFAULT_TTL
    comment: str = ""

    @property
    def address(self) -> Address:
        return parse_address(self.content)


# =============================================================================
# Provider Interfaces
# =============================================================================


class Provider(ABC):
    """Sets the DNS records of a domain to a desired address set."""

    @abstractmethod
    def set_dns_records(self, ctx: Context, domain: str, addresses: Sequence[Address]) -> None:
        """Converge domain's A/AAAA records to addresses.

        Raises a ProviderError subclass on failure; AuthenticationError and
        AuthorizationError mark failures that retrying will not fix.
        """
        pass


class DNSProvider(ABC):
    """Abstract base class for record-level DNS provider APIs."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Check that the provider is reachable and the credentials work."""
        pass

    @abstractmethod
    def find_zone(self, ctx: Context, domain: str) -> str:
        """Return the identifier of the zone holding domain."""
        pass

    @abstractmethod
    def get_records(self, ctx: Context, zone_id: str, domain: str) -> List[DNSRecord]:
        """Return every A/AAAA record named domain."""
        pass

    @abstractmethod
    def add_record(self, ctx: Context, zone_id: str, record: DNSRecord) -> DNSRecord:
        """Create record and return it as stored by the provider."""
        pass

    @abstractmethod
    def delete_record(self, ctx: Context, zone_id: str, record: DNSRecord) -> None:
        """Delete record by its identifier."""
        pass


# =============================================================================
# Reconciliation
# =============================================================================


class Reconciler(Provider):
    """Diffs desired addresses against a DNSProvider's records and converges.

    Records whose address is no longer desired are deleted first, then one
    record is created per missing address. Records already matching a desired
    address are left alone, even if their TTL or comment differ or several
    records share one address. Any failure aborts the cycle; the next cycle
    starts again from the provider's state.
    """

    def __init__(
        self,
        dns_provider: DNSProvider,
        *,
        ttl: int = DEFAULT_TTL,
        comment: str = DEFAULT_COMMENT,
        options: Optional[ClientOptions] = None,
    ):
        self.dns_provider = dns_provider
        self.ttl = ttl
        self.comment = comment
        self._logger = (options or ClientOptions()).get_logger()

    def set_dns_records(self, ctx: Context, domain: str, addresses: Sequence[Address]) -> None:
        desired = list(dict.fromkeys(addresses))
        desired_set = set(desired)

        zone_id = self.dns_provider.find_zone(ctx, domain)
        self._logger.debug(f"Zone for {domain}: {zone_id}")

        records = [
            r for r in self.dns_provider.get_records(ctx, zone_id, domain) if r.type in ("A", "AAAA")
        ]
        self._logger.debug(f"Found {len(records)} existing record(s) for {domain}")

        existing: Set[Address] = set()
        to_delete: List[DNSRecord] = []
        for record in records:
            address = record.address
            if address in desired_set:
                self._logger.debug(f"Existing record {address} is still desired")
                existing.add(address)
            else:
                to_delete.append(record)

        for record in to_delete:
            ctx.raise_if_done()
            self._logger.info(f"Deleting DNS record {domain} -> {record.content}")
            self.dns_provider.delete_record(ctx, zone_id, record)

        for address in desired:
            if address in existing:
                continue
            ctx.raise_if_done()
            self._logger.info(f"Adding DNS record {domain} -> {address}")
            self.dns_provider.add_record(
                ctx,
                zone_id,
                DNSRecord(
                    type=record_type(address),
                    name=domain,
                    content=str(address),
                    ttl=self.ttl,
                    comment=self.comment,
                ),
            )


# =============================================================================
# Cloudflare
# =============================================================================


class CloudflareDNSProvider(DNSProvider):
    """Cloudflare DNS provider implementation (v4 REST API)."""

    API_URL = "https://api.cloudflare.com/client/v4"
    PER_PAGE = 100

    def __init__(
        self,
        token: str,
        *,
        api_url: str = API_URL,
        timeout_seconds: float = 30.0,
        options: Optional[ClientOptions] = None,
    ):
        if not token:
            raise AuthenticationError("Cloudflare API token cannot be empty")
        options = options or ClientOptions()
        self._url = api_url.rstrip("/")
        self._timeout = timeout_seconds
        # The session may be shared with lookups to third-party services, so
        # the token goes on each request rather than on the session.
        self._headers = {"Authorization": f"Bearer {token}"}
        self._session = options.get_session()
        self._logger = options.get_logger()

    @property
    def name(self) -> str:
        return "Cloudflare"

    def verify_token(self, ctx: Optional[Context] = None) -> bool:
        """Return True if the API token is valid and active."""
        result = self._call(
            ctx or Context.background(), "GET", "/user/tokens/verify", error_cls=ProviderError
        )
        status = result.get("result", {}).get("status")
        if status != "active":
            self._logger.error(f'Expected API token status "active"; got "{status}"')
            return False
        return True

    def test_connection(self) -> bool:
        try:
            ok = self.verify_token()
        except ProviderError as e:
            self._logger.error(f"Failed to connect to {self.name}: {e}")
            return False
        if ok:
            self._logger.info(f"{self.name} connection successful")
        return ok

    def find_zone(self, ctx: Context, domain: str) -> str:
        labels = domain.rstrip(".").split(".")
        if len(labels) < 2:
            raise ZoneLookupError(f"unable to get zone ID for {domain}: not a dotted name")

        # Longest match first so delegated subzones and public suffixes such as
        # co.uk resolve to the zone that actually holds the name.
        for i in range(len(labels) - 1):
            candidate = ".".join(labels[i:])
            self._logger.debug(f"Looking up zone ID for {candidate}")
            data = self._call(
                ctx, "GET", "/zones", params={"name": candidate}, error_cls=ZoneLookupError
            )
            zones = data.get("result") or []
            if zones:
                return str(zones[0]["id"])
        raise ZoneLookupError(f"unable to get zone ID for {domain}: no matching zone")

    def get_records(self, ctx: Context, zone_id: str, domain: str) -> List[DNSRecord]:
        records: List[DNSRecord] = []
        page = 1
        while True:
            data = self._call(
                ctx,
                "GET",
                f"/zones/{zone_id}/dns_records",
                params={"name": domain, "page": page, "per_page": self.PER_PAGE},
                error_cls=ProviderError,
            )
            for r in data.get("result") or []:
                if not isinstance(r, dict) or r.get("type") not in ("A", "AAAA"):
                    continue
                records.append(
                    DNSRecord(
                        type=r["type"],
                        name=str(r.get("name", domain)),
                        content=str(r.get("content", "")),
                        id=str(r.get("id", "")),
                        ttl=int(r.get("ttl") or DEFAULT_TTL),
                        comment=str(r.get("comment") or ""),
                    )
                )
            total_pages = (data.get("result_info") or {}).get("total_pages") or 1
            if page >= total_pages:
                return records
            page += 1

    def add_record(self, ctx: Context, zone_id: str, record: DNSRecord) -> DNSRecord:
        payload = {
            "type": record.type,
            "name": record.name,
            "content": record.content,
            "ttl": record.ttl,
            "comment": record.comment,
        }
        data = self._call(
            ctx,
            "POST",
            f"/zones/{zone_id}/dns_records",
            json=payload,
            error_cls=RecordMutationError,
        )
        created = data.get("result") or {}
        self._logger.info(f"Added DNS record: {record.name} -> {record.content}")
        return DNSRecord(
            type=record.type,
            name=record.name,
            content=record.content,
            id=str(created.get("id", "")),
            ttl=record.ttl,
            comment=record.comment,
        )

    def delete_record(self, ctx: Context, zone_id: str, record: DNSRecord) -> None:
        self._call(
            ctx,
            "DELETE",
            f"/zones/{zone_id}/dns_records/{record.id}",
            error_cls=RecordMutationError,
        )
        self._logger.info(f"Deleted DNS record: {record.name} -> {record.content}")

    def _call(
        self,
        ctx: Context,
        method: str,
        path: str,
        *,
        error_cls: Type[ProviderError],
        **kwargs: Any,
    ) -> Dict[str, Any]:
        timeout = ctx.time_left(self._timeout)
        try:
            response = self._session.request(
                method, f"{self._url}{path}", headers=self._headers, timeout=timeout, **kwargs
            )
        except requests.exceptions.RequestException as e:
            raise error_cls(f"{self.name} {method} {path} failed: {e}") from e

        if response.status_code == 401:
            raise AuthenticationError(
                f"{self.name} rejected the API token ({method} {path})", status_code=401
            )
        if response.status_code == 403:
            raise AuthorizationError(
                f"{self.name} API token is not authorized for {method} {path}", status_code=403
            )

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        if response.status_code >= 400 or not data.get("success", False):
            raise error_cls(
                f"{self.name} {method} {path} returned {response.status_code}: "
                f"{_format_api_errors(data)}",
                status_code=response.status_code,
            )
        return data


def _format_api_errors(data: Dict[str, Any]) -> str:
    errors = data.get("errors")
    if not errors:
        return "no error details"
    parts = []
    for e in errors:
        if isinstance(e, dict):
            parts.append(f"{e.get('code')}: {e.get('message')}")
        else:
            parts.append(str(e))
    return "; ".join(parts)

