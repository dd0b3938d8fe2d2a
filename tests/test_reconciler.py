"""Unit tests for Reconciler convergence logic.

Tests the diff between desired addresses and a provider's existing records,
ensuring records converge with the fewest mutations and in a safe order.
"""

from ipaddress import ip_address
from typing import List, Tuple

import pytest

from dynamic_dns.context import Context
from dynamic_dns.errors import CanceledError, ParseError, RecordMutationError, ZoneLookupError
from dynamic_dns.providers import DNSProvider, DNSRecord, Reconciler

DOMAIN = "home.example.com"

# =============================================================================
# Mock DNS Provider
# =============================================================================


class MockDNSProvider(DNSProvider):
    """Mock DNS provider with in-memory record storage and call tracking."""

    def __init__(self, initial_records: List[DNSRecord] | None = None):
        self._records: List[DNSRecord] = list(initial_records or [])
        self._next_id = 1
        self.add_calls: List[DNSRecord] = []
        self.delete_calls: List[DNSRecord] = []
        self.operations: List[Tuple[str, str]] = []
        self.fail_delete = False
        self.fail_zone = False

    @property
    def name(self) -> str:
        return "MockDNS"

    def test_connection(self) -> bool:
        return True

    def find_zone(self, ctx: Context, domain: str) -> str:
        if self.fail_zone:
            raise ZoneLookupError(f"no zone for {domain}")
        return "zone-1"

    def get_records(self, ctx: Context, zone_id: str, domain: str) -> List[DNSRecord]:
        return [r for r in self._records if r.name == domain]

    def add_record(self, ctx: Context, zone_id: str, record: DNSRecord) -> DNSRecord:
        self.add_calls.append(record)
        self.operations.append(("add", record.content))
        stored = DNSRecord(
            type=record.type,
            name=record.name,
            content=record.content,
            id=f"rec-{self._next_id}",
            ttl=record.ttl,
            comment=record.comment,
        )
        self._next_id += 1
        self._records.append(stored)
        return stored

    def delete_record(self, ctx: Context, zone_id: str, record: DNSRecord) -> None:
        self.delete_calls.append(record)
        self.operations.append(("delete", record.content))
        if self.fail_delete:
            raise RecordMutationError(f"cannot delete {record.id}")
        self._records = [r for r in self._records if r.id != record.id]

    def contents(self) -> List[str]:
        return sorted(r.content for r in self._records)


def record(content: str, record_id: str, kind: str = "A", name: str = DOMAIN) -> DNSRecord:
    return DNSRecord(type=kind, name=name, content=content, id=record_id)


def addresses(*values: str):
    return [ip_address(v) for v in values]


# =============================================================================
# Convergence
# =============================================================================


class TestReconcilerConvergence:
    """Tests for the add/delete plan."""

    def test_matching_records_cause_no_calls(self) -> None:
        """Test records already matching the desired set are left alone."""
        provider = MockDNSProvider([record("1.2.3.4", "r1"), record("2001:db8::1", "r2", "AAAA")])
        reconciler = Reconciler(provider)

        reconciler.set_dns_records(Context.background(), DOMAIN, addresses("1.2.3.4", "2001:db8::1"))

        assert provider.add_calls == []
        assert provider.delete_calls == []

    def test_second_run_is_a_no_op(self) -> None:
        """Test reconciling twice with the same input mutates only once."""
        provider = MockDNSProvider([record("9.9.9.9", "r1")])
        reconciler = Reconciler(provider)
        desired = addresses("1.2.3.4")

        reconciler.set_dns_records(Context.background(), DOMAIN, desired)
        reconciler.set_dns_records(Context.background(), DOMAIN, desired)

        assert len(provider.add_calls) == 1
        assert len(provider.delete_calls) == 1
        assert provider.contents() == ["1.2.3.4"]

    def test_adds_missing_address(self) -> None:
        """Test one new address produces exactly one A record creation."""
        provider = MockDNSProvider([record("1.2.3.4", "r1")])

        Reconciler(provider).set_dns_records(
            Context.background(), DOMAIN, addresses("1.2.3.4", "5.6.7.8")
        )

        assert provider.delete_calls == []
        assert len(provider.add_calls) == 1
        added = provider.add_calls[0]
        assert (added.type, added.name, added.content) == ("A", DOMAIN, "5.6.7.8")

    def test_deletes_stale_record(self) -> None:
        """Test an address no longer desired produces exactly one deletion."""
        provider = MockDNSProvider([record("1.2.3.4", "r1"), record("9.9.9.9", "r2")])

        Reconciler(provider).set_dns_records(Context.background(), DOMAIN, addresses("1.2.3.4"))

        assert provider.add_calls == []
        assert [r.id for r in provider.delete_calls] == ["r2"]
        assert provider.contents() == ["1.2.3.4"]

    def test_ipv6_creates_aaaa(self) -> None:
        provider = MockDNSProvider()

        Reconciler(provider).set_dns_records(Context.background(), DOMAIN, addresses("2001:db8::5"))

        assert provider.add_calls[0].type == "AAAA"
        assert provider.add_calls[0].content == "2001:db8::5"

    def test_deletes_run_before_adds(self) -> None:
        """Test every deletion happens before the first creation."""
        provider = MockDNSProvider([record("9.9.9.9", "r1"), record("8.8.8.8", "r2")])

        Reconciler(provider).set_dns_records(
            Context.background(), DOMAIN, addresses("1.2.3.4", "2001:db8::1")
        )

        kinds = [op for op, _ in provider.operations]
        assert kinds == ["delete", "delete", "add", "add"]

    def test_duplicate_desired_addresses_add_once(self) -> None:
        provider = MockDNSProvider()

        Reconciler(provider).set_dns_records(
            Context.background(), DOMAIN, addresses("1.2.3.4", "1.2.3.4")
        )

        assert len(provider.add_calls) == 1

    def test_records_sharing_a_desired_address_are_kept(self) -> None:
        """Test extra records with a still-desired address cause no calls."""
        provider = MockDNSProvider([record("1.2.3.4", "r1"), record("1.2.3.4", "r2")])

        Reconciler(provider).set_dns_records(Context.background(), DOMAIN, addresses("1.2.3.4"))

        assert provider.delete_calls == []
        assert provider.add_calls == []
        assert provider.contents() == ["1.2.3.4", "1.2.3.4"]

    def test_uses_configured_ttl_and_comment(self) -> None:
        provider = MockDNSProvider()

        Reconciler(provider, ttl=300, comment="home router").set_dns_records(
            Context.background(), DOMAIN, addresses("1.2.3.4")
        )

        assert provider.add_calls[0].ttl == 300
        assert provider.add_calls[0].comment == "home router"

    def test_non_address_records_are_ignored(self) -> None:
        """Test records other than A/AAAA are never deleted."""
        provider = MockDNSProvider([record("target.example.com", "r1", "CNAME")])

        Reconciler(provider).set_dns_records(Context.background(), DOMAIN, addresses("1.2.3.4"))

        assert provider.delete_calls == []
        assert len(provider.add_calls) == 1

    def test_equivalent_ipv6_spellings_match(self) -> None:
        """Test records are compared as addresses, not strings."""
        provider = MockDNSProvider([record("2001:0db8:0000::0001", "r1", "AAAA")])

        Reconciler(provider).set_dns_records(Context.background(), DOMAIN, addresses("2001:db8::1"))

        assert provider.add_calls == []
        assert provider.delete_calls == []


# =============================================================================
# Failures
# =============================================================================


class TestReconcilerFailures:
    """Tests for aborting a reconcile on the first failure."""

    def test_delete_failure_aborts_before_adds(self) -> None:
        provider = MockDNSProvider([record("9.9.9.9", "r1")])
        provider.fail_delete = True

        with pytest.raises(RecordMutationError):
            Reconciler(provider).set_dns_records(
                Context.background(), DOMAIN, addresses("1.2.3.4")
            )

        assert provider.add_calls == []

    def test_zone_failure_propagates(self) -> None:
        provider = MockDNSProvider()
        provider.fail_zone = True

        with pytest.raises(ZoneLookupError):
            Reconciler(provider).set_dns_records(
                Context.background(), DOMAIN, addresses("1.2.3.4")
            )

        assert provider.add_calls == []

    def test_unparseable_record_content_aborts(self) -> None:
        provider = MockDNSProvider([record("garbage", "r1")])

        with pytest.raises(ParseError):
            Reconciler(provider).set_dns_records(
                Context.background(), DOMAIN, addresses("1.2.3.4")
            )

        assert provider.operations == []

    def test_canceled_context_stops_mutations(self) -> None:
        provider = MockDNSProvider([record("9.9.9.9", "r1")])
        ctx = Context.background()
        ctx.cancel()

        with pytest.raises(CanceledError):
            Reconciler(provider).set_dns_records(ctx, DOMAIN, addresses("1.2.3.4"))

        assert provider.operations == []
