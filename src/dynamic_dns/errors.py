"""Exception types raised by dynamic_dns.

Every error raised on purpose by this package derives from DDNSError. Errors
that aggregate several failures (joined lookups, joined resolvers) keep the
individual failures in ``errors`` so callers can still classify them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Iterator, List, Optional, Sequence

if TYPE_CHECKING:
    from dynamic_dns.options import Address


class DDNSError(Exception):
    """Base class for all dynamic_dns errors."""


class ConfigError(DDNSError):
    """Invalid or missing configuration."""


class ParseError(DDNSError, ValueError):
    """A malformed address or URL literal."""


class CanceledError(DDNSError):
    """The governing context was canceled."""


class DeadlineExceededError(CanceledError):
    """The governing context's deadline passed."""


# =============================================================================
# Resolution Errors
# =============================================================================


class LookupFailedError(DDNSError):
    """A single public IP lookup failed (network, status or body)."""


class ResolveError(DDNSError):
    """Address resolution failed.

    ``addresses`` holds whatever was resolved before or alongside the failure
    (partial success), ``errors`` the individual failures that were joined.
    """

    def __init__(
        self,
        message: str,
        *,
        addresses: Optional[Sequence[Address]] = None,
        errors: Optional[Iterable[BaseException]] = None,
    ):
        self.message = message
        self.addresses: List[Address] = list(addresses or [])
        self.errors: List[BaseException] = [e for e in (errors or []) if e is not None]
        super().__init__(message)

    def __str__(self) -> str:
        if not self.errors:
            return self.message
        joined = "\n".join(f"  {e}" for e in self.errors)
        return f"{self.message}:\n{joined}"


class QuorumError(ResolveError):
    """Lookup services did not produce enough agreeing answers."""


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(DDNSError):
    """A DNS provider call failed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ZoneLookupError(ProviderError):
    """The provider-side zone for a domain could not be determined."""


class RecordMutationError(ProviderError):
    """Creating or deleting a record failed."""


class AuthenticationError(ProviderError):
    """The provider rejected the credentials outright."""


class AuthorizationError(ProviderError):
    """The credentials are valid but lack permission for the request."""


# =============================================================================
# Classification
# =============================================================================


def iter_error_chain(err: Optional[BaseException]) -> Iterator[BaseException]:
    """Yield err, its causes/contexts and every joined member error."""
    seen = set()
    stack = [err] if err is not None else []
    while stack:
        current = stack.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        if isinstance(current, ResolveError):
            stack.extend(current.errors)
        if current.__cause__ is not None:
            stack.append(current.__cause__)
        elif current.__context__ is not None and not current.__suppress_context__:
            stack.append(current.__context__)


def is_authentication_error(err: Optional[BaseException]) -> bool:
    return any(isinstance(e, AuthenticationError) for e in iter_error_chain(err))


def is_authorization_error(err: Optional[BaseException]) -> bool:
    return any(isinstance(e, AuthorizationError) for e in iter_error_chain(err))
