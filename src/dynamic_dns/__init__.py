"""dynamic_dns - keep a domain's A/AAAA records pointed at this host.

Usage starts with a DDNSClient, built from a domain, a Provider (usually a
Reconciler wrapping a DNSProvider) and a Resolver:

    options = ClientOptions(session=requests.Session(), logger=logger)
    client = DDNSClient(
        "home.example.com",
        Reconciler(CloudflareDNSProvider(token, options=options), options=options),
        WebResolver("https://ipv4.icanhazip.com/", "https://checkip.amazonaws.com/",
                    "https://ipinfo.io/ip", options=options),
        options=options,
    )
    client.run(Context.background())          # once
    run_daemon(client, Context.background(), 300, logger)  # every 5 minutes
"""

import logging

from dynamic_dns.context import Context
from dynamic_dns.ddns import Daemon, DaemonState, DDNSClient, run_daemon
from dynamic_dns.errors import (
    AuthenticationError,
    AuthorizationError,
    CanceledError,
    ConfigError,
    DDNSError,
    DeadlineExceededError,
    LookupFailedError,
    ParseError,
    ProviderError,
    QuorumError,
    RecordMutationError,
    ResolveError,
    ZoneLookupError,
)
from dynamic_dns.options import ClientOptions
from dynamic_dns.providers import CloudflareDNSProvider, DNSProvider, DNSRecord, Provider, Reconciler
from dynamic_dns.resolvers import (
    FuncResolver,
    InterfaceResolver,
    JoinResolver,
    Resolver,
    StaticResolver,
    WebResolver,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__ = "0.1.0"
