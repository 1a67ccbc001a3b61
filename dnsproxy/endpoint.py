import logging
import threading
import time

import dns.exception
import dns.resolver

from dnsproxy.errors import EndpointUnresolvable

log = logging.getLogger(__name__)

LOOKUP_LIFETIME = 3.0
MIN_CACHE_TTL = 60


class EndpointResolver:
    """
    Resolves the DoH endpoint hostname to its addresses and caches them.

    The cache is a single ``(addresses, expires_at)`` tuple that is replaced
    as a whole, so readers never take the lock and never see a half-updated
    set. The lock only keeps two refreshes from running at the same time; once
    a set exists, callers that find a refresh in progress get the expired set
    instead of waiting for it.
    """

    def __init__(self, hostname, static_ips=(), dns_servers=(), lifetime=LOOKUP_LIFETIME, clock=time.monotonic):
        self.hostname = hostname
        self.static = bool(static_ips)
        self.dns_servers = tuple(dns_servers)
        self.lifetime = lifetime
        self._clock = clock
        self._lock = threading.Lock()
        self._cache = (tuple(static_ips), float("inf")) if static_ips else None

    @classmethod
    def from_config(cls, config):
        static = config.endpoint_ips
        if not static and config.endpoint.literal_address:
            static = (config.endpoint.literal_address,)
        return cls(config.endpoint.hostname, static_ips=static, dns_servers=config.dns_servers)

    def resolve(self):
        cached = self._cache
        if cached is not None and cached[1] > self._clock():
            return cached[0]

        # with a set in hand, serve it stale rather than wait on a refresh;
        # only the very first lookup makes callers queue
        if cached is None:
            self._lock.acquire()
        elif not self._lock.acquire(blocking=False):
            return cached[0]
        try:
            cached = self._cache
            if cached is not None and cached[1] > self._clock():
                return cached[0]

            try:
                addresses, ttl = self._lookup()
            except EndpointUnresolvable as exc:
                if cached is None:
                    raise
                log.warning("Refreshing %s failed (%s), keeping %d stale address(es)", self.hostname, exc, len(cached[0]))
                self._cache = (cached[0], self._clock() + MIN_CACHE_TTL)
                return cached[0]

            log.info("Endpoint %s resolved to %s (ttl %ds)", self.hostname, ", ".join(addresses), ttl)
            self._cache = (addresses, self._clock() + max(ttl, MIN_CACHE_TTL))
            return addresses
        finally:
            self._lock.release()

    def invalidate(self):
        """Force the next resolve() to look the endpoint up again."""
        if self.static:
            return
        cached = self._cache
        if cached is not None:
            self._cache = (cached[0], 0.0)

    def _make_resolver(self):
        try:
            resolver = dns.resolver.Resolver(configure=not self.dns_servers)
        except dns.exception.DNSException as exc:
            raise EndpointUnresolvable(f"no system resolver available: {exc}") from exc
        if self.dns_servers:
            # ports first: newer dnspython applies them when nameservers is assigned
            resolver.nameserver_ports = {ip: port for ip, port in self.dns_servers}
            resolver.nameservers = [ip for ip, _ in self.dns_servers]
        resolver.lifetime = self.lifetime
        return resolver

    def _lookup(self):
        resolver = self._make_resolver()
        qname = self.hostname if self.hostname.endswith(".") else self.hostname + "."

        addresses = []
        ttls = []
        errors = []
        for rdtype in ("A", "AAAA"):
            try:
                answer = resolver.resolve(qname, rdtype, search=False)
            except dns.resolver.NoAnswer:
                continue
            except dns.exception.DNSException as exc:
                log.debug("Lookup of %s %s failed: %s", self.hostname, rdtype, exc)
                errors.append(exc)
                continue
            ttls.append(answer.rrset.ttl)
            addresses.extend(rdata.address for rdata in answer)

        if not addresses:
            reason = errors[-1] if errors else "no A or AAAA records"
            raise EndpointUnresolvable(f"unable to resolve endpoint {self.hostname}: {reason}")
        return tuple(dict.fromkeys(addresses)), min(ttls)
