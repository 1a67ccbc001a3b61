import threading
import time

import dns.resolver
import pytest

from dnsproxy.config import ProviderConfig
from dnsproxy.endpoint import MIN_CACHE_TTL, EndpointResolver
from dnsproxy.errors import EndpointUnresolvable


class _Address:
    def __init__(self, address):
        self.address = address


class _Answer(list):
    def __init__(self, addresses, ttl):
        super().__init__(_Address(a) for a in addresses)
        self.rrset = type("RRset", (), {"ttl": ttl})()


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def fake_dns(monkeypatch):
    """Replace dns.resolver.Resolver; ``records`` maps rdtype to addresses or an exception."""
    state = {"records": {}, "ttl": 300, "lookups": [], "created": [], "delay": 0, "started": threading.Event()}

    class FakeResolver:
        def __init__(self, configure=True):
            self.configure = configure
            self.nameservers = []
            self.nameserver_ports = {}
            self.lifetime = None
            state["created"].append(self)

        def resolve(self, qname, rdtype, search=None):
            state["lookups"].append((qname, rdtype))
            state["started"].set()
            if state["delay"]:
                time.sleep(state["delay"])
            result = state["records"].get(rdtype, dns.resolver.NoAnswer())
            if isinstance(result, Exception):
                raise result
            return _Answer(result, state["ttl"])

    monkeypatch.setattr(dns.resolver, "Resolver", FakeResolver)
    return state


def test_static_addresses_skip_lookup(fake_dns):
    resolver = EndpointResolver("dns.google.com", static_ips=("8.8.8.8", "8.8.4.4"))
    assert resolver.resolve() == ("8.8.8.8", "8.8.4.4")
    resolver.invalidate()
    assert resolver.resolve() == ("8.8.8.8", "8.8.4.4")
    assert fake_dns["created"] == []


def test_literal_endpoint_host_is_static(fake_dns):
    resolver = EndpointResolver.from_config(ProviderConfig.build(endpoint="https://1.1.1.1/dns-query"))
    assert resolver.static
    assert resolver.resolve() == ("1.1.1.1",)
    assert fake_dns["lookups"] == []


def test_lookup_collects_a_then_aaaa(fake_dns):
    fake_dns["records"] = {"A": ["142.250.1.1", "142.250.1.2"], "AAAA": ["2607:f8b0::1"]}
    resolver = EndpointResolver("dns.google.com")
    assert resolver.resolve() == ("142.250.1.1", "142.250.1.2", "2607:f8b0::1")
    assert fake_dns["lookups"] == [("dns.google.com.", "A"), ("dns.google.com.", "AAAA")]
    assert fake_dns["created"][0].configure is True


def test_lookup_uses_configured_servers(fake_dns):
    fake_dns["records"] = {"A": ["142.250.1.1"]}
    config = ProviderConfig.build(dns_servers=["9.9.9.9", "1.1.1.1:5353"])
    EndpointResolver.from_config(config).resolve()
    created = fake_dns["created"][0]
    assert created.configure is False
    assert created.nameservers == ["9.9.9.9", "1.1.1.1"]
    assert created.nameserver_ports == {"9.9.9.9": 53, "1.1.1.1": 5353}


def test_result_is_cached_until_ttl_expires(fake_dns):
    fake_dns["records"] = {"A": ["142.250.1.1"]}
    fake_dns["ttl"] = 600
    clock = FakeClock()
    resolver = EndpointResolver("dns.google.com", clock=clock)
    resolver.resolve()
    resolver.resolve()
    assert len(fake_dns["lookups"]) == 2

    clock.now += 599
    resolver.resolve()
    assert len(fake_dns["lookups"]) == 2

    fake_dns["records"] = {"A": ["142.250.9.9"]}
    clock.now += 2
    assert resolver.resolve() == ("142.250.9.9",)
    assert len(fake_dns["lookups"]) == 4


def test_short_ttl_is_floored(fake_dns):
    fake_dns["records"] = {"A": ["142.250.1.1"]}
    fake_dns["ttl"] = 5
    clock = FakeClock()
    resolver = EndpointResolver("dns.google.com", clock=clock)
    resolver.resolve()
    clock.now += MIN_CACHE_TTL - 1
    resolver.resolve()
    assert len(fake_dns["lookups"]) == 2


def test_unresolvable_endpoint(fake_dns):
    fake_dns["records"] = {"A": dns.resolver.NXDOMAIN(), "AAAA": dns.resolver.NXDOMAIN()}
    with pytest.raises(EndpointUnresolvable):
        EndpointResolver("doh.invalid").resolve()


def test_no_records_is_unresolvable(fake_dns):
    with pytest.raises(EndpointUnresolvable):
        EndpointResolver("dns.google.com").resolve()


def test_failed_refresh_keeps_stale_set(fake_dns):
    fake_dns["records"] = {"A": ["142.250.1.1"]}
    clock = FakeClock()
    resolver = EndpointResolver("dns.google.com", clock=clock)
    resolver.resolve()

    fake_dns["records"] = {"A": dns.resolver.NoNameservers(), "AAAA": dns.resolver.NoNameservers()}
    clock.now += 10_000
    assert resolver.resolve() == ("142.250.1.1",)


def test_invalidate_forces_refresh(fake_dns):
    fake_dns["records"] = {"A": ["142.250.1.1"]}
    resolver = EndpointResolver("dns.google.com")
    resolver.resolve()
    resolver.invalidate()
    fake_dns["records"] = {"A": ["142.250.2.2"]}
    assert resolver.resolve() == ("142.250.2.2",)


def test_concurrent_callers_share_one_refresh(fake_dns):
    fake_dns["records"] = {"A": ["142.250.1.1"], "AAAA": ["2607:f8b0::1"]}
    fake_dns["delay"] = 0.05
    resolver = EndpointResolver("dns.google.com")
    results = []

    def worker():
        results.append(resolver.resolve())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == [("142.250.1.1", "2607:f8b0::1")] * 8
    assert len(fake_dns["lookups"]) == 2


def test_readers_get_stale_set_while_refresh_runs(fake_dns):
    fake_dns["records"] = {"A": ["142.250.1.1"]}
    clock = FakeClock()
    resolver = EndpointResolver("dns.google.com", clock=clock)
    resolver.resolve()

    fake_dns["records"] = {"A": ["142.250.9.9"]}
    fake_dns["delay"] = 0.75
    fake_dns["started"].clear()
    clock.now += 10_000
    refresher = threading.Thread(target=resolver.resolve)
    refresher.start()
    assert fake_dns["started"].wait(2.0)

    started = time.monotonic()
    assert resolver.resolve() == ("142.250.1.1",)
    assert time.monotonic() - started < 0.2

    refresher.join()
    assert resolver.resolve() == ("142.250.9.9",)
