import logging
import time
from dataclasses import replace

from dnsproxy import transport
from dnsproxy.config import SHADOWSOCKS_SCHEME, ProviderConfig
from dnsproxy.decoder import build_response, decode
from dnsproxy.encoder import encode
from dnsproxy.endpoint import EndpointResolver
from dnsproxy.errors import DeadlineExceeded, TransportFailure
from dnsproxy.relay import ShadowsocksRelay

log = logging.getLogger(__name__)


class Provider:
    """
    Answers one InboundQuery through the DoH JSON API.

    Endpoint addresses are tried in the order the resolver returns them; the
    first one that completes the HTTPS exchange wins. Decoding errors are not
    retried since the upstream did answer.

    A Shadowsocks proxy is served through a local relay that lives as long as
    the Provider; call close() when done.
    """

    def __init__(self, config, resolver=None, send=transport.send, clock=time.monotonic):
        self.config = config
        self.resolver = resolver or EndpointResolver.from_config(config)
        self._send = send
        self._clock = clock
        self.relay = None
        self.transport_config = config
        if config.proxy and config.proxy.startswith(f"{SHADOWSOCKS_SCHEME}://"):
            self.relay = ShadowsocksRelay(config.proxy).start()
            self.transport_config = replace(config, proxy=self.relay.proxy_url)
        if not config.secure:
            transport.silence_insecure_warnings()
            log.warning("TLS certificate validation is disabled for %s", config.endpoint.hostname)

    @classmethod
    def from_options(cls, endpoint, **options):
        # raises InvalidEndpointURL before anything is started
        return cls(ProviderConfig.build(endpoint=endpoint, **options))

    def resolve(self, query, deadline=None):
        addresses = self.resolver.resolve()
        request = encode(query, self.config)
        body = self._exchange(request, addresses, deadline)
        answer = decode(body, query)
        if answer.comment:
            log.debug("Upstream comment for %s: %s", query.name, answer.comment)
        return build_response(query, answer)

    def _exchange(self, request, addresses, deadline):
        last_error = None
        for address in addresses:
            timeout = self.config.timeout
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise DeadlineExceeded("query deadline passed before the upstream answered") from last_error
                timeout = min(timeout, remaining)

            try:
                return self._send(request, address, self.transport_config, timeout)
            except TransportFailure as exc:
                log.warning("Upstream %s failed: %s", address, exc)
                last_error = exc

        self.resolver.invalidate()
        raise TransportFailure(f"all {len(addresses)} endpoint address(es) failed") from last_error

    def close(self):
        if self.relay is not None:
            self.relay.close()
            self.relay = None
