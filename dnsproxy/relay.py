import argparse
import asyncio
import concurrent.futures
import logging
import threading

import pproxy

from dnsproxy.config import redact_proxy
from dnsproxy.errors import ConfigurationError

log = logging.getLogger(__name__)

LOOPBACK = "127.0.0.1"
START_TIMEOUT = 5.0


class Relay:
    """
    A pproxy listener on its own asyncio loop and thread.

    Connections accepted on ``listen`` are forwarded through ``remotes`` in
    order, or straight to their target when there are none. ``start()``
    returns once the socket is bound; ``address`` then holds the real port,
    which matters when listening on port 0.
    """

    def __init__(self, listen, remotes=()):
        try:
            self._server = pproxy.Server(listen)
            self._remotes = [pproxy.Connection(uri) for uri in remotes]
        except (argparse.ArgumentTypeError, ValueError) as exc:
            raise ConfigurationError(f"invalid proxy setting: {exc}") from exc
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name="proxy-relay", daemon=True)
        self._listener = None
        self.address = None

    def start(self):
        self._thread.start()
        future = asyncio.run_coroutine_threadsafe(self._listen(), self._loop)
        try:
            self._listener = future.result(START_TIMEOUT)
        except (OSError, concurrent.futures.TimeoutError) as exc:
            self.close()
            raise ConfigurationError(f"unable to start the proxy relay: {exc}") from exc
        self.address = self._listener.sockets[0].getsockname()[:2]
        return self

    async def _listen(self):
        return await self._server.start_server({"rserver": self._remotes, "verbose": log.debug})

    def close(self):
        if self._thread.is_alive():
            if self._listener is not None:
                self._loop.call_soon_threadsafe(self._listener.close)
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(START_TIMEOUT)
        if not self._loop.is_running():
            self._loop.close()


class ShadowsocksRelay(Relay):
    """SOCKS5 front for a Shadowsocks server, for HTTP clients that only speak SOCKS."""

    def __init__(self, uri):
        super().__init__(f"socks5://{LOOPBACK}:0", [uri])
        self.uri = uri

    @property
    def proxy_url(self):
        host, port = self.address
        return f"socks5h://{host}:{port}"

    def start(self):
        super().start()
        log.info("Relaying upstream traffic through %s via %s", redact_proxy(self.uri), self.proxy_url)
        return self
