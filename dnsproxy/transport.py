import logging
import time

import requests
import urllib3
from requests.adapters import HTTPAdapter

from dnsproxy.errors import DeadlineExceeded, TransportFailure

log = logging.getLogger(__name__)

# small reads so a slowly trickling body is noticed between chunks
READ_CHUNK = 16
MAX_BODY = 65536


class HostPinningAdapter(HTTPAdapter):
    """
    HTTPS adapter for URLs that name the endpoint by IP address.

    The connection goes to the address in the URL, but SNI and certificate
    matching use ``hostname``. Proxy managers get the same treatment, so this
    holds when tunnelling through SOCKS as well.
    """

    def __init__(self, hostname, secure=True, **kwargs):
        self._pin_kwargs = {
            "server_hostname": hostname,
            "assert_hostname": hostname if secure else False,
        }
        super().__init__(**kwargs)

    def init_poolmanager(self, *args, **kwargs):
        kwargs.update(self._pin_kwargs)
        super().init_poolmanager(*args, **kwargs)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        proxy_kwargs.update(self._pin_kwargs)
        return super().proxy_manager_for(proxy, **proxy_kwargs)


def silence_insecure_warnings():
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


def send(request, address, config, timeout, clock=time.monotonic):
    """Perform one HTTPS exchange against ``address`` and return the body.

    ``timeout`` bounds the whole exchange, not just each socket read: the body
    is streamed in small chunks and abandoned once the time is up. Never
    retries; any failure is raised as TransportFailure.
    """
    endpoint = config.endpoint
    url = endpoint.base_url(address) + request.target
    headers = dict(request.headers, Host=endpoint.host_header)
    proxies = {"http": config.proxy, "https": config.proxy} if config.proxy else None
    deadline = clock() + timeout

    log.debug("GET %s via %s", request.target, address)
    with requests.Session() as session:
        # only --proxy applies, not *_PROXY from the environment
        session.trust_env = False
        if endpoint.scheme == "https":
            session.mount("https://", HostPinningAdapter(endpoint.hostname, secure=config.secure))
        try:
            response = session.request(
                request.method,
                url,
                headers=headers,
                proxies=proxies,
                timeout=timeout,
                verify=config.secure,
                allow_redirects=False,
                stream=True,
            )
            with response:
                if response.status_code // 100 != 2:
                    raise TransportFailure(f"{address} answered HTTP {response.status_code} {response.reason}")
                return read_body(response, address, deadline, clock)
        except requests.RequestException as exc:
            raise TransportFailure(f"request to {address} failed: {exc}") from exc


def read_body(response, address, deadline, clock=time.monotonic):
    body = bytearray()
    for chunk in response.iter_content(READ_CHUNK):
        body += chunk
        if len(body) > MAX_BODY:
            raise TransportFailure(f"{address} sent more than {MAX_BODY} bytes")
        if clock() >= deadline:
            raise DeadlineExceeded(f"{address} did not finish its answer in time")
    return bytes(body)
