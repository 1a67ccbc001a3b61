import base64
import binascii
import ipaddress
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlsplit

from dnsproxy.errors import ConfigurationError, InvalidEndpointURL

DEFAULT_ENDPOINT = "https://dns.google.com/resolve"
DEFAULT_LISTEN = ":5300"
DNS_PORT = 53

# timeout params
UPSTREAM_TIMEOUT = 3.0
QUERY_TIMEOUT = 5.0

DEFAULT_PORTS = {"http": 80, "https": 443}
PROXY_SCHEMES = ("socks4", "socks4a", "socks5", "socks5h", "http", "https")
SHADOWSOCKS_SCHEME = "ss"


def parse_host_port(value, default_port):
    """Split ``host``, ``host:port``, ``:port``, ``[v6]`` or ``[v6]:port``.

    A bare IPv6 address without brackets is taken as a host with no port.
    """
    value = value.strip()
    if value.startswith("["):
        host, sep, rest = value[1:].partition("]")
        if not sep or (rest and not rest.startswith(":")):
            raise ConfigurationError(f"malformed address {value!r}")
        port = rest[1:] if rest else None
    elif value.count(":") > 1:
        host, port = value, None
    else:
        host, sep, port = value.partition(":")
        if sep and not port:
            raise ConfigurationError(f"missing port in {value!r}")
        port = port or None

    if port is None:
        return host, default_port
    try:
        port = int(port)
    except ValueError:
        raise ConfigurationError(f"invalid port in {value!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigurationError(f"port out of range in {value!r}")
    return host, port


def parse_ip(value):
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        raise ConfigurationError(f"unable to parse IP from string {value!r}") from None


def parse_dns_server(value):
    host, port = parse_host_port(value, DNS_PORT)
    return parse_ip(host), port


def parse_edns(value):
    if not value:
        return None
    try:
        return str(ipaddress.ip_network(value.strip(), strict=False))
    except ValueError:
        raise ConfigurationError(f"invalid EDNS client subnet {value!r}") from None


def parse_proxy(value):
    """Normalise a proxy address into a URL the transport understands.

    ``host:port`` without a scheme is taken as a SOCKS5 proxy that resolves
    names itself. Shadowsocks servers are given as
    ``ss://method:password@host:port``; the SIP002 form with base64 user info
    is accepted too and rewritten to the plain one.
    """
    if not value:
        return None
    value = value.strip()
    if "://" not in value:
        value = f"socks5h://{value}"
    parts = urlsplit(value)
    scheme = parts.scheme.lower()
    if scheme != SHADOWSOCKS_SCHEME and scheme not in PROXY_SCHEMES:
        raise ConfigurationError(f"unsupported proxy scheme {parts.scheme!r}")
    try:
        port = parts.port
    except ValueError:
        raise ConfigurationError(f"invalid proxy port in {redact_proxy(value)!r}") from None
    if not parts.hostname or port is None:
        raise ConfigurationError(f"proxy address needs a host and a port: {redact_proxy(value)!r}")
    if scheme == SHADOWSOCKS_SCHEME:
        return _parse_shadowsocks(parts)
    return value


def _parse_shadowsocks(parts):
    userinfo, _, hostport = parts.netloc.rpartition("@")
    if userinfo and ":" not in userinfo:
        try:
            userinfo = base64.urlsafe_b64decode(userinfo + "=" * (-len(userinfo) % 4)).decode()
        except (binascii.Error, UnicodeDecodeError):
            raise ConfigurationError("shadowsocks user info is neither method:password nor base64") from None
    method, _, password = userinfo.partition(":")
    if not method or not password:
        raise ConfigurationError(f"shadowsocks proxy needs a method and a password: ss://{hostport}")
    return f"{SHADOWSOCKS_SCHEME}://{method.lower()}:{password}@{hostport}"


def redact_proxy(url):
    """The proxy URL with any password masked, for logs and error messages."""
    parts = urlsplit(url)
    userinfo, sep, hostport = parts.netloc.rpartition("@")
    if not sep:
        return url
    user = userinfo.partition(":")[0] if ":" in userinfo else ""
    return f"{parts.scheme}://{user}:***@{hostport}"


@dataclass(frozen=True)
class Endpoint:
    scheme: str
    hostname: str
    port: Optional[int]
    path: str
    query: str

    @classmethod
    def parse(cls, url):
        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError as exc:
            raise InvalidEndpointURL(f"unable to parse endpoint {url!r}: {exc}") from exc
        scheme = parts.scheme.lower()
        if scheme not in DEFAULT_PORTS:
            raise InvalidEndpointURL(f"endpoint {url!r} must be an http or https URL")
        if not parts.hostname:
            raise InvalidEndpointURL(f"endpoint {url!r} has no host")
        if parts.username is not None or parts.password is not None:
            raise InvalidEndpointURL(f"endpoint {url!r} must not carry credentials")
        if parts.fragment:
            raise InvalidEndpointURL(f"endpoint {url!r} must not carry a fragment")
        return cls(
            scheme=scheme,
            hostname=parts.hostname,
            port=port,
            path=parts.path or "/",
            query=parts.query,
        )

    @property
    def effective_port(self):
        return self.port or DEFAULT_PORTS[self.scheme]

    @property
    def host_header(self):
        host = f"[{self.hostname}]" if ":" in self.hostname else self.hostname
        if self.port and self.port != DEFAULT_PORTS[self.scheme]:
            return f"{host}:{self.port}"
        return host

    @property
    def literal_address(self):
        """The endpoint host when it is already an IP address, else None."""
        try:
            return str(ipaddress.ip_address(self.hostname))
        except ValueError:
            return None

    def base_url(self, address):
        host = f"[{address}]" if ":" in address else address
        return f"{self.scheme}://{host}:{self.effective_port}"


@dataclass(frozen=True)
class ProviderConfig:
    endpoint: Endpoint
    endpoint_ips: Tuple[str, ...] = ()
    proxy: Optional[str] = None
    edns: Optional[str] = None
    pad: bool = True
    secure: bool = True
    dns_servers: Tuple[Tuple[str, int], ...] = ()
    timeout: float = UPSTREAM_TIMEOUT

    @classmethod
    def build(
        cls,
        endpoint=DEFAULT_ENDPOINT,
        endpoint_ips=(),
        proxy=None,
        edns=None,
        pad=True,
        secure=True,
        dns_servers=(),
        timeout=UPSTREAM_TIMEOUT,
    ):
        """Validate raw option values once; any bad value is fatal."""
        if timeout is None or timeout <= 0:
            raise ConfigurationError(f"timeout must be positive, got {timeout!r}")
        return cls(
            endpoint=Endpoint.parse(endpoint),
            endpoint_ips=tuple(dict.fromkeys(parse_ip(ip) for ip in endpoint_ips)),
            proxy=parse_proxy(proxy),
            edns=parse_edns(edns),
            pad=bool(pad),
            secure=bool(secure),
            dns_servers=tuple(parse_dns_server(d) for d in dns_servers),
            timeout=float(timeout),
        )
