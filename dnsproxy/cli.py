import argparse
import logging
import signal
import sys
import threading

from dnsproxy import __version__
from dnsproxy.config import (
    DEFAULT_ENDPOINT,
    DEFAULT_LISTEN,
    DNS_PORT,
    QUERY_TIMEOUT,
    UPSTREAM_TIMEOUT,
    parse_host_port,
)
from dnsproxy.errors import ConfigurationError
from dnsproxy.handler import Handler, HandlerOptions
from dnsproxy.provider import Provider
from dnsproxy.server import serve

log = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
VERBOSITY = [logging.WARNING, logging.INFO, logging.DEBUG]


def build_parser():
    parser = argparse.ArgumentParser(
        prog="dnsproxy",
        description="A DNS-protocol proxy for DNS-over-HTTPS JSON services.",
    )
    parser.add_argument("-l", "--listen", default=DEFAULT_LISTEN, help="serve address (default %(default)s)")
    parser.add_argument(
        "-p", "--proxy",
        help="SOCKS, HTTP or Shadowsocks proxy for the HTTPS requests, e.g. socks5://127.0.0.1:1080 or ss://method:password@host:port",
    )
    parser.add_argument("--endpoint", default=DEFAULT_ENDPOINT, help="DNS-over-HTTPS JSON endpoint url (default %(default)s)")
    parser.add_argument(
        "--eip", "--endpoint-ips", dest="endpoint_ips", action="append", default=[],
        help="IPs of the endpoint; if provided, endpoint lookup is skipped (repeatable, comma separated)",
    )
    parser.add_argument(
        "-d", "--dns-servers", dest="dns_servers", action="append", default=[],
        help="DNS servers used to look up the endpoint; system default is used if absent",
    )
    parser.add_argument("-e", "--edns", help="EDNS client subnet sent upstream, e.g. 203.0.113.0/24")
    parser.add_argument("-N", "--no-pad", action="store_true", help="disable padding of requests to identical length buckets")
    parser.add_argument("-I", "--insecure", action="store_true", help="disable TLS certificate checks")
    parser.add_argument("-U", "--udp", action="store_true", help="listen on UDP")
    parser.add_argument("-T", "--tcp", action="store_true", help="listen on TCP")
    parser.add_argument("--timeout", type=float, default=QUERY_TIMEOUT, help="overall seconds per query (default %(default)s)")
    parser.add_argument(
        "--upstream-timeout", type=float, default=UPSTREAM_TIMEOUT,
        help="seconds per HTTPS attempt (default %(default)s)",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="more logging, repeat for debug")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="explicit log level")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def setup_logging(level):
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stderr)


def split_values(values):
    return [v.strip() for value in values for v in value.split(",") if v.strip()]


def install_signal_handlers(stop):
    def on_signal(signum, frame):
        log.info("Got %s, shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    level = args.log_level or VERBOSITY[min(args.verbose, len(VERBOSITY) - 1)]
    setup_logging(level)

    protocols = []
    if args.tcp:
        protocols.append("tcp")
    if args.udp:
        protocols.append("udp")
    if not protocols:
        parser.print_help()
        return 0

    if args.timeout <= 0:
        parser.error("--timeout must be positive")

    try:
        listen = parse_host_port(args.listen, DNS_PORT)
        provider = Provider.from_options(
            args.endpoint,
            endpoint_ips=split_values(args.endpoint_ips),
            dns_servers=split_values(args.dns_servers),
            proxy=args.proxy,
            edns=args.edns,
            pad=not args.no_pad,
            secure=not args.insecure,
            timeout=args.upstream_timeout,
        )
    except ConfigurationError as exc:
        log.error("%s", exc)
        return 1

    config = provider.config
    log.debug("EndpointIPs %s", list(config.endpoint_ips))
    log.debug("DNSServers %s", list(config.dns_servers))

    handler = Handler(provider, HandlerOptions(timeout=args.timeout))
    stop = threading.Event()
    install_signal_handlers(stop)
    try:
        serve(listen, protocols, handler, stop)
    except OSError as exc:
        log.error("Failed to set up the listeners on %s: %s", args.listen, exc)
        return 1
    finally:
        provider.close()
    return 0
