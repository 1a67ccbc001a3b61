import datetime
import json
import ssl
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import dns.message
import dns.rdata
import dns.rdataclass
import dns.rdatatype
import dns.name
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from dnsproxy.config import ProviderConfig
from dnsproxy.decoder import Record, UpstreamAnswer
from dnsproxy.encoder import InboundQuery


def make_message(name="example.com.", rdtype="A", **kwargs):
    return dns.message.make_query(name, rdtype, **kwargs)


def make_inbound(name="example.com.", rdtype="A", transport="udp", **kwargs):
    return InboundQuery.from_message(make_message(name, rdtype, **kwargs), transport)


def json_answer(name="example.com.", rdtype=1, answers=(), status=0, **extra):
    """Body shaped like a dns.google.com/resolve answer."""
    payload = {
        "Status": status,
        "TC": False,
        "RD": True,
        "RA": True,
        "AD": False,
        "CD": False,
        "Question": [{"name": name, "type": rdtype}],
    }
    if answers:
        payload["Answer"] = list(answers)
    payload.update(extra)
    return json.dumps(payload).encode()


def a_record(name="example.com.", address="93.184.216.34", ttl=300):
    return {"name": name, "type": 1, "TTL": ttl, "data": address}


def upstream_answer(records=(), rcode=0):
    answer = UpstreamAnswer(rcode=rcode)
    for name, rdtype, ttl, data in records:
        answer.answer.append(
            Record(
                name=dns.name.from_text(name),
                rdtype=dns.rdatatype.from_text(rdtype),
                rdclass=dns.rdataclass.IN,
                ttl=ttl,
                rdata=dns.rdata.from_text(dns.rdataclass.IN, rdtype, data),
            )
        )
    return answer


@pytest.fixture
def config():
    return ProviderConfig.build(endpoint_ips=["192.0.2.1"], pad=False)


class _ResolveStub(BaseHTTPRequestHandler):
    """Answers GET /resolve with whatever the test put in ``server.reply``."""

    def do_GET(self):  # noqa: N802
        self.server.seen.append((self.path, dict(self.headers)))
        status, body = self.server.reply(self.path)
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if not self.server.drip:
            self.wfile.write(body)
            return
        # trickle the body out one byte at a time
        try:
            for i in range(len(body)):
                self.wfile.write(body[i:i + 1])
                time.sleep(self.server.drip)
        except (BrokenPipeError, ConnectionResetError):
            return  # client gave up

    def log_message(self, fmt, *args):  # quiet
        return


@pytest.fixture
def stub_upstream():
    srv = ThreadingHTTPServer(("127.0.0.1", 0), _ResolveStub)
    srv.daemon_threads = True
    srv.seen = []
    srv.drip = 0
    srv.reply = lambda path: (200, json_answer(answers=[a_record()]))
    t = threading.Thread(target=srv.serve_forever, daemon=True)
    t.start()
    try:
        yield srv
    finally:
        srv.shutdown()
        srv.server_close()


def write_self_signed(directory, hostname):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    certfile = directory / "server.crt.pem"
    keyfile = directory / "server.key.pem"
    certfile.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    keyfile.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
    )
    return certfile, keyfile


@pytest.fixture
def tls_upstream(tmp_path):
    """Stub upstream behind TLS that records the SNI name of every handshake."""
    certfile, keyfile = write_self_signed(tmp_path, "doh.test")
    srv = ThreadingHTTPServer(("127.0.0.1", 0), _ResolveStub)
    srv.daemon_threads = True
    srv.seen = []
    srv.drip = 0
    srv.server_names = []
    srv.reply = lambda path: (200, json_answer(answers=[a_record()]))

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(certfile, keyfile)
    context.sni_callback = lambda sslobj, server_name, ctx: srv.server_names.append(server_name)
    srv.socket = context.wrap_socket(srv.socket, server_side=True)

    t = threading.Thread(target=srv.serve_forever, daemon=True)
    t.start()
    try:
        yield srv
    finally:
        srv.shutdown()
        srv.server_close()
