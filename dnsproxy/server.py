import logging
import socket
import socketserver
import struct
import threading

log = logging.getLogger(__name__)

TCP_IDLE_TIMEOUT = 10.0


def recvn(sock, n):
    """Read exactly n bytes, or None if the peer closed first."""
    buf = b""
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            return None
        buf += chunk
    return buf


def format_address(address):
    host, port = address[0], address[1]
    return f"[{host}]:{port}" if ":" in host else f"{host}:{port}"


class UDPRequestHandler(socketserver.BaseRequestHandler):
    def handle(self):
        data, sock = self.request
        log.debug("Received DNS request from %s", format_address(self.client_address))
        reply = self.server.dns_handler.handle(data, "udp")
        if reply is None:
            return
        try:
            sock.sendto(reply, self.client_address)
        except OSError as exc:
            log.warning("Failed to send response to %s: %s", format_address(self.client_address), exc)


class TCPRequestHandler(socketserver.BaseRequestHandler):
    # length-prefixed messages, answered in order until the client goes quiet
    def handle(self):
        peer = format_address(self.client_address)
        self.request.settimeout(TCP_IDLE_TIMEOUT)
        try:
            while True:
                header = recvn(self.request, 2)
                if header is None:
                    return
                length = struct.unpack("!H", header)[0]
                data = recvn(self.request, length)
                if data is None:
                    return
                log.debug("Received DNS request from %s", peer)
                reply = self.server.dns_handler.handle(data, "tcp")
                if reply is not None:
                    self.request.sendall(struct.pack("!H", len(reply)) + reply)
        except socket.timeout:
            log.debug("Closing idle TCP connection from %s", peer)
        except OSError as exc:
            log.debug("TCP connection from %s dropped: %s", peer, exc)


def _family_for(host):
    return socket.AF_INET6 if ":" in host else socket.AF_INET


class UDPServer(socketserver.ThreadingUDPServer):
    def __init__(self, address, dns_handler):
        self.address_family = _family_for(address[0])
        self.dns_handler = dns_handler
        super().__init__(address, UDPRequestHandler)


class TCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True

    def __init__(self, address, dns_handler):
        self.address_family = _family_for(address[0])
        self.dns_handler = dns_handler
        super().__init__(address, TCPRequestHandler)


SERVERS = {"udp": UDPServer, "tcp": TCPServer}


def start_servers(address, protocols, dns_handler, stop=None):
    """Bind one listener per protocol and serve each from its own thread.

    A listener whose loop dies sets ``stop`` so the others shut down too.
    """
    servers = []
    try:
        for protocol in protocols:
            servers.append((protocol, SERVERS[protocol](address, dns_handler)))
    except OSError:
        for _, server in servers:
            server.server_close()
        raise

    def run(protocol, server):
        try:
            server.serve_forever()
        except Exception:
            log.exception("The %s listener failed", protocol)
            if stop is not None:
                stop.set()

    for protocol, server in servers:
        log.info("Starting %s service on %s", protocol, format_address(server.server_address))
        threading.Thread(target=run, args=(protocol, server), name=f"dns-{protocol}", daemon=True).start()
    return servers


def stop_servers(servers):
    # stop accepting, then wait for the in-flight request threads
    for protocol, server in servers:
        log.info("Shutting down %s on %s", protocol, format_address(server.server_address))
        server.shutdown()
        server.server_close()


def serve(address, protocols, dns_handler, stop):
    """Run the listeners until ``stop`` is set, then shut them down gracefully."""
    servers = start_servers(address, protocols, dns_handler, stop)
    try:
        stop.wait()
    finally:
        stop_servers(servers)
    log.info("Servers exited, stopping")
