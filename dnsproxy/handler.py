import logging
import struct
import time
from dataclasses import dataclass

import dns.exception
import dns.flags
import dns.message
import dns.opcode
import dns.rcode
import dns.rdataclass
import dns.rdatatype

from dnsproxy.config import QUERY_TIMEOUT
from dnsproxy.encoder import CLASSIC_PAYLOAD, InboundQuery
from dnsproxy.errors import MalformedInboundQuery, MalformedUpstreamResponse, QueryError

log = logging.getLogger(__name__)

HEADER_SIZE = 12
TCP_MAX_SIZE = 65535


@dataclass(frozen=True)
class HandlerOptions:
    timeout: float = QUERY_TIMEOUT


def error_response(message, rcode):
    response = dns.message.make_response(message)
    response.set_rcode(rcode)
    return response


def format_error(data):
    """FORMERR reply for bytes that do not parse as a DNS message.

    Only the header is trusted: the id, opcode and RD bit are echoed and every
    section count is zero.
    """
    flags = struct.unpack("!H", data[2:4])[0]
    # QR=1, keep opcode and RD, RCODE=1 (FORMERR)
    flags = 0x8000 | (flags & 0x7900) | dns.rcode.FORMERR
    return data[0:2] + struct.pack("!H", flags) + b"\x00" * 8


def wire_limit(message, transport):
    if transport == "tcp":
        return TCP_MAX_SIZE
    if message.edns >= 0:
        return max(message.payload, CLASSIC_PAYLOAD)
    return CLASSIC_PAYLOAD


class Handler:
    """
    DNS-facing side of the proxy.

    Every query that can be answered is answered: upstream and lookup failures
    turn into SERVFAIL with the client's id and question, so listeners only
    ever deal in wire bytes.
    """

    def __init__(self, provider, options=None, clock=time.monotonic):
        self.provider = provider
        self.options = options or HandlerOptions()
        self._clock = clock

    def handle(self, data, transport="udp"):
        """Return the reply bytes for ``data``, or None when nothing should be sent."""
        if len(data) >= 3 and data[2] & 0x80:
            log.debug("Ignoring DNS response received over %s", transport)
            return None
        try:
            message = dns.message.from_wire(data)
        except (dns.exception.DNSException, ValueError) as exc:
            log.info("Unparseable %s query (%d bytes): %s", transport, len(data), exc)
            if len(data) < HEADER_SIZE:
                return None
            return format_error(data)

        response = self.respond(message, transport)
        return self._to_wire(response, message, transport)

    def respond(self, message, transport="udp"):
        if message.opcode() != dns.opcode.QUERY:
            log.info("Refusing opcode %s for id %d", dns.opcode.to_text(message.opcode()), message.id)
            return error_response(message, dns.rcode.NOTIMP)

        try:
            query = InboundQuery.from_message(message, transport)
        except MalformedInboundQuery as exc:
            log.warning("Rejected query id %d: %s", message.id, exc)
            return error_response(message, dns.rcode.SERVFAIL)

        if query.rdclass != dns.rdataclass.IN:
            log.info("Refusing class %s query for %s", dns.rdataclass.to_text(query.rdclass), query.name)
            return error_response(message, dns.rcode.NOTIMP)

        qtext = f"{query.name} {dns.rdatatype.to_text(query.rdtype)}"
        log.debug("Resolving %s (id %d, %s)", qtext, query.id, transport)
        deadline = self._clock() + self.options.timeout
        try:
            response = self.provider.resolve(query, deadline=deadline)
        except MalformedUpstreamResponse as exc:
            log.error("Upstream broke the JSON API contract for %s: %s", qtext, exc)
        except QueryError as exc:
            log.warning("Failed to resolve %s: %s", qtext, exc)
        except Exception:
            log.exception("Unexpected error while resolving %s", qtext)
        else:
            log.debug("Answered %s with %s", qtext, dns.rcode.to_text(response.rcode()))
            return response
        return error_response(message, dns.rcode.SERVFAIL)

    def _to_wire(self, response, message, transport):
        limit = wire_limit(message, transport)
        try:
            return response.to_wire(max_size=limit)
        except dns.exception.TooBig:
            log.debug("Response for id %d exceeds %d bytes, truncating", message.id, limit)
        response.flags |= dns.flags.TC
        response.answer.clear()
        response.authority.clear()
        response.additional.clear()
        return response.to_wire(max_size=limit)
