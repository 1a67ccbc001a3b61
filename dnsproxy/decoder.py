import json
import logging
from dataclasses import dataclass, field
from typing import Optional

import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdata
import dns.rdataclass
import dns.rdatatype

from dnsproxy.errors import MalformedUpstreamResponse

log = logging.getLogger(__name__)

# JSON key -> UpstreamAnswer / dns.message.Message attribute
SECTIONS = (
    ("Answer", "answer"),
    ("Authority", "authority"),
    ("Additional", "additional"),
)

# some providers send TXT data without the surrounding quotes
QUOTED_TYPES = (dns.rdatatype.TXT, dns.rdatatype.SPF)


@dataclass(frozen=True)
class Record:
    name: dns.name.Name
    rdtype: int
    rdclass: int
    ttl: int
    rdata: dns.rdata.Rdata


@dataclass
class UpstreamAnswer:
    rcode: int
    tc: bool = False
    rd: bool = True
    ra: bool = True
    ad: bool = False
    cd: bool = False
    answer: list = field(default_factory=list)
    authority: list = field(default_factory=list)
    additional: list = field(default_factory=list)
    comment: Optional[str] = None


def decode(body, query):
    """
    Parse the JSON answer of the DoH service for ``query``.

    Raises MalformedUpstreamResponse when the body is not a JSON answer, when
    the echoed question is not the one asked, or when the service claims
    success but none of its answer records could be parsed. Single records
    that fail to parse are dropped.
    """
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise MalformedUpstreamResponse(f"upstream body is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedUpstreamResponse("upstream body is not a JSON object")

    status = payload.get("Status")
    if isinstance(status, bool) or not isinstance(status, int) or not 0 <= status <= 4095:
        raise MalformedUpstreamResponse(f"upstream sent an invalid Status {status!r}")

    _check_question(payload.get("Question"), query)

    comment = payload.get("Comment")
    answer = UpstreamAnswer(
        rcode=status,
        tc=bool(payload.get("TC", False)),
        rd=bool(payload.get("RD", True)),
        ra=bool(payload.get("RA", True)),
        ad=bool(payload.get("AD", False)),
        cd=bool(payload.get("CD", False)),
        comment=str(comment) if comment is not None else None,
    )

    for key, attr in SECTIONS:
        entries = payload.get(key) or []
        if not isinstance(entries, list):
            raise MalformedUpstreamResponse(f"upstream {key} section is not a list")
        records = getattr(answer, attr)
        for entry in entries:
            record = _parse_record(entry)
            if record is not None:
                records.append(record)

    sent = len(payload.get("Answer") or [])
    if sent and not answer.answer and status == dns.rcode.NOERROR:
        raise MalformedUpstreamResponse(f"none of the {sent} upstream answer records could be parsed")
    return answer


def _check_question(question, query):
    if not isinstance(question, list) or not question or not isinstance(question[0], dict):
        raise MalformedUpstreamResponse("upstream response carries no question")
    echoed = question[0]
    try:
        name = dns.name.from_text(echoed["name"])
        rdtype = int(echoed["type"])
    except (KeyError, TypeError, ValueError, dns.exception.DNSException) as exc:
        raise MalformedUpstreamResponse(f"unreadable upstream question {echoed!r}") from exc

    # dns.name.Name compares case-insensitively
    if name != query.name or rdtype != query.rdtype:
        raise MalformedUpstreamResponse(
            f"upstream answered {name} {dns.rdatatype.to_text(rdtype)} "
            f"for {query.name} {dns.rdatatype.to_text(query.rdtype)}"
        )


def _quote(text):
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _parse_record(entry):
    try:
        name = dns.name.from_text(entry["name"])
        rdtype = int(entry["type"])
        ttl = int(entry.get("TTL", 0))
        data = entry["data"]
        if rdtype == dns.rdatatype.OPT:
            return None
        if ttl < 0:
            raise ValueError(f"negative TTL {ttl}")
        if rdtype in QUOTED_TYPES and not data.startswith('"'):
            data = _quote(data)
        rdata = dns.rdata.from_text(dns.rdataclass.IN, rdtype, data)
    except (KeyError, TypeError, ValueError, AttributeError, dns.exception.DNSException) as exc:
        log.debug("Dropping upstream record %r: %s", entry, exc)
        return None
    return Record(name=name, rdtype=rdtype, rdclass=dns.rdataclass.IN, ttl=ttl, rdata=rdata)


def build_response(query, answer):
    """Turn an UpstreamAnswer into the reply to ``query``.

    Id, question, RD, CD and the EDNS DO bit come from the client's message;
    rcode, RA, AD and TC from the upstream.
    """
    response = dns.message.make_response(query.message)
    response.set_rcode(answer.rcode)
    flags = (
        (dns.flags.RA, answer.ra),
        (dns.flags.AD, answer.ad),
        (dns.flags.TC, answer.tc),
        (dns.flags.CD, query.checking_disabled),
    )
    for flag, enabled in flags:
        if enabled:
            response.flags |= flag
        else:
            response.flags &= ~int(flag)
    if query.dnssec_ok:
        response.ednsflags |= dns.flags.DO

    for _, attr in SECTIONS:
        section = getattr(response, attr)
        for record in getattr(answer, attr):
            rrset = response.find_rrset(
                section, record.name, record.rdclass, record.rdtype, record.rdata.covers(), create=True
            )
            rrset.add(record.rdata, record.ttl)
    return response
