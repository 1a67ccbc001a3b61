import random
import string
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import quote, urlencode

import dns.edns
import dns.flags
import dns.message
import dns.name

from dnsproxy import __version__
from dnsproxy.errors import MalformedInboundQuery

# request targets are padded up to a multiple of this many bytes
PADDING_BLOCK = 128
PADDING_PARAM = "random_padding"
# unreserved URL characters, never percent-encoded
PADDING_ALPHABET = string.ascii_letters + string.digits + "-._~"

CLASSIC_PAYLOAD = 512
USER_AGENT = f"dnsproxy/{__version__}"

_random = random.SystemRandom()


@dataclass(frozen=True)
class InboundQuery:
    id: int
    name: dns.name.Name
    rdtype: int
    rdclass: int
    payload: int
    dnssec_ok: bool
    checking_disabled: bool
    client_subnet: Optional[str]
    transport: str
    message: dns.message.Message = field(compare=False, repr=False)

    @classmethod
    def from_message(cls, message, transport="udp"):
        if len(message.question) != 1:
            raise MalformedInboundQuery(f"expected exactly one question, got {len(message.question)}")
        question = message.question[0]

        payload = CLASSIC_PAYLOAD
        subnet = None
        if message.edns >= 0:
            payload = max(message.payload, CLASSIC_PAYLOAD)
            for option in message.options:
                if isinstance(option, dns.edns.ECSOption):
                    subnet = f"{option.address}/{option.srclen}"

        return cls(
            id=message.id,
            name=question.name,
            rdtype=question.rdtype,
            rdclass=question.rdclass,
            payload=payload,
            dnssec_ok=bool(message.ednsflags & dns.flags.DO),
            checking_disabled=bool(message.flags & dns.flags.CD),
            client_subnet=subnet,
            transport=transport,
            message=message,
        )


@dataclass(frozen=True)
class EncodedRequest:
    method: str
    target: str
    headers: dict


def encode(query, config):
    """
    Build the GET request for the JSON API.

    Parameters are ``name``, the numeric ``type``, ``cd``/``do`` when the
    client set those bits and ``edns_client_subnet`` (the client's own ECS
    option wins over the configured subnet). With padding on, a
    ``random_padding`` value brings the request target length up to the next
    multiple of PADDING_BLOCK.
    """
    endpoint = config.endpoint
    params = [("name", query.name.to_text()), ("type", str(query.rdtype))]
    if query.checking_disabled:
        params.append(("cd", "1"))
    if query.dnssec_ok:
        params.append(("do", "1"))
    subnet = query.client_subnet or config.edns
    if subnet:
        params.append(("edns_client_subnet", subnet))

    encoded = urlencode(params, quote_via=quote)
    if endpoint.query:
        encoded = f"{endpoint.query}&{encoded}"
    target = f"{endpoint.path}?{encoded}"

    if config.pad:
        prefix = f"{target}&{PADDING_PARAM}="
        size = -len(prefix) % PADDING_BLOCK
        target = prefix + "".join(_random.choice(PADDING_ALPHABET) for _ in range(size))

    headers = {
        "Accept": "application/dns-json",
        "User-Agent": USER_AGENT,
    }
    return EncodedRequest(method="GET", target=target, headers=headers)
