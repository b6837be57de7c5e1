from __future__ import annotations

import logging
from typing import Iterable, List, Set, Tuple

from dnslib import QTYPE, RCODE, DNSHeader, DNSRecord

from .records import ResourceRecord

logger = logging.getLogger(__name__)

DEFAULT_UDP_SIZE = 512
MAX_TCP_SIZE = 65535


def dedup_records(records: Iterable[ResourceRecord]) -> List[ResourceRecord]:
    """Brief: Drop exact duplicates (owner, type, payload), keeping first order.

    Example:
      >>> from sqldns.sql.records import ARecord
      >>> r = ARecord("www.example.org.", 300, "10.0.0.1")
      >>> len(dedup_records([r, r]))
      1
    """
    seen: Set[Tuple[str, int, str]] = set()
    out: List[ResourceRecord] = []
    for rec in records:
        key = rec.dedup_key()
        if key in seen:
            continue
        seen.add(key)
        out.append(rec)
    return out


def _client_opt(request: DNSRecord):
    for rr in getattr(request, "ar", None) or []:
        if rr.rtype == QTYPE.OPT:
            return rr
    return None


def max_response_size(request: DNSRecord, transport: str = "udp") -> int:
    """Brief: Largest response the requester can accept.

    Inputs:
      - request: Parsed client query.
      - transport: "udp" or "tcp".

    Outputs:
      - int: 65535 for TCP; the EDNS(0) payload size (at least 512) for UDP
        with an OPT record; otherwise 512.
    """
    if str(transport).lower() == "tcp":
        return MAX_TCP_SIZE
    opt = _client_opt(request)
    if opt is None:
        return DEFAULT_UDP_SIZE
    # OPT rclass carries the advertised UDP payload size.
    return min(MAX_TCP_SIZE, max(DEFAULT_UDP_SIZE, int(opt.rclass)))


def _new_reply(request: DNSRecord) -> DNSRecord:
    header = DNSHeader(
        id=request.header.id,
        qr=1,
        aa=1,
        ra=1,
        rd=request.header.rd,
        opcode=request.header.opcode,
    )
    return DNSRecord(header, q=request.q)


def assemble_response(
    request: DNSRecord,
    records: Iterable[ResourceRecord],
    transport: str = "udp",
) -> DNSRecord:
    """Brief: Build the authoritative reply for a set of mapped records.

    Inputs:
      - request: Parsed client query.
      - records: Records in store order.
      - transport: "udp" or "tcp"; selects the size limit.

    Outputs:
      - DNSRecord with AA and RA set, the request id and question echoed,
        duplicates removed and, when the answers do not fit, trailing answers
        dropped (TC set on UDP).

    Notes:
      - dnslib compresses names when packing, so the reply is always
        compressed.
    """
    reply = _new_reply(request)
    unique = dedup_records(records)
    for rec in unique:
        reply.add_answer(rec.to_rr())

    opt = _client_opt(request)
    if opt is not None:
        reply.add_ar(opt)

    limit = max_response_size(request, transport)
    size = len(reply.pack())
    if size <= limit:
        return reply

    dropped = 0
    while reply.rr and size > limit:
        reply.rr.pop()
        dropped += 1
        size = len(reply.pack())
    if str(transport).lower() != "tcp":
        reply.header.tc = 1
    logger.debug(
        "truncated %s response for %s: dropped %d of %d answers to fit %d bytes",
        transport,
        request.q.qname,
        dropped,
        len(unique),
        limit,
    )
    return reply


def servfail_response(request: DNSRecord) -> DNSRecord:
    """Brief: SERVFAIL reply echoing id and question."""
    reply = request.reply()
    reply.header.rcode = RCODE.SERVFAIL
    return reply

