"""Typed resource records and the row-to-record mapper table.

Brief:
  Result rows are positional: ``name, ttl, <type-specific fields>``. Each
  mapper validates the full row before building an immutable record, so a
  malformed row raises RowDecodeError instead of yielding a partial record.

Inputs:
  - Rows (sequences) produced by a DB-API cursor.

Outputs:
  - ARecord / CNAMERecord instances convertible to dnslib RR objects.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, ClassVar, Dict, Mapping, Optional, Sequence, Tuple

from dnslib import CLASS, CNAME, QTYPE, RR, A

from .errors import RowDecodeError

MAX_TTL = 2**32 - 1


@dataclass(frozen=True)
class ResourceRecord:
    """Brief: Common fields of every mapped record.

    Inputs:
      - name: Owner name as returned by the store.
      - ttl: Time to live in seconds (unsigned 32-bit).

    Outputs:
      - Immutable record; subclasses add their payload.
    """

    name: str
    ttl: int

    rtype: ClassVar[int] = 0

    def payload(self) -> str:
        raise NotImplementedError

    def rdata(self):
        raise NotImplementedError

    def dedup_key(self) -> Tuple[str, int, str]:
        """Brief: Identity used to collapse exact duplicates in a response."""
        owner = self.name.lower().rstrip(".") + "."
        return (owner, self.rtype, self.payload())

    def to_rr(self) -> RR:
        return RR(
            rname=self.name,
            rtype=self.rtype,
            rclass=CLASS.IN,
            ttl=self.ttl,
            rdata=self.rdata(),
        )


@dataclass(frozen=True)
class ARecord(ResourceRecord):
    address: str

    rtype: ClassVar[int] = QTYPE.A

    def payload(self) -> str:
        return self.address

    def rdata(self) -> A:
        return A(self.address)


@dataclass(frozen=True)
class CNAMERecord(ResourceRecord):
    target: str

    rtype: ClassVar[int] = QTYPE.CNAME

    def payload(self) -> str:
        return self.target.lower().rstrip(".") + "."

    def rdata(self) -> CNAME:
        return CNAME(self.target)


RowMapper = Callable[[Sequence[object]], ResourceRecord]


def _text(value: object, column: str) -> str:
    if isinstance(value, (bytes, bytearray)):
        try:
            value = bytes(value).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RowDecodeError(f"column {column!r} is not valid UTF-8") from exc
    if not isinstance(value, str):
        raise RowDecodeError(
            f"column {column!r} must be text, got {type(value).__name__}"
        )
    text = value.strip()
    if not text:
        raise RowDecodeError(f"column {column!r} is empty")
    return text


def _ttl(value: object) -> int:
    if isinstance(value, bool):
        raise RowDecodeError("column 'ttl' must be an integer, got bool")
    if isinstance(value, int):
        ttl = value
    elif isinstance(value, (str, bytes, bytearray)):
        text = value.decode("ascii", "replace") if not isinstance(value, str) else value
        try:
            ttl = int(text.strip())
        except ValueError as exc:
            raise RowDecodeError(f"column 'ttl' is not an integer: {value!r}") from exc
    else:
        # Decimal and similar numeric column types.
        try:
            ttl = int(value)  # type: ignore[call-overload]
        except (TypeError, ValueError) as exc:
            raise RowDecodeError(
                f"column 'ttl' must be an integer, got {type(value).__name__}"
            ) from exc
        if ttl != value:
            raise RowDecodeError(f"column 'ttl' is not integral: {value!r}")
    if ttl < 0 or ttl > MAX_TTL:
        raise RowDecodeError(f"column 'ttl' out of range: {ttl}")
    return ttl


def _columns(row: Sequence[object], names: Tuple[str, ...]) -> Sequence[object]:
    try:
        count = len(row)
    except TypeError as exc:
        raise RowDecodeError(f"row is not a sequence: {row!r}") from exc
    if count != len(names):
        raise RowDecodeError(
            f"expected {len(names)} columns ({', '.join(names)}), got {count}"
        )
    return row


def map_a(row: Sequence[object]) -> ARecord:
    """Brief: Map ``(name, ttl, addr)`` to an ARecord.

    Inputs:
      - row: Three-column result row; addr is an IP literal.

    Outputs:
      - ARecord with a normalized IPv4 address.

    Notes:
      - IPv4-mapped IPv6 literals (``::ffff:10.0.0.1``) are accepted and
        converted; any other IPv6 address cannot be carried by an A record.

    Example:
      >>> map_a(("www.example.org.", 300, "10.0.0.1"))
      ARecord(name='www.example.org.', ttl=300, address='10.0.0.1')
    """
    name, ttl, addr = _columns(row, ("name", "ttl", "addr"))
    raw = _text(addr, "addr")
    try:
        ip = ipaddress.ip_address(raw)
    except ValueError as exc:
        raise RowDecodeError(f"column 'addr' is not an IP address: {raw!r}") from exc
    if isinstance(ip, ipaddress.IPv6Address):
        if ip.ipv4_mapped is None:
            raise RowDecodeError(f"column 'addr' is IPv6 in an A row: {raw!r}")
        ip = ip.ipv4_mapped
    return ARecord(name=_text(name, "name"), ttl=_ttl(ttl), address=str(ip))


def map_cname(row: Sequence[object]) -> CNAMERecord:
    """Brief: Map ``(name, ttl, target)`` to a CNAMERecord."""
    name, ttl, target = _columns(row, ("name", "ttl", "target"))
    return CNAMERecord(
        name=_text(name, "name"), ttl=_ttl(ttl), target=_text(target, "target")
    )


class RecordMapper:
    """Brief: Immutable table from record type code to row mapper.

    Inputs:
      - table: Mapping of type code -> RowMapper. Defaults to A and CNAME.

    Outputs:
      - RecordMapper whose for_type() returns None for unmapped types.

    Notes:
      - AAAA has a default query template but no mapper, so AAAA lookups fail
        with UnsupportedTypeError. This matches the behaviour deployments rely
        on today.
    """

    __slots__ = ("_table",)

    def __init__(self, table: Optional[Mapping[int, RowMapper]] = None) -> None:
        base: Dict[int, RowMapper] = (
            dict(table) if table is not None else {QTYPE.A: map_a, QTYPE.CNAME: map_cname}
        )
        self._table: Mapping[int, RowMapper] = MappingProxyType(
            {int(k): v for k, v in base.items()}
        )

    def for_type(self, qtype: int) -> Optional[RowMapper]:
        return self._table.get(int(qtype))

    def types(self) -> Tuple[int, ...]:
        return tuple(sorted(self._table))
