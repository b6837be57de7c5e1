from __future__ import annotations

import logging
from typing import Iterable, Optional, Tuple

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def normalize_zone(text: str) -> str:
    """Brief: Normalize a configured zone into a lowercase FQDN with trailing dot.

    Inputs:
      - text: Zone as written in configuration. Accepts an optional
        ``dns://`` scheme and ``:port`` suffix (server block style).

    Outputs:
      - str: Normalized zone, e.g. ``"example.org."``; ``"."`` for the root.

    Example:
      >>> normalize_zone("dns://Example.ORG:53")
      'example.org.'
    """
    zone = str(text).strip()
    if "://" in zone:
        zone = zone.split("://", 1)[1]
    # Bracketed IPv6 hosts are not zones; only strip a trailing :port.
    host, sep, port = zone.rpartition(":")
    if sep and port.isdigit() and host:
        zone = host
    zone = zone.strip().lower()
    if not zone or zone == ".":
        return "."
    return zone.rstrip(".") + "."


def normalize_qname(qname: object) -> str:
    """Brief: Lowercase a query name and ensure exactly one trailing dot."""
    name = str(qname).strip().lower()
    if not name or name == ".":
        return "."
    return name.rstrip(".") + "."


class ZoneMatcher:
    """Brief: Longest-suffix matcher over an immutable set of zones.

    Inputs:
      - zones: Iterable of zone strings; each is normalized with normalize_zone.

    Outputs:
      - ZoneMatcher whose match() returns the most specific zone covering a
        name, or None when the name is outside every zone.

    Example:
      >>> m = ZoneMatcher(["example.org", "a.example.org"])
      >>> m.match("x.a.example.org.")
      'a.example.org.'
      >>> m.match("www.other.org.") is None
      True
    """

    __slots__ = ("_zones",)

    def __init__(self, zones: Iterable[str]) -> None:
        normalized = list(dict.fromkeys(normalize_zone(z) for z in zones))
        if not normalized:
            raise ConfigurationError("at least one zone is required")
        # Longest first so the first hit is the most specific zone.
        self._zones: Tuple[str, ...] = tuple(
            sorted(normalized, key=len, reverse=True)
        )

    @property
    def zones(self) -> Tuple[str, ...]:
        return self._zones

    def match(self, qname: object) -> Optional[str]:
        name = normalize_qname(qname)
        for zone in self._zones:
            if zone == "." or name == zone or name.endswith("." + zone):
                return zone
        return None

    def __repr__(self) -> str:
        return f"ZoneMatcher({list(self._zones)!r})"
