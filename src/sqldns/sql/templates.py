"""Per-record-type SQL query templates.

Brief:
  Templates use the ``{{.Name}}`` / ``{{.Type}}`` action syntax. Two
  renderings are offered:

    - render(): plain textual substitution of the query name and numeric type
      into the SQL text, with no escaping. This is the compatibility contract
      and is what gets executed when parameterized execution is disabled.
    - bind(): the same template turned into driver parameters (``%s``) so the
      query name never becomes part of the SQL text.

Inputs:
  - Template strings from configuration (or the defaults below).

Outputs:
  - QueryTemplate / QueryTemplates objects and BoundQuery values.
"""

from __future__ import annotations

import functools
import logging
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple, Union

from dnslib import QTYPE, DNSError

from .errors import ConfigurationError, RenderError

logger = logging.getLogger(__name__)

TEMPLATE_VARIABLES = ("Name", "Type")

DEFAULT_QUERIES: Mapping[int, str] = MappingProxyType(
    {
        QTYPE.A: "SELECT name, ttl, addr FROM a_record WHERE name = '{{.Name}}'",
        QTYPE.AAAA: "SELECT name, ttl, addr FROM aaaa_record WHERE name = '{{.Name}}'",
        QTYPE.CNAME: "SELECT name, ttl, target FROM cname_record WHERE name = '{{.Name}}'",
    }
)

_ACTION = re.compile(r"^\s*\.?([A-Za-z_][A-Za-z0-9_]*)\s*$")


class _Var(str):
    """Marker type for a variable segment in a parsed template."""


Segment = Union[str, _Var]


@functools.lru_cache(maxsize=256)
def _parse(text: str) -> Tuple[Segment, ...]:
    """Brief: Split template text into literal and variable segments.

    Inputs:
      - text: Template source.

    Outputs:
      - tuple of segments; literals are ``str`` and variables are ``_Var``.

    Raises:
      - RenderError: unclosed ``{{``, empty action or unknown variable.
    """
    segments: List[Segment] = []
    pos = 0
    while True:
        start = text.find("{{", pos)
        if start == -1:
            if pos < len(text):
                segments.append(text[pos:])
            break
        if start > pos:
            segments.append(text[pos:start])
        end = text.find("}}", start + 2)
        if end == -1:
            raise RenderError(f"unclosed action at offset {start} in {text!r}")
        action = text[start + 2 : end]
        m = _ACTION.match(action)
        if m is None:
            raise RenderError(f"malformed action {{{{{action}}}}} in {text!r}")
        var = m.group(1)
        if var not in TEMPLATE_VARIABLES:
            raise RenderError(
                f"unknown variable {var!r} in {text!r}; "
                f"available: {', '.join(TEMPLATE_VARIABLES)}"
            )
        segments.append(_Var(var))
        pos = end + 2
    return tuple(segments)


@dataclass(frozen=True)
class BoundQuery:
    """Brief: SQL text with driver-style ``%s`` placeholders and their values."""

    sql: str
    params: Tuple[object, ...]


def _sql_quote(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


class QueryTemplate:
    """Brief: One query template; parsing is lazy and memoized per text.

    Inputs:
      - text: Template source, e.g.
        ``SELECT name, ttl, addr FROM a_record WHERE name = '{{.Name}}'``.

    Outputs:
      - QueryTemplate with render() and bind().

    Example:
      >>> t = QueryTemplate("SELECT * FROM t WHERE name = '{{.Name}}' AND type = {{.Type}}")
      >>> t.render("www.example.org.", 1)
      "SELECT * FROM t WHERE name = 'www.example.org.' AND type = 1"
    """

    __slots__ = ("text",)

    def __init__(self, text: str) -> None:
        self.text = str(text)

    def __repr__(self) -> str:
        return f"QueryTemplate({self.text!r})"

    def __eq__(self, other: object) -> bool:
        return isinstance(other, QueryTemplate) and other.text == self.text

    def __hash__(self) -> int:
        return hash(self.text)

    def segments(self) -> Tuple[Segment, ...]:
        return _parse(self.text)

    @staticmethod
    def _values(name: str, qtype: int) -> Dict[str, object]:
        return {"Name": str(name), "Type": int(qtype)}

    def render(self, name: str, qtype: int) -> str:
        """Brief: Substitute Name and Type directly into the template text.

        Inputs:
          - name: Query name as received (fully qualified).
          - qtype: Numeric record type code.

        Outputs:
          - str: Rendered SQL. The name is not escaped.
        """
        values = self._values(name, qtype)
        out: List[str] = []
        for seg in self.segments():
            if isinstance(seg, _Var):
                out.append(str(values[seg]))
            else:
                out.append(seg)
        return "".join(out)

    def bind(
        self,
        name: str,
        qtype: int,
        escape_percent: bool = True,
        text_param: str = "%s",
    ) -> BoundQuery:
        """Brief: Produce a parameterized query equivalent to render().

        Inputs:
          - name: Query name as received.
          - qtype: Numeric record type code.
          - escape_percent: Double literal ``%`` characters (pyformat drivers
            such as psycopg require this when parameters are passed).
          - text_param: Placeholder used for values spliced into CONCAT(...).
            Drivers that send strings untyped need a cast here, e.g.
            ``CAST(%s AS text)`` for PostgreSQL.

        Outputs:
          - BoundQuery with ``%s`` placeholders.

        Notes:
          - ``'{{.Name}}'`` (placeholder filling a whole string literal) binds
            to a plain ``%s``.
          - A placeholder inside a longer string literal turns that literal
            into ``CONCAT('prefix', %s, 'suffix')``.
          - Bare placeholders (``type = {{.Type}}``) bind to ``%s``.
        """
        values = self._values(name, qtype)
        sql: List[str] = []
        params: List[object] = []

        def _lit(text: str) -> str:
            if not escape_percent:
                if "%s" in text:
                    raise RenderError(
                        f"literal '%s' cannot be bound without percent escaping in {self.text!r}"
                    )
                return text
            return text.replace("%", "%%")

        outside = ""
        in_quote = False
        # Pieces of the current string literal: str for text, _Var for params.
        quoted: List[Segment] = []
        pending = ""

        for seg in self.segments():
            if isinstance(seg, _Var):
                if in_quote:
                    quoted.extend((pending, seg))
                    pending = ""
                else:
                    sql.append(_lit(outside) + "%s")
                    outside = ""
                    params.append(values[seg])
                continue

            i = 0
            while i < len(seg):
                ch = seg[i]
                if not in_quote:
                    if ch == "'":
                        in_quote = True
                        quoted, pending = [], ""
                    else:
                        outside += ch
                    i += 1
                    continue
                if ch == "'" and seg[i + 1 : i + 2] == "'":
                    pending += "'"
                    i += 2
                    continue
                if ch == "'":
                    quoted.append(pending)
                    pending = ""
                    in_quote = False
                    sql.append(
                        _lit(outside)
                        + self._bind_literal(quoted, values, params, _lit, text_param)
                    )
                    outside = ""
                else:
                    pending += ch
                i += 1

        if in_quote:
            raise RenderError(f"unterminated string literal in {self.text!r}")
        sql.append(_lit(outside))

        return BoundQuery(sql="".join(sql), params=tuple(params))

    @staticmethod
    def _bind_literal(
        pieces: List[Segment],
        values: Dict[str, object],
        params: List[object],
        lit,
        text_param: str = "%s",
    ) -> str:
        """Brief: Turn one string literal's pieces into SQL, appending params."""
        if not any(isinstance(p, _Var) for p in pieces):
            return lit(_sql_quote("".join(pieces)))
        parts: List[str] = []
        for piece in pieces:
            if isinstance(piece, _Var):
                parts.append(text_param)
                params.append(str(values[piece]))
            elif piece:
                parts.append(lit(_sql_quote(piece)))
        if len(parts) == 1:
            # The whole literal is one value; the column type decides.
            return "%s"
        return "CONCAT(" + ", ".join(parts) + ")"


class QueryTemplates:
    """Brief: Immutable mapping from record type code to QueryTemplate.

    Inputs:
      - templates: Mapping of type code -> QueryTemplate.

    Outputs:
      - Read-only lookup object; get() returns None for unsupported types.
    """

    __slots__ = ("_templates",)

    def __init__(self, templates: Mapping[int, QueryTemplate]) -> None:
        self._templates: Mapping[int, QueryTemplate] = MappingProxyType(
            {int(k): v for k, v in templates.items()}
        )

    def get(self, qtype: int) -> Optional[QueryTemplate]:
        return self._templates.get(int(qtype))

    def types(self) -> Tuple[int, ...]:
        return tuple(sorted(self._templates))

    def __len__(self) -> int:
        return len(self._templates)

    def __contains__(self, qtype: object) -> bool:
        try:
            return int(qtype) in self._templates  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return False


def qtype_code(name: Union[str, int]) -> int:
    """Brief: Resolve a record type mnemonic (``"a"``, ``"CNAME"``) or code to an int.

    Raises:
      - ConfigurationError: unknown mnemonic.
    """
    if isinstance(name, int):
        return int(name)
    text = str(name).strip()
    if text.isdigit():
        return int(text)
    try:
        return int(getattr(QTYPE, text.upper()))
    except (AttributeError, DNSError):
        raise ConfigurationError(f"unsupported type: {text}") from None


def parse_query_overrides(
    overrides: Optional[Mapping[Union[str, int], str]] = None,
) -> Dict[int, str]:
    """Brief: Merge configured per-type queries over DEFAULT_QUERIES.

    Inputs:
      - overrides: Mapping of type mnemonic (or code) -> template text. Only
        the types in DEFAULT_QUERIES (A, AAAA, CNAME) may be overridden.

    Outputs:
      - dict[int, str]: Type code -> template text.

    Example:
      >>> q = parse_query_overrides({"a": "SELECT name, ttl, addr FROM tbl_a WHERE name = '{{.Name}}'"})
      >>> q[1]
      "SELECT name, ttl, addr FROM tbl_a WHERE name = '{{.Name}}'"
    """
    queries = dict(DEFAULT_QUERIES)
    for key, text in (overrides or {}).items():
        code = qtype_code(key)
        if code not in DEFAULT_QUERIES:
            raise ConfigurationError(
                f"unsupported type: {key}; queries may be set for "
                + ", ".join(QTYPE.get(c, str(c)) for c in DEFAULT_QUERIES)
            )
        if not isinstance(text, str) or not text.strip():
            raise ConfigurationError(f"query for type {key} must be a non-empty string")
        queries[code] = text
    return queries


def compile_templates(queries: Mapping[int, str]) -> QueryTemplates:
    """Brief: Parse every template once at configuration time.

    Raises:
      - ConfigurationError: when any template has a syntax error.
    """
    compiled: Dict[int, QueryTemplate] = {}
    for code, text in queries.items():
        template = QueryTemplate(text)
        try:
            template.segments()
        except RenderError as exc:
            raise ConfigurationError(
                f"invalid query template for type {QTYPE.get(int(code), code)}: {exc}"
            ) from exc
        compiled[int(code)] = template
    logger.debug("compiled %d query templates", len(compiled))
    return QueryTemplates(compiled)
