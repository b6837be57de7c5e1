"""
Brief: Tests for sqldns.sql.templates rendering, binding and compilation.

Inputs:
  - None

Outputs:
  - None
"""

import pytest
from dnslib import QTYPE

from sqldns.sql.errors import ConfigurationError, RenderError
from sqldns.sql.templates import (
    DEFAULT_QUERIES,
    QueryTemplate,
    compile_templates,
    parse_query_overrides,
    qtype_code,
)

DEFAULT_A = "SELECT name, ttl, addr FROM a_record WHERE name = '{{.Name}}'"


def test_defaults_cover_a_aaaa_cname():
    """
    Brief: Default queries exist for A, AAAA and CNAME only.

    Inputs:
      - None

    Outputs:
      - None: Asserts default keys and A text
    """
    assert set(DEFAULT_QUERIES) == {QTYPE.A, QTYPE.AAAA, QTYPE.CNAME}
    assert DEFAULT_QUERIES[QTYPE.A] == DEFAULT_A


def test_render_substitutes_name_verbatim():
    """
    Brief: render() splices the query name into the SQL text unchanged.

    Inputs:
      - None

    Outputs:
      - None: Asserts rendered SQL
    """
    t = QueryTemplate(DEFAULT_A)
    assert (
        t.render("www.example.org.", QTYPE.A)
        == "SELECT name, ttl, addr FROM a_record WHERE name = 'www.example.org.'"
    )
    # No escaping: this is the literal compatibility contract.
    assert t.render("a'b.example.org.", QTYPE.A).endswith("name = 'a'b.example.org.'")


def test_render_type_and_action_spellings():
    """
    Brief: Type renders as its number; the leading dot and spaces are optional.

    Inputs:
      - None

    Outputs:
      - None: Asserts rendered SQL
    """
    t = QueryTemplate("SELECT {{ .Type }}, '{{Name}}'")
    assert t.render("x.example.org.", 5) == "SELECT 5, 'x.example.org.'"


@pytest.mark.parametrize(
    "text",
    [
        "SELECT '{{.Name'",
        "SELECT '{{.Zone}}'",
        "SELECT '{{ }}'",
        "SELECT '{{.Name.Other}}'",
    ],
)
def test_malformed_templates_raise_render_error(text):
    """
    Brief: Unclosed actions, unknown variables and empty actions fail to render.

    Inputs:
      - text: malformed template

    Outputs:
      - None: Asserts RenderError
    """
    with pytest.raises(RenderError):
        QueryTemplate(text).render("www.example.org.", 1)


def test_bind_whole_literal_becomes_parameter():
    """
    Brief: A placeholder filling a whole string literal binds to %s.

    Inputs:
      - None

    Outputs:
      - None: Asserts SQL and params
    """
    bound = QueryTemplate(DEFAULT_A).bind("www.example.org.", QTYPE.A)
    assert bound.sql == "SELECT name, ttl, addr FROM a_record WHERE name = %s"
    assert bound.params == ("www.example.org.",)


def test_bind_bare_placeholder_and_other_literals():
    """
    Brief: Bare placeholders bind to %s; literals without placeholders stay.

    Inputs:
      - None

    Outputs:
      - None: Asserts SQL and params order
    """
    t = QueryTemplate(
        "SELECT name, ttl, addr FROM t WHERE kind = 'it''s' "
        "AND name = '{{.Name}}' AND type = {{.Type}}"
    )
    bound = t.bind("www.example.org.", 1)
    assert bound.sql == (
        "SELECT name, ttl, addr FROM t WHERE kind = 'it''s' "
        "AND name = %s AND type = %s"
    )
    assert bound.params == ("www.example.org.", 1)


def test_bind_embedded_placeholder_uses_concat():
    """
    Brief: A placeholder inside a longer literal becomes CONCAT(...).

    Inputs:
      - None

    Outputs:
      - None: Asserts SQL with and without percent escaping
    """
    t = QueryTemplate("SELECT name, ttl, addr FROM t WHERE name LIKE '%.{{.Name}}'")
    bound = t.bind("example.org.", 1)
    assert bound.sql == "SELECT name, ttl, addr FROM t WHERE name LIKE CONCAT('%%.', %s)"
    assert bound.params == ("example.org.",)

    unescaped = t.bind("example.org.", 1, escape_percent=False)
    assert unescaped.sql == "SELECT name, ttl, addr FROM t WHERE name LIKE CONCAT('%.', %s)"


def test_bind_embedded_placeholders_use_typed_text_param():
    """
    Brief: Values spliced into CONCAT use the driver's typed placeholder.

    Inputs:
      - None

    Outputs:
      - None: Asserts SQL and params for Name and Type inside literals
    """
    t = QueryTemplate(
        "SELECT name, ttl, addr FROM t WHERE name = 'x.{{.Name}}' "
        "AND kind = 't{{.Type}}' AND zone = '{{.Name}}'"
    )
    bound = t.bind("www.example.org.", 1, text_param="CAST(%s AS text)")
    assert bound.sql == (
        "SELECT name, ttl, addr FROM t WHERE name = CONCAT('x.', CAST(%s AS text)) "
        "AND kind = CONCAT('t', CAST(%s AS text)) AND zone = %s"
    )
    assert bound.params == ("www.example.org.", "1", "www.example.org.")


def test_bind_never_puts_name_in_sql_text():
    """
    Brief: A hostile query name only ever travels as a parameter.

    Inputs:
      - None

    Outputs:
      - None: Asserts SQL text free of the name
    """
    name = "x'; DROP TABLE a_record; --."
    bound = QueryTemplate(DEFAULT_A).bind(name, 1)
    assert name not in bound.sql
    assert bound.params == (name,)


def test_bind_rejects_ambiguous_literal_placeholder_without_escaping():
    """
    Brief: A literal '%s' cannot be told apart from a parameter when unescaped.

    Inputs:
      - None

    Outputs:
      - None: Asserts RenderError
    """
    t = QueryTemplate("SELECT name, ttl, addr FROM t WHERE name = '{{.Name}}' AND x = '%s'")
    with pytest.raises(RenderError):
        t.bind("www.example.org.", 1, escape_percent=False)


def test_bind_unterminated_literal():
    """
    Brief: An unterminated string literal cannot be bound.

    Inputs:
      - None

    Outputs:
      - None: Asserts RenderError
    """
    with pytest.raises(RenderError):
        QueryTemplate("SELECT 1 WHERE name = '{{.Name}}").bind("a.", 1)


def test_qtype_code_accepts_mnemonics_and_numbers():
    """
    Brief: Types may be configured by mnemonic in any case, or by number.

    Inputs:
      - None

    Outputs:
      - None: Asserts codes and unknown-type error
    """
    assert qtype_code("a") == QTYPE.A
    assert qtype_code("CNAME") == QTYPE.CNAME
    assert qtype_code("28") == QTYPE.AAAA
    with pytest.raises(ConfigurationError, match="unsupported type: bogus"):
        qtype_code("bogus")


def test_parse_query_overrides_merges_over_defaults():
    """
    Brief: Configured queries replace their type's default and keep the rest.

    Inputs:
      - None

    Outputs:
      - None: Asserts merged mapping
    """
    custom = "SELECT name, ttl, addr FROM tbl_a WHERE name = '{{.Name}}'"
    queries = parse_query_overrides({"a": custom})
    assert queries[QTYPE.A] == custom
    assert queries[QTYPE.CNAME] == DEFAULT_QUERIES[QTYPE.CNAME]
    assert queries[QTYPE.AAAA] == DEFAULT_QUERIES[QTYPE.AAAA]


def test_parse_query_overrides_rejects_unknown_type():
    """
    Brief: An unknown <type> key is a configuration error.

    Inputs:
      - None

    Outputs:
      - None: Asserts ConfigurationError
    """
    with pytest.raises(ConfigurationError):
        parse_query_overrides({"nosuchtype": "SELECT 1"})


@pytest.mark.parametrize("key", ["mx", "TXT", "15"])
def test_parse_query_overrides_rejects_types_without_mapping(key):
    """
    Brief: Only A, AAAA and CNAME queries may be configured.

    Inputs:
      - key: a valid record type that has no default query

    Outputs:
      - None: Asserts ConfigurationError naming the type
    """
    with pytest.raises(ConfigurationError, match="unsupported type"):
        parse_query_overrides({key: "SELECT name, ttl, host FROM mx WHERE name = '{{.Name}}'"})
    assert set(parse_query_overrides({"aaaa": "SELECT 1", "Cname": "SELECT 2"})) == {
        QTYPE.A,
        QTYPE.AAAA,
        QTYPE.CNAME,
    }


def test_compile_templates_reports_syntax_errors_as_configuration_errors():
    """
    Brief: Template syntax errors surface at configuration time.

    Inputs:
      - None

    Outputs:
      - None: Asserts ConfigurationError and successful lookup
    """
    with pytest.raises(ConfigurationError):
        compile_templates({QTYPE.A: "SELECT '{{.Nope}}'"})

    compiled = compile_templates(parse_query_overrides(None))
    assert compiled.get(QTYPE.A) == QueryTemplate(DEFAULT_A)
    assert compiled.get(QTYPE.MX) is None
    assert QTYPE.CNAME in compiled
    assert len(compiled) == 3
