"""
Brief: Tests for sqldns.sql.mysql using a fake mysql.connector module.

Inputs:
  - None

Outputs:
  - None
"""

import sys
import types
from typing import Any, Dict, List

import pytest

from sqldns.sql.errors import ConfigurationError
from sqldns.sql.mysql import (
    MySQLRecordStore,
    build_mysql_connect_kwargs,
    mysql_tls_kwargs,
)
from sqldns.sql.records import map_cname
from sqldns.sql.store import TLSArgs, open_record_store


class _FakeCursor:
    def __init__(self, conn: "_FakeConn") -> None:
        self.conn = conn

    def execute(self, sql: str, params: Any = None) -> None:
        self.conn.executed.append((sql, params))

    def fetchall(self) -> List[Any]:
        return [("alias.example.org.", 60, "www.example.org.")]

    def close(self) -> None:
        return None


class _FakeConn:
    """
    Brief: mysql.connector-like connection recording kwargs and statements.

    Inputs:
      - **kwargs: keyword arguments given to connect()

    Outputs:
      - Connection with cursor(), commit(), shutdown() and close().
    """

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs: Dict[str, Any] = dict(kwargs)
        self.executed: List[Any] = []
        self.shut_down = False

    def cursor(self) -> _FakeCursor:
        return _FakeCursor(self)

    def commit(self) -> None:
        return None

    def shutdown(self) -> None:
        self.shut_down = True

    def close(self) -> None:
        return None


@pytest.fixture
def fake_mysql_driver(monkeypatch: pytest.MonkeyPatch):
    """
    Brief: Install a fake mysql.connector module that returns _FakeConn objects.

    Inputs:
      - monkeypatch: pytest monkeypatch fixture.

    Outputs:
      - list of _FakeConn objects created through the fake driver.
    """
    created: List[_FakeConn] = []
    driver_mod = types.ModuleType("mysql.connector")

    def _connect(**kwargs: Any) -> _FakeConn:
        conn = _FakeConn(**kwargs)
        created.append(conn)
        return conn

    driver_mod.connect = _connect  # type: ignore[attr-defined]
    mysql_pkg = types.ModuleType("mysql")
    mysql_pkg.connector = driver_mod  # type: ignore[attr-defined]

    monkeypatch.setitem(sys.modules, "mysql", mysql_pkg)
    monkeypatch.setitem(sys.modules, "mysql.connector", driver_mod)
    return created


def test_connect_kwargs_from_url_and_tls():
    """
    Brief: URL parts, query parameters and TLS args become connect() kwargs.

    Inputs:
      - None

    Outputs:
      - None: Asserts kwargs
    """
    kw = build_mysql_connect_kwargs(
        "mysql://dns:p%40ss@db:3307/coredns?connect_timeout=5&autocommit=true&charset=utf8mb4",
        ["c.crt", "c.key", "ca.pem"],
    )
    assert kw == {
        "host": "db",
        "port": 3307,
        "user": "dns",
        "password": "p@ss",
        "database": "coredns",
        "connect_timeout": 5,
        "autocommit": True,
        "charset": "utf8mb4",
        "ssl_ca": "ca.pem",
        "ssl_verify_cert": True,
        "ssl_cert": "c.crt",
        "ssl_key": "c.key",
    }


def test_connect_kwargs_defaults():
    """
    Brief: Missing host and port fall back to 127.0.0.1:3306.

    Inputs:
      - None

    Outputs:
      - None: Asserts defaults
    """
    kw = build_mysql_connect_kwargs("mysql:///dns")
    assert kw == {"host": "127.0.0.1", "port": 3306, "database": "dns"}


def test_tls_kwargs_for_ca_only_and_client_cert():
    """
    Brief: CA-only TLS verifies the server; cert+key adds client identity.

    Inputs:
      - None

    Outputs:
      - None: Asserts kwargs
    """
    assert mysql_tls_kwargs(TLSArgs.from_args(["ca.pem"])) == {
        "ssl_ca": "ca.pem",
        "ssl_verify_cert": True,
    }
    assert mysql_tls_kwargs(TLSArgs.from_args(["c.crt", "c.key"])) == {
        "ssl_cert": "c.crt",
        "ssl_key": "c.key",
    }


def test_invalid_port_is_configuration_error():
    """
    Brief: A non-numeric port cannot be used.

    Inputs:
      - None

    Outputs:
      - None: Asserts ConfigurationError
    """
    with pytest.raises(ConfigurationError):
        build_mysql_connect_kwargs("mysql://db:notaport/dns")


def test_two_stores_keep_independent_tls(fake_mysql_driver):
    """
    Brief: TLS settings are per store; nothing leaks between instances.

    Inputs:
      - fake_mysql_driver: fake driver fixture

    Outputs:
      - None: Asserts per-connection kwargs
    """
    secure = open_record_store("mysql://dns@db1/dns", ["ca.pem"])
    plain = open_record_store("mysql://dns@db2/dns")
    assert isinstance(secure, MySQLRecordStore)
    secure.execute("SELECT 1", map_cname)
    plain.execute("SELECT 1", map_cname)
    first, second = fake_mysql_driver
    assert first.kwargs["ssl_ca"] == "ca.pem"
    assert "ssl_ca" not in second.kwargs


def test_store_executes_bound_query_and_maps_rows(fake_mysql_driver):
    """
    Brief: Bound queries reach mysql.connector with their parameters.

    Inputs:
      - fake_mysql_driver: fake driver fixture

    Outputs:
      - None: Asserts driver call and mapped CNAME record
    """
    store = MySQLRecordStore("mysql://dns:pw@db/dns")
    assert store.escape_percent is False
    records = store.execute(
        "SELECT name, ttl, target FROM cname_record WHERE name = %s",
        map_cname,
        params=("alias.example.org.",),
    )
    assert [r.target for r in records] == ["www.example.org."]
    assert fake_mysql_driver[0].executed == [
        ("SELECT name, ttl, target FROM cname_record WHERE name = %s", ("alias.example.org.",))
    ]


def test_interrupt_shuts_down_socket(fake_mysql_driver):
    """
    Brief: Interrupting a MySQL query shuts the connection socket down.

    Inputs:
      - fake_mysql_driver: fake driver fixture

    Outputs:
      - None: Asserts shutdown() called
    """
    store = MySQLRecordStore("mysql://db/dns")
    conn = _FakeConn()
    store._interrupt(conn)
    assert conn.shut_down is True


def test_missing_driver_is_configuration_error(monkeypatch):
    """
    Brief: Without mysql-connector-python a mysql URL cannot be used.

    Inputs:
      - monkeypatch: used to hide mysql.connector

    Outputs:
      - None: Asserts ConfigurationError
    """
    monkeypatch.setitem(sys.modules, "mysql.connector", None)
    with pytest.raises(ConfigurationError, match="mysql-connector-python"):
        MySQLRecordStore("mysql://db/dns")
