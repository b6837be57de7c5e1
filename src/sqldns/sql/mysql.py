"""MySQL/MariaDB-backed RecordStore.

Inputs:
  - Connection URL with ``mysql`` scheme and an optional positional TLS
    argument list.

Outputs:
  - MySQLRecordStore, which connects through mysql.connector with keyword
    arguments derived from the URL. TLS settings travel in those keyword
    arguments for this store only; nothing is registered process-wide.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence
from urllib.parse import parse_qsl, unquote, urlsplit

from .errors import ConfigurationError
from .store import RecordStore, TLSArgs

logger = logging.getLogger(__name__)


def _import_mysql_driver():
    """Import and return the mysql.connector module.

    Raises:
        ConfigurationError: When mysql-connector-python is not installed.
    """
    try:
        import mysql.connector as driver  # type: ignore[import]
    except ImportError as exc:
        raise ConfigurationError(
            "MySQL support requires the 'mysql-connector-python' package"
        ) from exc
    return driver


def _coerce(value: str) -> Any:
    lowered = value.strip().lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    if lowered.lstrip("-").isdigit():
        return int(lowered)
    return value


def mysql_tls_kwargs(tls: TLSArgs) -> Dict[str, Any]:
    """Brief: Map TLS arguments onto mysql.connector ssl_* keyword arguments.

    Example:
      >>> mysql_tls_kwargs(TLSArgs.from_args(["ca.pem"]))
      {'ssl_ca': 'ca.pem', 'ssl_verify_cert': True}
    """
    kwargs: Dict[str, Any] = {}
    if tls.ca_file:
        kwargs["ssl_ca"] = tls.ca_file
        kwargs["ssl_verify_cert"] = True
    if tls.cert_file:
        kwargs["ssl_cert"] = tls.cert_file
    if tls.key_file:
        kwargs["ssl_key"] = tls.key_file
    return kwargs


def build_mysql_connect_kwargs(
    url: str, tls_args: Optional[Sequence[str]] = None
) -> Dict[str, Any]:
    """Brief: Translate a mysql:// URL and TLS args into connect() kwargs.

    Inputs:
      - url: ``mysql://[user[:password]@]host[:port]/database[?params]``.
      - tls_args: Positional TLS arguments (0-3).

    Outputs:
      - dict of keyword arguments for mysql.connector.connect().

    Example:
      >>> kw = build_mysql_connect_kwargs("mysql://dns:pw@db:3307/coredns?connect_timeout=5")
      >>> (kw["host"], kw["port"], kw["database"], kw["connect_timeout"])
      ('db', 3307, 'coredns', 5)
    """
    parts = urlsplit(url)
    try:
        port = parts.port
    except ValueError as exc:
        raise ConfigurationError(f"invalid port in url: {exc}") from exc

    kwargs: Dict[str, Any] = {
        "host": parts.hostname or "127.0.0.1",
        "port": int(port or 3306),
    }
    if parts.username:
        kwargs["user"] = unquote(parts.username)
    if parts.password is not None:
        kwargs["password"] = unquote(parts.password)
    database = parts.path.lstrip("/")
    if database:
        kwargs["database"] = unquote(database)
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        kwargs[key] = _coerce(value)

    kwargs.update(mysql_tls_kwargs(TLSArgs.from_args(tls_args)))
    return kwargs


class MySQLRecordStore(RecordStore):
    """Brief: RecordStore using mysql.connector connections.

    Inputs:
      - url: Connection URL.
      - tls_args: Positional TLS arguments.
      - max_connections / idle_timeout_s: Pool limits.

    Outputs:
      - Store whose connections are opened lazily on first query.
    """

    name = "mysql"
    # mysql.connector substitutes %s itself and leaves "%%" untouched.
    escape_percent = False

    def __init__(
        self,
        url: str,
        tls_args: Optional[Sequence[str]] = None,
        max_connections: int = 8,
        idle_timeout_s: float = 30,
    ) -> None:
        self.connect_kwargs = build_mysql_connect_kwargs(url, tls_args)
        self._driver = _import_mysql_driver()
        super().__init__(max_connections=max_connections, idle_timeout_s=idle_timeout_s)
        logger.info(
            "mysql store for %s:%s/%s (tls=%s)",
            self.connect_kwargs["host"],
            self.connect_kwargs["port"],
            self.connect_kwargs.get("database", ""),
            TLSArgs.from_args(tls_args).count,
        )

    def _connect(self) -> Any:
        return self._driver.connect(**self.connect_kwargs)

    def _interrupt(self, conn: Any) -> None:
        # Closing the socket unblocks the pending read; the pool then drops
        # the connection.
        shutdown = getattr(conn, "shutdown", None)
        if callable(shutdown):
            shutdown()
        else:
            conn.close()
