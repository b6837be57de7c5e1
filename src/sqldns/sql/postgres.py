"""PostgreSQL-backed RecordStore.

Inputs:
  - Connection URL with ``postgres`` or ``postgresql`` scheme and an optional
    positional TLS argument list.

Outputs:
  - PostgresRecordStore, which connects through psycopg using the URL with
    libpq TLS parameters merged into its query string.

Notes:
  - psycopg is imported lazily so the MySQL driver can be used without it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import ConfigurationError
from .store import RecordStore, TLSArgs

logger = logging.getLogger(__name__)


def _import_postgres_driver():
    """Import and return the psycopg module.

    Raises:
        ConfigurationError: When psycopg is not installed.
    """
    try:
        import psycopg  # type: ignore[import]
    except ImportError as exc:
        raise ConfigurationError(
            "PostgreSQL support requires the 'psycopg' package"
        ) from exc
    return psycopg


def postgres_tls_params(
    tls: TLSArgs, sslmode_set: bool = False
) -> Dict[str, str]:
    """Brief: Map TLS arguments onto libpq connection parameter names.

    Inputs:
      - tls: Parsed TLS arguments.
      - sslmode_set: True when the URL already carries an explicit sslmode.

    Outputs:
      - dict of libpq parameters to merge into the URL query.

    Example:
      >>> postgres_tls_params(TLSArgs.from_args(["ca.pem"]))
      {'sslmode': 'verify-ca', 'sslrootcert': 'ca.pem'}
    """
    params: Dict[str, str] = {}
    if tls.cert_file and tls.key_file:
        params["sslcert"] = tls.cert_file
        params["sslkey"] = tls.key_file
    if tls.ca_file:
        if not sslmode_set:
            # CA only verifies the chain; with a client cert the host too.
            params["sslmode"] = "verify-full" if tls.cert_file else "verify-ca"
        params["sslrootcert"] = tls.ca_file
    return params


def build_postgres_url(url: str, tls_args: Optional[Sequence[str]] = None) -> str:
    """Brief: Return the connection URI with TLS parameters applied.

    Inputs:
      - url: postgres/postgresql URL.
      - tls_args: Positional TLS arguments (0-3).

    Outputs:
      - str: URI suitable for psycopg.connect().
    """
    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    sslmode_set = bool(query.get("sslmode"))
    query.update(postgres_tls_params(TLSArgs.from_args(tls_args), sslmode_set))
    return urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment)
    )


class PostgresRecordStore(RecordStore):
    """Brief: RecordStore using psycopg connections.

    Inputs:
      - url: Connection URL.
      - tls_args: Positional TLS arguments.
      - max_connections / idle_timeout_s: Pool limits.

    Outputs:
      - Store whose connections are opened lazily on first query.
    """

    name = "postgres"
    escape_percent = True
    # psycopg sends str untyped and concat(VARIADIC "any") cannot infer it.
    text_param = "CAST(%s AS text)"

    def __init__(
        self,
        url: str,
        tls_args: Optional[Sequence[str]] = None,
        max_connections: int = 8,
        idle_timeout_s: float = 30,
    ) -> None:
        self.conninfo = build_postgres_url(url, tls_args)
        self._driver = _import_postgres_driver()
        super().__init__(max_connections=max_connections, idle_timeout_s=idle_timeout_s)
        parts = urlsplit(self.conninfo)
        logger.info(
            "postgres store for %s%s (tls=%s)",
            parts.hostname or "localhost",
            parts.path,
            TLSArgs.from_args(tls_args).count,
        )

    def _connect(self) -> Any:
        return self._driver.connect(self.conninfo)

    def _interrupt(self, conn: Any) -> None:
        cancel = getattr(conn, "cancel_safe", None) or conn.cancel
        cancel()
