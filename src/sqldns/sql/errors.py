"""Error taxonomy for the SQL-backed resolution pipeline.

Brief:
  Every failure raised by the pipeline derives from SqlDnsError so callers can
  turn any of them into a SERVFAIL with a single except clause while still
  inspecting the concrete type for logging.

Inputs:
  - None

Outputs:
  - Exception classes used across sqldns.sql and the SqlRecords plugin.
"""

from __future__ import annotations


class SqlDnsError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(SqlDnsError, ValueError):
    """Raised at setup time for bad URLs, schemes, TLS args, queries or zones."""


class RenderError(SqlDnsError):
    """Raised when a query template cannot be rendered."""


class UnsupportedTypeError(SqlDnsError):
    """Raised when no row mapper exists for the requested record type."""


class StoreError(SqlDnsError):
    """Raised for connectivity and query execution failures in a RecordStore."""


class StoreTimeoutError(StoreError):
    """Raised when a store call outlives its deadline or is cancelled."""


class RowDecodeError(SqlDnsError):
    """Raised when a result row does not match its record type's columns."""
