"""RecordStore abstraction shared by the PostgreSQL and MySQL drivers.

Brief:
  A RecordStore executes one rendered query against a relational backend and
  maps every returned row into a ResourceRecord. Connections come from a small
  LIFO pool so concurrent queries never share a connection. Callers may pass a
  timeout and/or a cancel event; a watchdog thread interrupts the driver call
  when either fires.

Inputs:
  - Connection factory supplied by the concrete driver.

Outputs:
  - RecordStore base class, ConnectionPool, TLSArgs and open_record_store().
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, List, Optional, Sequence
from urllib.parse import urlsplit

from .errors import (
    ConfigurationError,
    RowDecodeError,
    StoreError,
    StoreTimeoutError,
    UnsupportedTypeError,
)
from .records import ResourceRecord, RowMapper

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TLSArgs:
    """Brief: Positional TLS file arguments shared by every driver.

    Inputs (via from_args):
      - 0 args: no TLS customization
      - 1 arg: root CA file
      - 2 args: client certificate, client key
      - 3 args: client certificate, client key, root CA

    Outputs:
      - TLSArgs with the populated file paths.

    Example:
      >>> TLSArgs.from_args(["client.crt", "client.key", "ca.pem"]).ca_file
      'ca.pem'
    """

    cert_file: Optional[str] = None
    key_file: Optional[str] = None
    ca_file: Optional[str] = None

    @classmethod
    def from_args(cls, args: Optional[Sequence[str]]) -> "TLSArgs":
        items = [str(a).strip() for a in (args or [])]
        if any(not item for item in items):
            raise ConfigurationError(
                f"tls arguments must be non-empty file paths, got {list(args or [])!r}"
            )
        if len(items) == 0:
            return cls()
        if len(items) == 1:
            return cls(ca_file=items[0])
        if len(items) == 2:
            return cls(cert_file=items[0], key_file=items[1])
        if len(items) == 3:
            return cls(cert_file=items[0], key_file=items[1], ca_file=items[2])
        raise ConfigurationError(
            f"tls takes 1 to 3 arguments (cert key ca), got {len(items)}"
        )

    @property
    def count(self) -> int:
        return sum(1 for f in (self.cert_file, self.key_file, self.ca_file) if f)

    def __bool__(self) -> bool:
        return self.count > 0


class _PooledConn:
    """A driver connection plus the time it was last returned to the pool."""

    __slots__ = ("conn", "last_used")

    def __init__(self, conn: Any) -> None:
        self.conn = conn
        self.last_used = time.monotonic()


class ConnectionPool:
    """Brief: Simple LIFO pool of DB-API connections.

    Inputs:
      - connect: Zero-argument callable returning a new driver connection.
      - max_connections: Maximum connections borrowed at once; also the
        number of idle connections kept for reuse.
      - idle_timeout_s: Idle connections older than this are closed.

    Outputs:
      - connection() context manager yielding a connection exclusively.
        Callers beyond max_connections wait for a connection to come back.
    """

    def __init__(
        self,
        connect: Callable[[], Any],
        max_connections: int = 8,
        idle_timeout_s: float = 30,
    ) -> None:
        self._connect = connect
        self._max = max(1, int(max_connections))
        self._idle = max(1.0, float(idle_timeout_s))
        self._lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(self._max)
        self._stack: List[_PooledConn] = []
        self._closed = False

    def _acquire(self) -> _PooledConn:
        stale: List[_PooledConn] = []
        entry: Optional[_PooledConn] = None
        with self._lock:
            if self._closed:
                raise StoreError("connection pool is closed")
            now = time.monotonic()
            while self._stack:
                candidate = self._stack.pop()
                if now - candidate.last_used <= self._idle:
                    entry = candidate
                    break
                stale.append(candidate)
        for old in stale:
            _close_quietly(old.conn)
        if entry is None:
            entry = _PooledConn(self._connect())
        return entry

    def _release(self, entry: _PooledConn, broken: bool) -> None:
        if not broken:
            entry.last_used = time.monotonic()
            with self._lock:
                if not self._closed and len(self._stack) < self._max:
                    self._stack.append(entry)
                    return
        _close_quietly(entry.conn)

    @contextmanager
    def connection(self, timeout: Optional[float] = None) -> Iterator[Any]:
        """Brief: Borrow a connection, waiting at most timeout seconds for one.

        Raises:
          - StoreTimeoutError: every connection stayed busy for timeout.
          - StoreError: the pool is closed.
        """
        wait = None if timeout is None else max(0.0, timeout)
        if not self._slots.acquire(timeout=wait):
            raise StoreTimeoutError(
                f"no free connection within {wait:.3f}s ({self._max} in use)"
            )
        try:
            entry = self._acquire()
            broken = True
            try:
                yield entry.conn
                broken = False
            finally:
                self._release(entry, broken)
        finally:
            self._slots.release()

    def idle_count(self) -> int:
        with self._lock:
            return len(self._stack)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            entries, self._stack = self._stack, []
        for entry in entries:
            _close_quietly(entry.conn)


def _close_quietly(conn: Any) -> None:
    try:
        conn.close()
    except Exception as exc:  # pragma: no cover - driver specific
        logger.debug("error closing connection: %s", exc)


class _Watchdog:
    """Brief: Interrupt a running driver call on timeout or cancellation.

    Inputs:
      - interrupt: Callable invoked once when the deadline passes or the
        cancel event is set before stop() is called.
      - timeout: Seconds until the deadline, or None.
      - cancel: Optional threading.Event signalled by the caller.
      - interval: Poll interval for the cancel event.

    Outputs:
      - fired attribute set when interrupt() was invoked.
    """

    def __init__(
        self,
        interrupt: Callable[[], None],
        timeout: Optional[float],
        cancel: Optional[threading.Event],
        interval: float = 0.02,
    ) -> None:
        self._interrupt = interrupt
        self._deadline = None if timeout is None else time.monotonic() + timeout
        self._cancel = cancel
        self._interval = interval
        self._done = threading.Event()
        self.fired = False
        self.reason = ""
        self._thread = threading.Thread(
            target=self._run, name="sqldns-store-watchdog", daemon=True
        )

    def start(self) -> "_Watchdog":
        self._thread.start()
        return self

    def _run(self) -> None:
        while not self._done.is_set():
            if self._cancel is not None and self._cancel.is_set():
                self.reason = "cancelled"
                break
            if self._deadline is not None and time.monotonic() >= self._deadline:
                self.reason = "deadline exceeded"
                break
            wait = self._interval
            if self._deadline is not None:
                wait = max(0.0, min(wait, self._deadline - time.monotonic()))
            self._done.wait(wait)
        else:
            return
        self.fired = True
        try:
            self._interrupt()
        except Exception as exc:  # pragma: no cover - driver specific
            logger.warning("failed to interrupt store query: %s", exc)

    def stop(self) -> None:
        self._done.set()
        self._thread.join()


class RecordStore:
    """Brief: Base class for relational backends answering DNS lookups.

    Subclasses implement _connect() and _interrupt(); everything else
    (pooling, row mapping, error translation, deadlines) lives here.

    Inputs:
      - max_connections / idle_timeout_s: Pool limits.

    Outputs:
      - execute() returning the mapped records.
    """

    name: str = "store"
    # pyformat drivers that unescape "%%" when parameters are supplied.
    escape_percent: bool = True
    # Placeholder for string values concatenated into a larger literal.
    text_param: str = "%s"

    def __init__(self, max_connections: int = 8, idle_timeout_s: float = 30) -> None:
        self._pool = ConnectionPool(
            self._connect,
            max_connections=max_connections,
            idle_timeout_s=idle_timeout_s,
        )

    def _connect(self) -> Any:
        raise NotImplementedError

    def _interrupt(self, conn: Any) -> None:
        raise NotImplementedError

    def execute(
        self,
        query: str,
        mapper: Optional[RowMapper],
        params: Optional[Sequence[object]] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[ResourceRecord]:
        """Brief: Run query and map each row, in order, into a record.

        Inputs:
          - query: SQL text (rendered, or with %s placeholders when params
            are given).
          - mapper: Row mapper for the requested type; None means the type is
            not supported.
          - params: Optional bound parameters.
          - timeout: Optional seconds the call may take.
          - cancel: Optional event; setting it aborts the call.

        Outputs:
          - list[ResourceRecord]; empty when no rows match.

        Raises:
          - UnsupportedTypeError: mapper is None (store untouched).
          - StoreTimeoutError: deadline passed or cancelled.
          - RowDecodeError: a row did not match the mapper's columns.
          - StoreError: any driver or connectivity failure.
        """
        if mapper is None:
            raise UnsupportedTypeError(
                "no row mapper registered; this is probably due to an unsupported record type"
            )
        if cancel is not None and cancel.is_set():
            raise StoreTimeoutError("request cancelled before store call")
        if timeout is not None and timeout <= 0:
            raise StoreTimeoutError("deadline exceeded before store call")

        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            with self._pool.connection(timeout=timeout) as conn:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise StoreTimeoutError("deadline exceeded waiting for a connection")
                return self._run(conn, query, mapper, params, remaining, cancel)
        except (StoreError, RowDecodeError):
            raise
        except Exception as exc:
            raise StoreError(f"{self.name}: {exc}") from exc

    def _run(
        self,
        conn: Any,
        query: str,
        mapper: RowMapper,
        params: Optional[Sequence[object]],
        timeout: Optional[float],
        cancel: Optional[threading.Event],
    ) -> List[ResourceRecord]:
        watchdog = None
        if timeout is not None or cancel is not None:
            watchdog = _Watchdog(lambda: self._interrupt(conn), timeout, cancel).start()
        try:
            rows = self._fetch(conn, query, params)
        except Exception as exc:
            if watchdog is not None:
                watchdog.stop()
                if watchdog.fired:
                    raise StoreTimeoutError(
                        f"{self.name}: query {watchdog.reason}"
                    ) from exc
            raise
        if watchdog is not None:
            watchdog.stop()
            if watchdog.fired:
                # The driver returned despite the interrupt; the connection
                # state is unknown so let the pool discard it.
                raise StoreTimeoutError(f"{self.name}: query {watchdog.reason}")

        records: List[ResourceRecord] = []
        for row in rows:
            records.append(mapper(row))
        logger.debug("%s returned %d rows", self.name, len(records))
        return records

    def _fetch(
        self, conn: Any, query: str, params: Optional[Sequence[object]]
    ) -> List[Sequence[object]]:
        cur = conn.cursor()
        try:
            if params is None:
                cur.execute(query)
            else:
                cur.execute(query, tuple(params))
            rows = list(cur.fetchall())
        finally:
            try:
                cur.close()
            except Exception:  # pragma: no cover - driver specific
                pass
        commit = getattr(conn, "commit", None)
        if callable(commit):
            # End the read transaction so pooled connections stay idle.
            commit()
        return rows

    def close(self) -> None:
        self._pool.close()


def open_record_store(
    url: Optional[str],
    tls_args: Optional[Sequence[str]] = None,
    **pool_options: Any,
) -> RecordStore:
    """Brief: Select and construct a driver from the connection URL scheme.

    Inputs:
      - url: ``scheme://[user[:password]@]host[:port]/database[?params]``.
      - tls_args: Positional TLS file arguments (0-3).
      - **pool_options: max_connections / idle_timeout_s.

    Outputs:
      - RecordStore for postgres/postgresql or mysql schemes.

    Raises:
      - ConfigurationError: missing URL or unsupported scheme.
    """
    if not url:
        raise ConfigurationError("url required")
    scheme = urlsplit(str(url)).scheme.lower()
    if not scheme:
        raise ConfigurationError("url required")

    if scheme in ("postgres", "postgresql"):
        from .postgres import PostgresRecordStore

        return PostgresRecordStore(str(url), tls_args, **pool_options)
    if scheme == "mysql":
        from .mysql import MySQLRecordStore

        return MySQLRecordStore(str(url), tls_args, **pool_options)
    raise ConfigurationError(f"unsupported scheme: '{scheme}'")
