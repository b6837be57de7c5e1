"""
Brief: Unit tests for the TCP listener and its length-prefixed framing.

Inputs:
  - None

Outputs:
  - None
"""

import socket
import threading

import pytest

from sqldns.servers.tcp_server import _recv_exact, make_tcp_server


def _resolver(q: bytes, client_ip: str):
    if q == b"close":
        return None
    return b"re:" + q


@pytest.fixture
def running_tcp_server():
    """
    Brief: Serve _resolver on an ephemeral TCP port with a short idle timeout.

    Inputs:
      - None

    Outputs:
      - (host, port) tuple; the server is shut down afterwards.
    """
    server = make_tcp_server("127.0.0.1", 0, _resolver, idle_timeout=1.0)
    t = threading.Thread(target=server.serve_forever, daemon=True)
    t.start()
    yield server.server_address[:2]
    server.shutdown()
    server.server_close()


def _frame(payload: bytes) -> bytes:
    return len(payload).to_bytes(2, "big") + payload


def _read_frame(sock: socket.socket) -> bytes:
    hdr = _recv_exact(sock, 2)
    if len(hdr) != 2:
        return b""
    return _recv_exact(sock, int.from_bytes(hdr, "big"))


def test_tcp_server_answers_several_queries_per_connection(running_tcp_server):
    """
    Brief: One connection carries several framed queries in order.

    Inputs:
      - running_tcp_server: fixture

    Outputs:
      - None: Asserts framed replies
    """
    with socket.create_connection(running_tcp_server, timeout=2) as s:
        s.sendall(_frame(b"one") + _frame(b"two"))
        assert _read_frame(s) == b"re:one"
        assert _read_frame(s) == b"re:two"


def test_tcp_server_closes_on_none_reply(running_tcp_server):
    """
    Brief: A None reply closes the connection without answering.

    Inputs:
      - running_tcp_server: fixture

    Outputs:
      - None: Asserts EOF
    """
    with socket.create_connection(running_tcp_server, timeout=2) as s:
        s.sendall(_frame(b"close"))
        assert s.recv(16) == b""


def test_tcp_server_closes_on_truncated_frame(running_tcp_server):
    """
    Brief: A frame shorter than its length prefix ends the connection.

    Inputs:
      - running_tcp_server: fixture

    Outputs:
      - None: Asserts EOF after half-close
    """
    with socket.create_connection(running_tcp_server, timeout=2) as s:
        s.sendall(b"\x00\x10abc")
        s.shutdown(socket.SHUT_WR)
        assert s.recv(16) == b""


def test_recv_exact_stops_at_eof():
    """
    Brief: _recv_exact returns what arrived when the peer closes early.

    Inputs:
      - None

    Outputs:
      - None: Asserts partial and full reads
    """
    a, b = socket.socketpair()
    try:
        a.sendall(b"abcdef")
        assert _recv_exact(b, 4) == b"abcd"
        a.close()
        assert _recv_exact(b, 4) == b"ef"
    finally:
        b.close()
