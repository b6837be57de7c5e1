"""DNS-over-TCP listener (RFC 1035 section 4.2.2 framing).

Each message is preceded by a 2-byte big-endian length. A connection may carry
several queries; it is closed when the client closes it, sends a truncated
frame, or stays idle longer than the read timeout.
"""

import logging
import socket
import socketserver
from typing import Callable, Optional

logger = logging.getLogger("sqldns.server")

DEFAULT_IDLE_TIMEOUT = 10.0


def _recv_exact(sock: socket.socket, length: int) -> bytes:
    """Read exactly length bytes, or fewer when the peer closes early."""
    buf = bytearray()
    while len(buf) < length:
        chunk = sock.recv(length - len(buf))
        if not chunk:
            break
        buf.extend(chunk)
    return bytes(buf)


class _TCPHandler(socketserver.BaseRequestHandler):
    """
    Brief: TCP handler answering length-prefixed DNS messages via a resolver.

    Inputs:
    - request: connected socket provided by socketserver
    - client_address: peer address

    Outputs:
    - None
    """

    resolver: Callable[[bytes, str], Optional[bytes]] = staticmethod(lambda b, ip: None)
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT

    def handle(self) -> None:
        sock: socket.socket = self.request  # type: ignore[assignment]
        peer_ip = (
            self.client_address[0]
            if isinstance(self.client_address, tuple)
            else "0.0.0.0"
        )
        sock.settimeout(self.idle_timeout)
        try:
            while True:
                hdr = _recv_exact(sock, 2)
                if len(hdr) != 2:
                    return
                ln = int.from_bytes(hdr, "big")
                query = _recv_exact(sock, ln)
                if len(query) != ln:
                    logger.debug("short read on TCP query body from %s", peer_ip)
                    return
                resp = self.resolver(query, peer_ip)
                if resp is None:
                    logger.debug("closing TCP connection from %s: malformed query", peer_ip)
                    return
                sock.sendall(len(resp).to_bytes(2, "big") + resp)
        except socket.timeout:
            logger.debug("idle TCP connection from %s timed out", peer_ip)
        except OSError as e:
            logger.debug("TCP connection from %s failed: %s", peer_ip, e)


class _ThreadingTCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


def make_tcp_server(
    host: str,
    port: int,
    resolver: Callable[[bytes, str], Optional[bytes]],
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
) -> socketserver.ThreadingTCPServer:
    """
    Brief: Bind a ThreadingTCPServer whose handler calls resolver.

    Inputs:
    - host: listen address
    - port: listen port (0 picks a free port)
    - resolver: callable mapping (query_bytes, client_ip) -> response_bytes
    - idle_timeout: seconds a connection may wait for the next query

    Outputs:
    - ThreadingTCPServer, bound but not yet serving.
    """
    handler_cls = type(
        "_BoundTCPHandler",
        (_TCPHandler,),
        {"resolver": staticmethod(resolver), "idle_timeout": float(idle_timeout)},
    )
    return _ThreadingTCPServer((host, port), handler_cls)

