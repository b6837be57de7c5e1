import logging
import socketserver
from typing import Callable, Optional

logger = logging.getLogger("sqldns.server")


class _UDPHandler(socketserver.BaseRequestHandler):
    """
    Brief: UDP handler that delegates each datagram to a resolver callable.

    Inputs:
    - request: (data, socket) tuple provided by socketserver
    - client_address: peer address

    Outputs:
    - None; the resolver's reply is sent back to the peer. A None reply
      drops the request.
    """

    resolver: Callable[[bytes, str], Optional[bytes]] = staticmethod(lambda b, ip: None)

    def handle(self) -> None:
        data, sock = self.request  # type: ignore[misc]
        peer_ip = (
            self.client_address[0]
            if isinstance(self.client_address, tuple)
            else "0.0.0.0"
        )
        resp = self.resolver(data, peer_ip)
        if resp is None:
            logger.debug("dropping malformed UDP request from %s", peer_ip)
            return
        try:
            sock.sendto(resp, self.client_address)
        except OSError as e:
            logger.warning("failed to send UDP response to %s: %s", peer_ip, e)


def make_udp_server(
    host: str, port: int, resolver: Callable[[bytes, str], Optional[bytes]]
) -> socketserver.ThreadingUDPServer:
    """
    Brief: Bind a ThreadingUDPServer whose handler calls resolver.

    Inputs:
    - host: listen address
    - port: listen port (0 picks a free port)
    - resolver: callable mapping (query_bytes, client_ip) -> response_bytes

    Outputs:
    - ThreadingUDPServer, bound but not yet serving.
    """
    handler_cls = type(
        "_BoundUDPHandler", (_UDPHandler,), {"resolver": staticmethod(resolver)}
    )
    server = socketserver.ThreadingUDPServer((host, port), handler_cls)
    server.daemon_threads = True
    return server

