from __future__ import annotations

import functools
import logging
import socketserver
import threading
from typing import Callable, List, Optional, Sequence

from dnslib import QTYPE, RCODE, DNSError, DNSHeader, DNSRecord

from ..plugins.resolve.base import BasePlugin, PluginContext, PluginDecision
from ..sql.response import servfail_response

logger = logging.getLogger("sqldns.server")

DNS_HEADER_LEN = 12

Resolver = Callable[[bytes, str], Optional[bytes]]


def _set_response_id(wire: bytes, req_id: int) -> bytes:
    """Ensure the response DNS ID matches the request ID.

    Inputs:
      - wire: bytes-like DNS response.
      - req_id: int request ID to set in the first two bytes.

    Outputs:
      - bytes: response with corrected ID.

    Fast path: the DNS ID is the first 2 bytes (big-endian); they are rewritten
    without re-parsing the message.
    """
    bwire = bytes(wire)
    if len(bwire) < 2:
        return bwire
    return (int(req_id) & 0xFFFF).to_bytes(2, "big") + bwire[2:]


def build_chain(plugins: Sequence[BasePlugin]) -> Optional[BasePlugin]:
    """Brief: Link plugins by pre_priority (lower first) and return the head.

    Inputs:
      - plugins: Initialized plugins in any order.

    Outputs:
      - The first plugin of the chain, or None when plugins is empty. The last
        plugin's ``next`` is None.

    Example:
      >>> head = build_chain([])
      >>> head is None
      True
    """
    ordered = sorted(plugins, key=lambda p: p.pre_priority)
    for current, following in zip(ordered, ordered[1:] + [None]):
        current.set_next(following)
    if ordered:
        logger.debug("plugin chain: %s", " -> ".join(p.name for p in ordered))
    return ordered[0] if ordered else None


def formerr_for(data: bytes) -> Optional[bytes]:
    """Brief: FORMERR reply for a request whose body cannot be parsed.

    Inputs:
      - data: Raw request bytes.

    Outputs:
      - bytes with the request id and opcode echoed, or None when not even the
        12-byte header is present (the request is dropped).
    """
    if len(data) < DNS_HEADER_LEN:
        return None
    req_id = int.from_bytes(data[0:2], "big")
    opcode = (data[2] >> 3) & 0xF
    rd = data[2] & 0x1
    header = DNSHeader(id=req_id, qr=1, opcode=opcode, rd=rd, rcode=RCODE.FORMERR)
    return DNSRecord(header).pack()


def _decision_wire(
    decision: Optional[PluginDecision], request: DNSRecord
) -> bytes:
    if decision is not None and decision.response:
        return bytes(decision.response)
    return servfail_response(request).pack()


def resolve_query_bytes(
    data: bytes,
    client_ip: str,
    chain: Optional[BasePlugin],
    *,
    transport: str = "udp",
    timeout_ms: int = 2000,
) -> Optional[bytes]:
    """Resolve a single DNS wire query and return the wire response.

    Inputs:
      - data: Wire-format DNS query bytes.
      - client_ip: Client IP for the plugin context and logging.
      - chain: Head of the plugin chain (see build_chain()).
      - transport: "udp" or "tcp".
      - timeout_ms: Request deadline handed to plugins via PluginContext.

    Outputs:
      - bytes: Wire-format DNS response with the request id, or None when the
        request is too short to answer.

    Behaviour:
      - Unparsable requests get FORMERR when the header is readable.
      - An empty chain, a "servfail" decision or an unexpected exception in a
        plugin gets SERVFAIL.
      - The chain runs synchronously in the listener thread, so a slow store
        call is bounded by timeout_ms through ctx.deadline. ctx.cancelled is
        set only after the chain returns; it stops background work a plugin
        left running and never interrupts the chain itself.

    Example:
      >>> resp = resolve_query_bytes(query_bytes, "127.0.0.1", head)
    """
    try:
        request = DNSRecord.parse(data)
    except (DNSError, ValueError, IndexError) as exc:
        logger.debug("unparsable request from %s: %s", client_ip, exc)
        return formerr_for(data)

    if not request.questions:
        logger.debug("request from %s has no question", client_ip)
        return formerr_for(data)

    qname = str(request.q.qname)
    qtype = int(request.q.qtype)
    logger.debug(
        "query %s %s from %s over %s",
        qname,
        QTYPE.get(qtype, str(qtype)),
        client_ip,
        transport,
    )

    if chain is None:
        logger.warning("no plugins configured; SERVFAIL for %s", qname)
        return _set_response_id(servfail_response(request).pack(), request.header.id)

    ctx = PluginContext(client_ip, transport=transport, timeout=timeout_ms / 1000.0)
    try:
        decision: Optional[PluginDecision] = chain.serve_dns(qname, qtype, data, ctx)
    except Exception:
        logger.exception("unhandled error resolving %s from %s", qname, client_ip)
        decision = None
    finally:
        # Cleanup only: background work started for this request stops here.
        ctx.cancel()

    if decision is not None and decision.action == "servfail" and decision.error:
        logger.debug(
            "SERVFAIL from %s for %s: %s", decision.plugin_label, qname, decision.error
        )
    wire = _decision_wire(decision, request)
    return _set_response_id(wire, request.header.id)


class DNSServer:
    """UDP and TCP listeners sharing one plugin chain.

    Example use:
        >>> import threading
        >>> server = DNSServer("127.0.0.1", 5355, plugins=[], udp=True, tcp=False)
        >>> server.start()
        >>> server.stop()
    """

    def __init__(
        self,
        host: str,
        port: int,
        plugins: Sequence[BasePlugin],
        *,
        udp: bool = True,
        tcp: bool = True,
        timeout_ms: int = 2000,
    ) -> None:
        """Initialize and bind the listeners.

        Inputs:
            host: The host to listen on.
            port: The port to listen on (0 picks a free port per listener).
            plugins: Initialized and set up plugins.
            udp / tcp: Which listeners to start.
            timeout_ms: Per-request deadline in milliseconds.
        """
        from .tcp_server import make_tcp_server
        from .udp_server import make_udp_server

        self.plugins: List[BasePlugin] = list(plugins)
        self.chain = build_chain(self.plugins)
        self.timeout_ms = int(timeout_ms)
        self.servers: List[socketserver.BaseServer] = []
        self._threads: List[threading.Thread] = []

        try:
            if udp:
                self.servers.append(
                    make_udp_server(host, port, self.resolver_for("udp"))
                )
            if tcp:
                self.servers.append(
                    make_tcp_server(host, port, self.resolver_for("tcp"))
                )
        except PermissionError as e:
            logger.error(
                "Permission denied when binding to %s:%d. Try a port >1024 or run with elevated privileges. Original error: %s",
                host,
                port,
                e,
            )
            self.stop()
            raise
        for srv in self.servers:
            logger.info(
                "DNS %s listener bound to %s:%d",
                "UDP" if isinstance(srv, socketserver.UDPServer) else "TCP",
                *srv.server_address[:2],
            )

    def resolver_for(self, transport: str) -> Resolver:
        return functools.partial(
            resolve_query_bytes,
            chain=self.chain,
            transport=transport,
            timeout_ms=self.timeout_ms,
        )

    def start(self) -> None:
        """Run every listener loop in a daemon thread."""
        for srv in self.servers:
            t = threading.Thread(
                target=srv.serve_forever,
                name=f"sqldns-{type(srv).__name__}",
                daemon=True,
            )
            t.start()
            self._threads.append(t)

    def serve_forever(self) -> None:
        """Start the listeners and block until stop() or KeyboardInterrupt."""
        self.start()
        try:
            for t in self._threads:
                t.join()
        except KeyboardInterrupt:
            pass

    def stop(self) -> None:
        """Request graceful shutdown and close the listener sockets."""
        for srv in self.servers:
            if self._threads:
                srv.shutdown()
            srv.server_close()
        for t in self._threads:
            t.join(timeout=5)
        self._threads = []
