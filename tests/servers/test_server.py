"""
Brief: Tests for sqldns.servers.server query pipeline, chain and DNSServer.

Inputs:
  - None

Outputs:
  - None
"""

import logging

import pytest
from dnslib import RCODE, RR, DNSRecord

from sqldns.plugins.resolve.base import BasePlugin, PluginDecision
from sqldns.servers.server import (
    DNSServer,
    build_chain,
    formerr_for,
    resolve_query_bytes,
)


class _Static(BasePlugin):
    """
    Brief: Answers every query with one A record and remembers the context.

    Inputs:
      - **config: BasePlugin options

    Outputs:
      - override decisions carrying a packed reply
    """

    def pre_resolve(self, qname, qtype, req, ctx):
        self.last_ctx = ctx
        self.cancelled_while_running = ctx.cancelled.is_set()
        request = DNSRecord.parse(req)
        reply = request.reply()
        reply.add_answer(*RR.fromZone(f"{qname} 60 IN A 192.0.2.10"))
        return PluginDecision(action="override", response=reply.pack())


class _WrongId(BasePlugin):
    def pre_resolve(self, qname, qtype, req, ctx):
        reply = DNSRecord.parse(req).reply()
        reply.header.id = 1
        return PluginDecision(action="override", response=reply.pack())


class _Broken(BasePlugin):
    def pre_resolve(self, qname, qtype, req, ctx):
        raise RuntimeError("plugin exploded")


class _Pass(BasePlugin):
    pass


def _query(qid=0x1234):
    q = DNSRecord.question("www.example.org.", "A")
    q.header.id = qid
    return q.pack()


def test_build_chain_orders_by_pre_priority():
    """
    Brief: Plugins are linked lowest pre_priority first; the tail has no next.

    Inputs:
      - None

    Outputs:
      - None: Asserts links
    """
    late = _Pass(name="late", pre_priority=50)
    early = _Pass(name="early", pre_priority=5)
    middle = _Pass(name="middle")
    head = build_chain([late, middle, early])
    assert head is early
    assert early.next is late
    assert late.next is middle
    assert middle.next is None
    assert build_chain([]) is None


def test_short_datagram_is_dropped():
    """
    Brief: Fewer than 12 bytes cannot be answered at all.

    Inputs:
      - None

    Outputs:
      - None: Asserts None
    """
    assert formerr_for(b"\x00\x01") is None
    assert resolve_query_bytes(b"\x00\x01\x02", "127.0.0.1", _Static()) is None


def test_unparsable_request_gets_formerr():
    """
    Brief: A readable header with a broken body gets FORMERR with its id.

    Inputs:
      - None

    Outputs:
      - None: Asserts rcode, id and flags
    """
    data = b"\xab\xcd\x01\x00\x00\x01\x00\x00\x00\x00\x00\x00"
    reply = DNSRecord.parse(resolve_query_bytes(data, "127.0.0.1", _Static()))
    assert reply.header.id == 0xABCD
    assert reply.header.rcode == RCODE.FORMERR
    assert reply.header.qr == 1
    assert reply.header.rd == 1


def test_request_without_question_gets_formerr():
    """
    Brief: A well-formed message with no question gets FORMERR.

    Inputs:
      - None

    Outputs:
      - None: Asserts rcode
    """
    data = b"\x00\x07\x00\x00" + b"\x00" * 8
    reply = DNSRecord.parse(resolve_query_bytes(data, "127.0.0.1", _Static()))
    assert reply.header.rcode == RCODE.FORMERR
    assert reply.header.id == 7


def test_empty_chain_and_plugin_exception_give_servfail(caplog):
    """
    Brief: No plugins, or a plugin raising, is answered with SERVFAIL.

    Inputs:
      - caplog: pytest log capture

    Outputs:
      - None: Asserts SERVFAIL replies and logged exception
    """
    reply = DNSRecord.parse(resolve_query_bytes(_query(), "127.0.0.1", None))
    assert reply.header.rcode == RCODE.SERVFAIL
    assert reply.header.id == 0x1234

    caplog.set_level(logging.ERROR, logger="sqldns.server")
    reply = DNSRecord.parse(resolve_query_bytes(_query(), "127.0.0.1", _Broken()))
    assert reply.header.rcode == RCODE.SERVFAIL
    assert str(reply.q.qname) == "www.example.org."
    assert "plugin exploded" in caplog.text


def test_fall_through_chain_gives_servfail():
    """
    Brief: When no plugin answers, the chain's failure becomes SERVFAIL.

    Inputs:
      - None

    Outputs:
      - None: Asserts rcode
    """
    reply = DNSRecord.parse(resolve_query_bytes(_query(), "127.0.0.1", _Pass()))
    assert reply.header.rcode == RCODE.SERVFAIL


def test_answer_id_is_forced_to_request_id():
    """
    Brief: A plugin reply with a different id is corrected.

    Inputs:
      - None

    Outputs:
      - None: Asserts id
    """
    reply = DNSRecord.parse(resolve_query_bytes(_query(0x4242), "127.0.0.1", _WrongId()))
    assert reply.header.id == 0x4242


def test_context_carries_transport_deadline_and_is_cancelled_after():
    """
    Brief: Plugins see the transport and deadline; cancellation only fires once answered.

    Inputs:
      - None

    Outputs:
      - None: Asserts context state
    """
    plugin = _Static()
    wire = resolve_query_bytes(
        _query(), "198.51.100.1", plugin, transport="tcp", timeout_ms=500
    )
    assert str(DNSRecord.parse(wire).rr[0].rdata) == "192.0.2.10"
    ctx = plugin.last_ctx
    assert ctx.transport == "tcp"
    assert ctx.client_ip == "198.51.100.1"
    assert ctx.remaining() <= 0.5
    assert plugin.cancelled_while_running is False
    assert ctx.cancelled.is_set()


@pytest.mark.parametrize("tcp", [False, True])
def test_dns_server_answers_over_udp_and_tcp(tcp):
    """
    Brief: DNSServer answers real queries on both listeners.

    Inputs:
      - tcp: which transport the client uses

    Outputs:
      - None: Asserts answer over the wire
    """
    server = DNSServer("127.0.0.1", 0, [_Static()], udp=not tcp, tcp=tcp)
    server.start()
    try:
        port = server.servers[0].server_address[1]
        q = DNSRecord.question("www.example.org.", "A")
        reply = DNSRecord.parse(q.send("127.0.0.1", port, tcp=tcp, timeout=2))
        assert reply.header.id == q.header.id
        assert [str(rr.rdata) for rr in reply.rr] == ["192.0.2.10"]
    finally:
        server.stop()


def test_dns_server_stop_without_start_closes_sockets():
    """
    Brief: stop() on a never-started server only closes the sockets.

    Inputs:
      - None

    Outputs:
      - None: Asserts two listeners created and closed
    """
    server = DNSServer("127.0.0.1", 0, [])
    assert len(server.servers) == 2
    assert server.chain is None
    server.stop()
    for srv in server.servers:
        assert srv.socket.fileno() == -1
