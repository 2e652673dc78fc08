import asyncio
import json

import pytest

from roomcall import messages as m
from roomcall.room_directory import RoomDirectory
from roomcall.server import SignalingServer, stamp
from tests.fakes import FakeSocket, settle

OFFER = {"type": "offer", "sdp": "v=0 offer"}
ANSWER = {"type": "answer", "sdp": "v=0 answer"}


def make_server(*identities):
    server = SignalingServer(RoomDirectory(capacity=2))
    sockets = {}
    for identity in identities:
        sockets[identity] = server.connections[identity] = FakeSocket()
    return server, sockets


async def join(server, identity, room="42"):
    await server.dispatch(identity, m.encode(m.Join(f"{identity}@x.io", room)))


@pytest.mark.asyncio
async def test_second_joiner_is_announced_to_the_first():
    server, socks = make_server("a", "b")

    await join(server, "a")
    assert socks["a"].received() == [m.Joined("42")]

    await join(server, "b")
    assert socks["a"].received() == [m.Joined("42"), m.UserJoined("b@x.io", "b")]
    assert socks["b"].received() == [m.Joined("42")]


@pytest.mark.asyncio
async def test_third_joiner_gets_room_full():
    server, socks = make_server("a", "b", "c")
    await join(server, "a")
    await join(server, "b")

    await join(server, "c")

    assert socks["c"].received() == [m.RoomFull("42")]
    assert [member.id for member in server.directory.members("42")] == ["a", "b"]
    assert m.UserJoined("c@x.io", "c") not in socks["a"].received()


@pytest.mark.asyncio
async def test_call_is_relayed_with_sender_stamped_by_the_relay():
    server, socks = make_server("a", "b")
    await join(server, "a")
    await join(server, "b")

    spoofed = '{"event": "user:call", "data": {"to": "b", "from": "mallory", "offer": %s}}' % (
        json.dumps(OFFER))
    await server.dispatch("a", spoofed)

    assert socks["b"].received()[-1] == m.IncomingCall("a", OFFER)


@pytest.mark.asyncio
async def test_answers_and_renegotiation_are_relayed_both_ways():
    server, socks = make_server("a", "b")
    await join(server, "a")
    await join(server, "b")

    await server.dispatch("b", m.encode(m.CallAccepted(ANSWER, to="a")))
    await server.dispatch("a", m.encode(m.NegotiationOffer(OFFER, to="b")))
    await server.dispatch("b", m.encode(m.NegotiationAnswer(ANSWER, to="a")))
    await server.dispatch("b", m.encode(m.Busy(to="a")))

    assert socks["a"].received()[-3:] == [
        m.CallAccepted(ANSWER, sender="b"),
        m.NegotiationAnswer(ANSWER, sender="b"),
        m.Busy(sender="b"),
    ]
    assert socks["a"].sent[-2].startswith('{"event": "peer:nego:final"')
    assert socks["b"].received()[-1] == m.NegotiationOffer(OFFER, sender="a")


@pytest.mark.asyncio
async def test_message_to_departed_identity_is_dropped():
    server, socks = make_server("a", "b")
    await join(server, "a")
    await join(server, "b")
    await server.dispatch("b", m.encode(m.Leave()))
    before = {identity: list(sock.sent) for identity, sock in socks.items()}

    await server.dispatch("a", m.encode(m.CallOffer("b", OFFER)))
    await server.dispatch("a", m.encode(m.CallOffer("nobody", OFFER)))

    assert {identity: sock.sent for identity, sock in socks.items()} == before


@pytest.mark.asyncio
async def test_leave_notifies_the_remaining_member():
    server, socks = make_server("a", "b")
    await join(server, "a")
    await join(server, "b")

    await server.dispatch("a", m.encode(m.Leave()))

    assert socks["b"].received()[-1] == m.PeerLeft("a")
    assert server.directory.room_of("a") is None


@pytest.mark.asyncio
async def test_malformed_and_server_only_frames_get_an_error():
    server, socks = make_server("a")

    await server.dispatch("a", "{not json")
    await server.dispatch("a", m.encode(m.IncomingCall("x", OFFER)))

    received = socks["a"].received()
    assert len(received) == 2
    assert all(isinstance(msg, m.ProtocolError) for msg in received)


@pytest.mark.asyncio
async def test_disconnect_frees_the_seat_and_tells_the_peer():
    server = SignalingServer(RoomDirectory())
    a, b = FakeSocket(), FakeSocket()
    task_a = asyncio.ensure_future(server.handler(a))
    task_b = asyncio.ensure_future(server.handler(b))
    await settle(5)
    ids = {ws: identity for identity, ws in server.connections.items()}
    a_id, b_id = ids[a], ids[b]

    await a.inbox.put(m.encode(m.Join("a@x.io", "42")))
    await b.inbox.put(m.encode(m.Join("b@x.io", "42")))
    await settle()
    await b.inbox.put(None)
    await settle()

    assert task_b.done()
    assert b_id not in server.connections
    assert a.received()[-1] == m.PeerLeft(b_id)
    assert [member.id for member in server.directory.members("42")] == [a_id]

    await a.inbox.put(None)
    await settle()
    assert task_a.done()
    assert server.directory.rooms() == {}


def test_stamp_turns_call_offer_into_incoming_call():
    assert stamp(m.CallOffer("b", OFFER), "a") == m.IncomingCall("a", OFFER)
    assert stamp(m.Busy(to="b", sender="forged"), "a") == m.Busy(sender="a")
