import pytest

from peer_client.calls import CallStatus
from peer_client.client import PeerClient
from peer_client.connections import LinkState, Role
from peer_client.errors import HandleTaken
from peer_client.signaling import SignalingClient

from tests.conftest import (
    Connector,
    FakeMediaDevices,
    LoopbackRelay,
    PeerConnectionFactory,
    eventually,
    settle,
)


def make_peer(connector):
    signaling = SignalingClient(
        "ws://relay.test:8080",
        connector=connector,
        health_check=False,
        reconnect_delay=0.01,
        register_timeout=0.5,
    )
    factory = PeerConnectionFactory()
    peer = PeerClient(FakeMediaDevices(), factory, signaling=signaling)
    peer.pc_factory = factory
    return peer


def recorder(emitter, event):
    seen = []
    emitter.on(event, lambda *args: seen.append(args))
    return seen


async def test_two_peers_negotiate_and_call_through_relay():
    relay = LoopbackRelay()
    alice = make_peer(relay.connector())
    bob = make_peer(relay.connector())

    await alice.start("Alice01")
    await bob.start("Bob0002")
    await eventually(lambda: "Bob0002" in alice.online)
    assert await alice.search("bo") == ["Bob0002"]

    # Negotiation payloads cross the relay untouched
    offers = recorder(bob.signaling, "offer")
    link = await alice.connect_to("Bob0002")
    await eventually(lambda: not link.awaiting_answer)

    (sender, payload), = offers
    assert sender == "Alice01"
    assert payload == {"type": "offer", "sdp": "offer-sdp-1"}
    bob_link = bob.connections.get_link("Alice01")
    assert bob_link.role is Role.RESPONDER

    alice.pc_factory.last.set_state("connected")
    bob.pc_factory.last.set_state("connected")
    assert link.state is LinkState.ESTABLISHED
    assert bob_link.state is LinkState.ESTABLISHED

    await alice.calls.initiate("Bob0002")
    await eventually(lambda: bob.calls.status is CallStatus.INCOMING)

    await bob.calls.accept()
    await eventually(lambda: alice.calls.status is CallStatus.ACTIVE)
    assert bob.calls.status is CallStatus.ACTIVE
    assert len(alice.pc_factory.last.tracks) == 1
    assert len(bob.pc_factory.last.tracks) == 1

    ended = recorder(alice.calls, "call-ended")
    presence = recorder(alice, "presence")
    await bob.stop()
    await eventually(lambda: "Bob0002" not in alice.online)

    assert alice.calls.status is CallStatus.NONE
    assert ended == [("Bob0002", "remote-end")]
    assert presence == [("Bob0002", False)]
    assert len(relay.registry) == 1
    await alice.stop()


async def test_handle_taken_leaves_client_offline():
    relay = LoopbackRelay()
    first = make_peer(relay.connector())
    second = make_peer(relay.connector())
    await first.start("Alice01")

    with pytest.raises(HandleTaken):
        await second.start("Alice01")

    assert second.handle is None
    assert not second.signaling.connected
    assert len(relay.registry) == 1
    await first.stop()


async def test_presence_tracking():
    connector = Connector()
    peer = make_peer(connector)
    presence = recorder(peer, "presence")
    await peer.start("Alice01")

    connector.current.push({"type": "user-online", "username": "Bob0002"})
    connector.current.push({"type": "user-online", "username": "Carol03"})
    connector.current.push({"type": "user-offline", "username": "Carol03"})
    await settle()

    assert peer.online == {"Bob0002"}
    assert presence == [("Bob0002", True), ("Carol03", True), ("Carol03", False)]
    await peer.stop()


async def test_reconnect_tears_down_stale_links_and_call():
    connector = Connector()
    peer = make_peer(connector)
    closed = recorder(peer.connections, "link-closed")
    ended = recorder(peer.calls, "call-ended")
    await peer.start("Alice01")
    connector.current.push({"type": "user-online", "username": "Bob0002"})
    await peer.calls.initiate("Bob0002")
    await settle()
    assert peer.online == {"Bob0002"}

    connector.current.drop()
    await eventually(lambda: len(connector.sockets) == 2 and peer.signaling.username == "Alice01"
                     and peer.calls.status is CallStatus.NONE)
    await settle()

    assert peer.online == set()
    assert peer.connections.links == {}
    assert closed == [("Bob0002", "relay-reconnected")]
    assert ended == [("Bob0002", "relay-reconnected")]
    # The hang-up goes out on the fresh channel
    assert connector.current.of_type("call-end") == [{"type": "call-end", "to": "Bob0002"}]
    assert connector.current.of_type("register") == [{"type": "register", "username": "Alice01"}]
    await peer.stop()


async def test_messages_are_reemitted():
    connector = Connector()
    peer = make_peer(connector)
    messages = recorder(peer, "message")
    await peer.start("Alice01")

    link = await peer.connect_to("Bob0002")
    link.data_channel.open()
    assert peer.send_message("Bob0002", {"text": "hi"}) is True
    link.data_channel.receive('{"text": "hello"}')

    assert messages == [("Bob0002", {"text": "hello"})]
    await peer.stop()
