import asyncio
import json

import pytest
import websockets

from peer_client.events import EventEmitter
from relay_server import protocol
from relay_server.protocol import ProtocolError
from relay_server.registry import UserRegistry
from relay_server.server import _dispatch

_CLOSED = object()


async def settle(rounds: int = 30):
    """Let spawned tasks run to quiescence."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def eventually(predicate, timeout: float = 1.0):
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


# --- Relay side ---

class FakeChannel:
    """Server-side view of a peer: what the registry sends to it."""

    def __init__(self, name: str = "", fail: bool = False):
        self.name = name
        self.fail = fail
        self.sent: list[dict] = []

    async def send_text(self, text: str):
        if self.fail:
            raise RuntimeError("socket gone")
        self.sent.append(json.loads(text))

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == msg_type]


class StalledChannel(FakeChannel):
    """A peer that stopped reading: every write waits forever."""

    def __init__(self, name: str = ""):
        super().__init__(name)
        self.attempts = 0
        self.cancelled = False

    async def send_text(self, text: str):
        self.attempts += 1
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


# --- Client side: relay channel ---

class FakeWebSocket:
    """Client end of a relay channel with a scripted relay behind it."""

    def __init__(self, auto_register: bool = True, taken: set | None = None):
        self.auto_register = auto_register
        self.taken = taken if taken is not None else set()
        self.sent: list[dict] = []
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def send(self, text: str):
        if self.closed:
            raise websockets.ConnectionClosedOK(None, None)
        message = json.loads(text)
        self.sent.append(message)
        if self.auto_register and message["type"] == protocol.REGISTER:
            if message["username"] in self.taken:
                self.push({"type": "error", "message": "Username already taken", "code": "handle-taken"})
            else:
                self.push({"type": protocol.REGISTERED, "username": message["username"]})

    async def recv(self):
        item = await self.inbox.get()
        if item is _CLOSED:
            raise websockets.ConnectionClosedOK(None, None)
        return item

    async def close(self):
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(_CLOSED)

    def push(self, message):
        self.inbox.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def drop(self):
        """Simulate the relay going away."""
        self.closed = True
        self.inbox.put_nowait(_CLOSED)

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == msg_type]


class Connector:
    """Async connector handing out FakeWebSockets; can be told to fail."""

    def __init__(self, **ws_kwargs):
        self.ws_kwargs = ws_kwargs
        self.sockets: list[FakeWebSocket] = []
        self.fail = False

    async def __call__(self):
        if self.fail:
            raise ConnectionRefusedError("relay down")
        ws = FakeWebSocket(**self.ws_kwargs)
        self.sockets.append(ws)
        return ws

    @property
    def current(self) -> FakeWebSocket:
        return self.sockets[-1]


class LoopbackRelay:
    """In-memory relay: client frames go through the real registry and dispatcher."""

    def __init__(self):
        self.registry = UserRegistry()

    def connector(self):
        async def connect():
            return _LoopbackSocket(self.registry)
        return connect


class _ServerEnd:
    def __init__(self, client: "_LoopbackSocket"):
        self.client = client

    async def send_text(self, text: str):
        self.client.inbox.put_nowait(text)


class _LoopbackSocket:
    def __init__(self, registry: UserRegistry):
        self.registry = registry
        self.inbox: asyncio.Queue = asyncio.Queue()
        self.server_end = _ServerEnd(self)
        self.closed = False

    async def send(self, text: str):
        if self.closed:
            raise websockets.ConnectionClosedOK(None, None)
        data = protocol.decode(text)
        try:
            await _dispatch(self.registry, self.server_end, data)
        except ProtocolError as e:
            await self.registry.send(self.server_end, e.to_message())

    async def recv(self):
        item = await self.inbox.get()
        if item is _CLOSED:
            raise websockets.ConnectionClosedOK(None, None)
        return item

    async def close(self):
        if not self.closed:
            self.closed = True
            self.inbox.put_nowait(_CLOSED)
            await self.registry.unregister(self.server_end)


# --- Client side: signaling stand-in for state machine tests ---

class FakeSignaling(EventEmitter):
    def __init__(self):
        super().__init__()
        self.sent: list[dict] = []
        self.up = True

    def send(self, message: dict) -> bool:
        if not self.up:
            return False
        self.sent.append(message)
        return True

    def send_signal(self, msg_type: str, to: str, payload=None) -> bool:
        message = {"type": msg_type, "to": to}
        if payload is not None:
            message["payload"] = payload
        return self.send(message)

    def send_offer(self, to, offer):
        return self.send_signal(protocol.OFFER, to, offer)

    def send_answer(self, to, answer):
        return self.send_signal(protocol.ANSWER, to, answer)

    def send_ice_candidate(self, to, candidate):
        return self.send_signal(protocol.ICE_CANDIDATE, to, candidate)

    def of_type(self, msg_type: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == msg_type]


# --- Peer connection primitive ---

class FakeDataChannel:
    def __init__(self, label: str = "messages"):
        self.label = label
        self.ready_state = "connecting"
        self.sent: list[str] = []
        self.close_count = 0
        self._handlers: dict[str, list] = {}

    def on(self, event, handler):
        self._handlers.setdefault(event, []).append(handler)

    def _fire(self, event, *args):
        for handler in self._handlers.get(event, []):
            handler(*args)

    def send(self, data: str):
        self.sent.append(data)

    def close(self):
        self.close_count += 1
        self.ready_state = "closed"

    def open(self):
        self.ready_state = "open"
        self._fire("open")

    def receive(self, data: str):
        self._fire("message", data)


class FakePeerConnection:
    def __init__(self, ice_servers=None, fail_on: set | None = None):
        self.ice_servers = ice_servers
        self.fail_on = fail_on or set()
        self.connection_state = "new"
        self.calls: list[tuple] = []
        self.tracks: list = []
        self.data_channels: list[FakeDataChannel] = []
        self.closed = 0
        self._handlers: dict[str, list] = {}
        self._offers = 0

    def _record(self, name, *args):
        self.calls.append((name, *args))
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    async def create_offer(self):
        self._offers += 1
        self._record("create_offer")
        return {"type": "offer", "sdp": f"offer-sdp-{self._offers}"}

    async def create_answer(self):
        self._record("create_answer")
        return {"type": "answer", "sdp": "answer-sdp"}

    async def set_local_description(self, description):
        self._record("set_local_description", description)

    async def set_remote_description(self, description):
        self._record("set_remote_description", description)

    async def add_ice_candidate(self, candidate):
        self._record("add_ice_candidate", candidate)

    def add_track(self, track, stream):
        self.tracks.append(track)

    def create_data_channel(self, label):
        channel = FakeDataChannel(label)
        self.data_channels.append(channel)
        return channel

    def on(self, event, handler):
        self._handlers.setdefault(event, []).append(handler)

    def fire(self, event, *args):
        for handler in self._handlers.get(event, []):
            handler(*args)

    def set_state(self, state: str):
        self.connection_state = state
        self.fire("connectionstatechange", state)

    def close(self):
        self.closed += 1
        self.connection_state = "closed"

    def names(self) -> list[str]:
        return [c[0] for c in self.calls]


class PeerConnectionFactory:
    def __init__(self, fail_on: set | None = None):
        self.fail_on = fail_on
        self.created: list[FakePeerConnection] = []

    def __call__(self, ice_servers):
        pc = FakePeerConnection(ice_servers, fail_on=self.fail_on)
        self.created.append(pc)
        return pc

    @property
    def last(self) -> FakePeerConnection:
        return self.created[-1]


# --- Media capture primitive ---

class FakeTrack:
    def __init__(self, kind: str):
        self.kind = kind
        self.enabled = True
        self.stop_count = 0
        self._handlers: dict[str, list] = {}

    def stop(self):
        self.stop_count += 1

    def on(self, event, handler):
        self._handlers.setdefault(event, []).append(handler)

    def end(self):
        """Capture ended outside our control."""
        for handler in self._handlers.get("ended", []):
            handler()


class FakeStream:
    def __init__(self, *tracks: FakeTrack):
        self.tracks = list(tracks)

    def get_tracks(self):
        return list(self.tracks)

    def get_audio_tracks(self):
        return [t for t in self.tracks if t.kind == "audio"]

    def get_video_tracks(self):
        return [t for t in self.tracks if t.kind == "video"]


class MediaFailure(Exception):
    """Browser-style DOMException stand-in."""

    def __init__(self, name: str, message: str = ""):
        self.name = name
        super().__init__(message or name)


class FakeMediaDevices:
    def __init__(self):
        self.user_media_error: Exception | None = None
        self.display_media_error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.user_media_calls = 0
        self.display_media_calls = 0
        self.streams: list[FakeStream] = []

    async def get_user_media(self, audio=True, video=False):
        self.user_media_calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.user_media_error is not None:
            raise self.user_media_error
        stream = FakeStream(FakeTrack("audio"))
        self.streams.append(stream)
        return stream

    async def get_display_media(self, video=True):
        self.display_media_calls += 1
        if self.display_media_error is not None:
            raise self.display_media_error
        stream = FakeStream(FakeTrack("video"))
        self.streams.append(stream)
        return stream


@pytest.fixture
def signaling():
    return FakeSignaling()


@pytest.fixture
def pc_factory():
    return PeerConnectionFactory()


@pytest.fixture
def media():
    return FakeMediaDevices()
