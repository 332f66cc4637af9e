"""Interfaces of the peer-connection and media-capture primitives.

The client core drives these but never implements them: a browser bridge,
aiortc, or a test double supplies the concrete objects. SDP descriptions
and ICE candidates pass through as opaque dicts.

Peer connection events (registered with ``on``):
- ``icecandidate``(candidate | None)
- ``connectionstatechange``(state) with state in new / connecting /
  connected / disconnected / failed / closed
- ``datachannel``(channel)
- ``track``(track, stream)

Data channel events: ``open``(), ``close``(), ``message``(text).
"""

from typing import Callable, Protocol


class MediaTrack(Protocol):
    kind: str  # "audio" | "video"
    enabled: bool

    def stop(self) -> None: ...

    def on(self, event: str, handler: Callable) -> None:
        """``ended`` fires when capture stops outside our control (e.g. the user ends a screen share)."""


class MediaStream(Protocol):
    def get_tracks(self) -> list[MediaTrack]: ...

    def get_audio_tracks(self) -> list[MediaTrack]: ...

    def get_video_tracks(self) -> list[MediaTrack]: ...


class MediaDevices(Protocol):
    async def get_user_media(self, audio: bool = True, video: bool = False) -> MediaStream: ...

    async def get_display_media(self, video: bool = True) -> MediaStream: ...


class DataChannel(Protocol):
    label: str
    ready_state: str  # connecting / open / closing / closed

    def send(self, data: str) -> None: ...

    def close(self) -> None: ...

    def on(self, event: str, handler: Callable) -> None: ...


class PeerConnection(Protocol):
    connection_state: str

    async def create_offer(self) -> dict: ...

    async def create_answer(self) -> dict: ...

    async def set_local_description(self, description: dict) -> None: ...

    async def set_remote_description(self, description: dict) -> None: ...

    async def add_ice_candidate(self, candidate: dict) -> None: ...

    def add_track(self, track: MediaTrack, stream: MediaStream) -> None: ...

    def create_data_channel(self, label: str) -> DataChannel: ...

    def on(self, event: str, handler: Callable) -> None: ...

    def close(self) -> None: ...


# factory(ice_servers) -> PeerConnection
PeerConnectionFactory = Callable[[list[dict]], PeerConnection]


def stop_stream(stream: MediaStream | None):
    """Stop every track of ``stream``; tolerates None."""
    if stream is None:
        return
    for track in stream.get_tracks():
        track.stop()
