"""Voice calls and screen sharing on top of peer links.

A client holds at most one call. Call control travels through the relay
(call-offer / call-answer / call-reject / call-end); media travels over
the peer link's transport.

    none --initiate--> calling --call-answer--> active
    none --call-offer--> incoming --accept--> active
    calling --call-reject--> none      incoming --reject--> none
    active --end / call-end / transport failure--> none

Events:
- ``call-initiated``(remote), ``incoming-call``(remote), ``call-missed``(remote)
- ``call-accepted``(remote), ``call-rejected``(remote, reason)
- ``call-ended``(remote, reason), ``call-error``(remote, error)
- ``microphone-toggled``(enabled)
- ``screen-share-started``(stream), ``screen-share-stopped``(), ``screen-share-error``(error)
- ``remote-screen-share-started``(remote), ``remote-screen-share-stopped``(remote)
- ``remote-track``(remote, track, stream)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum

from peer_client.connections import ConnectionManager, Role
from peer_client.errors import (
    CallInProgress,
    InvalidCallState,
    NegotiationError,
    NoActiveCall,
    RelayUnavailable,
    TransportFailure,
    categorize_media_error,
)
from peer_client.events import EventEmitter
from peer_client.media import MediaDevices, MediaStream, stop_stream
from relay_server import protocol

logger = logging.getLogger("peer.calls")


class CallStatus(str, Enum):
    NONE = "none"
    CALLING = "calling"
    INCOMING = "incoming"
    ACTIVE = "active"


@dataclass(eq=False)
class CallSession:
    remote: str
    status: CallStatus
    microphone_enabled: bool = True
    screen_sharing: bool = False
    start_time: float | None = None

    def duration(self, now: float | None = None) -> float | None:
        if self.start_time is None:
            return None
        return (now if now is not None else time.time()) - self.start_time


class CallManager(EventEmitter):
    def __init__(self, connections: ConnectionManager, signaling, media_devices: MediaDevices, clock=time.time):
        super().__init__()
        self.connections = connections
        self.signaling = signaling
        self.media = media_devices
        self._clock = clock
        self._session: CallSession | None = None
        self._local_stream: MediaStream | None = None
        self._screen_stream: MediaStream | None = None
        self._accepting = False
        self._capturing_screen = False

        signaling.on(protocol.CALL_OFFER, self._on_call_offer)
        signaling.on(protocol.CALL_ANSWER, self._on_call_answer)
        signaling.on(protocol.CALL_REJECT, self._on_call_reject)
        signaling.on(protocol.CALL_END, self._on_call_end)
        signaling.on(protocol.SCREEN_SHARE_START, self._on_remote_screen_share_start)
        signaling.on(protocol.SCREEN_SHARE_STOP, self._on_remote_screen_share_stop)

        connections.on("link-failed", self._on_link_failed)
        connections.on("link-closed", self._on_link_closed)
        connections.on("remote-track", self._on_remote_track)

    @property
    def session(self) -> CallSession | None:
        return self._session

    @property
    def status(self) -> CallStatus:
        return self._session.status if self._session else CallStatus.NONE

    # --- Local actions ---

    async def initiate(self, remote: str):
        """Call ``remote``: acquire the microphone, attach it to the link and ring the peer."""
        if self._session is not None:
            raise CallInProgress(self._session.remote)

        # Claim the call slot before awaiting the device
        session = CallSession(remote=remote, status=CallStatus.CALLING)
        self._session = session
        logger.info(f"Calling {remote}")

        stream = await self._acquire_microphone(session)
        if stream is None:
            return

        self._local_stream = stream
        try:
            await self._attach_stream(remote, stream)
        except (NegotiationError, RelayUnavailable) as e:
            self._fail(session, e)
            raise
        if self._session is not session or session.status is not CallStatus.CALLING:
            return  # ended, or already answered a crossed call-offer

        if not self.signaling.send_signal(protocol.CALL_OFFER, remote, {}):
            error = RelayUnavailable(f"Call offer to {remote} not sent: relay channel is down")
            self._fail(session, error)
            raise error
        self.emit("call-initiated", remote)

    async def accept(self, remote: str | None = None):
        """Answer the ringing call from ``remote`` (defaults to the current caller)."""
        session = self._session
        if session is None or session.status is not CallStatus.INCOMING:
            raise InvalidCallState(f"No incoming call to accept (status: {self.status.value})")
        if remote is not None and remote != session.remote:
            raise InvalidCallState(f"Incoming call is from {session.remote}, not {remote}")
        if self._accepting:
            raise InvalidCallState("Call is already being accepted")

        remote = session.remote
        logger.info(f"Accepting call from {remote}")
        self._accepting = True
        try:
            stream = await self._acquire_microphone(session, reject_on_failure=True)
        finally:
            self._accepting = False
        if stream is None:
            return

        self._local_stream = stream
        try:
            await self._attach_stream(remote, stream)
        except (NegotiationError, RelayUnavailable) as e:
            self.signaling.send_signal(protocol.CALL_REJECT, remote)
            self._fail(session, e)
            raise
        if self._session is not session:
            return

        if not self.signaling.send_signal(protocol.CALL_ANSWER, remote, {}):
            error = RelayUnavailable(f"Call answer to {remote} not sent: relay channel is down")
            self._fail(session, error)
            raise error
        session.status = CallStatus.ACTIVE
        session.start_time = self._clock()
        self.emit("call-accepted", remote)

    def reject(self, remote: str | None = None):
        session = self._session
        if session is None or session.status is not CallStatus.INCOMING:
            raise InvalidCallState(f"No incoming call to reject (status: {self.status.value})")
        if remote is not None and remote != session.remote:
            raise InvalidCallState(f"Incoming call is from {session.remote}, not {remote}")

        logger.info(f"Rejecting call from {session.remote}")
        if not self.signaling.send_signal(protocol.CALL_REJECT, session.remote):
            logger.warning(f"Could not tell {session.remote} the call was rejected: relay channel is down")
        self._finish(session, "rejected", event="call-rejected")

    def end(self, reason: str = "local-end") -> bool:
        """Hang up. Safe to call repeatedly; returns False when there was no call."""
        session = self._session
        if session is None:
            return False
        if session.status is CallStatus.INCOMING:
            self.reject()
            return True

        logger.info(f"Ending call with {session.remote}")
        if not self.signaling.send_signal(protocol.CALL_END, session.remote):
            logger.warning(f"Could not tell {session.remote} the call ended: relay channel is down")
        self._finish(session, reason)
        return True

    def toggle_microphone(self) -> bool:
        session = self._session
        if session is None:
            return False
        return self.set_microphone_enabled(not session.microphone_enabled)

    def set_microphone_enabled(self, enabled: bool) -> bool:
        """Mute or unmute locally. Nothing is signaled; the peer just hears silence.

        Only an active call can be muted. Returns False otherwise.
        """
        session = self._session
        if session is None or session.status is not CallStatus.ACTIVE or self._local_stream is None:
            return False
        for track in self._local_stream.get_audio_tracks():
            track.enabled = enabled
        session.microphone_enabled = enabled
        self.emit("microphone-toggled", enabled)
        return enabled

    async def start_screen_share(self):
        session = self._session
        if session is None or session.status is not CallStatus.ACTIVE:
            raise NoActiveCall()
        if session.screen_sharing or self._capturing_screen:
            return

        self._capturing_screen = True
        try:
            stream = await self.media.get_display_media(video=True)
        except Exception as e:
            error = categorize_media_error(e)
            logger.warning(f"Screen capture failed: {error}")
            self.emit("screen-share-error", error)
            if error is e:
                raise
            raise error from e
        finally:
            self._capturing_screen = False

        if self._session is not session or session.status is not CallStatus.ACTIVE:
            stop_stream(stream)
            raise NoActiveCall("Call ended before screen capture started")

        remote = session.remote
        self._screen_stream = stream
        for track in stream.get_video_tracks():
            track.on("ended", lambda s=stream: self._on_capture_ended(s))
            self.connections.add_track(remote, track, stream)
        self.connections.request_renegotiation(remote)

        session.screen_sharing = True
        self.signaling.send_signal(protocol.SCREEN_SHARE_START, remote)
        logger.info(f"Screen share started with {remote}")
        self.emit("screen-share-started", stream)

    def stop_screen_share(self) -> bool:
        stream = self._screen_stream
        if stream is None:
            return False
        self._screen_stream = None
        stop_stream(stream)

        session = self._session
        if session is not None:
            session.screen_sharing = False
            self.signaling.send_signal(protocol.SCREEN_SHARE_STOP, session.remote)
        logger.info("Screen share stopped")
        self.emit("screen-share-stopped")
        return True

    # --- Helpers ---

    async def _acquire_microphone(self, session: CallSession, reject_on_failure: bool = False) -> MediaStream | None:
        """Get the microphone for ``session``.

        Returns None when the call went away while waiting. On failure the
        call slot is released and a categorized MediaError is raised.
        """
        try:
            stream = await self.media.get_user_media(audio=True)
        except asyncio.CancelledError:
            self._abandon(session)
            raise
        except Exception as e:
            error = categorize_media_error(e)
            logger.warning(f"Microphone unavailable for call with {session.remote}: {error}")
            if self._session is session:
                if reject_on_failure:
                    self.signaling.send_signal(protocol.CALL_REJECT, session.remote)
                elif session.status is CallStatus.ACTIVE:
                    # Answered a crossed call-offer while waiting
                    self.signaling.send_signal(protocol.CALL_END, session.remote)
            self._abandon(session)
            self.emit("call-error", session.remote, error)
            if error is e:
                raise
            raise error from e

        if self._session is not session:
            logger.info(f"Call with {session.remote} ended while acquiring microphone")
            stop_stream(stream)
            return None
        return stream

    def _abandon(self, session: CallSession):
        if self._session is session:
            self._session = None
            session.status = CallStatus.NONE

    async def _attach_stream(self, remote: str, stream: MediaStream):
        link = self.connections.get_link(remote)
        if link is None:
            self.connections.create_link(remote, Role.INITIATOR)
            for track in stream.get_tracks():
                self.connections.add_track(remote, track, stream)
            await self.connections.negotiate(remote)
            return
        for track in stream.get_tracks():
            self.connections.add_track(remote, track, stream)
        self.connections.request_renegotiation(remote)

    def _finish(self, session: CallSession, reason: str, event: str = "call-ended"):
        # Runs at most once per session
        if self._session is not session:
            return
        self._session = None
        session.status = CallStatus.NONE
        session.screen_sharing = False

        stop_stream(self._local_stream)
        self._local_stream = None
        stop_stream(self._screen_stream)
        self._screen_stream = None

        logger.info(f"Call with {session.remote} finished ({reason})")
        self.emit(event, session.remote, reason)

    def _fail(self, session: CallSession, error: Exception):
        reason = "relay-unavailable" if isinstance(error, RelayUnavailable) else "negotiation-failed"
        self._finish(session, reason)
        self.emit("call-error", session.remote, error)

    def _current(self, remote: str, *statuses: CallStatus) -> CallSession | None:
        session = self._session
        if session is None or session.remote != remote:
            return None
        if statuses and session.status not in statuses:
            return None
        return session

    # --- Inbound signals ---

    def _on_call_offer(self, remote: str, payload=None):
        if self._session is not None:
            if self._current(remote, CallStatus.INCOMING):
                return  # duplicate ring
            session = self._current(remote, CallStatus.CALLING)
            if session is not None:
                self._on_crossed_call(session)
                return
            logger.info(f"Busy, rejecting call from {remote}")
            self.signaling.send_signal(protocol.CALL_REJECT, remote, {"reason": "busy"})
            self.emit("call-missed", remote)
            return

        self._session = CallSession(remote=remote, status=CallStatus.INCOMING)
        logger.info(f"Incoming call from {remote}")
        self.emit("incoming-call", remote)

    def _on_crossed_call(self, session: CallSession):
        """Both sides rang each other. The lower handle keeps its call-offer and the other side answers it."""
        remote = session.remote
        if self.connections.local_handle < remote:
            logger.info(f"Crossed call with {remote}, waiting for their answer")
            return

        logger.info(f"Crossed call with {remote}, answering theirs")
        if not self.signaling.send_signal(protocol.CALL_ANSWER, remote, {}):
            self._fail(session, RelayUnavailable(f"Call answer to {remote} not sent: relay channel is down"))
            return
        session.status = CallStatus.ACTIVE
        session.start_time = self._clock()
        self.emit("call-accepted", remote)

    def _on_call_answer(self, remote: str, payload=None):
        session = self._current(remote, CallStatus.CALLING)
        if session is None:
            logger.warning(f"Ignoring call-answer from {remote} (status: {self.status.value})")
            return
        session.status = CallStatus.ACTIVE
        session.start_time = self._clock()
        logger.info(f"Call accepted by {remote}")
        self.emit("call-accepted", remote)

    def _on_call_reject(self, remote: str, payload=None):
        session = self._current(remote, CallStatus.CALLING)
        if session is None:
            logger.warning(f"Ignoring call-reject from {remote} (status: {self.status.value})")
            return
        reason = payload.get("reason", "rejected") if isinstance(payload, dict) else "rejected"
        self._finish(session, reason, event="call-rejected")

    def _on_call_end(self, remote: str, payload=None):
        session = self._current(remote)
        if session is None:
            logger.debug(f"Ignoring call-end from {remote}")
            return
        self._finish(session, "remote-end")

    def _on_remote_screen_share_start(self, remote: str, payload=None):
        if self._current(remote, CallStatus.ACTIVE):
            self.emit("remote-screen-share-started", remote)

    def _on_remote_screen_share_stop(self, remote: str, payload=None):
        if self._current(remote, CallStatus.ACTIVE):
            self.emit("remote-screen-share-stopped", remote)

    def _on_remote_track(self, remote: str, track, stream):
        if self._current(remote):
            self.emit("remote-track", remote, track, stream)

    def _on_capture_ended(self, stream: MediaStream):
        if stream is self._screen_stream:
            self.stop_screen_share()

    def _on_link_failed(self, remote: str, error: TransportFailure):
        session = self._current(remote)
        if session is None:
            return
        logger.warning(f"Transport to {remote} failed, ending call")
        self._finish(session, "transport-failure")
        self.emit("call-error", remote, error)

    def _on_link_closed(self, remote: str, reason: str):
        session = self._current(remote)
        if session is not None:
            self._finish(session, reason)
