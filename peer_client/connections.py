"""Per-peer connection management.

One ``PeerLink`` per remote handle wraps a peer connection and its
``messages`` data channel. Offers, answers and ICE candidates arrive from
the relay as opaque payloads and are applied in arrival order under the
link's lock.

Events:
- ``link-created``(link), ``link-established``(link)
- ``link-state``(remote, state), ``link-failed``(remote, error)
- ``link-closed``(remote, reason)
- ``channel-open``(remote), ``message``(remote, obj)
- ``remote-track``(remote, track, stream)
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from peer_client import config
from peer_client.errors import NegotiationError, RecipientUnavailable, RelayUnavailable, TransportFailure
from peer_client.events import EventEmitter, TaskSet
from peer_client.media import DataChannel, MediaStream, MediaTrack, PeerConnection, PeerConnectionFactory
from relay_server import protocol

logger = logging.getLogger("peer.connections")


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class LinkState(str, Enum):
    NEGOTIATING = "negotiating"
    ESTABLISHED = "established"
    CLOSED = "closed"


@dataclass(eq=False)
class PeerLink:
    remote: str
    role: Role
    pc: PeerConnection
    state: LinkState = LinkState.NEGOTIATING
    data_channel: DataChannel | None = None
    pending_candidates: list[dict] = field(default_factory=list)
    remote_description_set: bool = False
    awaiting_answer: bool = False
    needs_renegotiation: bool = False
    local_tracks: int = 0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    created_at: float = field(default_factory=time.time)

    @property
    def closed(self) -> bool:
        return self.state is LinkState.CLOSED

    @property
    def channel_open(self) -> bool:
        return self.data_channel is not None and self.data_channel.ready_state == "open"


class ConnectionManager(EventEmitter):
    def __init__(
        self,
        signaling,
        local_handle: str,
        peer_connection_factory: PeerConnectionFactory,
        ice_servers: list[dict] | None = None,
    ):
        super().__init__()
        self.signaling = signaling
        self.local_handle = local_handle
        self._factory = peer_connection_factory
        self._ice_servers = ice_servers if ice_servers is not None else config.ICE_SERVERS
        self._links: dict[str, PeerLink] = {}
        self._tasks = TaskSet("peer.connections")

        signaling.on(protocol.OFFER, lambda remote, payload: self._tasks.spawn(self.handle_offer(remote, payload)))
        signaling.on(protocol.ANSWER, lambda remote, payload: self._tasks.spawn(self.handle_answer(remote, payload)))
        signaling.on(
            protocol.ICE_CANDIDATE,
            lambda remote, payload: self._tasks.spawn(self.handle_ice_candidate(remote, payload)),
        )
        signaling.on("relay-error", self._on_relay_error)

    @property
    def links(self) -> dict[str, PeerLink]:
        return dict(self._links)

    def get_link(self, remote: str) -> PeerLink | None:
        return self._links.get(remote)

    def is_data_channel_open(self, remote: str) -> bool:
        link = self._links.get(remote)
        return link is not None and link.channel_open

    def create_link(self, remote: str, role: Role) -> PeerLink:
        """Return the link to ``remote``, creating it if none exists.

        Never creates a second peer connection for the same handle.
        """
        link = self._links.get(remote)
        if link is not None:
            return link

        pc = self._factory(self._ice_servers)
        link = PeerLink(remote=remote, role=role, pc=pc)
        self._links[remote] = link

        pc.on("icecandidate", lambda candidate: self._on_local_candidate(link, candidate))
        pc.on("connectionstatechange", lambda state: self._on_connection_state(link, state))
        pc.on("track", lambda track, stream=None: self._on_remote_track(link, track, stream))
        pc.on("datachannel", lambda channel: self._setup_data_channel(link, channel))
        if role is Role.INITIATOR:
            self._setup_data_channel(link, pc.create_data_channel(config.DATA_CHANNEL_LABEL))

        logger.info(f"Created {role.value} link with {remote}")
        self.emit("link-created", link)
        return link

    async def initiate(self, remote: str) -> PeerLink:
        """Start negotiating with ``remote``; an existing link is returned as-is."""
        link = self._links.get(remote)
        if link is not None:
            return link
        link = self.create_link(remote, Role.INITIATOR)
        await self._send_offer(link)
        return link

    async def negotiate(self, remote: str):
        """Send an offer on an existing link, e.g. one created with tracks attached up front."""
        link = self._links.get(remote)
        if link is None or link.closed:
            raise NegotiationError(f"No connection with {remote}")
        await self._send_offer(link)

    def request_renegotiation(self, remote: str) -> bool:
        """Re-offer after tracks were added: now if idle, else once the link settles."""
        link = self._links.get(remote)
        if link is None or link.closed:
            return False
        link.needs_renegotiation = True
        self._maybe_renegotiate(link)
        return True

    def add_track(self, remote: str, track: MediaTrack, stream: MediaStream) -> bool:
        link = self._links.get(remote)
        if link is None or link.closed:
            return False
        link.pc.add_track(track, stream)
        link.local_tracks += 1
        return True

    def send_message(self, remote: str, message: dict) -> bool:
        """Send a JSON message over the data channel. Returns False if it is not open."""
        link = self._links.get(remote)
        if link is None or not link.channel_open:
            logger.error(f"Data channel not open for {remote}")
            return False
        try:
            link.data_channel.send(json.dumps(message))
            return True
        except Exception as e:
            logger.error(f"Failed to send message to {remote}: {e}")
            return False

    def close_link(self, remote: str, reason: str = "closed") -> bool:
        link = self._links.get(remote)
        if link is None:
            return False
        self._close(link, reason)
        return True

    def close_all(self, reason: str = "closed"):
        for link in list(self._links.values()):
            self._close(link, reason)

    async def shutdown(self):
        self.close_all("shutdown")
        await self._tasks.cancel_all()

    # --- Inbound negotiation payloads ---

    async def handle_offer(self, remote: str, payload: dict):
        link = self._links.get(remote) or self.create_link(remote, Role.RESPONDER)
        async with link.lock:
            if link.closed:
                return
            if link.awaiting_answer:
                # Both sides offered at once: the lower handle keeps its offer
                if self.local_handle < remote:
                    logger.info(f"Offer collision with {remote}: keeping our offer")
                    return
                logger.info(f"Offer collision with {remote}: answering theirs")
                link.awaiting_answer = False
                if link.state is LinkState.NEGOTIATING:
                    link.role = Role.RESPONDER
                link.needs_renegotiation = link.local_tracks > 0

            try:
                await link.pc.set_remote_description(payload)
                link.remote_description_set = True
                await self._flush_candidates(link)
                answer = await link.pc.create_answer()
                await link.pc.set_local_description(answer)
            except Exception as e:
                logger.error(f"Failed to handle offer from {remote}: {e}")
                self._close(link, "negotiation-failed")
                return

            if link.closed:
                return
            if not self.signaling.send_answer(remote, answer):
                self._close(link, "relay-unavailable")
                return
        self._maybe_renegotiate(link)

    async def handle_answer(self, remote: str, payload: dict):
        link = self._links.get(remote)
        if link is None:
            logger.warning(f"Answer from {remote} without a connection")
            return
        async with link.lock:
            if link.closed:
                return
            if not link.awaiting_answer:
                logger.warning(f"Unexpected answer from {remote}, ignoring")
                return
            try:
                await link.pc.set_remote_description(payload)
            except Exception as e:
                logger.error(f"Failed to handle answer from {remote}: {e}")
                self._close(link, "negotiation-failed")
                return
            link.awaiting_answer = False
            link.remote_description_set = True
            await self._flush_candidates(link)
        self._maybe_renegotiate(link)

    async def handle_ice_candidate(self, remote: str, payload: dict | None):
        link = self._links.get(remote)
        if link is None or link.closed:
            logger.warning(f"ICE candidate from {remote} without a connection")
            return
        if payload is None:
            return
        async with link.lock:
            if link.closed:
                return
            if not link.remote_description_set:
                link.pending_candidates.append(payload)
                return
            await self._apply_candidate(link, payload)

    async def _flush_candidates(self, link: PeerLink):
        pending, link.pending_candidates = link.pending_candidates, []
        for candidate in pending:
            await self._apply_candidate(link, candidate)

    async def _apply_candidate(self, link: PeerLink, candidate: dict):
        try:
            await link.pc.add_ice_candidate(candidate)
        except Exception as e:
            logger.error(f"Failed to add ICE candidate from {link.remote}: {e}")

    # --- Outbound negotiation ---

    async def _send_offer(self, link: PeerLink):
        async with link.lock:
            if link.closed or link.awaiting_answer:
                return
            try:
                offer = await link.pc.create_offer()
                await link.pc.set_local_description(offer)
            except Exception as e:
                logger.error(f"Failed to create offer for {link.remote}: {e}")
                self._close(link, "negotiation-failed")
                raise NegotiationError(f"Offer to {link.remote} failed: {e}") from e
            if link.closed:
                return
            if not self.signaling.send_offer(link.remote, offer):
                self._close(link, "relay-unavailable")
                raise RelayUnavailable(f"Offer to {link.remote} not sent: relay channel is down")
            link.awaiting_answer = True
            link.needs_renegotiation = False

    def _maybe_renegotiate(self, link: PeerLink):
        if (
            link.needs_renegotiation
            and link.state is LinkState.ESTABLISHED
            and not link.awaiting_answer
            and self._links.get(link.remote) is link
        ):
            self._tasks.spawn(self._renegotiate(link))

    async def _renegotiate(self, link: PeerLink):
        if not link.needs_renegotiation:
            return
        logger.info(f"Renegotiating with {link.remote}")
        try:
            await self._send_offer(link)
        except (NegotiationError, RelayUnavailable) as e:
            logger.warning(f"Renegotiation with {link.remote} aborted: {e}")

    # --- Peer connection callbacks ---

    def _is_current(self, link: PeerLink) -> bool:
        return not link.closed and self._links.get(link.remote) is link

    def _on_local_candidate(self, link: PeerLink, candidate: dict | None):
        if candidate is None or not self._is_current(link):
            return
        self.signaling.send_ice_candidate(link.remote, candidate)

    def _on_connection_state(self, link: PeerLink, state: str):
        if not self._is_current(link):
            return
        logger.debug(f"Connection state with {link.remote}: {state}")
        self.emit("link-state", link.remote, state)

        if state == "connected":
            if link.state is LinkState.NEGOTIATING:
                link.state = LinkState.ESTABLISHED
                logger.info(f"Connection established with {link.remote}")
                self.emit("link-established", link)
            self._maybe_renegotiate(link)
        elif state == "failed":
            logger.warning(f"Connection with {link.remote} failed")
            self.emit("link-failed", link.remote, TransportFailure(f"Connection with {link.remote} failed"))
            self._close(link, "failed")
        elif state == "closed":
            self._close(link, "closed")

    def _on_remote_track(self, link: PeerLink, track: MediaTrack, stream: MediaStream | None):
        if not self._is_current(link):
            return
        logger.info(f"Received remote {getattr(track, 'kind', 'media')} track from {link.remote}")
        self.emit("remote-track", link.remote, track, stream)

    def _setup_data_channel(self, link: PeerLink, channel: DataChannel):
        if not self._is_current(link):
            channel.close()
            return
        current = link.data_channel
        if current is not None and current is not channel:
            if current.ready_state == "open":
                # Collision left two channels; keep the one already in use
                logger.info(f"Extra data channel from {link.remote}, keeping the open one")
                channel.on("message", lambda data: self._on_channel_message(link, data))
                return
            current.close()

        link.data_channel = channel
        remote = link.remote

        def on_open():
            logger.info(f"Data channel open with {remote}")
            self.emit("channel-open", remote)

        channel.on("open", on_open)
        channel.on("close", lambda: logger.info(f"Data channel closed with {remote}"))
        channel.on("message", lambda data: self._on_channel_message(link, data))
        if channel.ready_state == "open":
            on_open()

    def _on_channel_message(self, link: PeerLink, data):
        try:
            message = json.loads(data)
        except (TypeError, ValueError) as e:
            logger.warning(f"Malformed data channel message from {link.remote}: {e}")
            return
        self.emit("message", link.remote, message)

    def _on_relay_error(self, error):
        if not isinstance(error, RecipientUnavailable) or error.handle is None:
            return
        link = self._links.get(error.handle)
        if link is not None and link.state is LinkState.NEGOTIATING:
            logger.info(f"{error.handle} is offline, abandoning negotiation")
            self._close(link, "recipient-unavailable")

    def _close(self, link: PeerLink, reason: str):
        if link.closed:
            return
        link.state = LinkState.CLOSED
        if self._links.get(link.remote) is link:
            del self._links[link.remote]
        link.pending_candidates.clear()

        if link.data_channel is not None:
            try:
                link.data_channel.close()
            except Exception as e:
                logger.warning(f"Error closing data channel with {link.remote}: {e}")
        try:
            link.pc.close()
        except Exception as e:
            logger.warning(f"Error closing connection with {link.remote}: {e}")

        logger.info(f"Connection closed with {link.remote} ({reason})")
        self.emit("link-closed", link.remote, reason)
