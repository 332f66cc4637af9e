"""Composition root for one peer: relay channel, peer links and calls."""

import logging

from peer_client import config
from peer_client.calls import CallManager
from peer_client.connections import ConnectionManager, PeerLink
from peer_client.events import EventEmitter
from peer_client.media import MediaDevices, PeerConnectionFactory
from peer_client.signaling import SignalingClient
from relay_server import protocol

logger = logging.getLogger("peer.client")


class PeerClient(EventEmitter):
    """Wires the signaling client, connection manager and call manager together.

    Events: ``presence``(handle, online), ``message``(remote, obj).
    """

    def __init__(
        self,
        media_devices: MediaDevices,
        peer_connection_factory: PeerConnectionFactory,
        *,
        relay_url: str = config.RELAY_URL,
        ice_servers: list[dict] | None = None,
        signaling: SignalingClient | None = None,
    ):
        super().__init__()
        self.handle: str | None = None
        self.online: set[str] = set()
        self.signaling = signaling if signaling is not None else SignalingClient(relay_url)
        self.connections = ConnectionManager(self.signaling, None, peer_connection_factory, ice_servers)
        self.calls = CallManager(self.connections, self.signaling, media_devices)

        self.signaling.on(protocol.USER_ONLINE, self._on_user_online)
        self.signaling.on(protocol.USER_OFFLINE, self._on_user_offline)
        self.signaling.on("disconnected", self._on_disconnected)
        self.signaling.on("reconnected", self._on_reconnected)
        self.connections.on("message", lambda remote, message: self.emit("message", remote, message))

    async def start(self, handle: str):
        """Connect to the relay and claim ``handle``. Raises HandleTaken / RelayUnavailable."""
        await self.signaling.connect()
        try:
            await self.signaling.register(handle)
        except Exception:
            await self.signaling.close()
            raise
        self.handle = handle
        self.connections.local_handle = handle
        logger.info(f"Peer {handle} online")

    async def stop(self):
        self.calls.end()
        await self.connections.shutdown()
        await self.signaling.close()
        self.online.clear()
        logger.info(f"Peer {self.handle} offline")

    async def search(self, query: str) -> list[str]:
        return await self.signaling.search(query)

    async def connect_to(self, remote: str) -> PeerLink:
        return await self.connections.initiate(remote)

    def send_message(self, remote: str, message: dict) -> bool:
        return self.connections.send_message(remote, message)

    def _on_user_online(self, handle: str):
        if not handle or handle == self.handle:
            return
        self.online.add(handle)
        self.emit("presence", handle, True)

    def _on_user_offline(self, handle: str):
        if not handle:
            return
        self.online.discard(handle)
        self.emit("presence", handle, False)

    def _on_disconnected(self):
        # Presence missed while detached cannot be replayed
        self.online.clear()

    def _on_reconnected(self, handle: str):
        # Peers cannot tell we dropped off the relay, so every link and call
        # from before the drop is stale: tear them down and let the app renegotiate.
        logger.info(f"Re-registered as {handle}; closing {len(self.connections.links)} stale link(s)")
        self.calls.end(reason="relay-reconnected")
        self.connections.close_all("relay-reconnected")
