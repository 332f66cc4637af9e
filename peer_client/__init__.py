"""peerlink peer client: relay signaling, peer links and call state."""

from peer_client.calls import CallManager, CallSession, CallStatus
from peer_client.client import PeerClient
from peer_client.connections import ConnectionManager, LinkState, PeerLink, Role
from peer_client.signaling import SignalingClient

__all__ = [
    "CallManager",
    "CallSession",
    "CallStatus",
    "ConnectionManager",
    "LinkState",
    "PeerClient",
    "PeerLink",
    "Role",
    "SignalingClient",
]
