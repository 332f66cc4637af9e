"""peerlink relay server: handle registry and signaling relay."""
