"""Peer client configuration.

All settings can be overridden via environment variables.
Configuration is loaded from ~/.peerlink/peerlink.env.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path.home() / ".peerlink" / "peerlink.env")

# --- Relay ---
RELAY_URL = os.environ.get("RELAY_URL", "ws://localhost:8080")
REGISTER_TIMEOUT = float(os.environ.get("REGISTER_TIMEOUT", "5.0"))  # seconds to wait for "registered"

# --- Liveness ---
PING_INTERVAL = float(os.environ.get("PING_INTERVAL", "20"))  # WebSocket keepalive ping, seconds
RECONNECT_DELAY = float(os.environ.get("RECONNECT_DELAY", "3.0"))  # fixed delay before each attempt
RECONNECT_MAX_ATTEMPTS = int(os.environ.get("RECONNECT_MAX_ATTEMPTS", "10"))

# Probe the relay's HTTP health endpoint before opening the WebSocket
HEALTH_CHECK = os.environ.get("HEALTH_CHECK", "true").lower() in ("1", "true", "yes")
HEALTH_TIMEOUT = float(os.environ.get("HEALTH_TIMEOUT", "3.0"))

# --- Peer connections ---
_DEFAULT_STUN = "stun:stun.l.google.com:19302,stun:stun1.l.google.com:19302,stun:stun2.l.google.com:19302"
ICE_SERVERS = [
    {"urls": url.strip()}
    for url in os.environ.get("ICE_SERVERS", _DEFAULT_STUN).split(",")
    if url.strip()
]

DATA_CHANNEL_LABEL = "messages"


def relay_http_url(ws_url: str) -> str:
    """Derive the relay's HTTP base URL from its WebSocket URL."""
    base = ws_url.replace("ws://", "http://", 1).replace("wss://", "https://", 1)
    if base.endswith("/ws"):
        base = base[: -len("/ws")]
    return base.rstrip("/")
