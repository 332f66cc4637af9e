"""Relay server configuration.

All settings can be overridden via environment variables.
Configuration is loaded from ~/.peerlink/peerlink.env.
"""

import os
from pathlib import Path

from dotenv import load_dotenv

DATA_DIR = Path.home() / ".peerlink"

load_dotenv(DATA_DIR / "peerlink.env")

# --- Server ---
RELAY_HOST = os.environ.get("RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(os.environ.get("RELAY_PORT", "8080"))
# Frames queued per channel before new ones are dropped for a peer that stopped reading
OUTBOX_SIZE = int(os.environ.get("OUTBOX_SIZE", "256"))

# Browsers load the client from a different origin than the relay
CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "*").split(",") if o.strip()]

# --- Logging ---
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"
