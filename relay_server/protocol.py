"""Wire protocol shared by the relay and its clients.

Every frame is a JSON object with a ``type`` field. Negotiation and
call-control frames are addressed with ``to`` by the sender and stamped
with ``from`` by the relay; their ``payload`` is opaque to the relay.
"""

import json

# --- Registration / discovery ---
REGISTER = "register"
REGISTERED = "registered"
SEARCH = "search"
SEARCH_RESULTS = "search-results"

# --- Presence ---
USER_ONLINE = "user-online"
USER_OFFLINE = "user-offline"

ERROR = "error"

# --- Negotiation (opaque SDP / ICE payloads) ---
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"

# --- Call control ---
CALL_OFFER = "call-offer"
CALL_ANSWER = "call-answer"
CALL_REJECT = "call-reject"
CALL_END = "call-end"
SCREEN_SHARE_START = "screen-share-start"
SCREEN_SHARE_STOP = "screen-share-stop"

NEGOTIATION_TYPES = frozenset({OFFER, ANSWER, ICE_CANDIDATE})
CALL_CONTROL_TYPES = frozenset({
    CALL_OFFER,
    CALL_ANSWER,
    CALL_REJECT,
    CALL_END,
    SCREEN_SHARE_START,
    SCREEN_SHARE_STOP,
})
# The relay forwards these verbatim without looking at the payload.
RELAYED_TYPES = NEGOTIATION_TYPES | CALL_CONTROL_TYPES


class ProtocolError(Exception):
    """Base class for errors reported back to a client as an ``error`` frame."""

    code = "error"
    default_message = "Request failed"

    def __init__(self, message: str | None = None, **extra):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_message(self) -> dict:
        return error_message(self.message, code=self.code, **self.extra)


class HandleTaken(ProtocolError):
    code = "handle-taken"
    default_message = "Username already taken"


class AlreadyRegistered(ProtocolError):
    code = "already-registered"
    default_message = "Connection already registered under another username"


class RecipientUnavailable(ProtocolError):
    code = "recipient-unavailable"
    default_message = "User not found or offline"


class NotRegistered(ProtocolError):
    code = "not-registered"
    default_message = "Register a username before sending messages"


class MalformedMessage(ProtocolError):
    code = "malformed"
    default_message = "Malformed message"


def decode(raw: str | bytes) -> dict:
    """Parse one inbound frame. Raises MalformedMessage on anything but a typed JSON object."""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedMessage(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessage("Frame is not a JSON object")
    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise MalformedMessage("Frame has no type")
    return data


def encode(message: dict) -> str:
    return json.dumps(message)


def error_message(message: str, **extra) -> dict:
    return {"type": ERROR, "message": message, **extra}
