"""Errors surfaced by the peer client to the embedding application."""


class PeerlinkError(Exception):
    """Base class for all client-side failures."""


# --- Relay ---

class RelayUnavailable(PeerlinkError):
    """The relay could not be reached or the channel is closed."""


class RegistrationError(PeerlinkError):
    """The relay refused or never acknowledged a registration."""


class HandleTaken(RegistrationError):
    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"Username {handle!r} is already taken")


class RecipientUnavailable(PeerlinkError):
    def __init__(self, handle: str | None, message: str = "User not found or offline"):
        self.handle = handle
        super().__init__(f"{handle}: {message}" if handle else message)


# --- Peer links ---

class NegotiationError(PeerlinkError):
    """Applying or producing a negotiation payload failed; the link was closed."""


class TransportFailure(PeerlinkError):
    """The peer-to-peer transport broke; dependent calls are force-ended."""


# --- Calls ---

class NoActiveCall(PeerlinkError):
    def __init__(self, message: str = "No active call"):
        super().__init__(message)


class CallInProgress(PeerlinkError):
    def __init__(self, remote: str):
        self.remote = remote
        super().__init__(f"Already in a call with {remote}")


class InvalidCallState(PeerlinkError):
    pass


# --- Media capture ---

class MediaError(PeerlinkError):
    """Capture device could not be acquired."""


class PermissionDenied(MediaError):
    pass


class DeviceNotFound(MediaError):
    pass


# Browser-style DOMException names reported by capture primitives
_PERMISSION_NAMES = {"NotAllowedError", "PermissionDeniedError", "SecurityError"}
_NOT_FOUND_NAMES = {"NotFoundError", "DevicesNotFoundError", "OverconstrainedError"}


def categorize_media_error(exc: BaseException) -> MediaError:
    """Map a capture failure onto PermissionDenied / DeviceNotFound / MediaError."""
    if isinstance(exc, MediaError):
        return exc
    name = getattr(exc, "name", None) or type(exc).__name__
    if isinstance(exc, PermissionError) or name in _PERMISSION_NAMES:
        return PermissionDenied(str(exc) or "Microphone access denied")
    if isinstance(exc, FileNotFoundError) or name in _NOT_FOUND_NAMES:
        return DeviceNotFound(str(exc) or "Capture device not found")
    return MediaError(str(exc) or name)
