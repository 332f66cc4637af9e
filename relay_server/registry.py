"""User registry for tracking connected participants and relaying between them."""

import asyncio
import logging
import time
from dataclasses import dataclass, field

from relay_server import protocol
from relay_server.config import OUTBOX_SIZE
from relay_server.protocol import (
    AlreadyRegistered,
    HandleTaken,
    MalformedMessage,
    NotRegistered,
    RecipientUnavailable,
)

logger = logging.getLogger("relay.registry")


@dataclass(eq=False)
class Participant:
    handle: str
    ws: object  # WebSocket connection
    outbox: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=OUTBOX_SIZE))
    writer: asyncio.Task | None = None
    registered_at: float = field(default_factory=time.time)


class UserRegistry:
    """Live handle → channel mapping.

    Map changes and lookups run under a single lock, and every frame for a
    registered channel is put on that channel's outbox while the lock is
    held, so presence and relayed frames reach each peer in the order the
    registry decided them. A per-channel writer task does the actual
    socket writes; a peer that stops reading only stalls its own writer.
    """

    def __init__(self):
        self._participants: dict[str, Participant] = {}
        self._by_channel: dict[int, Participant] = {}  # id(ws) → participant
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._participants)

    def handle_for(self, ws) -> str | None:
        participant = self._by_channel.get(id(ws))
        return participant.handle if participant else None

    async def register(self, ws, handle) -> Participant:
        """Claim ``handle`` for ``ws``, acknowledge it and announce it to everyone else.

        Raises HandleTaken if another live channel holds the handle; the
        existing registration is left untouched.
        """
        if not isinstance(handle, str) or not handle.strip():
            raise MalformedMessage("Username is required")

        async with self._lock:
            current = self._by_channel.get(id(ws))
            if current is not None and current.handle != handle:
                raise AlreadyRegistered(username=current.handle)

            existing = self._participants.get(handle)
            if existing is not None and existing.ws is not ws:
                raise HandleTaken(username=handle)

            if existing is not None:
                self._enqueue(existing, {"type": protocol.REGISTERED, "username": handle})
                return existing

            participant = Participant(handle=handle, ws=ws)
            participant.writer = asyncio.get_running_loop().create_task(self._write(participant))
            self._participants[handle] = participant
            self._by_channel[id(ws)] = participant
            logger.info(f"User registered: {handle} ({len(self._participants)} online)")

            self._enqueue(participant, {"type": protocol.REGISTERED, "username": handle})
            self._broadcast({"type": protocol.USER_ONLINE, "username": handle}, exclude=participant)
            return participant

    async def search(self, ws, query) -> list[str]:
        """Case-insensitive substring match over online handles, excluding the caller."""
        async with self._lock:
            if not isinstance(query, str) or not query:
                return []
            own = self.handle_for(ws)
            needle = query.lower()
            return [h for h in self._participants if h != own and needle in h.lower()]

    async def forward(self, ws, to, message: dict):
        """Stamp ``from`` with the sender's handle and queue ``message`` for ``to``.

        Best effort: nothing is held for offline peers or retried. Raises
        NotRegistered or RecipientUnavailable so the caller can report back
        to the sender.
        """
        async with self._lock:
            sender = self._by_channel.get(id(ws))
            if sender is None:
                raise NotRegistered()
            target = self._participants.get(to) if isinstance(to, str) else None
            if target is None:
                raise RecipientUnavailable(to=to)

            outbound = dict(message)
            outbound["from"] = sender.handle
            self._enqueue(target, outbound)

    async def send(self, ws, message: dict):
        """Reply to ``ws`` behind anything already queued for it.

        Channels that never registered have no outbox and are written to
        directly.
        """
        async with self._lock:
            participant = self._by_channel.get(id(ws))
            if participant is not None:
                self._enqueue(participant, message)
                return
        await ws.send_text(protocol.encode(message))

    async def unregister(self, ws) -> str | None:
        """Drop the channel's handle (if any) and tell the remaining participants once."""
        async with self._lock:
            participant = self._by_channel.pop(id(ws), None)
            if participant is None:
                return None
            self._participants.pop(participant.handle, None)
            if participant.writer is not None:
                participant.writer.cancel()
            logger.info(f"User disconnected: {participant.handle} ({len(self._participants)} online)")
            self._broadcast({"type": protocol.USER_OFFLINE, "username": participant.handle})
            return participant.handle

    async def close(self):
        """Stop every channel writer; queued frames are discarded."""
        async with self._lock:
            writers = [p.writer for p in self._participants.values() if p.writer is not None]
            self._participants.clear()
            self._by_channel.clear()
        for writer in writers:
            writer.cancel()
        if writers:
            await asyncio.gather(*writers, return_exceptions=True)

    def _broadcast(self, message: dict, exclude: Participant | None = None):
        for participant in self._participants.values():
            if participant is not exclude:
                self._enqueue(participant, message)

    def _enqueue(self, participant: Participant, message: dict):
        try:
            participant.outbox.put_nowait(protocol.encode(message))
        except asyncio.QueueFull:
            logger.warning(f"Outbox full for {participant.handle}, dropping {message.get('type')} frame")

    async def _write(self, participant: Participant):
        while True:
            text = await participant.outbox.get()
            try:
                await participant.ws.send_text(text)
            except Exception as e:
                logger.warning(f"Failed to send frame to {participant.handle}: {e}")
