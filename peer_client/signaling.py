"""WebSocket client for the relay.

Keeps one persistent channel to the relay, turns inbound frames into
events and, when the channel drops after registration, re-attaches and
re-registers the same handle after a fixed delay.

Events:
- ``connected``(), ``disconnected``(), ``reconnected``(handle), ``reconnect-failed``()
- ``user-online``(handle), ``user-offline``(handle)
- ``offer`` / ``answer`` / ``ice-candidate``(from, payload)
- ``call-offer`` / ``call-answer`` / ``call-reject`` / ``call-end``(from, payload)
- ``screen-share-start`` / ``screen-share-stop``(from, payload)
- ``relay-error``(error)
"""

import asyncio
import logging
from collections import deque

import httpx
import websockets

from peer_client import config
from peer_client.errors import (
    HandleTaken,
    PeerlinkError,
    RecipientUnavailable,
    RegistrationError,
    RelayUnavailable,
)
from peer_client.events import EventEmitter, TaskSet
from relay_server import protocol
from relay_server.protocol import MalformedMessage

logger = logging.getLogger("peer.signaling")

# Error codes that answer a pending registration rather than a relayed message
_REGISTRATION_CODES = {
    protocol.HandleTaken.code,
    protocol.AlreadyRegistered.code,
    protocol.MalformedMessage.code,
    None,
}

FLUSH_TIMEOUT = 2.0  # seconds close() waits for queued frames


class SignalingClient(EventEmitter):
    def __init__(
        self,
        url: str = config.RELAY_URL,
        *,
        reconnect_delay: float = config.RECONNECT_DELAY,
        max_reconnect_attempts: int = config.RECONNECT_MAX_ATTEMPTS,
        register_timeout: float = config.REGISTER_TIMEOUT,
        health_check: bool = config.HEALTH_CHECK,
        http_client: httpx.AsyncClient | None = None,
        connector=None,
    ):
        super().__init__()
        self.url = url
        self.username: str | None = None
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._register_timeout = register_timeout
        self._health_check = health_check
        self._http_client = http_client
        self._connector = connector or self._open_websocket

        self._ws = None
        self._outbox: asyncio.Queue | None = None
        self._listener: asyncio.Task | None = None
        self._writer: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._closing = False
        self._pending_register: asyncio.Future | None = None
        self._pending_register_handle: str | None = None
        self._pending_searches: deque[asyncio.Future] = deque()
        self._tasks = TaskSet("peer.signaling")

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def _open_websocket(self):
        return await websockets.connect(self.url, ping_interval=config.PING_INTERVAL)

    async def check_relay_health(self) -> str | None:
        """Check if the relay server is reachable. Returns error message or None if healthy."""
        url = f"{config.relay_http_url(self.url)}/api/health"
        try:
            if self._http_client is not None:
                resp = await self._http_client.get(url, timeout=config.HEALTH_TIMEOUT)
            else:
                async with httpx.AsyncClient(timeout=config.HEALTH_TIMEOUT) as client:
                    resp = await client.get(url)
            resp.raise_for_status()
            return None
        except httpx.HTTPError as e:
            return f"Relay server is not reachable at {self.url}: {e}"

    async def connect(self):
        """Open the channel to the relay. Raises RelayUnavailable."""
        if self._ws is not None:
            return
        if self._health_check:
            health_err = await self.check_relay_health()
            if health_err:
                raise RelayUnavailable(health_err)
        try:
            ws = await self._connector()
        except Exception as e:
            raise RelayUnavailable(f"Failed to connect to {self.url}: {e}") from e

        self._closing = False
        self._attach(ws)
        logger.info(f"Connected to relay at {self.url}")
        self.emit("connected")

    def _attach(self, ws):
        self._ws = ws
        self._outbox = asyncio.Queue()
        self._writer = self._tasks.spawn(self._write(ws, self._outbox))
        self._listener = self._tasks.spawn(self._listen(ws))

    async def register(self, handle: str):
        """Claim ``handle`` on the relay and wait for the acknowledgement.

        Raises HandleTaken if another connected peer holds it.
        """
        if self._ws is None:
            raise RelayUnavailable("Not connected to relay")
        if self._pending_register is not None:
            raise RegistrationError("Registration already in progress")

        fut = asyncio.get_running_loop().create_future()
        self._pending_register = fut
        self._pending_register_handle = handle
        try:
            self.send({"type": protocol.REGISTER, "username": handle})
            await asyncio.wait_for(fut, timeout=self._register_timeout)
        except asyncio.TimeoutError:
            raise RegistrationError(f"Registration of {handle!r} timed out") from None
        finally:
            self._pending_register = None
            self._pending_register_handle = None

        self.username = handle
        logger.info(f"Registered as {handle}")

    async def search(self, query: str) -> list[str]:
        """Ask the relay for online handles containing ``query`` (case-insensitive)."""
        fut = asyncio.get_running_loop().create_future()
        self._pending_searches.append(fut)
        if not self.send({"type": protocol.SEARCH, "query": query}):
            self._pending_searches.remove(fut)
            raise RelayUnavailable("Not connected to relay")
        return await fut

    def send(self, message: dict) -> bool:
        """Queue ``message`` for the relay. Frames are written in call order.

        Returns False (and drops the frame) when the channel is down.
        """
        if self._ws is None or self._outbox is None:
            logger.error(f"Not connected to relay, dropping {message.get('type')}")
            return False
        self._outbox.put_nowait(protocol.encode(message))
        return True

    def send_signal(self, msg_type: str, to: str, payload=None) -> bool:
        message = {"type": msg_type, "to": to}
        if payload is not None:
            message["payload"] = payload
        return self.send(message)

    def send_offer(self, to: str, offer: dict) -> bool:
        return self.send_signal(protocol.OFFER, to, offer)

    def send_answer(self, to: str, answer: dict) -> bool:
        return self.send_signal(protocol.ANSWER, to, answer)

    def send_ice_candidate(self, to: str, candidate: dict) -> bool:
        return self.send_signal(protocol.ICE_CANDIDATE, to, candidate)

    async def close(self):
        """Close the channel for good; no reconnection is attempted."""
        self._closing = True
        self.username = None
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
        await self._flush()
        ws = self._ws
        self._detach()
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing relay channel: {e}")
        self._fail_pending(RelayUnavailable("Connection closed"))
        await self._tasks.cancel_all()

    # --- Channel tasks ---

    async def _write(self, ws, outbox: asyncio.Queue):
        while True:
            text = await outbox.get()
            try:
                await ws.send(text)
            except websockets.ConnectionClosed:
                logger.warning("Relay channel closed while sending; outgoing frames dropped")
                return
            finally:
                outbox.task_done()

    async def _flush(self):
        outbox, writer = self._outbox, self._writer
        if outbox is None or writer is None or writer.done():
            return
        try:
            await asyncio.wait_for(outbox.join(), timeout=FLUSH_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"Gave up flushing {outbox.qsize()} frame(s) to relay")

    async def _listen(self, ws):
        try:
            while True:
                raw = await ws.recv()
                self._handle_frame(raw)
        except websockets.ConnectionClosed as e:
            logger.info(f"Disconnected from relay: {e}")
        except Exception as e:
            logger.error(f"Relay listener error: {e}")
        await self._on_channel_lost(ws)

    def _detach(self):
        self._ws = None
        self._outbox = None
        for task in (self._writer, self._listener):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        self._writer = None
        self._listener = None

    async def _on_channel_lost(self, ws):
        if self._ws is not ws:
            return  # already replaced or closed deliberately
        self._detach()
        self._fail_pending(RelayUnavailable("Connection to relay lost"))
        self.emit("disconnected")

        if self._closing or not self.username:
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = self._tasks.spawn(self._reconnect())

    async def _reconnect(self):
        """Re-attach after a fixed delay and re-register the same handle.

        Each failed attempt waits the same delay again, up to the configured
        number of attempts.
        """
        handle = self.username
        for attempt in range(1, self._max_reconnect_attempts + 1):
            await asyncio.sleep(self._reconnect_delay)
            if self._closing:
                return
            logger.info(f"Reconnecting to relay as {handle} (attempt {attempt}/{self._max_reconnect_attempts})")
            try:
                await self.connect()
                await self.register(handle)
            except PeerlinkError as e:
                logger.warning(f"Reconnect attempt {attempt} failed: {e}")
                await self._drop_channel()
                continue
            self.emit("reconnected", handle)
            return

        logger.error(f"Giving up on relay after {self._max_reconnect_attempts} attempts")
        self.username = None
        self.emit("reconnect-failed")

    async def _drop_channel(self):
        ws = self._ws
        if ws is None:
            return
        self._detach()
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Error closing relay channel: {e}")

    def _fail_pending(self, exc: Exception):
        if self._pending_register is not None and not self._pending_register.done():
            self._pending_register.set_exception(exc)
        while self._pending_searches:
            fut = self._pending_searches.popleft()
            if not fut.done():
                fut.set_exception(exc)

    # --- Inbound frames ---

    def _handle_frame(self, raw):
        try:
            data = protocol.decode(raw)
        except MalformedMessage as e:
            logger.warning(f"Dropped malformed frame from relay: {e}")
            return

        msg_type = data["type"]
        if msg_type == protocol.REGISTERED:
            if self._pending_register is not None and not self._pending_register.done():
                self._pending_register.set_result(data.get("username"))

        elif msg_type == protocol.SEARCH_RESULTS:
            if self._pending_searches:
                fut = self._pending_searches.popleft()
                if not fut.done():
                    fut.set_result(list(data.get("results") or []))

        elif msg_type == protocol.ERROR:
            self._handle_error(data)

        elif msg_type in (protocol.USER_ONLINE, protocol.USER_OFFLINE):
            self.emit(msg_type, data.get("username"))

        elif msg_type in protocol.RELAYED_TYPES:
            sender = data.get("from")
            if not sender:
                logger.warning(f"Dropped {msg_type} without sender")
                return
            self.emit(msg_type, sender, data.get("payload"))

        else:
            logger.warning(f"Unknown message type from relay: {msg_type}")

    def _handle_error(self, data: dict):
        code = data.get("code")
        message = data.get("message") or "Relay error"
        pending = self._pending_register

        if pending is not None and not pending.done() and code in _REGISTRATION_CODES:
            if code == protocol.HandleTaken.code:
                pending.set_exception(HandleTaken(self._pending_register_handle))
            else:
                pending.set_exception(RegistrationError(message))
            return

        if code == protocol.RecipientUnavailable.code:
            error = RecipientUnavailable(data.get("to"), message)
        else:
            error = PeerlinkError(message)
        logger.warning(f"Relay error: {error}")
        self.emit("relay-error", error)
