#!/usr/bin/env python3
"""peerlink - Relay Server

Lets browser peers find each other by username and exchange the
signaling needed to open a direct connection:
- WebSocket for registration, search, presence and message relay
- REST health check used by clients before connecting

The relay never looks inside negotiation or call-control payloads.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from relay_server import protocol
from relay_server.config import CORS_ORIGINS, LOG_FORMAT, LOG_LEVEL, RELAY_HOST, RELAY_PORT
from relay_server.protocol import MalformedMessage, ProtocolError
from relay_server.registry import UserRegistry

logger = logging.getLogger("relay.server")


async def _dispatch(registry: UserRegistry, ws: WebSocket, data: dict):
    msg_type = data["type"]

    if msg_type == protocol.REGISTER:
        await registry.register(ws, data.get("username"))

    elif msg_type == protocol.SEARCH:
        results = await registry.search(ws, data.get("query"))
        await registry.send(ws, {"type": protocol.SEARCH_RESULTS, "results": results})

    elif msg_type in protocol.RELAYED_TYPES:
        await registry.forward(ws, data.get("to"), data)

    else:
        logger.warning(f"Unknown message type: {msg_type}")


async def signaling_ws(ws: WebSocket):
    """WebSocket endpoint for peers.

    Protocol:
    - Peer sends: {type: "register", username}
    - Server sends: {type: "registered", username} or {type: "error", message, code}
    - Peer sends: {type: "search", query}
    - Server sends: {type: "search-results", results}
    - Peer sends: {type: "offer" | "call-offer" | ..., to, payload}
    - Server delivers: {type, from, payload} to the recipient
    - Server sends: {type: "user-online" | "user-offline", username}
    """
    registry: UserRegistry = ws.app.state.registry
    await ws.accept()

    try:
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")

            try:
                data = protocol.decode(raw)
            except MalformedMessage as e:
                logger.warning(f"Dropped malformed frame from {registry.handle_for(ws) or 'unregistered peer'}: {e}")
                continue

            try:
                await _dispatch(registry, ws, data)
            except ProtocolError as e:
                logger.info(f"{data['type']} from {registry.handle_for(ws) or 'unregistered peer'} failed: {e}")
                await registry.send(ws, e.to_message())

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Signaling WebSocket error: {e}")
    finally:
        await registry.unregister(ws)


async def health_check(request: Request):
    """Liveness probe; also reports how many users are online."""
    registry: UserRegistry = request.app.state.registry
    return JSONResponse({"status": "ok", "online": len(registry)})


def create_app(registry: UserRegistry | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Relay server ready")
        yield
        logger.info(f"Relay server shutting down ({len(app.state.registry)} users online)")
        await app.state.registry.close()

    app = FastAPI(title="peerlink relay", lifespan=lifespan)
    app.state.registry = registry if registry is not None else UserRegistry()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    # Browser clients connect to the bare host as well as /ws
    app.add_api_websocket_route("/", signaling_ws)
    app.add_api_websocket_route("/ws", signaling_ws)
    app.add_api_route("/api/health", health_check, methods=["GET"])
    return app


app = create_app()


def main():
    import uvicorn

    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    logger.info(f"Signaling server listening on ws://{RELAY_HOST}:{RELAY_PORT}")
    uvicorn.run(app, host=RELAY_HOST, port=RELAY_PORT)


if __name__ == "__main__":
    main()
