#!/usr/bin/env python3
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
import uvicorn

from mesh_signaling.config import Settings
from mesh_signaling.coordinator.hub import SignalingHub, serve_connection

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)

hub = SignalingHub(
    settings=Settings(),  # pyright: ignore[reportCallIssue] (env vars)
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        f"Signaling server listening on {hub.settings.server_host}:{hub.settings.server_port}"
    )
    yield
    logger.info(f"Shutting down with {hub.get_connection_count()} open connections")


app = FastAPI(
    title="Mesh Signaling Server",
    description="Rendezvous and relay for full-mesh WebRTC calls",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    # pyrefly: ignore[bad-argument-type]
    CORSMiddleware,
    allow_origins=hub.settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "service": "Mesh Signaling Server",
        "connections": hub.get_connection_count(),
        "rooms": hub.get_room_count(),
    }


@app.get("/rooms/{room_id}")
async def room_members(room_id: str):
    """
    Who is in a room right now. An unknown room is simply empty.
    """
    return {
        "room": room_id,
        "members": [{"id": m.id, "name": m.name} for m in hub.members_of(room_id)],
    }


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    await serve_connection(hub, websocket)


# Mounted last so the routes above take precedence
if hub.settings.static_dir.is_dir():
    app.mount(
        "/", StaticFiles(directory=hub.settings.static_dir, html=True), name="static"
    )
else:
    logger.warning(f"Static directory {hub.settings.static_dir} not found, not serving assets")


if __name__ == "__main__":
    try:
        uvicorn.run(
            app,
            host=hub.settings.server_host,
            port=hub.settings.server_port,
            log_level="info",
        )
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
