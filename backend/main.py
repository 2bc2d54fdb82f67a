"""
QuickShare backend entry point.

One process is one peer: it listens for a transfer channel, dials out on
request, and serves the local UI over REST plus a WebSocket event stream.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT, CORS_ORIGINS, LOCAL_PEER_ID, LOG_LEVEL
from transfer.manager import TransferManager

# --- Logging ---
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Peer singletons ---
transfer_manager = TransferManager()
ws_manager = ConnectionManager()
transfer_manager.on_event(ws_manager.handle_event)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the transfer listener for the lifetime of the API."""
    await transfer_manager.start()
    logger.info(
        f"Peer {LOCAL_PEER_ID} up: UI API on {API_HOST}:{API_PORT}, "
        f"transfers on port {transfer_manager.receiver_port}, "
        f"saving to {transfer_manager.save_dir}"
    )
    try:
        yield
    finally:
        logger.info(f"Peer {LOCAL_PEER_ID} shutting down")
        await transfer_manager.stop()


app = FastAPI(title="QuickShare", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_routes(transfer_manager)
app.include_router(router)


def _snapshot() -> dict:
    return transfer_manager.session_info().model_dump(mode="json")


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Event stream; a client may send ``snapshot`` to be resynced."""
    await ws_manager.connect(websocket, _snapshot())
    try:
        while True:
            if (await websocket.receive_text()).strip() == "snapshot":
                await ws_manager.send_snapshot(websocket, _snapshot())
    except WebSocketDisconnect:
        pass
    finally:
        ws_manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT, log_level=LOG_LEVEL.lower())
