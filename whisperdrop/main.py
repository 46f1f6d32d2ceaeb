"""
WhisperDrop — FastAPI application entry point.

Starts the Discovery Service and Expiry Scheduler on startup,
serves the REST API and WebSocket endpoint.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from whisperdrop.api.routes import init_routes, router
from whisperdrop.api.websocket import ConnectionManager
from whisperdrop.config import API_HOST, API_PORT
from whisperdrop.discovery.service import DiscoveryService
from whisperdrop.messaging.scheduler import ExpiryScheduler

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
discovery_service = DiscoveryService()
expiry_scheduler = ExpiryScheduler()
ws_manager = ConnectionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting WhisperDrop services...")

    try:
        discovery_service.on_peer_change(ws_manager.on_peer_change)
        expiry_scheduler.on_tick(ws_manager.on_message_tick)
        expiry_scheduler.on_expire(ws_manager.on_message_expired)

        await discovery_service.start()

        logger.info(
            f"WhisperDrop ready — API: {API_HOST}:{API_PORT}, "
            f"discovery port: {discovery_service.port}"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down WhisperDrop services...")
        await expiry_scheduler.stop()
        await discovery_service.stop()


# --- FastAPI app ---
app = FastAPI(
    title="WhisperDrop",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Inject services into routes
init_routes(discovery_service, expiry_scheduler)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep the connection alive; clients only listen
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception as e:
        logger.debug(f"WebSocket closed with error: {e}")
        await ws_manager.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
