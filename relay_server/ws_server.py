"""
WebSocket server for the signaling/control relay.

Handles:
- FastAPI WebSocket endpoint at /ws (and / for clients connecting to the root)
- One receive loop per socket, feeding the ProtocolRouter in arrival order
- Health check endpoint and optional static file mount
- Liveness monitor lifecycle
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from fastapi.staticfiles import StaticFiles

from .config import RelayConfig
from .connection import Connection
from .gateway import ControlGate
from .liveness import LivenessMonitor
from .registry import ConnectionRegistry
from .router import ProtocolRouter

logger = logging.getLogger(__name__)


class RelayServer:
    """
    WebSocket relay between robots and headsets.

    Features:
    - Role handshake and message routing (ProtocolRouter)
    - Control safety gate on every headset command (ControlGate)
    - Heartbeat sweep of dead sockets (LivenessMonitor)
    """

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        registry: Optional[ConnectionRegistry] = None,
        gate: Optional[ControlGate] = None,
    ):
        """
        Initialize relay server.

        Args:
            config: Runtime settings (defaults to RelayConfig())
            registry: Connection registry (created if not given)
            gate: Control safety gate (created if not given)
        """
        self.config = config or RelayConfig()
        self.registry = registry or ConnectionRegistry()
        self.gate = gate or ControlGate()
        self.router = ProtocolRouter(self.registry, self.gate)
        self.liveness = LivenessMonitor(self.router, interval=self.config.ping_interval)

        # FastAPI app
        self.app = FastAPI(title="Teleoperation Signaling Relay", lifespan=self._lifespan)

        # Add CORS middleware
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        # Register routes
        self._setup_routes()

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        await self.liveness.start()
        try:
            yield
        finally:
            await self.liveness.stop()

    def _setup_routes(self):
        """Set up FastAPI routes."""

        @self.app.get("/", response_class=PlainTextResponse)
        async def index():
            return "Signal/Control Server Running!"

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            return {
                "ok": True,
                "robotCount": self.registry.robot_count,
                "headsetCount": self.registry.headset_count,
                "now": int(time.time() * 1000),
                "stats": self.get_stats(),
            }

        @self.app.websocket("/ws")
        async def websocket_relay(websocket: WebSocket):
            """WebSocket endpoint for robots and headsets."""
            await self._handle_websocket(websocket)

        @self.app.websocket("/")
        async def websocket_root(websocket: WebSocket):
            await self._handle_websocket(websocket)

        if self.config.static_dir:
            self.app.mount("/static", StaticFiles(directory=self.config.static_dir), name="static")

    async def _handle_websocket(self, websocket: WebSocket) -> None:
        """Handle one client socket from accept to cleanup."""
        await websocket.accept()

        conn = Connection(websocket, max_pending=self.config.send_queue_size)
        conn.start()
        self.router.connect(conn)

        logger.info(f"Client connected: {conn.conn_id} from {websocket.client}")

        try:
            await self._receive_messages(websocket, conn)
        except Exception as e:
            logger.error(f"Error handling client {conn.conn_id}: {e}")
        finally:
            self.router.disconnect(conn)
            await conn.shutdown()

    async def _receive_messages(self, websocket: WebSocket, conn: Connection) -> None:
        """Receive and dispatch messages until the socket closes."""
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.info(f"Client disconnected: {conn.conn_id}")
                return

            data = message.get("text")
            if data is None and message.get("bytes") is not None:
                data = message["bytes"].decode("utf-8", errors="replace")
            if data is None:
                continue

            try:
                self.router.handle_text(conn, data)
            except Exception:
                logger.exception(f"Error in handler for {conn}")

    def get_stats(self) -> dict:
        """Get server statistics."""
        return {
            "router": self.router.get_stats(),
            "gate": self.gate.get_stats(),
            "liveness": self.liveness.get_stats(),
        }


def create_app(config: Optional[RelayConfig] = None) -> FastAPI:
    """
    Create FastAPI application with a fresh relay server.

    Args:
        config: Runtime settings

    Returns:
        Configured FastAPI application
    """
    return RelayServer(config=config).app
