"""
WebSocket Client for relay communication.

Handles:
- Async WebSocket connection to the relay
- hello handshake on every (re)connect
- Automatic pong replies to relay heartbeats
- Exponential backoff reconnection
- Message queue for decoupled sending
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException

logger = logging.getLogger(__name__)


@dataclass
class ConnectionStats:
    """Statistics about WebSocket connection."""
    connected: bool = False
    connect_time: Optional[float] = None
    disconnect_time: Optional[float] = None
    reconnect_attempts: int = 0
    messages_sent: int = 0
    messages_failed: int = 0
    messages_received: int = 0
    last_send_time: Optional[float] = None


class RelayClient:
    """
    Async relay client with automatic reconnection.

    Features:
    - Sends the configured hello message as soon as the socket opens
    - Answers {"type": "ping"} with {"type": "pong"}
    - Exponential backoff on connection failure (1s -> 30s max)
    - Non-blocking message sending via queue
    """

    def __init__(
        self,
        server_url: str,
        hello: Dict[str, Any],
        on_message: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        max_backoff_seconds: float = 30.0,
        initial_backoff_seconds: float = 1.0,
        on_connected: Optional[Callable[[], Awaitable[None]]] = None,
        on_disconnected: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        """
        Initialize relay client.

        Args:
            server_url: Relay URL (e.g., ws://127.0.0.1:3000/ws)
            hello: Handshake message sent on every connect
            on_message: Callback for each decoded message from the relay
            max_backoff_seconds: Maximum backoff time between reconnect attempts
            initial_backoff_seconds: Initial backoff time
            on_connected: Callback when connection is established
            on_disconnected: Callback when connection is lost
        """
        self.server_url = server_url
        self.hello = hello
        self.on_message = on_message
        self.max_backoff = max_backoff_seconds
        self.initial_backoff = initial_backoff_seconds
        self.on_connected = on_connected
        self.on_disconnected = on_disconnected

        # Connection state
        self._ws: Optional[ClientConnection] = None
        self._connected = False
        self._running = False

        # Message queue
        self._send_queue: asyncio.Queue[Optional[str]] = asyncio.Queue(maxsize=100)

        # Statistics
        self.stats = ConnectionStats()

        # Backoff state
        self._current_backoff = initial_backoff_seconds

        # Tasks
        self._connect_task: Optional[asyncio.Task] = None
        self._send_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        """Check if currently connected."""
        return self._connected and self._ws is not None

    async def start(self) -> None:
        """Start the client and connection tasks."""
        if self._running:
            return

        self._running = True

        # Start connection manager and sender tasks
        self._connect_task = asyncio.create_task(self._connection_loop())
        self._send_task = asyncio.create_task(self._send_loop())

        logger.info(f"Relay client started, connecting to {self.server_url}")

    async def stop(self) -> None:
        """Stop the client and close the socket."""
        if not self._running:
            return

        logger.info("Relay client stopping...")
        self._running = False

        # Signal send loop to exit
        try:
            self._send_queue.put_nowait(None)
        except asyncio.QueueFull:
            pass

        for task in (self._connect_task, self._send_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if self._ws:
            await self._ws.close()
            self._ws = None

        self._connected = False
        logger.info("Relay client stopped")

    def send(self, message: Dict[str, Any]) -> bool:
        """
        Queue a message for sending.

        Non-blocking. Returns False if queue is full.
        """
        try:
            self._send_queue.put_nowait(json.dumps(message))
            return True
        except asyncio.QueueFull:
            self.stats.messages_failed += 1
            logger.warning("Send queue full, dropping message")
            return False

    async def _connection_loop(self) -> None:
        """Main connection loop with automatic reconnection."""
        while self._running:
            try:
                await self._connect()

                # Reset backoff after a session that got through the handshake
                self._current_backoff = self.initial_backoff

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Connection error: {e}")

            if not self._running:
                break

            # Exponential backoff before reconnect
            logger.info(f"Reconnecting in {self._current_backoff:.1f}s...")
            await asyncio.sleep(self._current_backoff)

            self._current_backoff = min(
                self._current_backoff * 2,
                self.max_backoff
            )
            self.stats.reconnect_attempts += 1

    async def _connect(self) -> None:
        """Open the socket, say hello and read until it closes."""
        try:
            logger.info(f"Connecting to {self.server_url}...")

            self._ws = await connect(
                self.server_url,
                ping_interval=20,
                ping_timeout=10,
                close_timeout=5,
            )

            self._connected = True
            self.stats.connected = True
            self.stats.connect_time = time.time()

            await self._send_immediate(json.dumps(self.hello))
            logger.info("Connected, hello sent")

            if self.on_connected:
                await self.on_connected()

            try:
                async for raw in self._ws:
                    await self._handle_incoming(raw)
            except ConnectionClosed:
                pass

        except InvalidStatus as e:
            logger.error(f"Relay refused the upgrade: {e.response.status_code}")
            raise
        except ConnectionRefusedError:
            logger.error("Connection refused - is the relay running?")
            raise
        finally:
            self._connected = False
            self._ws = None
            self.stats.connected = False
            self.stats.disconnect_time = time.time()

            if self.on_disconnected:
                await self.on_disconnected()

    async def _handle_incoming(self, raw: Any) -> None:
        """Decode one frame, answer heartbeats, pass the rest on."""
        self.stats.messages_received += 1
        try:
            msg = json.loads(raw)
        except ValueError:
            logger.debug(f"Ignoring non-JSON frame: {raw!r}")
            return

        if not isinstance(msg, dict):
            return

        if msg.get("type") == "ping":
            self.send({"type": "pong", "ts": msg.get("ts")})
            return

        if self.on_message:
            try:
                await self.on_message(msg)
            except Exception as e:
                logger.error(f"Error in message callback: {e}")

    async def _send_loop(self) -> None:
        """Process outgoing message queue."""
        while self._running:
            try:
                message = await self._send_queue.get()

                # None is shutdown signal
                if message is None:
                    break

                # Only send if connected
                if self.connected:
                    try:
                        await self._ws.send(message)
                        self.stats.messages_sent += 1
                        self.stats.last_send_time = time.time()
                    except (ConnectionClosed, WebSocketException) as e:
                        self.stats.messages_failed += 1
                        logger.warning(f"Send failed: {e}")
                else:
                    # Not connected, drop message
                    self.stats.messages_failed += 1

            except asyncio.CancelledError:
                break

    async def _send_immediate(self, message: str) -> None:
        """Send a message immediately, bypassing queue."""
        if self._ws and self._connected:
            await self._ws.send(message)
            self.stats.messages_sent += 1
            self.stats.last_send_time = time.time()

    def get_stats(self) -> dict:
        """Get connection statistics."""
        return {
            "connected": self.connected,
            "connect_time": self.stats.connect_time,
            "disconnect_time": self.stats.disconnect_time,
            "reconnect_attempts": self.stats.reconnect_attempts,
            "messages_sent": self.stats.messages_sent,
            "messages_failed": self.stats.messages_failed,
            "messages_received": self.stats.messages_received,
            "last_send_time": self.stats.last_send_time,
            "queue_size": self._send_queue.qsize(),
        }
