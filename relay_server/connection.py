"""
Per-socket connection handle.

Handles:
- Role identity of the socket (unidentified, robot or headset)
- Fire-and-forget outbound queue drained by a dedicated writer task
- Liveness flag used by the heartbeat sweep
"""

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Unidentified:
    """Socket has not completed the hello handshake yet."""


@dataclass(frozen=True)
class RobotRole:
    """Socket identified as a robot."""
    robot_id: str


@dataclass(frozen=True)
class HeadsetRole:
    """Socket identified as a headset (operator)."""
    client_id: str


Identity = Union[Unidentified, RobotRole, HeadsetRole]

UNIDENTIFIED = Unidentified()


@dataclass(frozen=True)
class _CloseRequest:
    code: int
    reason: str


class Connection:
    """
    One open client socket.

    Sending never blocks the caller: messages are serialized and queued, and a
    writer task owned by this connection pushes them to the transport. A slow
    or dead peer only ever fills its own queue, after which further messages
    to it are dropped.

    The transport is anything exposing ``async send_text(str)`` and
    ``async close(code, reason)`` (a Starlette ``WebSocket`` in production).
    """

    _ids = itertools.count(1)

    def __init__(self, transport: Any, max_pending: int = 256):
        """
        Initialize connection.

        Args:
            transport: Underlying socket object
            max_pending: Maximum number of queued outbound messages
        """
        self.transport = transport
        self.conn_id = f"conn_{next(Connection._ids)}"
        self.identity: Identity = UNIDENTIFIED
        self.max_pending = max_pending

        # Heartbeat state. answers_ping is set once the peer replies to a JSON
        # ping; only such peers are reaped by the sweep.
        self.is_alive = True
        self.answers_ping = False

        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._writer_task: Optional[asyncio.Task] = None

        # Statistics
        self.messages_sent = 0
        self.messages_dropped = 0

    def __repr__(self) -> str:
        return f"<Connection {self.conn_id} {self.role or 'unidentified'}>"

    @property
    def role(self) -> Optional[str]:
        """Role name, or None while unidentified."""
        if isinstance(self.identity, RobotRole):
            return "robot"
        if isinstance(self.identity, HeadsetRole):
            return "headset"
        return None

    def mark_alive(self) -> None:
        self.is_alive = True

    def start(self) -> None:
        """Start the writer task. Must be called from a running event loop."""
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._write_loop())

    def send(self, message: Dict[str, Any]) -> bool:
        """
        Queue a message for the peer.

        Non-blocking. Messages to a closed connection, or beyond the queue
        limit, are dropped.

        Returns:
            True if queued, False if dropped
        """
        if self.closed:
            return False

        if self._queue.qsize() >= self.max_pending:
            self.messages_dropped += 1
            logger.debug(f"Send queue full for {self.conn_id}, dropping {message.get('type')}")
            return False

        try:
            data = json.dumps(message)
        except (TypeError, ValueError) as e:
            self.messages_dropped += 1
            logger.warning(f"Unserializable message for {self.conn_id}: {e}")
            return False

        self._queue.put_nowait(data)
        return True

    def close(self, code: int = 1000, reason: str = "") -> None:
        """
        Request the socket be closed once already-queued messages are flushed.

        Idempotent; nothing may be sent after this call.
        """
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CloseRequest(code, reason))

    async def shutdown(self) -> None:
        """Cancel the writer task. Called once the socket is gone."""
        self.closed = True
        if self._writer_task and not self._writer_task.done():
            self._writer_task.cancel()
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass
        self._writer_task = None

    async def _write_loop(self) -> None:
        """Drain the outbound queue into the transport."""
        while True:
            item = await self._queue.get()

            if isinstance(item, _CloseRequest):
                try:
                    await self.transport.close(code=item.code, reason=item.reason)
                except Exception as e:
                    logger.debug(f"Close of {self.conn_id} failed: {e}")
                break

            try:
                await self.transport.send_text(item)
                self.messages_sent += 1
            except Exception as e:
                # Peer went away mid-send; the receive loop does the cleanup
                logger.debug(f"Send to {self.conn_id} failed: {e}")
                self.closed = True
                break
