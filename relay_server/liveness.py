"""
Liveness Monitor - heartbeat sweep over every open connection.

Transport health is the job of WebSocket protocol pings (uvicorn's
ws_ping_interval / ws_ping_timeout); a peer that misses one is disconnected
by the server and cleaned up through ProtocolRouter.disconnect.

On top of that, each sweep sends a JSON ping to every connection. Peers that
have answered one with {"type": "pong"} have opted in, and are terminated
once they show no sign of life between two sweeps. Termination goes through
ProtocolRouter.disconnect, the same cleanup a client-initiated close uses.
Peers that never answer a JSON ping are left to the transport pings.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from .router import ProtocolRouter

logger = logging.getLogger(__name__)

# Close code for connections that missed a heartbeat
CLOSE_HEARTBEAT_TIMEOUT = 1001


class LivenessMonitor:
    """Periodic ping/pong sweep."""

    def __init__(
        self,
        router: ProtocolRouter,
        interval: float = 15.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize monitor.

        Args:
            router: Router owning the set of open connections
            interval: Seconds between sweeps
            clock: Wall clock in seconds, used for ping timestamps
        """
        self.router = router
        self.interval = interval
        self._clock = clock or time.time
        self._task: Optional[asyncio.Task] = None

        # Statistics
        self._sweeps = 0
        self._terminated = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def sweep(self) -> int:
        """
        Run one heartbeat sweep.

        Returns:
            Number of connections terminated
        """
        self._sweeps += 1
        terminated = 0
        ts = int(self._clock() * 1000)

        for conn in self.router.connections:
            if conn.answers_ping and not conn.is_alive:
                logger.info(f"No heartbeat from {conn}, terminating")
                conn.close(code=CLOSE_HEARTBEAT_TIMEOUT, reason="heartbeat_timeout")
                self.router.disconnect(conn)
                terminated += 1
                continue

            conn.is_alive = False
            conn.send({"type": "ping", "ts": ts})

        self._terminated += terminated
        return terminated

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Liveness monitor started (interval {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Liveness monitor stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Liveness sweep failed")

    def get_stats(self) -> dict:
        return {
            "sweeps": self._sweeps,
            "terminated": self._terminated,
        }
