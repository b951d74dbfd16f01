"""
Connection Registry - the live set of robots and headsets.

Handles:
- robotId -> RobotEntry and clientId -> HeadsetEntry mappings
- Superseding an older connection registered under the same id
- Roster snapshots and roster broadcasts to every headset
- Selection bookkeeping with viewer_attached / viewer_detached /
  publisher_left notifications

All operations are synchronous and never await, so on a single event loop
no two mutations can interleave.
"""

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .connection import Connection
from .gateway import ThrottleState

logger = logging.getLogger(__name__)

STREAM_MODES = ("flat2d", "full360", "crop360")
DEFAULT_STREAM_MODE = "flat2d"

# Close code sent to a connection replaced by a newer registration
CLOSE_SUPERSEDED = 4000


def normalize_stream_format(value: Any) -> str:
    """Map a legacy streamFormat value onto a stream mode."""
    if value == "full360":
        return "full360"
    if value == "crop360":
        return "crop360"
    return "flat2d"


@dataclass
class RobotEntry:
    """A registered robot."""
    robot_id: str
    connection: Connection
    meta: Any = field(default_factory=dict)
    last_seen: int = 0
    stream_mode: str = DEFAULT_STREAM_MODE

    def summary(self) -> dict:
        return {
            "robotId": self.robot_id,
            "meta": self.meta,
            "online": True,
            "lastSeen": self.last_seen,
            "streamMode": self.stream_mode,
        }


@dataclass
class HeadsetEntry:
    """A registered operator session."""
    client_id: str
    connection: Connection
    selected_robot_id: Optional[str] = None
    throttle: ThrottleState = field(default_factory=ThrottleState)


class ConnectionRegistry:
    """
    Authoritative robot and headset mappings.

    Removal paths are idempotent: removing an unknown id is a silent no-op.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        """
        Initialize registry.

        Args:
            clock: Wall clock in seconds, used for lastSeen (defaults to time.time)
        """
        self._clock = clock or time.time
        self._robots: Dict[str, RobotEntry] = {}
        self._headsets: Dict[str, HeadsetEntry] = {}

        # meta and stream mode survive a robot's reconnects
        self._remembered_meta: Dict[str, Any] = {}
        self._remembered_modes: Dict[str, str] = {}

        self._issued_client_ids = set()

    def now_ms(self) -> int:
        return int(self._clock() * 1000)

    # --- Robots ---

    def register_robot(
        self,
        robot_id: str,
        connection: Connection,
        meta: Any = None,
    ) -> RobotEntry:
        """
        Register (or re-register) a robot and broadcast the new roster.

        A different connection already holding ``robot_id`` is closed. The
        stream mode, and meta when ``meta`` is omitted, carry over from the
        previous registration under the same id.
        """
        previous = self._robots.get(robot_id)
        if previous is not None and previous.connection is not connection:
            logger.info(f"Robot {robot_id} re-registered, closing superseded {previous.connection.conn_id}")
            previous.connection.close(code=CLOSE_SUPERSEDED, reason="superseded")

        if meta is None:
            meta = self._remembered_meta.get(robot_id, {})

        entry = RobotEntry(
            robot_id=robot_id,
            connection=connection,
            meta=meta,
            last_seen=self.now_ms(),
            stream_mode=self._remembered_modes.get(robot_id, DEFAULT_STREAM_MODE),
        )
        self._robots[robot_id] = entry
        self._remembered_meta[robot_id] = meta

        logger.info(f"Robot registered: {robot_id} ({connection.conn_id})")
        self.broadcast_roster()
        return entry

    def remove_robot(self, robot_id: str, connection: Optional[Connection] = None) -> bool:
        """
        Remove a robot, detaching every headset that had it selected.

        Args:
            robot_id: Robot to remove
            connection: If given, only remove while this connection still owns
                the entry (the close of a superseded socket is a no-op)

        Returns:
            True if an entry was removed
        """
        entry = self._robots.get(robot_id)
        if entry is None:
            return False
        if connection is not None and entry.connection is not connection:
            return False

        del self._robots[robot_id]

        for headset in self._headsets.values():
            if headset.selected_robot_id == robot_id:
                headset.selected_robot_id = None
                headset.connection.send({"type": "publisher_left", "robotId": robot_id})

        logger.info(f"Robot removed: {robot_id}")
        self.broadcast_roster()
        return True

    def get_robot(self, robot_id: Optional[str]) -> Optional[RobotEntry]:
        if not robot_id:
            return None
        return self._robots.get(robot_id)

    def touch_robot(self, robot_id: str) -> None:
        entry = self._robots.get(robot_id)
        if entry is not None:
            entry.last_seen = self.now_ms()

    def set_stream_mode(self, robot_id: str, mode: str) -> bool:
        """
        Update a robot's stream mode, broadcasting the roster on change.

        Returns:
            True if the mode changed
        """
        if mode not in STREAM_MODES:
            raise ValueError(f"Unknown stream mode: {mode!r}")

        entry = self._robots.get(robot_id)
        if entry is None:
            return False

        self._remembered_modes[robot_id] = mode
        if entry.stream_mode == mode:
            return False

        entry.stream_mode = mode
        logger.info(f"Robot {robot_id} stream mode -> {mode}")
        self.broadcast_roster()
        return True

    def snapshot_roster(self) -> List[dict]:
        """Summaries of every live robot, in registration order."""
        return [entry.summary() for entry in self._robots.values()]

    def broadcast_roster(self) -> None:
        message = {"type": "robots", "robots": self.snapshot_roster()}
        for headset in self._headsets.values():
            headset.connection.send(message)

    # --- Headsets ---

    def _generate_client_id(self) -> str:
        while True:
            client_id = f"headset-{secrets.token_hex(6)}"
            if client_id not in self._issued_client_ids and client_id not in self._headsets:
                return client_id

    def register_headset(
        self,
        connection: Connection,
        client_id: Optional[str] = None,
    ) -> HeadsetEntry:
        """
        Register a headset, generating a client id when none is supplied.

        A different connection already holding ``client_id`` is closed and its
        robot (if any) is told the viewer detached.
        """
        if not client_id:
            client_id = self._generate_client_id()

        previous = self._headsets.get(client_id)
        if previous is not None and previous.connection is not connection:
            logger.info(f"Headset {client_id} re-registered, closing superseded {previous.connection.conn_id}")
            self.detach(client_id)
            previous.connection.close(code=CLOSE_SUPERSEDED, reason="superseded")

        entry = HeadsetEntry(client_id=client_id, connection=connection)
        self._headsets[client_id] = entry
        self._issued_client_ids.add(client_id)

        logger.info(f"Headset registered: {client_id} ({connection.conn_id})")
        return entry

    def remove_headset(self, client_id: str, connection: Optional[Connection] = None) -> bool:
        """
        Remove a headset, notifying its selected robot first.

        Returns:
            True if an entry was removed
        """
        entry = self._headsets.get(client_id)
        if entry is None:
            return False
        if connection is not None and entry.connection is not connection:
            return False

        self.detach(client_id)
        del self._headsets[client_id]
        logger.info(f"Headset removed: {client_id}")
        return True

    def get_headset(self, client_id: Optional[str]) -> Optional[HeadsetEntry]:
        if not client_id:
            return None
        return self._headsets.get(client_id)

    def attach(self, client_id: str, robot_id: str) -> RobotEntry:
        """
        Select ``robot_id`` for a headset and tell the robot.

        Detaches from a different previously selected robot first.

        Raises:
            KeyError: if either the headset or the robot is not registered
        """
        headset = self._headsets[client_id]
        robot = self._robots[robot_id]

        if headset.selected_robot_id and headset.selected_robot_id != robot_id:
            self.detach(client_id)

        headset.selected_robot_id = robot_id
        robot.connection.send({"type": "viewer_attached", "clientId": client_id})
        logger.info(f"Headset {client_id} attached to robot {robot_id}")
        return robot

    def detach(self, client_id: str) -> Optional[str]:
        """
        Clear a headset's selection and send viewer_detached to the robot.

        Returns:
            The previously selected robot id, if any
        """
        headset = self._headsets.get(client_id)
        if headset is None or headset.selected_robot_id is None:
            return None

        robot_id = headset.selected_robot_id
        headset.selected_robot_id = None

        robot = self._robots.get(robot_id)
        if robot is not None:
            robot.connection.send({"type": "viewer_detached", "clientId": client_id})
        logger.info(f"Headset {client_id} detached from robot {robot_id}")
        return robot_id

    def headsets_watching(self, robot_id: str) -> List[HeadsetEntry]:
        return [h for h in self._headsets.values() if h.selected_robot_id == robot_id]

    # --- Counts ---

    @property
    def robot_count(self) -> int:
        return len(self._robots)

    @property
    def headset_count(self) -> int:
        return len(self._headsets)
