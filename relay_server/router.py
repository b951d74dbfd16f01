"""
Protocol Router - role state machine and message dispatch.

Every inbound frame goes through ProtocolRouter.handle_text:

    unidentified --hello{role:robot}-->   robot
    unidentified --hello{role:headset}--> headset

Roles are terminal. Headset control messages go through the ControlGate
before reaching a robot; WebRTC signaling is forwarded without inspection.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional

from .connection import Connection, HeadsetRole, RobotRole, Unidentified
from .gateway import GATED_CHANNELS, ControlGate
from .registry import (
    STREAM_MODES,
    ConnectionRegistry,
    HeadsetEntry,
    RobotEntry,
    normalize_stream_format,
)

logger = logging.getLogger(__name__)


def _as_id(value: Any) -> str:
    """Normalize a client-supplied id; missing or falsy becomes ''."""
    if not value:
        return ""
    return str(value)


def error_message(reason: str, **context: Any) -> Dict[str, Any]:
    message = {"type": "error", "reason": reason}
    message.update(context)
    return message


class ProtocolRouter:
    """
    Dispatches messages for every open connection.

    Handlers are synchronous: they mutate the registry and enqueue outbound
    messages, never awaiting, so each inbound message is processed
    atomically with respect to all other connections.
    """

    def __init__(self, registry: ConnectionRegistry, gate: ControlGate):
        self.registry = registry
        self.gate = gate

        # All open connections, identified or not
        self._connections: Dict[str, Connection] = {}

        self._headset_handlers: Dict[str, Callable[[Connection, HeadsetEntry, dict], None]] = {
            "list_robots": self._on_list_robots,
            "select_robot": self._on_select_robot,
            "offer": self._on_headset_signaling,
            "candidate": self._on_headset_signaling,
            "control": self._on_legacy_control,
        }
        for channel in GATED_CHANNELS:
            self._headset_handlers[channel] = self._on_gated_command

        self._robot_handlers: Dict[str, Callable[[Connection, RobotEntry, dict], None]] = {
            "answer": self._on_robot_signaling,
            "candidate": self._on_robot_signaling,
            "streamMode": self._on_stream_mode,
            "streamFormat": self._on_stream_format,
            "telemetry": self._on_telemetry,
        }

        # Statistics
        self._total_messages = 0
        self._invalid_messages = 0
        self._forwarded_commands = 0

    # --- Connection lifecycle ---

    def connect(self, conn: Connection) -> None:
        self._connections[conn.conn_id] = conn

    def disconnect(self, conn: Connection) -> None:
        """
        Clean up after a connection, whoever closed it.

        Idempotent: client close and heartbeat termination both end up here.
        """
        if self._connections.pop(conn.conn_id, None) is None:
            return

        identity = conn.identity
        if isinstance(identity, RobotRole):
            self.registry.remove_robot(identity.robot_id, connection=conn)
        elif isinstance(identity, HeadsetRole):
            self.registry.remove_headset(identity.client_id, connection=conn)

        logger.info(f"Connection closed: {conn}")

    @property
    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    # --- Inbound ---

    def handle_text(self, conn: Connection, data: str) -> None:
        """Parse and dispatch one inbound frame."""
        if conn.conn_id not in self._connections:
            return

        conn.mark_alive()
        self._total_messages += 1

        try:
            msg = json.loads(data)
        except ValueError:
            self._invalid_messages += 1
            logger.debug(f"Ignoring malformed JSON from {conn}")
            return

        if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
            self._invalid_messages += 1
            return

        msg_type = msg["type"]

        # Heartbeat reply; liveness already recorded above
        if msg_type == "pong":
            conn.answers_ping = True
            return

        if msg_type == "hello":
            self._on_hello(conn, msg)
            return

        identity = conn.identity
        if isinstance(identity, RobotRole):
            self._dispatch_robot(conn, identity, msg_type, msg)
        elif isinstance(identity, HeadsetRole):
            self._dispatch_headset(conn, identity, msg_type, msg)
        else:
            conn.send(error_message("send_hello_first"))

    # --- Handshake ---

    def _on_hello(self, conn: Connection, msg: dict) -> None:
        if not isinstance(conn.identity, Unidentified):
            conn.send(error_message("already_identified", role=conn.role))
            return

        role = msg.get("role")

        if role == "robot":
            robot_id = _as_id(msg.get("robotId"))
            if not robot_id:
                conn.send(error_message("robotId_required"))
                return
            conn.identity = RobotRole(robot_id)
            conn.send({"type": "hello_ok", "role": "robot", "robotId": robot_id})
            self.registry.register_robot(robot_id, conn, meta=msg.get("meta"))
            return

        if role == "headset":
            entry = self.registry.register_headset(conn, _as_id(msg.get("clientId")) or None)
            conn.identity = HeadsetRole(entry.client_id)
            conn.send({"type": "hello_ok", "role": "headset", "clientId": entry.client_id})
            conn.send({"type": "robots", "robots": self.registry.snapshot_roster()})
            return

        conn.send(error_message("role_must_be_robot_or_headset"))

    # --- Headset ---

    def _dispatch_headset(self, conn: Connection, identity: HeadsetRole, msg_type: str, msg: dict) -> None:
        headset = self.registry.get_headset(identity.client_id)
        if headset is None or headset.connection is not conn:
            # Superseded by a newer registration under the same id
            return

        handler = self._headset_handlers.get(msg_type)
        if handler is None:
            logger.debug(f"Ignoring unknown headset message type {msg_type!r}")
            return
        handler(conn, headset, msg)

    def _on_list_robots(self, conn: Connection, headset: HeadsetEntry, msg: dict) -> None:
        conn.send({"type": "robots", "robots": self.registry.snapshot_roster()})

    def _on_select_robot(self, conn: Connection, headset: HeadsetEntry, msg: dict) -> None:
        robot_id = _as_id(msg.get("robotId"))
        robot = self.registry.get_robot(robot_id)
        if robot is None:
            conn.send(error_message("robot_not_online", robotId=robot_id))
            return

        self.registry.attach(headset.client_id, robot_id)
        conn.send({"type": "selected_robot", "robotId": robot_id})
        # Replay so the headset can pick a renderer straight away
        conn.send({"type": "streamMode", "mode": robot.stream_mode})

    def _selected_robot(self, headset: HeadsetEntry) -> Optional[RobotEntry]:
        return self.registry.get_robot(headset.selected_robot_id)

    def _on_headset_signaling(self, conn: Connection, headset: HeadsetEntry, msg: dict) -> None:
        robot = self._selected_robot(headset)
        if robot is None:
            conn.send(error_message("no_selected_robot"))
            return

        forwarded = dict(msg)
        forwarded["clientId"] = headset.client_id
        robot.connection.send(forwarded)

    def _on_gated_command(self, conn: Connection, headset: HeadsetEntry, msg: dict) -> None:
        robot_id = _as_id(msg.get("robotId")) or headset.selected_robot_id
        robot = self.registry.get_robot(robot_id)

        # Silent on purpose: mismatches are normal while switching robots
        if robot is None or robot_id != headset.selected_robot_id:
            logger.debug(f"Dropping {msg['type']} from {headset.client_id}: target {robot_id!r} not selected")
            return

        result = self.gate.check(msg["type"], msg, headset.throttle, robot_id)
        if result.ok:
            robot.connection.send(result.message)
            self._forwarded_commands += 1

    def _on_legacy_control(self, conn: Connection, headset: HeadsetEntry, msg: dict) -> None:
        robot_id = _as_id(msg.get("robotId")) or headset.selected_robot_id or ""
        robot = self.registry.get_robot(robot_id)
        if robot is None:
            conn.send(error_message("robot_not_online_or_not_selected"))
            return

        result = self.gate.check_legacy_control(
            msg, headset.throttle, headset.selected_robot_id, robot_id,
        )
        if not result.ok:
            conn.send({
                "type": "control_status",
                "seq": msg.get("seq"),
                "status": result.status.value,
                "reason": result.reason,
            })
            return

        robot.connection.send(result.message)
        self._forwarded_commands += 1

    # --- Robot ---

    def _dispatch_robot(self, conn: Connection, identity: RobotRole, msg_type: str, msg: dict) -> None:
        robot = self.registry.get_robot(identity.robot_id)
        if robot is None or robot.connection is not conn:
            return

        self.registry.touch_robot(robot.robot_id)

        handler = self._robot_handlers.get(msg_type)
        if handler is None:
            logger.debug(f"Ignoring unknown robot message type {msg_type!r}")
            return
        handler(conn, robot, msg)

    def _fan_out(self, robot_id: str, message: dict) -> None:
        for headset in self.registry.headsets_watching(robot_id):
            headset.connection.send(message)

    def _on_robot_signaling(self, conn: Connection, robot: RobotEntry, msg: dict) -> None:
        forwarded = dict(msg)
        forwarded["robotId"] = robot.robot_id
        self._fan_out(robot.robot_id, forwarded)

    def _announce_stream_mode(self, robot: RobotEntry, mode: str) -> None:
        self.registry.set_stream_mode(robot.robot_id, mode)
        self._fan_out(robot.robot_id, {"type": "streamMode", "mode": mode})

    def _on_stream_mode(self, conn: Connection, robot: RobotEntry, msg: dict) -> None:
        mode = msg.get("mode")
        if mode not in STREAM_MODES:
            logger.debug(f"Ignoring unknown stream mode {mode!r} from {robot.robot_id}")
            return
        self._announce_stream_mode(robot, mode)

    def _on_stream_format(self, conn: Connection, robot: RobotEntry, msg: dict) -> None:
        self._announce_stream_mode(robot, normalize_stream_format(msg.get("format")))

    def _on_telemetry(self, conn: Connection, robot: RobotEntry, msg: dict) -> None:
        self._fan_out(robot.robot_id, msg)

    def get_stats(self) -> dict:
        """Get router statistics."""
        return {
            "connections": len(self._connections),
            "total_messages": self._total_messages,
            "invalid_messages": self._invalid_messages,
            "forwarded_commands": self._forwarded_commands,
        }
