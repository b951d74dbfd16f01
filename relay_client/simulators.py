"""
Simulated robot and headset clients.

Used to exercise a relay without hardware or a VR headset. Media is not
simulated: offers are acknowledged in the log only.
"""

import asyncio
import logging
import math
import time
from collections import Counter
from typing import Any, Dict, Optional

from .ws_client import RelayClient

logger = logging.getLogger(__name__)

STREAM_MODES = ("flat2d", "full360", "crop360")


class SimulatedRobot:
    """
    Robot endpoint that records the gated commands it receives.

    Announces its stream mode after each handshake and publishes a small
    telemetry message at a fixed rate while connected.
    """

    def __init__(
        self,
        server_url: str,
        robot_id: str,
        name: str = "Python Robot Sim",
        stream_mode: str = "flat2d",
        telemetry_rate: float = 1.0,
    ):
        if stream_mode not in STREAM_MODES:
            raise ValueError(f"stream_mode must be one of {STREAM_MODES}")

        self.robot_id = robot_id
        self.stream_mode = stream_mode
        self.telemetry_rate = telemetry_rate

        self.viewers = set()
        self.counts: Counter = Counter()
        self.latest: Dict[str, Any] = {
            "joy": {"lx": 0.0, "ly": 0.0, "rx": 0.0, "ry": 0.0, "lt": 0.0, "rt": 0.0},
            "viewport": {"yawDeg": 0.0, "pitchDeg": 0.0, "hfovDeg": 120.0, "vfovDeg": 120.0},
            "pose": {"roll": 0.0, "pitch": 0.0, "yaw": 0.0},
            "btn": {},
        }
        self._running = False

        self.client = RelayClient(
            server_url,
            hello={"type": "hello", "role": "robot", "robotId": robot_id, "meta": {"name": name}},
            on_message=self.handle_message,
            on_connected=self._on_connected,
        )

    async def _on_connected(self) -> None:
        self.client.send({"type": "streamMode", "mode": self.stream_mode})

    async def handle_message(self, msg: Dict[str, Any]) -> None:
        """Apply one message from the relay."""
        msg_type = msg.get("type")

        if msg_type in ("joy", "viewport", "pose", "control"):
            self.counts[msg_type] += 1
            target = self.latest.setdefault(msg_type, {})
            for key, value in msg.items():
                if key not in ("type", "robotId", "gated"):
                    target[key] = value
            logger.debug(f"{msg_type}: {target}")
        elif msg_type == "btn":
            self.counts["btn"] += 1
            self.latest["btn"][msg.get("id")] = msg.get("v")
            logger.info(f"Button {msg.get('id')}={msg.get('v')}")
        elif msg_type == "viewer_attached":
            self.viewers.add(msg.get("clientId"))
            logger.info(f"Viewer attached: {msg.get('clientId')}")
        elif msg_type == "viewer_detached":
            self.viewers.discard(msg.get("clientId"))
            logger.info(f"Viewer detached: {msg.get('clientId')}")
        elif msg_type == "offer":
            logger.info(f"Offer from {msg.get('clientId')} (media not simulated)")
        elif msg_type == "hello_ok":
            logger.info(f"Registered as {msg.get('robotId')}")
        elif msg_type == "error":
            logger.warning(f"Relay error: {msg.get('reason')}")

    def set_stream_mode(self, mode: str) -> None:
        if mode not in STREAM_MODES:
            raise ValueError(f"stream_mode must be one of {STREAM_MODES}")
        self.stream_mode = mode
        self.client.send({"type": "streamMode", "mode": mode})

    def telemetry(self) -> Dict[str, Any]:
        return {
            "type": "telemetry",
            "robotId": self.robot_id,
            "counts": dict(self.counts),
            "joy": dict(self.latest["joy"]),
            "ts": int(time.time() * 1000),
        }

    async def start(self) -> None:
        self._running = True
        await self.client.start()

    async def stop(self) -> None:
        self._running = False
        await self.client.stop()

    async def run(self) -> None:
        """Publish telemetry until stopped."""
        period = 1.0 / self.telemetry_rate
        while self._running:
            await asyncio.sleep(period)
            if self.client.connected and self.viewers:
                self.client.send(self.telemetry())


class SimulatedHeadset:
    """
    Headset endpoint that selects a robot and streams commands.

    Joystick and viewport commands follow slow sine sweeps so a watching
    robot sees continuously changing, in-range values.
    """

    def __init__(
        self,
        server_url: str,
        client_id: Optional[str] = None,
        robot_id: Optional[str] = None,
        rate: float = 30.0,
        hfov_deg: float = 120.0,
        vfov_deg: float = 120.0,
    ):
        """
        Initialize simulated headset.

        Args:
            server_url: Relay URL
            client_id: Client id to claim (relay generates one if None)
            robot_id: Robot to select; None selects the first robot in the roster
            rate: Command rate (Hz)
            hfov_deg: Horizontal field of view sent with viewport commands
            vfov_deg: Vertical field of view sent with viewport commands
        """
        self.target_robot_id = robot_id
        self.rate = rate
        self.hfov_deg = hfov_deg
        self.vfov_deg = vfov_deg

        self.client_id = client_id
        self.selected_robot_id: Optional[str] = None
        self.stream_mode: Optional[str] = None
        self.roster = []
        self._pending_select: Optional[str] = None
        self._running = False

        hello = {"type": "hello", "role": "headset"}
        if client_id:
            hello["clientId"] = client_id

        self.client = RelayClient(
            server_url,
            hello=hello,
            on_message=self.handle_message,
            on_disconnected=self._on_disconnected,
        )

    async def _on_disconnected(self) -> None:
        self.selected_robot_id = None
        self._pending_select = None

    def _pick_robot(self) -> Optional[str]:
        ids = [r.get("robotId") for r in self.roster]
        if self.target_robot_id:
            return self.target_robot_id if self.target_robot_id in ids else None
        return ids[0] if ids else None

    async def handle_message(self, msg: Dict[str, Any]) -> None:
        """Apply one message from the relay."""
        msg_type = msg.get("type")

        if msg_type == "hello_ok":
            self.client_id = msg.get("clientId")
            logger.info(f"Registered as {self.client_id}")
        elif msg_type == "robots":
            self.roster = msg.get("robots") or []
            if self.selected_robot_id is None and self._pending_select is None:
                robot_id = self._pick_robot()
                if robot_id:
                    self._pending_select = robot_id
                    self.client.send({"type": "select_robot", "robotId": robot_id})
        elif msg_type == "selected_robot":
            self.selected_robot_id = msg.get("robotId")
            self._pending_select = None
            logger.info(f"Controlling robot {self.selected_robot_id}")
        elif msg_type == "streamMode":
            self.stream_mode = msg.get("mode")
            logger.info(f"streamMode={self.stream_mode}")
        elif msg_type == "publisher_left":
            logger.warning(f"Robot {msg.get('robotId')} left")
            self.selected_robot_id = None
        elif msg_type == "telemetry":
            logger.debug(f"Telemetry: {msg}")
        elif msg_type == "error":
            logger.warning(f"Relay error: {msg.get('reason')}")
            self._pending_select = None

    def commands_at(self, t: float) -> Dict[str, Dict[str, Any]]:
        """Joystick and viewport commands for time ``t`` (seconds)."""
        return {
            "joy": {
                "type": "joy",
                "robotId": self.selected_robot_id,
                "lx": round(0.5 * math.sin(t), 3),
                "ly": round(0.5 * math.cos(t), 3),
                "rx": 0.0,
                "ry": 0.0,
                "lt": 0.0,
                "rt": 0.0,
                "ts": t,
            },
            "viewport": {
                "type": "viewport",
                "robotId": self.selected_robot_id,
                "yawDeg": round(60.0 * math.sin(t / 4), 2),
                "pitchDeg": round(-10.0 * math.cos(t / 4), 2),
                "hfovDeg": self.hfov_deg,
                "vfovDeg": self.vfov_deg,
            },
        }

    async def start(self) -> None:
        self._running = True
        await self.client.start()

    async def stop(self) -> None:
        self._running = False
        await self.client.stop()

    async def run(self) -> None:
        """Stream commands to the selected robot until stopped."""
        period = 1.0 / self.rate
        t0 = time.monotonic()
        while self._running:
            await asyncio.sleep(period)
            if not (self.client.connected and self.selected_robot_id):
                continue
            for command in self.commands_at(time.monotonic() - t0).values():
                self.client.send(command)
