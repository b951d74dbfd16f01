"""
Control Safety Gateway - validates operator commands before they reach a robot.

Every headset-originated motion, viewport or button command passes through
here. A command is either forwarded as a bounded, schema-conformant payload
or refused as a whole; a partially applied motion command is never produced.

Channels:
- pose      30 Hz   roll/pitch/yaw clamped to [-180, 180]
- joy       90 Hz   sticks clamped to [-1, 1], triggers to [0, 1]
- btn       no limit  id truncated to 32 chars, v coerced to 0/1
- viewport  60 Hz   yaw/pitch/fov clamped to their ranges
- control   30 Hz   legacy combined sticks, selection and seq checks
"""

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

# Maximum accepted rate per channel (Hz). Channels not listed are unthrottled.
RATE_LIMITS_HZ: Dict[str, float] = {
    "pose": 30.0,
    "joy": 90.0,
    "viewport": 60.0,
    "control": 30.0,
}

BUTTON_ID_MAX_LEN = 32

# (field, low, high, default when missing)
POSE_FIELDS = (
    ("roll", -180.0, 180.0, None),
    ("pitch", -180.0, 180.0, None),
    ("yaw", -180.0, 180.0, None),
)

JOY_FIELDS = (
    ("lx", -1.0, 1.0, None),
    ("ly", -1.0, 1.0, None),
    ("rx", -1.0, 1.0, None),
    ("ry", -1.0, 1.0, None),
    ("lt", 0.0, 1.0, 0.0),
    ("rt", 0.0, 1.0, 0.0),
)

VIEWPORT_FIELDS = (
    ("yawDeg", -180.0, 180.0, None),
    ("pitchDeg", -89.0, 89.0, None),
    ("hfovDeg", 20.0, 180.0, None),
    ("vfovDeg", 20.0, 160.0, None),
)

CONTROL_FIELDS = (
    ("lx", -1.0, 1.0, 0.0),
    ("ly", -1.0, 1.0, 0.0),
    ("rx", -1.0, 1.0, 0.0),
    ("ry", -1.0, 1.0, 0.0),
)


class GateStatus(str, Enum):
    """Outcome of passing a command through the gate."""
    FORWARDED = "forwarded"
    # Structural or identity violation; the sender should stop
    REJECTED = "rejected"
    # Transient (rate limit, stale sequence); the sender may keep going
    DROPPED = "dropped"


@dataclass
class GateResult:
    """Result of gating one command."""
    status: GateStatus
    reason: str
    message: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.status is GateStatus.FORWARDED

    @classmethod
    def forwarded(cls, message: Dict[str, Any]) -> 'GateResult':
        return cls(GateStatus.FORWARDED, "ok", message)

    @classmethod
    def rejected(cls, reason: str) -> 'GateResult':
        return cls(GateStatus.REJECTED, reason)

    @classmethod
    def dropped(cls, reason: str) -> 'GateResult':
        return cls(GateStatus.DROPPED, reason)


@dataclass
class ThrottleState:
    """Per-headset gate state. Channels are throttled independently."""
    last_accepted_ms: Dict[str, float] = field(default_factory=dict)
    last_seq: Optional[float] = None


def coerce_number(value: Any, default: Optional[float] = None) -> float:
    """
    Coerce an untrusted JSON value to float.

    Booleans, numbers and numeric strings are accepted. A missing value takes
    ``default`` if one is given. Anything else yields NaN.
    """
    if value is None:
        return float(default) if default is not None else math.nan
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float, str)):
        try:
            return float(value)
        except ValueError:
            return math.nan
        except OverflowError:
            return math.inf if value > 0 else -math.inf
    return math.nan


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _sanitize_fields(
    msg: Dict[str, Any],
    fields: Tuple[Tuple[str, float, float, Optional[float]], ...],
) -> GateResult:
    """Coerce and clamp every declared field; reject on the first NaN."""
    out: Dict[str, float] = {}
    for name, low, high, default in fields:
        value = coerce_number(msg.get(name), default)
        if math.isnan(value):
            return GateResult.rejected(f"{name}_not_numeric")
        out[name] = clamp(value, low, high)
    return GateResult.forwarded(out)


def sanitize_pose(msg: Dict[str, Any]) -> GateResult:
    return _sanitize_fields(msg, POSE_FIELDS)


def sanitize_joystick(msg: Dict[str, Any]) -> GateResult:
    return _sanitize_fields(msg, JOY_FIELDS)


def sanitize_viewport(msg: Dict[str, Any]) -> GateResult:
    return _sanitize_fields(msg, VIEWPORT_FIELDS)


def sanitize_button(msg: Dict[str, Any]) -> GateResult:
    """Button edge: non-empty id (max 32 chars) and a 0/1 value."""
    raw_id = msg.get("id")
    button_id = "" if raw_id is None else str(raw_id)[:BUTTON_ID_MAX_LEN]
    if not button_id:
        return GateResult.rejected("button_id_required")

    value = coerce_number(msg.get("v"), 0.0)
    pressed = 1 if (not math.isnan(value) and value != 0) else 0
    return GateResult.forwarded({"id": button_id, "v": pressed})


_SANITIZERS: Dict[str, Callable[[Dict[str, Any]], GateResult]] = {
    "pose": sanitize_pose,
    "joy": sanitize_joystick,
    "btn": sanitize_button,
    "viewport": sanitize_viewport,
}

GATED_CHANNELS = tuple(_SANITIZERS)


class ControlGate:
    """
    Rate limiter and sanitizer for headset commands.

    Rate limiting is a minimum-interval gate per (headset, channel): a command
    arriving before ``last_accepted + 1000 / rate`` ms is dropped, and the
    last-accepted timestamp is left unchanged so a burst cannot catch up
    ahead of schedule.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        rate_limits: Optional[Dict[str, float]] = None,
    ):
        """
        Initialize gate.

        Args:
            clock: Monotonic clock in seconds (defaults to time.monotonic)
            rate_limits: Per-channel overrides of RATE_LIMITS_HZ
        """
        self._clock = clock or time.monotonic
        self.rate_limits = dict(RATE_LIMITS_HZ)
        if rate_limits:
            self.rate_limits.update(rate_limits)

        # Statistics
        self._counts = {status: 0 for status in GateStatus}

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _rate_limited(self, throttle: ThrottleState, channel: str, now_ms: float) -> bool:
        rate = self.rate_limits.get(channel)
        if not rate:
            return False
        last = throttle.last_accepted_ms.get(channel)
        return last is not None and (now_ms - last) < 1000.0 / rate

    def _record(self, channel: str, result: GateResult) -> GateResult:
        self._counts[result.status] += 1
        if not result.ok:
            logger.debug(f"Gate {result.status.value} {channel}: {result.reason}")
        return result

    def check(
        self,
        channel: str,
        msg: Dict[str, Any],
        throttle: ThrottleState,
        robot_id: str,
    ) -> GateResult:
        """
        Gate a per-channel command (pose, joy, btn, viewport).

        Args:
            channel: Message type
            msg: Untrusted inbound message
            throttle: Sending headset's gate state
            robot_id: Destination robot

        Returns:
            GateResult; on success ``message`` holds the payload to forward
        """
        sanitizer = _SANITIZERS.get(channel)
        if sanitizer is None:
            return self._record(channel, GateResult.rejected("unknown_channel"))

        now = self._now_ms()
        if self._rate_limited(throttle, channel, now):
            return self._record(channel, GateResult.dropped("rate_limited"))

        result = sanitizer(msg)
        if not result.ok:
            return self._record(channel, result)

        if channel in self.rate_limits:
            throttle.last_accepted_ms[channel] = now

        gated = {"type": channel, "robotId": robot_id}
        gated.update(result.message)
        gated["gated"] = True
        return self._record(channel, GateResult.forwarded(gated))

    def check_legacy_control(
        self,
        msg: Dict[str, Any],
        throttle: ThrottleState,
        selected_robot_id: Optional[str],
        robot_id: str,
    ) -> GateResult:
        """
        Gate a legacy combined ``control`` command.

        On top of the per-channel checks this re-verifies that the headset
        still has ``robot_id`` selected and, when the client numbers its
        commands, that ``seq`` strictly increases.
        """
        if selected_robot_id != robot_id:
            return self._record("control", GateResult.rejected("not_selected_robot"))

        now = self._now_ms()
        if self._rate_limited(throttle, "control", now):
            return self._record("control", GateResult.dropped("rate_limited"))

        seq = msg.get("seq")
        has_seq = (
            isinstance(seq, (int, float))
            and not isinstance(seq, bool)
            and not math.isnan(seq)
        )
        if has_seq and throttle.last_seq is not None and seq <= throttle.last_seq:
            return self._record("control", GateResult.dropped("old_seq"))

        result = _sanitize_fields(msg, CONTROL_FIELDS)
        if not result.ok:
            return self._record("control", result)

        throttle.last_accepted_ms["control"] = now
        if has_seq:
            throttle.last_seq = seq

        gated = {"type": "control", "robotId": robot_id}
        gated.update(result.message)
        if has_seq:
            gated["seq"] = seq
        gated["gated"] = True
        return self._record("control", GateResult.forwarded(gated))

    def get_stats(self) -> dict:
        """Get gate statistics."""
        total = sum(self._counts.values())
        return {
            "total": total,
            "forwarded": self._counts[GateStatus.FORWARDED],
            "rejected": self._counts[GateStatus.REJECTED],
            "dropped": self._counts[GateStatus.DROPPED],
        }
