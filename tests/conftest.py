"""Shared fixtures: recording connections and controllable clocks."""
import json

import pytest

from relay_server.connection import Connection
from relay_server.gateway import ControlGate
from relay_server.registry import ConnectionRegistry
from relay_server.router import ProtocolRouter


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingConnection(Connection):
    """Connection that records outbound messages instead of queueing them."""

    def __init__(self):
        super().__init__(transport=None)
        self.sent = []
        self.close_calls = []

    def send(self, message):
        if self.closed:
            return False
        # Round-trip through JSON so tests see exactly what goes on the wire
        self.sent.append(json.loads(json.dumps(message)))
        return True

    def close(self, code=1000, reason=""):
        self.close_calls.append((code, reason))
        self.closed = True

    def of_type(self, msg_type):
        return [m for m in self.sent if m.get("type") == msg_type]

    def take(self):
        sent, self.sent = self.sent, []
        return sent


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return ConnectionRegistry(clock=clock)


@pytest.fixture
def gate(clock):
    return ControlGate(clock=clock)


@pytest.fixture
def router(registry, gate):
    return ProtocolRouter(registry, gate)


@pytest.fixture
def connect(router):
    """Open a recording connection on the router."""

    def _connect():
        conn = RecordingConnection()
        router.connect(conn)
        return conn

    return _connect


def send(router, conn, message):
    router.handle_text(conn, json.dumps(message))


@pytest.fixture
def robot(router, connect):
    """Factory: connect and register a robot, clearing its inbox."""

    def _robot(robot_id="r1", **extra):
        conn = connect()
        send(router, conn, {"type": "hello", "role": "robot", "robotId": robot_id, **extra})
        conn.take()
        return conn

    return _robot


@pytest.fixture
def headset(router, connect):
    """Factory: connect and register a headset, clearing its inbox."""

    def _headset(client_id="h1", select=None):
        conn = connect()
        send(router, conn, {"type": "hello", "role": "headset", "clientId": client_id})
        if select:
            send(router, conn, {"type": "select_robot", "robotId": select})
        conn.take()
        return conn

    return _headset
