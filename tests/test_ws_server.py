"""End-to-end tests over real WebSocket sessions (FastAPI TestClient)."""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from relay_server.config import RelayConfig
from relay_server.registry import CLOSE_SUPERSEDED
from relay_server.ws_server import RelayServer, create_app


@pytest.fixture
def server():
    return RelayServer(RelayConfig(ping_interval=60.0))


@pytest.fixture
def client(server):
    with TestClient(server.app) as test_client:
        yield test_client


def hello_robot(ws, robot_id="r1", **extra):
    ws.send_json({"type": "hello", "role": "robot", "robotId": robot_id, **extra})
    return ws.receive_json()


def hello_headset(ws, client_id="h1"):
    ws.send_json({"type": "hello", "role": "headset", "clientId": client_id})
    return ws.receive_json(), ws.receive_json()


class TestHttp:
    def test_banner(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.text == "Signal/Control Server Running!"

    def test_health_counts(self, client):
        body = client.get("/health").json()
        assert body["ok"] is True
        assert body["robotCount"] == 0
        assert body["headsetCount"] == 0
        assert isinstance(body["now"], int)

        with client.websocket_connect("/ws") as robot:
            hello_robot(robot)
            body = client.get("/health").json()
            assert body["robotCount"] == 1
            assert body["stats"]["router"]["connections"] == 1

    def test_static_mount(self, tmp_path):
        (tmp_path / "robot.html").write_text("<h1>robot</h1>")
        app = create_app(RelayConfig(static_dir=str(tmp_path)))
        with TestClient(app) as test_client:
            response = test_client.get("/static/robot.html")
        assert response.status_code == 200
        assert "robot" in response.text


class TestWebSocket:
    def test_select_robot_session(self, client):
        with client.websocket_connect("/ws") as robot:
            assert hello_robot(robot, meta={"name": "Sim"}) == {
                "type": "hello_ok", "role": "robot", "robotId": "r1",
            }

            with client.websocket_connect("/ws") as headset:
                hello_ok, roster = hello_headset(headset)
                assert hello_ok == {"type": "hello_ok", "role": "headset", "clientId": "h1"}
                assert roster["robots"][0]["robotId"] == "r1"
                assert roster["robots"][0]["meta"] == {"name": "Sim"}

                headset.send_json({"type": "select_robot", "robotId": "r1"})
                assert headset.receive_json() == {"type": "selected_robot", "robotId": "r1"}
                assert headset.receive_json() == {"type": "streamMode", "mode": "flat2d"}
                assert robot.receive_json() == {"type": "viewer_attached", "clientId": "h1"}

                headset.send_json({"type": "joy", "lx": -4, "ly": 0.5, "rx": 0, "ry": 0})
                assert robot.receive_json() == {
                    "type": "joy", "robotId": "r1",
                    "lx": -1.0, "ly": 0.5, "rx": 0.0, "ry": 0.0, "lt": 0.0, "rt": 0.0,
                    "gated": True,
                }

                robot.send_json({"type": "answer", "sdp": "v=0"})
                assert headset.receive_json() == {"type": "answer", "sdp": "v=0", "robotId": "r1"}

            assert robot.receive_json() == {"type": "viewer_detached", "clientId": "h1"}

    def test_robot_leaving_notifies_headset(self, client):
        with client.websocket_connect("/ws") as headset:
            with client.websocket_connect("/ws") as robot:
                hello_robot(robot)
                hello_headset(headset)
                headset.send_json({"type": "select_robot", "robotId": "r1"})
                headset.receive_json()
                headset.receive_json()

            assert headset.receive_json() == {"type": "publisher_left", "robotId": "r1"}
            assert headset.receive_json() == {"type": "robots", "robots": []}

    def test_duplicate_robot_id_supersedes(self, client, server):
        with client.websocket_connect("/ws") as first:
            hello_robot(first)
            with client.websocket_connect("/ws") as second:
                hello_robot(second)

                with pytest.raises(WebSocketDisconnect) as exc_info:
                    first.receive_json()
                assert exc_info.value.code == CLOSE_SUPERSEDED

                assert server.registry.robot_count == 1
                second.send_json({"type": "telemetry"})
                assert client.get("/health").json()["robotCount"] == 1

    def test_malformed_frames_ignored(self, client):
        with client.websocket_connect("/") as ws:
            ws.send_text("not json at all")
            ws.send_bytes(b"\xff\xfe")
            ws.send_json({"type": "list_robots"})
            assert ws.receive_json() == {"type": "error", "reason": "send_hello_first"}

    def test_pong_reply_is_silent(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "pong"})
            ws.send_json({"type": "hello", "role": "nobody"})
            assert ws.receive_json() == {"type": "error", "reason": "role_must_be_robot_or_headset"}
