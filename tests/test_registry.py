"""Tests for the connection registry."""
import pytest

from relay_server.registry import CLOSE_SUPERSEDED, normalize_stream_format

from .conftest import RecordingConnection


def robots_message(conn):
    return conn.of_type("robots")[-1]["robots"]


class TestRobots:
    def test_register_broadcasts_roster(self, registry, clock):
        viewer = RecordingConnection()
        registry.register_headset(viewer, "h1")

        entry = registry.register_robot("r1", RecordingConnection(), meta={"name": "Sim"})

        assert entry.stream_mode == "flat2d"
        assert robots_message(viewer) == [{
            "robotId": "r1",
            "meta": {"name": "Sim"},
            "online": True,
            "lastSeen": int(clock.now * 1000),
            "streamMode": "flat2d",
        }]

    def test_reregistration_supersedes_old_connection(self, registry):
        old, new = RecordingConnection(), RecordingConnection()
        registry.register_robot("r1", old)
        registry.register_robot("r1", new)

        assert old.close_calls == [(CLOSE_SUPERSEDED, "superseded")]
        assert registry.get_robot("r1").connection is new
        assert registry.robot_count == 1

    def test_same_connection_not_closed(self, registry):
        conn = RecordingConnection()
        registry.register_robot("r1", conn)
        registry.register_robot("r1", conn)
        assert conn.close_calls == []

    def test_stream_mode_and_meta_survive_reconnect(self, registry):
        first = RecordingConnection()
        registry.register_robot("r1", first, meta={"name": "Sim"})
        registry.set_stream_mode("r1", "full360")
        registry.remove_robot("r1", connection=first)

        entry = registry.register_robot("r1", RecordingConnection())
        assert entry.stream_mode == "full360"
        assert entry.meta == {"name": "Sim"}

        entry = registry.register_robot("r1", RecordingConnection(), meta={"name": "Other"})
        assert entry.meta == {"name": "Other"}

    def test_remove_by_superseded_connection_is_noop(self, registry):
        old, new = RecordingConnection(), RecordingConnection()
        registry.register_robot("r1", old)
        registry.register_robot("r1", new)

        assert registry.remove_robot("r1", connection=old) is False
        assert registry.get_robot("r1").connection is new

    def test_remove_is_idempotent(self, registry):
        assert registry.remove_robot("ghost") is False
        registry.register_robot("r1", RecordingConnection())
        assert registry.remove_robot("r1") is True
        assert registry.remove_robot("r1") is False

    def test_remove_detaches_viewers(self, registry):
        robot = RecordingConnection()
        watcher, other = RecordingConnection(), RecordingConnection()
        registry.register_robot("r1", robot)
        registry.register_robot("r2", RecordingConnection())
        registry.register_headset(watcher, "h1")
        registry.register_headset(other, "h2")
        registry.attach("h1", "r1")
        registry.attach("h2", "r2")
        watcher.take()
        other.take()

        registry.remove_robot("r1")

        assert registry.get_headset("h1").selected_robot_id is None
        assert registry.get_headset("h2").selected_robot_id == "r2"
        assert watcher.of_type("publisher_left") == [{"type": "publisher_left", "robotId": "r1"}]
        assert other.of_type("publisher_left") == []
        assert [r["robotId"] for r in robots_message(watcher)] == ["r2"]
        assert [r["robotId"] for r in robots_message(other)] == ["r2"]

    def test_set_stream_mode_broadcasts_only_on_change(self, registry):
        viewer = RecordingConnection()
        registry.register_robot("r1", RecordingConnection())
        registry.register_headset(viewer, "h1")

        assert registry.set_stream_mode("r1", "crop360") is True
        assert robots_message(viewer)[0]["streamMode"] == "crop360"
        viewer.take()

        assert registry.set_stream_mode("r1", "crop360") is False
        assert viewer.sent == []

    def test_set_stream_mode_rejects_unknown(self, registry):
        registry.register_robot("r1", RecordingConnection())
        with pytest.raises(ValueError):
            registry.set_stream_mode("r1", "fisheye")

    def test_touch_updates_last_seen(self, registry, clock):
        registry.register_robot("r1", RecordingConnection())
        clock.advance(2.5)
        registry.touch_robot("r1")
        assert registry.get_robot("r1").last_seen == int(clock.now * 1000)

    def test_roster_keeps_registration_order(self, registry):
        for robot_id in ("c", "a", "b"):
            registry.register_robot(robot_id, RecordingConnection())
        assert [r["robotId"] for r in registry.snapshot_roster()] == ["c", "a", "b"]
        assert registry.snapshot_roster() == registry.snapshot_roster()


class TestHeadsets:
    def test_generated_ids_unique_and_non_empty(self, registry):
        ids = {registry.register_headset(RecordingConnection()).client_id for _ in range(50)}
        assert len(ids) == 50
        assert all(ids)
        assert all(i.startswith("headset-") for i in ids)

    def test_register_does_not_broadcast(self, registry):
        viewer = RecordingConnection()
        registry.register_headset(viewer, "h1")
        registry.register_headset(RecordingConnection(), "h2")
        assert viewer.sent == []

    def test_attach_and_switch(self, registry):
        r1, r2 = RecordingConnection(), RecordingConnection()
        registry.register_robot("r1", r1)
        registry.register_robot("r2", r2)
        registry.register_headset(RecordingConnection(), "h1")

        registry.attach("h1", "r1")
        assert r1.of_type("viewer_attached") == [{"type": "viewer_attached", "clientId": "h1"}]

        registry.attach("h1", "r2")
        assert r1.of_type("viewer_detached") == [{"type": "viewer_detached", "clientId": "h1"}]
        assert r2.of_type("viewer_attached") == [{"type": "viewer_attached", "clientId": "h1"}]
        assert registry.get_headset("h1").selected_robot_id == "r2"

    def test_attach_unknown_robot_raises(self, registry):
        registry.register_headset(RecordingConnection(), "h1")
        with pytest.raises(KeyError):
            registry.attach("h1", "ghost")

    def test_remove_headset_notifies_robot(self, registry):
        robot = RecordingConnection()
        registry.register_robot("r1", robot)
        registry.register_headset(RecordingConnection(), "h1")
        registry.attach("h1", "r1")

        assert registry.remove_headset("h1") is True
        assert robot.of_type("viewer_detached") == [{"type": "viewer_detached", "clientId": "h1"}]
        assert registry.get_headset("h1") is None
        assert registry.remove_headset("h1") is False

    def test_detach_keeps_headset(self, registry):
        registry.register_robot("r1", RecordingConnection())
        registry.register_headset(RecordingConnection(), "h1")
        registry.attach("h1", "r1")

        assert registry.detach("h1") == "r1"
        assert registry.get_headset("h1").selected_robot_id is None
        assert registry.detach("h1") is None

    def test_reregistration_supersedes_headset(self, registry):
        robot = RecordingConnection()
        old, new = RecordingConnection(), RecordingConnection()
        registry.register_robot("r1", robot)
        registry.register_headset(old, "h1")
        registry.attach("h1", "r1")

        registry.register_headset(new, "h1")

        assert old.close_calls == [(CLOSE_SUPERSEDED, "superseded")]
        assert robot.of_type("viewer_detached") == [{"type": "viewer_detached", "clientId": "h1"}]
        assert registry.get_headset("h1").connection is new
        assert registry.remove_headset("h1", connection=old) is False
        assert registry.headset_count == 1


@pytest.mark.parametrize("value, expected", [
    ("full360", "full360"),
    ("crop360", "crop360"),
    ("flat", "flat2d"),
    (None, "flat2d"),
    ("FULL360", "flat2d"),
])
def test_normalize_stream_format(value, expected):
    assert normalize_stream_format(value) == expected
