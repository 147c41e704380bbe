"""
Integration tests for the coordinator event loop

Tests cover:
- Registration acks and broadcasts
- Per-tick link pipeline with hysteresis per UAV
- Sensor data filtering by committed mode
- Liveness sweep and master failover
- Periodic rotation
- Command dispatch, responses, timeouts and disconnects
- Master invariants after every event
"""
import threading
from unittest.mock import Mock
import pytest
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from isac.mode_arbiter import ISACMode  # noqa: E402
from isac.transmission import ComponentKind, Detection, SensorPayload, VideoFrame  # noqa: E402
from base_station.coordinator import (  # noqa: E402
    CommandResponseEvent,
    DisconnectEvent,
    FleetInvariantError,
    HeartbeatEvent,
    RegisterEvent,
    RotationTick,
    SensorDataEvent,
    SweepTick,
)


def register(coordinator, uav_id, connection=None, position=(0.0, 0.0, 10.0), battery=90.0, msg_id=1):
    coordinator.submit(
        RegisterEvent(uav_id, list(position), battery, ["takeoff", "land"], connection, msg_id)
    )
    coordinator.process_pending()


class TestRegistration:
    """Test registration through the coordinator"""

    def test_first_registration_elects_and_acks(self, coordinator, fake_connection, recorder):
        register(coordinator, "uav-1", fake_connection)

        ack = fake_connection.sent[0]
        assert ack["id"] == 1
        assert ack["result"] == {
            "status": "registered",
            "assigned_id": "uav-1",
            "current_master_id": "uav-1",
        }
        assert recorder.named("master_changed")[0]["currentMasterId"] == "uav-1"
        connected = recorder.named("uav_connected")[0]
        assert connected["isMaster"] is True
        assert connected["currentMasterId"] == "uav-1"

    def test_second_registration_keeps_master(self, coordinator, estimator, make_connection):
        register(coordinator, "uav-1", make_connection())
        estimator.signal = 100.0
        conn = make_connection()
        register(coordinator, "uav-2", conn)

        assert conn.sent[0]["result"]["current_master_id"] == "uav-1"
        assert coordinator.registry.current_master_id == "uav-1"

    def test_malformed_registration_gets_error_ack(self, coordinator, fake_connection, recorder):
        register(coordinator, "uav-1", fake_connection, battery=250)

        assert "error" in fake_connection.sent[0]
        assert fake_connection.sent[0]["id"] == 1
        assert len(coordinator.registry) == 0
        assert recorder.named("uav_connected") == []

    def test_registration_commits_initial_mode(self, coordinator, estimator):
        estimator.signal = 50.0
        register(coordinator, "uav-1")
        assert coordinator.registry.get("uav-1").isac_mode is ISACMode.MEDIUM


class TestLinkPipeline:
    """Test heartbeat -> estimate -> arbitrate -> broadcast"""

    def test_status_update_broadcast(self, coordinator, estimator, recorder):
        estimator.signal = 80.0
        register(coordinator, "uav-1")
        coordinator.submit(HeartbeatEvent("uav-1", position=[5, 0, 10], battery=88.0))
        coordinator.process_pending()

        update = recorder.named("uav_status_update")[-1]
        assert update["uavId"] == "uav-1"
        assert update["isacMode"] == "good"
        assert update["battery"] == 88.0
        assert update["position"] == [5.0, 0.0, 10.0]

    def test_mode_change_after_dwell(self, coordinator, estimator, recorder):
        estimator.signal = 80.0
        register(coordinator, "uav-1")

        estimator.signal = 50.0
        for tick in range(5):
            coordinator.submit(HeartbeatEvent("uav-1"))
            coordinator.process_pending()
            if tick < 4:
                assert recorder.named("isac_mode_changed") == []

        changes = recorder.named("isac_mode_changed")
        assert len(changes) == 1
        assert changes[0]["mode"] == "medium"
        assert coordinator.registry.get("uav-1").isac_mode is ISACMode.MEDIUM

    def test_hysteresis_is_per_uav(self, coordinator, estimator):
        """One UAV's challenger must not advance another UAV's dwell count"""
        estimator.by_x = {1.0: 80.0, 2.0: 80.0}
        register(coordinator, "uav-1", position=(1.0, 0.0, 10.0))
        register(coordinator, "uav-2", position=(2.0, 0.0, 10.0))

        estimator.by_x = {1.0: 50.0, 2.0: 80.0}
        for _ in range(4):
            coordinator.submit(HeartbeatEvent("uav-1"))
            coordinator.submit(HeartbeatEvent("uav-2"))
        coordinator.process_pending()

        assert coordinator.arbiter.decision_for("uav-1").dwell_count == 4
        assert coordinator.arbiter.decision_for("uav-2").dwell_count == 0
        assert coordinator.registry.get("uav-1").isac_mode is ISACMode.GOOD

    def test_heartbeat_from_unknown_uav_ignored(self, coordinator, recorder):
        coordinator.submit(HeartbeatEvent("ghost", battery=50.0))
        coordinator.process_pending()
        assert recorder.events == []


class TestSensorData:
    """Test sensor data filtering"""

    def test_package_uses_committed_mode(self, coordinator, estimator, recorder):
        packages = []
        coordinator.add_package_sink(packages.append)
        estimator.signal = 20.0
        register(coordinator, "uav-1")

        payload = SensorPayload(
            video_frame=VideoFrame(),
            detections=[Detection("a", (0.0, 0.0), 0.95), Detection("b", (0.0, 0.0), 0.7)],
        )
        coordinator.submit(SensorDataEvent("uav-1", payload))
        coordinator.process_pending()

        package = packages[0]
        assert package.mode is ISACMode.WEAK
        assert not package.includes(ComponentKind.VIDEO)
        assert [d.id for d in package.detections] == ["a"]
        assert recorder.named("uav_data_update")[0]["isacMode"] == "weak"

    def test_sink_error_does_not_stop_broadcast(self, coordinator, recorder):
        def broken_sink(package):
            raise RuntimeError("disk full")

        coordinator.add_package_sink(broken_sink)
        register(coordinator, "uav-1")
        coordinator.submit(SensorDataEvent("uav-1", SensorPayload()))
        coordinator.process_pending()
        assert len(recorder.named("uav_data_update")) == 1


class TestLivenessAndFailover:
    """Test sweep-driven removal and master re-election"""

    def test_master_timeout_triggers_reelection(self, coordinator, estimator, clock, recorder):
        estimator.by_x = {1.0: 90.0, 2.0: 50.0}
        register(coordinator, "uav-1", position=(1.0, 0.0, 10.0))
        register(coordinator, "uav-2", position=(2.0, 0.0, 10.0))
        assert coordinator.registry.current_master_id == "uav-1"

        clock.advance(2.0)
        coordinator.submit(HeartbeatEvent("uav-2"))
        clock.advance(1.5)
        coordinator.submit(SweepTick())
        coordinator.process_pending()

        assert "uav-1" not in coordinator.registry
        assert coordinator.registry.current_master_id == "uav-2"
        assert coordinator.arbiter.decision_for("uav-1") is None
        disconnected = recorder.named("uav_disconnected")[0]
        assert disconnected == {"uavId": "uav-1", "reason": "timeout", "currentMasterId": "uav-2"}

    def test_last_uav_leaving_clears_master(self, coordinator, recorder):
        register(coordinator, "uav-1")
        coordinator.submit(DisconnectEvent("uav-1"))
        coordinator.process_pending()

        assert coordinator.registry.current_master_id is None
        assert recorder.named("uav_disconnected")[0]["currentMasterId"] is None
        assert recorder.named("master_changed")[-1]["currentMasterId"] is None

    def test_non_master_disconnect_keeps_master(self, coordinator, estimator, recorder):
        estimator.by_x = {1.0: 90.0, 2.0: 50.0}
        register(coordinator, "uav-1", position=(1.0, 0.0, 10.0))
        register(coordinator, "uav-2", position=(2.0, 0.0, 10.0))
        changes_before = len(recorder.named("master_changed"))

        coordinator.submit(DisconnectEvent("uav-2"))
        coordinator.process_pending()

        assert coordinator.registry.current_master_id == "uav-1"
        assert len(recorder.named("master_changed")) == changes_before

    def test_stale_connection_disconnect_ignored(self, coordinator, make_connection):
        old, new = make_connection(), make_connection()
        register(coordinator, "uav-1", old)
        register(coordinator, "uav-1", new)

        coordinator.submit(DisconnectEvent("uav-1", "connection_lost", old))
        coordinator.process_pending()

        assert "uav-1" in coordinator.registry
        assert old.closed
        assert coordinator.registry.current_master_id == "uav-1"


class TestRotation:
    """Test periodic re-election"""

    def test_rotation_picks_current_best(self, coordinator, estimator, recorder):
        estimator.by_x = {1.0: 60.0, 2.0: 50.0}
        register(coordinator, "uav-1", position=(1.0, 0.0, 10.0))
        register(coordinator, "uav-2", position=(2.0, 0.0, 10.0))

        coordinator.submit(HeartbeatEvent("uav-2", battery=100.0))
        coordinator.submit(HeartbeatEvent("uav-1", battery=10.0))
        coordinator.submit(RotationTick())
        coordinator.process_pending()

        assert coordinator.registry.current_master_id == "uav-2"
        assert recorder.named("master_changed")[-1]["reason"] == "rotation"

    def test_rotation_without_change_is_silent(self, coordinator, recorder):
        register(coordinator, "uav-1")
        before = len(recorder.named("master_changed"))
        coordinator.submit(RotationTick())
        coordinator.process_pending()
        assert len(recorder.named("master_changed")) == before


class TestCommands:
    """Test command dispatch and resolution"""

    def test_command_round_trip(self, coordinator, fake_connection, recorder):
        register(coordinator, "uav-1", fake_connection)
        pending = coordinator.dispatch_command("uav-1", "takeoff", {"altitude": 15})
        coordinator.process_pending()

        sent = fake_connection.sent[-1]
        assert sent["method"] == "takeoff"
        assert sent["params"] == {"altitude": 15}
        assert sent["id"] == pending.command_id

        coordinator.submit(CommandResponseEvent("uav-1", pending.command_id, True, {"altitude": 15}))
        coordinator.process_pending()

        assert pending.done
        assert pending.result.success
        assert pending.result.result == {"altitude": 15}
        assert coordinator.pending_commands == {}
        assert recorder.named("command_response")[0]["commandId"] == pending.command_id

    def test_unknown_command_fails_immediately(self, coordinator, fake_connection):
        register(coordinator, "uav-1", fake_connection)
        pending = coordinator.dispatch_command("uav-1", "barrel_roll")
        coordinator.process_pending()
        assert pending.result.success is False
        assert "unknown command" in pending.result.error

    def test_command_to_unknown_uav_fails(self, coordinator):
        pending = coordinator.dispatch_command("ghost", "land")
        coordinator.process_pending()
        assert pending.result.error == "not connected"

    def test_send_failure_fails_command(self, coordinator, make_connection):
        conn = make_connection()
        register(coordinator, "uav-1", conn)
        conn.accept = False
        pending = coordinator.dispatch_command("uav-1", "land")
        coordinator.process_pending()
        assert pending.result.error == "send failed"

    def test_command_times_out_on_sweep(self, coordinator, fake_connection, clock):
        register(coordinator, "uav-1", fake_connection)
        pending = coordinator.dispatch_command("uav-1", "land")
        coordinator.process_pending()

        clock.advance(9.0)
        coordinator.submit(HeartbeatEvent("uav-1"))
        coordinator.submit(SweepTick())
        coordinator.process_pending()
        assert not pending.done

        clock.advance(1.0)
        coordinator.submit(HeartbeatEvent("uav-1"))
        coordinator.submit(SweepTick())
        coordinator.process_pending()
        assert pending.result.error == "timeout"
        assert coordinator.pending_commands == {}

    def test_late_response_is_dropped(self, coordinator, fake_connection, clock):
        register(coordinator, "uav-1", fake_connection)
        pending = coordinator.dispatch_command("uav-1", "land")
        coordinator.process_pending()
        clock.advance(10.0)
        coordinator.submit(HeartbeatEvent("uav-1"))
        coordinator.submit(SweepTick())
        coordinator.submit(CommandResponseEvent("uav-1", pending.command_id, True, {}))
        coordinator.process_pending()
        assert pending.result.success is False

    def test_disconnect_fails_pending_commands(self, coordinator, fake_connection):
        register(coordinator, "uav-1", fake_connection)
        pending = coordinator.dispatch_command("uav-1", "move_to", {"x": 1, "y": 2, "z": 3})
        coordinator.process_pending()

        coordinator.submit(DisconnectEvent("uav-1"))
        coordinator.process_pending()
        assert pending.result.error == "disconnected"

    def test_send_command_times_out_without_worker(self, coordinator, fake_connection):
        register(coordinator, "uav-1", fake_connection)
        result = coordinator.send_command("uav-1", "land", timeout=0.05)
        assert result.success is False
        assert result.error == "timeout"

    def test_released_command_is_never_sent(self, coordinator, fake_connection):
        """A caller that gave up before dispatch must not trigger the command"""
        register(coordinator, "uav-1", fake_connection)
        sent_before = len(fake_connection.sent)

        result = coordinator.send_command("uav-1", "takeoff", {"altitude": 5}, timeout=0.01)
        coordinator.process_pending()

        assert result.error == "timeout"
        assert len(fake_connection.sent) == sent_before
        assert coordinator.pending_commands == {}

    def test_response_after_caller_timeout_not_broadcast(self, coordinator, fake_connection, recorder):
        register(coordinator, "uav-1", fake_connection)
        pending = coordinator.dispatch_command("uav-1", "land")
        coordinator.process_pending()
        pending.fail("timeout")

        coordinator.submit(CommandResponseEvent("uav-1", pending.command_id, True, {}))
        coordinator.process_pending()

        assert pending.result.error == "timeout"
        assert recorder.named("command_response") == []
        assert coordinator.pending_commands == {}

    def test_reconnect_fails_commands_of_old_connection(self, coordinator, make_connection):
        register(coordinator, "uav-1", make_connection())
        pending = coordinator.dispatch_command("uav-1", "land")
        coordinator.process_pending()

        register(coordinator, "uav-1", make_connection())

        assert pending.result.success is False
        assert pending.result.error == "reconnected"
        assert coordinator.pending_commands == {}

    def test_repeated_registration_keeps_connection_and_commands(self, coordinator, fake_connection):
        register(coordinator, "uav-1", fake_connection)
        pending = coordinator.dispatch_command("uav-1", "land")
        coordinator.process_pending()

        register(coordinator, "uav-1", fake_connection, msg_id=2)

        assert not fake_connection.closed
        assert not pending.done
        assert coordinator.registry.get("uav-1").connection is fake_connection
        assert fake_connection.sent[-1]["id"] == 2


class TestThreadedWorker:
    """Test the coordinator with its worker thread running"""

    def test_send_command_blocks_only_caller(self, coordinator):
        class AutoReply:
            """Connection that answers every command on another thread"""

            closed = False

            def send(self, message):
                if "method" in message:
                    threading.Thread(
                        target=coordinator.submit,
                        args=(CommandResponseEvent("uav-1", message["id"], True, {"ok": True}),),
                    ).start()
                return True

            def close(self):
                self.closed = True

        coordinator.start()
        try:
            coordinator.submit(RegisterEvent("uav-1", [0, 0, 10], 90.0, [], AutoReply(), 1))
            result = coordinator.send_command("uav-1", "land", timeout=5.0)
            assert result.success
            assert result.result == {"ok": True}
        finally:
            coordinator.stop()

    def test_stop_fails_outstanding_commands(self, coordinator, fake_connection):
        coordinator.start()
        coordinator.submit(RegisterEvent("uav-1", [0, 0, 10], 90.0, [], fake_connection, 1))
        pending = coordinator.dispatch_command("uav-1", "land")
        coordinator.stop()
        assert pending.done
        assert pending.result.success is False


class TestInvariants:
    """Test master bookkeeping checks"""

    def test_invariants_hold_through_lifecycle(self, coordinator, clock):
        register(coordinator, "uav-1")
        coordinator.check_invariants()
        register(coordinator, "uav-2")
        coordinator.check_invariants()
        coordinator.submit(DisconnectEvent("uav-1"))
        coordinator.process_pending()
        coordinator.check_invariants()
        clock.advance(10.0)
        coordinator.submit(SweepTick())
        coordinator.process_pending()
        coordinator.check_invariants()
        assert len(coordinator.registry) == 0

    def test_corrupted_master_detected(self, coordinator):
        register(coordinator, "uav-1")
        register(coordinator, "uav-2")
        coordinator.registry.get("uav-2").is_master = True
        with pytest.raises(FleetInvariantError):
            coordinator.check_invariants()

    def test_observer_error_does_not_break_loop(self, coordinator):
        broken_observer = Mock(side_effect=ValueError("socket gone"))
        coordinator.add_observer(broken_observer)
        register(coordinator, "uav-1")
        assert coordinator.registry.current_master_id == "uav-1"
        assert broken_observer.call_count == 2

    def test_status_reflects_applied_state(self, coordinator):
        register(coordinator, "uav-1")
        status = coordinator.get_status()
        assert status["currentMasterId"] == "uav-1"
        assert [u["uavId"] for u in status["uavs"]] == ["uav-1"]
        assert status["eventsProcessed"] == 1
