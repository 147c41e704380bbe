"""
Integration tests for the dashboard bridge

Tests cover:
- /api/status serving the latest fleet snapshot
- Socket.IO clients receiving coordinator broadcasts
"""
import sys
from unittest.mock import Mock
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from base_station.coordinator import HeartbeatEvent, RegisterEvent  # noqa: E402
from base_station.dashboard_bridge import DashboardBridge, create_app  # noqa: E402


class TestStatusEndpoint:
    """Test the HTTP status route"""

    def test_status_lists_fleet(self, coordinator):
        app, _, _ = create_app(coordinator)
        coordinator.submit(RegisterEvent("uav-1", [0, 0, 10], 90.0))
        coordinator.process_pending()

        response = app.test_client().get("/api/status")
        assert response.status_code == 200
        body = response.get_json()
        assert body["currentMasterId"] == "uav-1"
        assert body["uavs"][0]["uavId"] == "uav-1"


class TestSocketBroadcasts:
    """Test Socket.IO fan-out"""

    def test_client_receives_initial_state_and_broadcasts(self, coordinator):
        app, socketio, bridge = create_app(coordinator)
        coordinator.add_observer(bridge)
        client = socketio.test_client(app)

        initial = client.get_received()
        assert initial[0]["name"] == "fleet_state"

        coordinator.submit(RegisterEvent("uav-1", [0, 0, 10], 90.0))
        coordinator.submit(HeartbeatEvent("uav-1", battery=80.0))
        coordinator.process_pending()

        names = [message["name"] for message in client.get_received()]
        assert "uav_connected" in names
        assert "master_changed" in names
        assert "uav_status_update" in names
        assert bridge.events_sent >= 3
        client.disconnect()


class TestBridgeErrors:
    """Test fire-and-forget delivery"""

    def test_emit_failure_is_swallowed(self):
        socketio = Mock()
        socketio.emit.side_effect = RuntimeError("client gone")
        bridge = DashboardBridge(Mock(), socketio)

        bridge("uav_connected", {"uavId": "uav-1"})

        socketio.emit.assert_called_once_with("uav_connected", {"uavId": "uav-1"})
        assert bridge.events_sent == 0
