"""
ISAC Base Station - Main controller integrating fleet coordination and link arbitration

Author: Vítor Eulálio Reis <vitor.reis@proton.me>
Copyright (c) 2025

UAVs connect over TCP and speak newline-delimited JSON-RPC:

    UAV -> base station:
        register     {uav_id, position, battery, capabilities}  (request, acked)
        heartbeat    {position, velocity, battery, status}      (notification)
        sensor_data  {video_frame, detections, telemetry, ...}  (notification)
        disconnect   {}                                          (notification)
        responses to commands (`result` or `error`, id = command id)

    base station -> UAV:
        takeoff / land / move_to / set_velocity / emergency_stop (request)

Each connection gets a reader thread that turns messages into coordinator
events. All state changes happen on the coordinator thread.
"""

import copy
import logging
import socket
import sys
import threading
import time
from dataclasses import asdict
from typing import Optional

import numpy as np
import yaml

from isac.config import DEFAULT_CONFIG, ConfigError, section
from isac.environment import EnvironmentSimulator
from isac.link_quality import LinkQualityEstimator
from isac.mode_arbiter import ModeArbiter
from isac.transmission import SensorPayload, TransmissionFilter

from .connection import JsonLineConnection, error
from .coordinator import (
    CommandResponseEvent,
    CommandResult,
    Coordinator,
    DisconnectEvent,
    HeartbeatEvent,
    RegisterEvent,
    SensorDataEvent,
)
from .dashboard_bridge import create_app, start_dashboard
from .fleet_registry import FleetRegistry
from .master_elector import MasterElector

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

METHOD_NOT_FOUND = -32601


class UnknownMethodError(LookupError):
    """JSON-RPC method the base station does not serve"""


def load_config(path: Optional[str] = None) -> dict:
    """Load a YAML config file; missing sections fall back to defaults"""
    if path is None:
        return copy.deepcopy(DEFAULT_CONFIG)
    with open(path, "r") as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    config = copy.deepcopy(DEFAULT_CONFIG)
    config.update(loaded)
    return config


def message_to_event(message: dict, uav_id: Optional[str], connection=None):
    """
    Translate one JSON-RPC message into a coordinator event.

    Args:
        message: Decoded JSON-RPC message
        uav_id: Id registered on this connection so far (None before register)
        connection: Connection the message arrived on

    Returns:
        The event, or None if the message carries nothing to process

    Raises:
        ValueError: message or params is not a JSON object
        UnknownMethodError: method is not served by the base station
    """
    if not isinstance(message, dict):
        raise ValueError(f"expected a JSON object, got {type(message).__name__}")
    method = message.get("method")
    params = message.get("params") or {}
    if not isinstance(params, dict):
        raise ValueError(f"params must be an object, got {type(params).__name__}")

    if method is None:
        # Response to a command we sent
        if uav_id is None or message.get("id") is None:
            return None
        if "error" in message:
            err = message.get("error") or {}
            reason = err.get("message") if isinstance(err, dict) else str(err)
            return CommandResponseEvent(
                uav_id, str(message["id"]), success=False, error=reason
            )
        return CommandResponseEvent(
            uav_id, str(message["id"]), success=True, result=message.get("result")
        )

    if method == "register":
        return RegisterEvent(
            uav_id=params.get("uav_id"),
            position=params.get("position"),
            battery=params.get("battery"),
            capabilities=params.get("capabilities") or [],
            connection=connection,
            msg_id=message.get("id"),
        )

    if uav_id is None:
        logger.warning(f"'{method}' before registration, ignoring")
        return None

    if method == "heartbeat":
        return HeartbeatEvent(
            uav_id,
            position=params.get("position"),
            velocity=params.get("velocity"),
            battery=params.get("battery"),
            status=params.get("status"),
        )
    if method == "sensor_data":
        return SensorDataEvent(uav_id, SensorPayload.from_dict(params))
    if method == "disconnect":
        return DisconnectEvent(uav_id, "client_disconnect", connection)

    raise UnknownMethodError(method)


class BaseStation:
    """
    Main base station controller - owns the server socket and wires subsystems
    """

    def __init__(self, config: dict, rng: Optional[np.random.Generator] = None):
        self.config = config

        # Subsystems
        self.registry = FleetRegistry(config)
        self.arbiter = ModeArbiter(config)
        self.estimator = LinkQualityEstimator(config, rng=rng)
        self.elector = MasterElector(config)
        self.transmission_filter = TransmissionFilter(config)
        self.environment = EnvironmentSimulator(config, rng=rng)
        self.coordinator = Coordinator(
            config,
            self.registry,
            self.arbiter,
            self.estimator,
            self.elector,
            self.transmission_filter,
            self.environment,
        )

        # Dashboard (optional)
        self.dashboard_bridge = None
        self.dashboard_app = None
        self.socketio = None

        # Communication
        self.server_socket: Optional[socket.socket] = None
        self.running = False
        self.accept_thread: Optional[threading.Thread] = None

    def enable_dashboard(self):
        """Create the Socket.IO bridge and subscribe it to broadcasts"""
        self.dashboard_app, self.socketio, self.dashboard_bridge = create_app(
            self, section(self.config, "dashboard")
        )
        self.coordinator.add_observer(self.dashboard_bridge)

    def start(self):
        """Start coordinator, server socket and (if enabled) dashboard"""
        comm = section(self.config, "communication")
        host = comm["server_host"]
        port = comm["server_port"]

        self.coordinator.start()

        self.server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.server_socket.bind((host, port))
        self.server_socket.listen(section(self.config, "fleet")["max_uavs"])

        logger.info(f"Base station listening on {host}:{port}")

        self.running = True
        self.accept_thread = threading.Thread(
            target=self._accept_connections, daemon=True
        )
        self.accept_thread.start()

        dashboard = section(self.config, "dashboard")
        if dashboard["enabled"]:
            if self.dashboard_bridge is None:
                self.enable_dashboard()
            start_dashboard(self.dashboard_app, self.socketio, dashboard["port"])

    def stop(self):
        """Shutdown base station"""
        logger.info("Shutting down base station")
        self.running = False

        if self.server_socket:
            self.server_socket.close()
        if self.accept_thread:
            self.accept_thread.join(timeout=2.0)
        self.coordinator.stop()

    def _accept_connections(self):
        """Accept incoming UAV connections"""
        while self.running:
            try:
                self.server_socket.settimeout(1.0)
                conn, addr = self.server_socket.accept()
                logger.info(f"Connection from {addr}")

                threading.Thread(
                    target=self._handle_connection,
                    args=(JsonLineConnection(conn, addr),),
                    daemon=True,
                ).start()

            except socket.timeout:
                continue
            except OSError as e:
                if self.running:
                    logger.error(f"Accept error: {e}")

    def _handle_connection(self, connection: JsonLineConnection):
        """Reader loop for one UAV connection"""
        uav_id = None
        disconnected = False
        try:
            for message in connection.messages(running=lambda: self.running):
                try:
                    event = message_to_event(message, uav_id, connection)
                except UnknownMethodError as e:
                    logger.warning(f"Unknown method from {connection.peer}: {e}")
                    if message.get("id") is not None:
                        connection.send(
                            error(message["id"], METHOD_NOT_FOUND, "Method not found")
                        )
                    continue
                except (AttributeError, KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Malformed message from {connection.peer}: {e}")
                    continue

                if event is None:
                    continue
                if isinstance(event, RegisterEvent):
                    uav_id = event.uav_id
                self.coordinator.submit(event)
                if isinstance(event, DisconnectEvent):
                    disconnected = True
                    break
        finally:
            if uav_id is not None and not disconnected:
                self.coordinator.submit(
                    DisconnectEvent(uav_id, "connection_lost", connection)
                )
            connection.close()

    def send_command(
        self, uav_id: str, command: str, params: dict = None, timeout: float = None
    ) -> CommandResult:
        """Send a command to a UAV and wait for its response"""
        return self.coordinator.send_command(uav_id, command, params, timeout)

    def get_status(self) -> dict:
        """Get base station status"""
        status = self.coordinator.get_status()
        status["environment"] = {
            "terrain": self.environment.terrain_type.value,
            "weather": asdict(self.environment.weather),
        }
        return status


def main():
    """Run base station"""
    config_path = sys.argv[1] if len(sys.argv) > 1 else "config/base_station.yaml"
    station = BaseStation(load_config(config_path))
    station.start()

    try:
        logger.info("Base station running. Press Ctrl+C to stop.")
        while True:
            time.sleep(5)
            status = station.get_status()
            logger.info(
                f"Status: {len(status['uavs'])} UAVs connected, "
                f"master={status['currentMasterId']}"
            )
    except KeyboardInterrupt:
        logger.info("Stopping base station")
        station.stop()


if __name__ == "__main__":
    main()
