"""
UAV Client - Connects to the ISAC base station and runs the simulation

Author: Vítor Eulálio Reis <vitor.reis@proton.me>
Copyright (c) 2025
"""

import logging
import sys
import threading
import time
import socket

import numpy as np
import yaml

from base_station.connection import JsonLineConnection, error, request, result
from uav.simulation import TICK_SEC, CommandError, UAVSimulation

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

COMMAND_FAILED = -32000


class UAVClient:
    """UAV client managing simulation and base station communication"""

    def __init__(self, uav_id: str, config: dict, initial_position):
        self.uav_id = uav_id
        self.config = config

        self.simulation = UAVSimulation(uav_id, config, initial_position)

        comm = config.get("communication", {})
        self.heartbeat_interval = float(comm.get("heartbeat_interval_sec", 0.5))
        self.sensor_interval = float(comm.get("sensor_interval_sec", 1.0))
        self.register_timeout = float(comm.get("register_timeout_sec", 5.0))

        # Communication
        self.connection: JsonLineConnection = None
        self.connected = False
        self.running = False
        self.current_master_id = None

    def connect(self) -> bool:
        """Connect and register with the base station"""
        comm = self.config["communication"]
        host = comm["base_station_host"]
        port = comm["base_station_port"]

        try:
            sock = socket.create_connection((host, port), timeout=5.0)
        except OSError as e:
            logger.error(f"Connection failed: {e}")
            return False

        self.connection = JsonLineConnection(sock, (host, port))
        self.connection.send(
            request(
                "register",
                {
                    "uav_id": self.uav_id,
                    "position": self.simulation.position.tolist(),
                    "battery": self.simulation.battery,
                    "capabilities": self.simulation.capabilities,
                },
                msg_id=1,
            )
        )

        # Wait for the registration ack
        deadline = time.monotonic() + self.register_timeout
        for response in self.connection.messages(deadline=deadline):
            if not isinstance(response, dict) or response.get("id") != 1:
                continue
            ack = response.get("result") or {}
            if ack.get("status") == "registered":
                self.connected = True
                self.current_master_id = ack.get("current_master_id")
                logger.info(
                    f"UAV {self.uav_id} connected to base station "
                    f"(master: {self.current_master_id})"
                )
                return True
            logger.error(f"Registration failed: {response.get('error')}")
            break
        else:
            logger.error(f"No registration ack within {self.register_timeout}s")

        self.connection.close()
        return False

    def start(self):
        """Start UAV operations (blocks until stopped)"""
        if not self.connected:
            logger.error("Not connected to base station")
            return

        self.running = True
        threading.Thread(target=self._message_handler, daemon=True).start()
        self._simulation_loop()

    def stop(self):
        """Stop UAV"""
        if self.running and self.connection:
            self.connection.send(request("disconnect", {}))
        self.running = False
        if self.connection:
            self.connection.close()
        logger.info(f"UAV {self.uav_id} stopped")

    def _simulation_loop(self):
        """Main loop: 100 ms vehicle ticks, periodic heartbeat and sensor data"""
        next_heartbeat = 0.0
        next_sensor = 0.0
        while self.running:
            now = time.time()
            self.simulation.update(TICK_SEC)

            if now >= next_heartbeat:
                if not self.connection.send(
                    request("heartbeat", self.simulation.get_telemetry())
                ):
                    break
                next_heartbeat = now + self.heartbeat_interval

            if now >= next_sensor:
                self.connection.send(
                    request("sensor_data", self.simulation.generate_sensor_payload(now))
                )
                next_sensor = now + self.sensor_interval

            time.sleep(TICK_SEC)
        self.running = False

    def _message_handler(self):
        """Handle incoming commands from the base station"""
        for message in self.connection.messages(running=lambda: self.running):
            self._process_message(message)
        if self.running:
            logger.warning("Connection closed by base station")
            self.running = False

    def _process_message(self, message: dict):
        """Execute a command and answer with its result or error"""
        method = message.get("method")
        if method is None:
            return
        params = message.get("params") or {}
        msg_id = message.get("id")

        try:
            outcome = self.simulation.handle_command(method, params)
        except (CommandError, TypeError, ValueError) as e:
            logger.warning(f"UAV {self.uav_id} rejected {method}: {e}")
            if msg_id is not None:
                self.connection.send(error(msg_id, COMMAND_FAILED, str(e)))
            return

        if msg_id is not None:
            self.connection.send(result(msg_id, outcome))


def main():
    """Run UAV client"""
    if len(sys.argv) < 2:
        print("Usage: python -m uav.client <uav_id> [x y z]")
        sys.exit(1)

    uav_id = sys.argv[1]

    # Initial position
    if len(sys.argv) >= 5:
        position = np.array(
            [float(sys.argv[2]), float(sys.argv[3]), float(sys.argv[4])]
        )
    else:
        position = np.array([0.0, 0.0, 0.0])

    with open("config/uav.yaml", "r") as f:
        config = yaml.safe_load(f)

    client = UAVClient(uav_id, config, position)

    if client.connect():
        try:
            logger.info(f"UAV {uav_id} starting...")
            client.start()
        except KeyboardInterrupt:
            logger.info("Stopping UAV")
            client.stop()
    else:
        logger.error("Failed to connect to base station")


if __name__ == "__main__":
    main()
