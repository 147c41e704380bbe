"""
UAV Simulation Engine - Kinematic vehicle model with command handlers and sensors

Author: Vítor Eulálio Reis <vitor.reis@proton.me>
Copyright (c) 2025

The vehicle is integrated at a fixed 100 ms step. Position follows the commanded
velocity; `move_to` flies a straight line at cruise speed and snaps to the
target once within the arrival threshold.

Commands (all return a result dict, invalid parameters raise CommandError):
    takeoff(altitude=10)   climb at 1 m/s, then hover
    land()                 descend at 1 m/s, then landed
    move_to(x, y, z)       fly to target at cruise speed (default 2 m/s)
    set_velocity(vx,vy,vz) manual velocity control
    emergency_stop()       zero velocity, drop target

Battery drains 0.02% per tick while moving, 0.002% per tick otherwise.

Sensor payloads carry a federated-learning model update every 30 s (configurable
under `sensors.model_update_interval_sec`), starting one interval after the first
payload.
"""

import logging
from typing import List, Optional

import numpy as np

from isac.config import MODEL_UPDATE_BYTES

logger = logging.getLogger(__name__)

TICK_SEC = 0.1
ARRIVAL_THRESHOLD_M = 0.5
MOVING_SPEED_THRESHOLD = 0.1
DRAIN_MOVING = 0.02
DRAIN_IDLE = 0.002
VERTICAL_SPEED = 1.0
MODEL_UPDATE_INTERVAL_SEC = 30.0


class CommandError(ValueError):
    """Command rejected by the vehicle"""


class UAVSimulation:
    """
    Complete UAV simulation with kinematics, battery and sensors
    """

    def __init__(
        self,
        uav_id: str,
        config: dict,
        initial_position,
        rng: Optional[np.random.Generator] = None,
    ):
        self.uav_id = uav_id
        self.config = config or {}
        vehicle = self.config.get("vehicle", {})

        self.position = np.asarray(initial_position, dtype=float).copy()
        self.velocity = np.zeros(3)
        self.battery = float(vehicle.get("initial_battery", 100.0))
        self.speed = float(vehicle.get("cruise_speed_mps", 2.0))
        self.status = "idle"

        self.target: Optional[np.ndarray] = None
        self.target_altitude: Optional[float] = None

        # Sensors
        self.rng = rng if rng is not None else np.random.default_rng()
        self.frame_id = 0
        self.detection_count = 0
        sensors = self.config.get("sensors", {})
        self.model_update_interval = float(
            sensors.get("model_update_interval_sec", MODEL_UPDATE_INTERVAL_SEC)
        )
        self.model_version = 0
        self.next_model_update: Optional[float] = None

        self.handlers = {
            "takeoff": self.takeoff,
            "land": self.land,
            "move_to": self.move_to,
            "set_velocity": self.set_velocity,
            "emergency_stop": self.emergency_stop,
        }

    @property
    def capabilities(self) -> List[str]:
        return list(self.handlers)

    def update(self, dt: float = TICK_SEC):
        """Advance the vehicle by one tick"""
        if self.status == "moving_to_target" and self.target is not None:
            if np.linalg.norm(self.target - self.position) < ARRIVAL_THRESHOLD_M:
                self.position = self.target.copy()
                self.velocity = np.zeros(3)
                self.target = None
                self.status = "hovering"
                logger.info(f"UAV {self.uav_id} reached target {self.position.round(2).tolist()}")
            else:
                self.position = self.position + self.velocity * dt
        else:
            self.position = self.position + self.velocity * dt

        if self.status == "taking_off" and self.position[2] >= self.target_altitude:
            self.position[2] = self.target_altitude
            self.velocity = np.zeros(3)
            self.status = "hovering"
        elif self.status == "landing" and self.position[2] <= 0.0:
            self.position[2] = 0.0
            self.velocity = np.zeros(3)
            self.status = "landed"

        moving = bool(np.any(np.abs(self.velocity) > MOVING_SPEED_THRESHOLD))
        drain = DRAIN_MOVING if moving else DRAIN_IDLE
        self.battery = max(0.0, self.battery - drain)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def handle_command(self, command: str, params: Optional[dict] = None) -> dict:
        handler = self.handlers.get(command)
        if handler is None:
            raise CommandError(f"Unknown command: {command}")
        return handler(**(params or {}))

    def takeoff(self, altitude: float = 10.0, **_) -> dict:
        altitude = float(altitude or 10.0)
        logger.info(f"UAV {self.uav_id} taking off to altitude: {altitude}m")
        self.target_altitude = altitude
        self.target = None
        self.velocity = np.array([0.0, 0.0, VERTICAL_SPEED])
        self.status = "taking_off"
        return {"altitude": altitude}

    def land(self, **_) -> dict:
        logger.info(f"UAV {self.uav_id} landing")
        self.target = None
        self.velocity = np.array([0.0, 0.0, -VERTICAL_SPEED])
        self.status = "landing"
        return {"message": "Landing initiated"}

    def move_to(self, x=None, y=None, z=None, **_) -> dict:
        if x is None or y is None or z is None:
            raise CommandError("Missing required parameters: x, y, z")

        target = np.array([float(x), float(y), float(z)])
        offset = target - self.position
        distance = float(np.linalg.norm(offset))
        logger.info(f"UAV {self.uav_id} moving to {target.tolist()}")

        if distance > ARRIVAL_THRESHOLD_M:
            self.target = target
            self.velocity = offset / distance * self.speed
            self.status = "moving_to_target"
        else:
            self.position = target
            self.target = None
            self.velocity = np.zeros(3)
            self.status = "hovering"
        return {"target": target.tolist(), "speed": self.speed}

    def set_velocity(self, vx=None, vy=None, vz=None, **_) -> dict:
        if vx is None or vy is None or vz is None:
            raise CommandError("Missing required parameters: vx, vy, vz")
        self.velocity = np.array([float(vx), float(vy), float(vz)])
        self.target = None
        self.status = "manual_control"
        return {"velocity": self.velocity.tolist()}

    def emergency_stop(self, **_) -> dict:
        logger.warning(f"UAV {self.uav_id} EMERGENCY STOP")
        self.velocity = np.zeros(3)
        self.target = None
        self.status = "emergency_stop"
        return {"message": "Emergency stop activated"}

    # -------------------------------------------------------------------------
    # Telemetry and sensors
    # -------------------------------------------------------------------------

    def get_telemetry(self) -> dict:
        """Heartbeat parameters"""
        return {
            "position": self.position.tolist(),
            "velocity": self.velocity.tolist(),
            "battery": self.battery,
            "status": self.status,
        }

    def generate_sensor_payload(self, timestamp: float) -> dict:
        """One tick of raw sensor output in wire form"""
        self.frame_id += 1
        detections = []
        for _ in range(int(self.rng.poisson(1.0))):
            self.detection_count += 1
            offset = self.rng.normal(0.0, 15.0, size=2)
            detections.append(
                {
                    "id": f"{self.uav_id}-det-{self.detection_count}",
                    "coordinates": [
                        float(self.position[0] + offset[0]),
                        float(self.position[1] + offset[1]),
                        0.0,
                    ],
                    "confidence": float(self.rng.uniform(0.3, 1.0)),
                    "type": "survivor",
                    "timestamp": timestamp,
                    "bounding_box": [int(v) for v in self.rng.integers(0, 1080, size=4)],
                }
            )

        heading = 0.0
        if np.linalg.norm(self.velocity[:2]) > 0:
            heading = float(
                np.degrees(np.arctan2(self.velocity[1], self.velocity[0])) % 360
            )

        payload = {
            "video_frame": {
                "frame_id": self.frame_id,
                "size_bytes": 1024 * 1024,
                "resolution": "1080p",
                "format": "H264",
            },
            "detections": detections,
            "telemetry": {
                "position": self.position.tolist(),
                "battery_level": self.battery,
                "altitude": float(self.position[2]),
                "velocity": self.velocity.tolist(),
                "heading": heading,
                "status": self.status,
            },
            "environmental_data": {
                "temperature": float(self.rng.normal(28.0, 1.0)),
                "humidity": float(self.rng.uniform(40.0, 80.0)),
            },
        }

        model_update = self._model_update(timestamp)
        if model_update is not None:
            payload["model_update"] = model_update
        return payload

    def _model_update(self, timestamp: float) -> Optional[dict]:
        if self.next_model_update is None:
            self.next_model_update = timestamp + self.model_update_interval
            return None
        if timestamp < self.next_model_update:
            return None

        self.model_version += 1
        self.next_model_update = timestamp + self.model_update_interval
        return {
            "version": self.model_version,
            "size_bytes": MODEL_UPDATE_BYTES,
            "update_type": "incremental",
            "training_samples": int(self.rng.integers(50, 201)),
        }
