"""
Fleet Registry - Live table of connected UAV sessions with liveness tracking.

Author: Vítor Eulálio Reis <vitor.reis@proton.me>
Copyright (c) 2025

This module owns every UAVSession known to the base station. Sessions are created
on registration, refreshed by heartbeats, and removed either explicitly
(client disconnect) or by the periodic liveness sweep.

Liveness:
    A session whose last heartbeat is older than `liveness_timeout_sec`
    (default 3s) is removed by `sweep()`.

Master bookkeeping:
    The registry stores `current_master_id` and the per-session `is_master`
    flag. The MasterElector decides who is master; `assign_master()` is the only
    way the flags change, and it keeps exactly one flag set.

Usage:
    >>> registry = FleetRegistry(config)
    >>> registry.register("uav-1", position=[0, 0, 10], battery=100.0)
    >>> registry.heartbeat("uav-1", position=[1, 0, 10], battery=99.5)
    >>> expired = registry.sweep()
    >>> state = registry.snapshot()

Threading Model:
    The registry is not thread-safe on its own. It is owned by the Coordinator,
    which applies every mutation from a single event loop.
"""

import copy
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import numpy as np

from isac.config import section
from isac.mode_arbiter import ISACMode, ModeDecision

logger = logging.getLogger(__name__)


class RegistrationError(ValueError):
    """Malformed registration request"""


def _as_vector(value, name: str) -> np.ndarray:
    try:
        vector = np.asarray(value, dtype=float).reshape(-1)
    except (TypeError, ValueError) as e:
        raise RegistrationError(f"{name} must be a numeric [x, y, z] vector") from e
    if vector.shape != (3,) or not np.all(np.isfinite(vector)):
        raise RegistrationError(f"{name} must be a finite [x, y, z] vector")
    return vector


class UAVSession:
    """
    State of one connected UAV.

    Attributes:
        uav_id: Unique identifier for this UAV
        position: Current [x, y, z] position in meters
        velocity: Current [vx, vy, vz] velocity in m/s
        battery: Battery percentage (0-100)
        status: Flight status reported by the UAV (e.g. 'hovering')
        capabilities: Commands this UAV accepts
        signal_strength: Latest link signal strength (%)
        isac_mode: Committed ISAC mode
        data_rate: Data rate for the committed mode (Mbps)
        last_heartbeat: Unix timestamp of the last heartbeat or registration
        is_connected: Whether the session is live
        is_master: Whether this UAV is the current relay master
        connection: Transport handle used to reach the UAV (may be None)
    """

    def __init__(
        self,
        uav_id: str,
        position: np.ndarray,
        battery: float,
        capabilities: Optional[List[str]] = None,
        connection=None,
        timestamp: float = 0.0,
    ):
        self.uav_id = uav_id
        self.position = position
        self.velocity = np.zeros(3)
        self.battery = battery
        self.status = "connected"
        self.capabilities = list(capabilities or [])

        self.signal_strength = 0.0
        self.isac_mode = ISACMode.WEAK
        self.data_rate = 0.0

        self.last_heartbeat = timestamp
        self.connected_at = timestamp
        self.is_connected = True
        self.is_master = False
        self.connection = connection

    def to_dict(self) -> dict:
        return {
            "uavId": self.uav_id,
            "position": self.position.tolist(),
            "velocity": self.velocity.tolist(),
            "battery": self.battery,
            "status": self.status,
            "isacMode": self.isac_mode.value,
            "signalStrength": self.signal_strength,
            "dataRate": self.data_rate,
            "isMaster": self.is_master,
            "lastHeartbeat": self.last_heartbeat,
        }

    def __repr__(self) -> str:
        return (
            f"UAVSession({self.uav_id!r}, battery={self.battery:.1f}, "
            f"signal={self.signal_strength:.1f}, master={self.is_master})"
        )


@dataclass
class FleetState:
    """
    Fleet snapshot at a point in time.

    Sessions are copies; mutating them does not affect the registry.
    """

    timestamp: float
    sessions: Dict[str, UAVSession] = field(default_factory=dict)
    current_master_id: Optional[str] = None

    def master(self) -> Optional[UAVSession]:
        if self.current_master_id is None:
            return None
        return self.sessions.get(self.current_master_id)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "currentMasterId": self.current_master_id,
            "uavs": [s.to_dict() for s in self.sessions.values()],
        }


class FleetRegistry:
    """
    In-memory session table with heartbeat liveness
    """

    def __init__(self, config: dict = None, clock: Callable[[], float] = time.time):
        fleet_config = section(config, "fleet")
        self.liveness_timeout = float(fleet_config["liveness_timeout_sec"])
        self.clock = clock

        self.sessions: Dict[str, UAVSession] = {}
        self.current_master_id: Optional[str] = None

    def register(
        self,
        uav_id: str,
        position,
        battery: float,
        capabilities: Optional[List[str]] = None,
        connection=None,
    ) -> UAVSession:
        """Insert a session, replacing (and closing) any previous one with that id"""
        if not isinstance(uav_id, str) or not uav_id.strip():
            raise RegistrationError("uav_id must be a non-empty string")
        position = _as_vector(position, "position")
        try:
            battery = float(battery)
        except (TypeError, ValueError) as e:
            raise RegistrationError("battery must be a number") from e
        if not 0.0 <= battery <= 100.0:
            raise RegistrationError(f"battery {battery} outside 0-100%")

        previous = self.sessions.get(uav_id)
        if previous is not None and previous.connection is not connection:
            logger.warning(f"UAV {uav_id} re-registered, terminating previous connection")
            self._close(previous)
        elif previous is not None:
            logger.info(f"UAV {uav_id} repeated registration on the same connection")

        session = UAVSession(
            uav_id,
            position,
            battery,
            capabilities=capabilities,
            connection=connection,
            timestamp=self.clock(),
        )
        # A replaced master keeps its role under the new connection
        session.is_master = uav_id == self.current_master_id
        self.sessions[uav_id] = session
        logger.info(f"UAV {uav_id} registered")
        return session

    def heartbeat(
        self,
        uav_id: str,
        position=None,
        velocity=None,
        battery: Optional[float] = None,
        status: Optional[str] = None,
    ) -> Optional[UAVSession]:
        """Apply a telemetry delta; unknown ids are ignored"""
        session = self.sessions.get(uav_id)
        if session is None:
            logger.warning(f"Heartbeat from unknown UAV {uav_id}, ignoring")
            return None

        try:
            if position is not None:
                session.position = _as_vector(position, "position")
            if velocity is not None:
                session.velocity = _as_vector(velocity, "velocity")
            if battery is not None:
                session.battery = float(np.clip(float(battery), 0.0, 100.0))
        except (RegistrationError, TypeError, ValueError) as e:
            logger.warning(f"Malformed heartbeat from UAV {uav_id}: {e}")
        if status is not None:
            session.status = str(status)

        session.last_heartbeat = self.clock()
        return session

    def update_link(self, uav_id: str, decision: ModeDecision) -> Optional[UAVSession]:
        """Store the arbiter's committed link state on the session"""
        session = self.sessions.get(uav_id)
        if session is None:
            return None
        session.signal_strength = decision.signal_strength
        session.isac_mode = decision.mode
        session.data_rate = decision.data_rate
        return session

    def sweep(self) -> List[str]:
        """Remove sessions whose heartbeat is older than the liveness timeout"""
        now = self.clock()
        expired = [
            uav_id
            for uav_id, session in self.sessions.items()
            if now - session.last_heartbeat > self.liveness_timeout
        ]
        for uav_id in expired:
            logger.warning(
                f"UAV {uav_id} timed out (silent for "
                f"{now - self.sessions[uav_id].last_heartbeat:.1f}s)"
            )
            self.remove(uav_id)
        return expired

    def remove(self, uav_id: str) -> Optional[UAVSession]:
        """Drop a session; clears the master pointer if it pointed here"""
        session = self.sessions.pop(uav_id, None)
        if session is None:
            return None

        session.is_connected = False
        session.is_master = False
        self._close(session)
        if self.current_master_id == uav_id:
            self.current_master_id = None
        logger.info(f"UAV {uav_id} unregistered")
        return session

    def assign_master(self, uav_id: Optional[str]):
        """Make `uav_id` the only master (None clears the role)"""
        if uav_id is not None and uav_id not in self.sessions:
            raise KeyError(f"Cannot assign master: UAV {uav_id} not registered")

        for sid, session in self.sessions.items():
            session.is_master = sid == uav_id
        self.current_master_id = uav_id

    def _close(self, session: UAVSession):
        if session.connection is None:
            return
        try:
            session.connection.close()
        except OSError as e:
            logger.debug(f"Error closing connection for UAV {session.uav_id}: {e}")
        session.connection = None

    def get(self, uav_id: str) -> Optional[UAVSession]:
        return self.sessions.get(uav_id)

    def ids(self) -> List[str]:
        return list(self.sessions)

    def snapshot(self) -> FleetState:
        """Consistent copy of the whole fleet"""
        sessions = {}
        for uav_id, session in self.sessions.items():
            clone = copy.copy(session)
            clone.position = session.position.copy()
            clone.velocity = session.velocity.copy()
            clone.capabilities = list(session.capabilities)
            clone.connection = None
            sessions[uav_id] = clone
        return FleetState(
            timestamp=self.clock(),
            sessions=sessions,
            current_master_id=self.current_master_id,
        )

    def __contains__(self, uav_id: str) -> bool:
        return uav_id in self.sessions

    def __len__(self) -> int:
        return len(self.sessions)
