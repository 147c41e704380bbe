"""
Master Elector - Score-based selection of the relay master UAV.

Author: Vítor Eulálio Reis <vitor.reis@proton.me>
Copyright (c) 2025

Exactly one connected UAV acts as master and relays aggregated data to the base
station. The master is the UAV with the best weighted score:

    score = w_signal * clip(signal / 100)
          + w_battery * clip(battery / 100)
          + w_proximity * min(1, 1 / d_km)

where d_km is the distance to the reference center in kilometres (floored at a
small epsilon). Default weights: (0.4, 0.3, 0.3).

Tie-break:
    Scores are compared after rounding to 9 decimals. Equal scores go to the
    lexicographically smallest UAV id, so the result never depends on dict
    iteration or registration order.

Triggers (driven by the Coordinator):
    1. First registration while no master exists
    2. Removal of the current master (timeout or disconnect)
    3. Periodic rotation timer (default 5 minutes)
    4. Empty fleet: master cleared to None
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import numpy as np

from isac import config as C
from isac.config import ConfigError, section

from .fleet_registry import FleetRegistry, UAVSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ElectionWeights:
    signal: float = 0.4
    battery: float = 0.3
    proximity: float = 0.3

    def __post_init__(self):
        if min(self.signal, self.battery, self.proximity) < 0:
            raise ConfigError("Election weights must be non-negative")


class MasterElector:
    """
    Chooses the master among connected sessions
    """

    def __init__(self, config: dict = None):
        election = section(config, "election")
        weights = election.get("weights") or {}
        self.weights = ElectionWeights(
            signal=float(weights.get("signal", C.ELECTION_WEIGHTS[0])),
            battery=float(weights.get("battery", C.ELECTION_WEIGHTS[1])),
            proximity=float(weights.get("proximity", C.ELECTION_WEIGHTS[2])),
        )
        center = np.zeros(3)
        configured = np.asarray(election.get("center", [0.0, 0.0, 0.0]), dtype=float)
        center[: len(configured[:3])] = configured[:3]
        self.center = center
        self.distance_unit = float(election.get("distance_unit_m", C.DISTANCE_UNIT_M))
        self.rotation_interval = float(
            election.get("rotation_interval_sec", C.ROTATION_INTERVAL_SEC)
        )

    def proximity(self, position) -> float:
        """Inverse distance to the center, capped at 1"""
        distance = float(np.linalg.norm(np.asarray(position, dtype=float) - self.center))
        distance_units = max(distance / self.distance_unit, C.DISTANCE_EPSILON)
        return min(1.0, 1.0 / distance_units)

    def score(self, session: UAVSession) -> float:
        return self.score_values(
            session.signal_strength, session.battery, self.proximity(session.position)
        )

    def score_values(self, signal: float, battery: float, proximity: float) -> float:
        w = self.weights
        return (
            w.signal * float(np.clip(signal / 100.0, 0.0, 1.0))
            + w.battery * float(np.clip(battery / 100.0, 0.0, 1.0))
            + w.proximity * float(np.clip(proximity, 0.0, 1.0))
        )

    def select(self, sessions: Iterable[UAVSession]) -> Optional[str]:
        """Best connected session id, or None when there is none"""
        candidates = [s for s in sessions if s.is_connected]
        if not candidates:
            return None

        best = min(
            candidates,
            key=lambda s: (-round(self.score(s), C.SCORE_PRECISION), s.uav_id),
        )
        return best.uav_id

    def elect(self, registry: FleetRegistry, reason: str = "election") -> Optional[str]:
        """Select and record the master in `registry`; returns the new master id"""
        previous = registry.current_master_id
        master_id = self.select(registry.sessions.values())
        registry.assign_master(master_id)

        if master_id != previous:
            if master_id is None:
                logger.info(f"Master cleared ({reason}): fleet is empty")
            else:
                session = registry.get(master_id)
                logger.info(
                    f"UAV {master_id} elected master ({reason}), "
                    f"score={self.score(session):.3f}"
                )
        return master_id
