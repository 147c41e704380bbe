"""
ISAC Mode Arbiter - Threshold classification with per-UAV hysteresis.

Author: Vítor Eulálio Reis
Copyright (c) 2025

Turns the noisy per-tick signal strength into a committed communication mode.

State Machine (per UAV):
    States: GOOD, MEDIUM, WEAK
    Candidate: GOOD if signal >= good_min, MEDIUM if signal >= medium_min, else WEAK
    Commit rule: a candidate different from the committed mode must be seen for
    `dwell_ticks` consecutive ticks. A tick whose candidate equals the committed
    mode resets the dwell counter. A different challenger restarts the count.

Each UAV owns an independent ModeDecision; arbitration for one UAV never touches
another UAV's dwell counter.

Example:
    >>> arbiter = ModeArbiter(config)
    >>> decision = arbiter.evaluate("uav-1", 82.0)
    >>> decision.mode, decision.switched
    (<ISACMode.GOOD: 'good'>, False)
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional

from . import config as C
from .config import ConfigError, section

logger = logging.getLogger(__name__)


class ISACMode(Enum):
    """Communication modes, best to worst"""

    GOOD = "good"
    MEDIUM = "medium"
    WEAK = "weak"


@dataclass(frozen=True)
class ModeThresholds:
    good_min: float = C.GOOD_MIN_SIGNAL
    medium_min: float = C.MEDIUM_MIN_SIGNAL

    def __post_init__(self):
        if not 0.0 <= self.medium_min < self.good_min <= 100.0:
            raise ConfigError(
                f"Inconsistent ISAC thresholds: need 0 <= medium_min "
                f"({self.medium_min}) < good_min ({self.good_min}) <= 100"
            )

    def classify(self, signal_strength: float) -> ISACMode:
        if signal_strength >= self.good_min:
            return ISACMode.GOOD
        if signal_strength >= self.medium_min:
            return ISACMode.MEDIUM
        return ISACMode.WEAK


def calculate_data_rate(signal_strength: float, mode: ISACMode) -> float:
    """Data rate in Mbps: base * (signal / 100) * efficiency, floored at 0.1"""
    base_rate, efficiency = C.DATA_RATE_PROFILE[mode.value]
    signal_factor = min(max(signal_strength, 0.0), 100.0) / 100
    return max(C.MIN_DATA_RATE_MBPS, base_rate * signal_factor * efficiency)


@dataclass
class ModeDecision:
    """
    Arbitration result and hysteresis state for a single UAV.

    Attributes:
        uav_id: UAV this decision belongs to
        mode: Committed ISAC mode
        signal_strength: Signal strength observed this tick (%)
        data_rate: Data rate derived from signal and committed mode (Mbps)
        switched: True only on the tick the committed mode changed
        candidate: Mode currently challenging the committed one (None if none)
        dwell_count: Consecutive ticks the challenger has been observed
        ticks: Number of evaluations so far
    """

    uav_id: str
    mode: ISACMode
    signal_strength: float
    data_rate: float
    switched: bool = False
    candidate: Optional[ISACMode] = None
    dwell_count: int = 0
    ticks: int = 0

    def to_dict(self) -> dict:
        return {
            "uavId": self.uav_id,
            "mode": self.mode.value,
            "signalStrength": self.signal_strength,
            "dataRate": self.data_rate,
        }


class ModeArbiter:
    """
    Per-UAV hysteresis arbiter
    """

    def __init__(self, config: dict = None):
        isac_config = section(config, "isac")
        thresholds = isac_config.get("thresholds") or {}
        self.thresholds = ModeThresholds(
            good_min=float(thresholds.get("good_min", C.GOOD_MIN_SIGNAL)),
            medium_min=float(thresholds.get("medium_min", C.MEDIUM_MIN_SIGNAL)),
        )
        self.dwell_ticks = int(isac_config.get("dwell_ticks", C.DWELL_TICKS))
        if self.dwell_ticks < 1:
            raise ConfigError("isac.dwell_ticks must be at least 1")

        self.decisions: Dict[str, ModeDecision] = {}

    def classify(self, signal_strength: float) -> ISACMode:
        return self.thresholds.classify(signal_strength)

    def evaluate(self, uav_id: str, signal_strength: float) -> ModeDecision:
        """Feed one tick of signal strength for `uav_id` and return its decision"""
        candidate = self.classify(signal_strength)
        decision = self.decisions.get(uav_id)

        if decision is None:
            # First observation commits directly; there is nothing to hold on to
            decision = ModeDecision(
                uav_id=uav_id,
                mode=candidate,
                signal_strength=signal_strength,
                data_rate=calculate_data_rate(signal_strength, candidate),
                ticks=1,
            )
            self.decisions[uav_id] = decision
            logger.info(
                f"UAV {uav_id} initial ISAC mode: {candidate.value.upper()} "
                f"(Signal: {signal_strength:.1f}%)"
            )
            return replace(decision)

        decision.ticks += 1
        decision.switched = False
        decision.signal_strength = signal_strength

        if candidate is decision.mode:
            decision.candidate = None
            decision.dwell_count = 0
        else:
            if candidate is decision.candidate:
                decision.dwell_count += 1
            else:
                decision.candidate = candidate
                decision.dwell_count = 1

            if decision.dwell_count >= self.dwell_ticks:
                previous = decision.mode
                decision.mode = candidate
                decision.candidate = None
                decision.dwell_count = 0
                decision.switched = True
                logger.info(
                    f"UAV {uav_id} ISAC mode switched: {previous.value.upper()} -> "
                    f"{candidate.value.upper()} (Signal: {signal_strength:.1f}%)"
                )

        decision.data_rate = calculate_data_rate(signal_strength, decision.mode)
        return replace(decision)

    def decision_for(self, uav_id: str) -> Optional[ModeDecision]:
        return self.decisions.get(uav_id)

    def forget(self, uav_id: str):
        """Drop hysteresis state when a session ends"""
        self.decisions.pop(uav_id, None)

    def __len__(self) -> int:
        return len(self.decisions)
