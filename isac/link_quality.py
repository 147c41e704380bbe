"""
Link Quality Estimator - Signal strength from geometry, environment and fading.

Author: Vítor Eulálio Reis
Copyright (c) 2025

Converts a UAV position, the base station position and an environment snapshot
into a signal-strength percentage (0-100%). The estimator keeps no per-UAV state;
its only state is the random generator used for stochastic terms.

Path Loss Budget:
    1. Free-space path loss: 20*log10(d) + 20*log10(f_GHz) + 92.45
    2. Environmental loss: buildings and vegetation on the path
    3. Terrain loss: category base loss, plus 5 dB beyond 1 km
    4. Weather loss: rain (intensity proportional), fog, high wind
    5. Multipath fading: Rician (LOS, p=0.7) or Rayleigh (NLOS), [-10, +20] dB
    Total clamped to [40, 150] dB.

Signal Mapping:
    SNR = (tx_power + antenna_gain - path_loss) - noise_floor
    signal = clip(50 + SNR / 30 * 50, 0, 100) + U(-2.5, 2.5), clipped again

Example:
    >>> estimator = LinkQualityEstimator(config, rng=np.random.default_rng(1))
    >>> signal = estimator.estimate([100, 100, 50], [0, 0], snapshot)
"""

import logging
from typing import Optional

import numpy as np
from scipy import stats

from . import config as C
from .config import section
from .environment import EnvironmentSnapshot, Weather

logger = logging.getLogger(__name__)


def link_distance(uav_position, base_station_position) -> float:
    """3D distance from the UAV to a ground-level base station, floored at 1 m"""
    uav = np.asarray(uav_position, dtype=float)[:3]
    base = np.zeros(3)
    base[:2] = np.asarray(base_station_position, dtype=float)[:2]
    distance = float(np.linalg.norm(uav - base))
    if not np.isfinite(distance):
        return C.MIN_DISTANCE_M
    return max(C.MIN_DISTANCE_M, distance)


def free_space_path_loss(distance_m: float, frequency_ghz: float) -> float:
    distance_m = max(C.MIN_DISTANCE_M, distance_m)
    return (
        20 * np.log10(distance_m) + 20 * np.log10(frequency_ghz) + C.FSPL_CONSTANT_DB
    )


def terrain_loss(distance_m: float, environment: EnvironmentSnapshot) -> float:
    loss = C.TERRAIN_LOSS_DB.get(environment.terrain_type.value, C.DEFAULT_TERRAIN_LOSS_DB)
    if distance_m > C.LONG_RANGE_DISTANCE_M:
        loss += C.LONG_RANGE_LOSS_DB
    return loss


def weather_loss(weather: Optional[Weather]) -> float:
    if weather is None:
        return 0.0

    loss = 0.0
    if weather.rain:
        rain_rate = weather.precipitation_intensity or C.DEFAULT_RAIN_RATE_MM_H
        loss += C.RAIN_LOSS_DB_PER_MM_H_KM * max(0.0, rain_rate) * C.RAIN_PATH_KM
    if weather.fog:
        loss += C.FOG_LOSS_DB
    if weather.wind_speed and weather.wind_speed > C.HIGH_WIND_THRESHOLD_MS:
        loss += C.HIGH_WIND_LOSS_DB
    return loss


class LinkQualityEstimator:
    """
    Stateless signal-strength estimator for UAV-to-base-station links.

    Attributes:
        frequency_ghz: Carrier frequency
        tx_power_dbm: Transmit power
        antenna_gain_dbi: Antenna gain
        noise_floor_dbm: Receiver noise floor
        rng: numpy Generator for obstruction sampling, fading and jitter
    """

    def __init__(self, config: dict = None, rng: Optional[np.random.Generator] = None):
        net = section(config, "network")
        self.frequency_ghz = float(net["frequency_ghz"])
        self.tx_power_dbm = float(net["tx_power_dbm"])
        self.antenna_gain_dbi = float(net["antenna_gain_dbi"])
        self.noise_floor_dbm = float(net["noise_floor_dbm"])
        self.fading_enabled = bool(net.get("fading_enabled", True))
        self.jitter_enabled = bool(net.get("jitter_enabled", True))
        self.rng = rng if rng is not None else np.random.default_rng()

        if self.frequency_ghz <= 0:
            raise C.ConfigError("network.frequency_ghz must be positive")

    def estimate(
        self, uav_position, base_station_position, environment: EnvironmentSnapshot
    ) -> float:
        """Signal strength percentage for one tick"""
        distance = link_distance(uav_position, base_station_position)
        path_loss = self.path_loss(distance, environment)
        snr_db = self.snr(path_loss)

        signal = float(np.clip(50 + (snr_db / C.SNR_SPAN_DB) * 50, 0, 100))
        if self.jitter_enabled:
            signal += float(
                self.rng.uniform(-C.SIGNAL_JITTER_PERCENT, C.SIGNAL_JITTER_PERCENT)
            )
        signal = float(np.clip(signal, 0, 100))

        logger.debug(
            f"Link d={distance:.1f}m PL={path_loss:.1f}dB SNR={snr_db:.1f}dB "
            f"signal={signal:.1f}%"
        )
        return signal

    def snr(self, path_loss_db: float) -> float:
        received_dbm = self.tx_power_dbm + self.antenna_gain_dbi - path_loss_db
        return received_dbm - self.noise_floor_dbm

    def path_loss(self, distance_m: float, environment: EnvironmentSnapshot) -> float:
        """Total path loss in dB, clamped to [40, 150]"""
        environment = environment or EnvironmentSnapshot()
        loss = free_space_path_loss(distance_m, self.frequency_ghz)
        loss += self.environmental_loss(environment)
        loss += terrain_loss(distance_m, environment)
        loss += weather_loss(environment.weather)
        if self.fading_enabled:
            loss += self.fading()
        return float(np.clip(loss, C.PATH_LOSS_MIN_DB, C.PATH_LOSS_MAX_DB))

    def environmental_loss(self, environment: EnvironmentSnapshot) -> float:
        """Building and vegetation attenuation along the path"""
        if environment.obstructions is not None:
            return (
                len(environment.buildings) * C.BUILDING_LOSS_DB
                + len(environment.vegetation) * C.VEGETATION_LOSS_DB
            )

        # Unknown path: sample obstructions from the terrain category
        loss = 0.0
        probability = C.BUILDING_PROBABILITY.get(
            environment.terrain_type.value, C.DEFAULT_BUILDING_PROBABILITY
        )
        if self.rng.random() < probability:
            loss += int(self.rng.integers(1, 4)) * C.RANDOM_BUILDING_LOSS_DB
        if self.rng.random() < C.RANDOM_VEGETATION_PROBABILITY:
            loss += int(self.rng.integers(1, 6)) * C.RANDOM_VEGETATION_LOSS_DB
        return loss

    def fading(self) -> float:
        """Multipath fading loss in dB, positive = weaker signal"""
        if self.rng.random() < C.LOS_PROBABILITY:
            # Rician: LOS component s, scattered sigma_n per dimension
            k_linear = 10 ** (C.RICIAN_K_FACTOR_DB / 10)
            s = np.sqrt(k_linear / (k_linear + 1))
            sigma_n = np.sqrt(1 / (2 * (k_linear + 1)))
            amplitude = stats.rice.rvs(s / sigma_n, scale=sigma_n, random_state=self.rng)
        else:
            amplitude = stats.rayleigh.rvs(scale=1.0, random_state=self.rng)

        amplitude = max(float(amplitude), 1e-12)
        fading_db = -20 * np.log10(amplitude)
        return float(np.clip(fading_db, C.FADING_MIN_DB, C.FADING_MAX_DB))
