"""
Configuration constants for the ISAC fleet base station

Author: Vítor Eulálio Reis

Default values used when a YAML configuration section omits a key. Grouped the
same way the YAML files are: network, isac, transmission, fleet, election.
"""

from typing import Any, Dict

# =============================================================================
# NETWORK / RADIO CONSTANTS
# =============================================================================
FREQUENCY_GHZ = 2.4  # Carrier frequency (2.4 GHz ISM band)
TX_POWER_DBM = 20.0  # UAV transmit power
ANTENNA_GAIN_DBI = 3.0  # Combined antenna gain
NOISE_FLOOR_DBM = -90.0  # Receiver noise floor
FSPL_CONSTANT_DB = 92.45

MIN_DISTANCE_M = 1.0  # Distance floor, keeps log10 finite
PATH_LOSS_MIN_DB = 40.0
PATH_LOSS_MAX_DB = 150.0
LONG_RANGE_DISTANCE_M = 1000.0  # Beyond this, extra terrain loss applies
LONG_RANGE_LOSS_DB = 5.0

# Fading
LOS_PROBABILITY = 0.7  # Rician (LOS) vs Rayleigh (NLOS)
RICIAN_K_FACTOR_DB = 10.0
FADING_MIN_DB = -10.0
FADING_MAX_DB = 20.0

# SNR -> percentage mapping
SNR_SPAN_DB = 30.0  # 0 dB -> 50%, 30 dB -> 100%
SIGNAL_JITTER_PERCENT = 2.5

# =============================================================================
# ENVIRONMENT LOSS CONSTANTS
# =============================================================================
BUILDING_LOSS_DB = 8.0  # Known building in path
VEGETATION_LOSS_DB = 2.0  # Known vegetation cluster in path
RANDOM_BUILDING_LOSS_DB = 6.0  # Sampled building when obstructions unknown
RANDOM_VEGETATION_LOSS_DB = 1.5
RANDOM_VEGETATION_PROBABILITY = 0.3

TERRAIN_LOSS_DB = {
    "mountainous": 10.0,
    "urban": 5.0,
    "suburban": 3.0,
    "rural": 2.0,
}
DEFAULT_TERRAIN_LOSS_DB = 3.0

BUILDING_PROBABILITY = {
    "urban": 0.4,
    "suburban": 0.2,
    "rural": 0.05,
}
DEFAULT_BUILDING_PROBABILITY = 0.1

# Weather
DEFAULT_RAIN_RATE_MM_H = 10.0  # Used when rain is reported without intensity
RAIN_LOSS_DB_PER_MM_H_KM = 0.01  # 2.4 GHz specific attenuation
RAIN_PATH_KM = 0.5
FOG_LOSS_DB = 2.0
HIGH_WIND_THRESHOLD_MS = 10.0
HIGH_WIND_LOSS_DB = 1.0

# =============================================================================
# ISAC MODE CONSTANTS
# =============================================================================
GOOD_MIN_SIGNAL = 75.0  # Canonical threshold set (good >= 75, medium >= 40)
MEDIUM_MIN_SIGNAL = 40.0
DWELL_TICKS = 5  # Consecutive ticks a new mode must persist

# mode -> (base rate in Mbps, efficiency)
DATA_RATE_PROFILE = {
    "good": (50.0, 0.9),
    "medium": (20.0, 0.7),
    "weak": (5.0, 0.5),
}
MIN_DATA_RATE_MBPS = 0.1

# =============================================================================
# TRANSMISSION CONSTANTS
# =============================================================================
FULL_VIDEO_BYTES = 500_000
COMPRESSED_VIDEO_BYTES = 150_000
VIDEO_COMPRESSION_RATIO = 0.3
MODEL_UPDATE_BYTES = 50_000
ENVIRONMENTAL_DATA_BYTES = 1_000

DETECTION_BYTES = {"good": 200, "medium": 100, "weak": 50}
TELEMETRY_BYTES = {"good": 500, "medium": 200, "weak": 100}

MEDIUM_CONFIDENCE_THRESHOLD = 0.6  # Strictly greater than
WEAK_CONFIDENCE_THRESHOLD = 0.8

# Link throughput used for transmit time estimates (bytes/second)
MODE_THROUGHPUT_BPS = {
    "good": 6_250_000,  # 50 Mbps
    "medium": 2_500_000,  # 20 Mbps
    "weak": 625_000,  # 5 Mbps
}
PROTOCOL_OVERHEAD_FACTOR = 1.2

# =============================================================================
# FLEET / COORDINATION CONSTANTS
# =============================================================================
HEARTBEAT_INTERVAL_SEC = 0.5
LIVENESS_TIMEOUT_SEC = 3.0
SWEEP_INTERVAL_SEC = 1.0
ROTATION_INTERVAL_SEC = 300.0  # Master rotation (5 minutes)
COMMAND_TIMEOUT_SEC = 10.0

UAV_COMMANDS = ("takeoff", "land", "move_to", "set_velocity", "emergency_stop")

# =============================================================================
# MASTER ELECTION CONSTANTS
# =============================================================================
ELECTION_WEIGHTS = (0.4, 0.3, 0.3)  # signal, battery, proximity
DISTANCE_UNIT_M = 1000.0  # Proximity term works in kilometres
DISTANCE_EPSILON = 1e-6
SCORE_PRECISION = 9  # Decimals kept when comparing scores

# =============================================================================
# DEFAULT CONFIGURATION
# =============================================================================
DEFAULT_CONFIG: Dict[str, Any] = {
    "communication": {"server_host": "0.0.0.0", "server_port": 5555},
    "base_station": {"position": [0.0, 0.0]},
    "network": {
        "frequency_ghz": FREQUENCY_GHZ,
        "tx_power_dbm": TX_POWER_DBM,
        "antenna_gain_dbi": ANTENNA_GAIN_DBI,
        "noise_floor_dbm": NOISE_FLOOR_DBM,
    },
    "environment": {"terrain_type": "urban", "num_buildings": 10, "num_vegetation": 5},
    "isac": {
        "thresholds": {"good_min": GOOD_MIN_SIGNAL, "medium_min": MEDIUM_MIN_SIGNAL},
        "dwell_ticks": DWELL_TICKS,
    },
    "fleet": {
        "liveness_timeout_sec": LIVENESS_TIMEOUT_SEC,
        "sweep_interval_sec": SWEEP_INTERVAL_SEC,
        "command_timeout_sec": COMMAND_TIMEOUT_SEC,
        "max_uavs": 32,
    },
    "election": {
        "weights": {"signal": 0.4, "battery": 0.3, "proximity": 0.3},
        "center": [0.0, 0.0, 0.0],
        "rotation_interval_sec": ROTATION_INTERVAL_SEC,
    },
    "dashboard": {"enabled": False, "port": 8085},
}


class ConfigError(ValueError):
    """Raised when a configuration section is internally inconsistent"""


def section(config: dict, name: str) -> dict:
    """Return a config section merged over its defaults"""
    merged = dict(DEFAULT_CONFIG.get(name, {}))
    merged.update((config or {}).get(name) or {})
    return merged
