"""
Environment Model - Terrain, obstruction and weather context for link estimation.

Author: Vítor Eulálio Reis
Copyright (c) 2025

The link quality estimator only consumes an EnvironmentSnapshot. The
EnvironmentSimulator is the collaborator that produces those snapshots: it keeps a
static field of buildings and vegetation around the base station and evolves the
weather over simulated time.

Obstruction lookup:
    An obstruction affects a link when its footprint (a circle of `radius_m`)
    intersects the ground projection of the UAV-to-base-station segment.

Weather model:
    - Wind: slow daily cycle plus turbulence and occasional gusts, smoothed
    - Rain: starts with a probability driven by humidity and cloud cover,
      stops with a fixed probability per update
    - Fog: more likely with high humidity or rain

Example:
    >>> sim = EnvironmentSimulator(config, rng=np.random.default_rng(7))
    >>> sim.update(current_time=120.0)
    >>> snapshot = sim.snapshot(uav_position, base_station_position)
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional

import numpy as np

from .config import section

logger = logging.getLogger(__name__)


class TerrainType(Enum):
    """Terrain categories with distinct base losses"""

    URBAN = "urban"
    SUBURBAN = "suburban"
    RURAL = "rural"
    MOUNTAINOUS = "mountainous"


class ObstructionKind(Enum):
    BUILDING = "building"
    VEGETATION = "vegetation"


@dataclass(frozen=True)
class Obstruction:
    """Static obstacle on the ground plane"""

    kind: ObstructionKind
    position: tuple  # (x, y) in meters
    radius_m: float = 15.0
    height_m: float = 20.0


@dataclass
class Weather:
    """
    Weather state relevant to RF attenuation.

    Attributes:
        rain: Whether it is currently raining
        precipitation_intensity: Rain rate in mm/hr (0 when dry)
        fog: Whether fog is present
        wind_speed: Wind speed in m/s
        humidity: Relative humidity (%)
        cloud_cover: 0 (clear) to 1 (overcast)
    """

    rain: bool = False
    precipitation_intensity: float = 0.0
    fog: bool = False
    wind_speed: float = 3.0
    wind_direction: float = 180.0
    humidity: float = 65.0
    cloud_cover: float = 0.3
    temperature: float = 28.0


@dataclass
class EnvironmentSnapshot:
    """
    Environment as seen along a single UAV link.

    `obstructions` is None when the obstacles along the path are unknown; the
    estimator then samples them from the terrain type.
    """

    terrain_type: TerrainType = TerrainType.URBAN
    obstructions: Optional[List[Obstruction]] = None
    weather: Weather = field(default_factory=Weather)

    @property
    def buildings(self) -> List[Obstruction]:
        return [o for o in self.obstructions or [] if o.kind is ObstructionKind.BUILDING]

    @property
    def vegetation(self) -> List[Obstruction]:
        return [
            o for o in self.obstructions or [] if o.kind is ObstructionKind.VEGETATION
        ]

    def to_dict(self) -> dict:
        return {
            "terrain_type": self.terrain_type.value,
            "buildings": len(self.buildings),
            "vegetation": len(self.vegetation),
            "weather": {
                "rain": self.weather.rain,
                "precipitation_intensity": self.weather.precipitation_intensity,
                "fog": self.weather.fog,
                "wind_speed": self.weather.wind_speed,
            },
        }


class EnvironmentSimulator:
    """
    Produces environment snapshots for the per-tick link pipeline
    """

    def __init__(self, config: dict, rng: Optional[np.random.Generator] = None):
        env_config = section(config, "environment")
        self.rng = rng if rng is not None else np.random.default_rng()
        self.terrain_type = TerrainType(env_config.get("terrain_type", "urban"))
        self.area_half_size = float(env_config.get("area_half_size_m", 1000.0))
        self.weather = Weather()
        self.obstructions: List[Obstruction] = self._generate_obstructions(
            int(env_config.get("num_buildings", 10)),
            int(env_config.get("num_vegetation", 5)),
        )
        self.current_time = 0.0
        logger.info(
            f"Environment initialized: {self.terrain_type.value} terrain, "
            f"{len(self.obstructions)} obstructions"
        )

    def _generate_obstructions(
        self, num_buildings: int, num_vegetation: int
    ) -> List[Obstruction]:
        """Scatter buildings and vegetation clusters across the operating area"""
        obstructions = []
        half = self.area_half_size
        for _ in range(num_buildings):
            x, y = self.rng.uniform(-half, half, size=2)
            obstructions.append(
                Obstruction(
                    kind=ObstructionKind.BUILDING,
                    position=(float(x), float(y)),
                    radius_m=float(self.rng.uniform(10, 25)),
                    height_m=float(self.rng.uniform(10, 50)),
                )
            )
        for _ in range(num_vegetation):
            x, y = self.rng.uniform(-half, half, size=2)
            obstructions.append(
                Obstruction(
                    kind=ObstructionKind.VEGETATION,
                    position=(float(x), float(y)),
                    radius_m=float(self.rng.uniform(20, 60)),
                    height_m=float(self.rng.uniform(5, 20)),
                )
            )
        return obstructions

    def update(self, current_time: float):
        """Advance weather to `current_time` (simulation seconds)"""
        self.current_time = current_time
        w = self.weather

        w.temperature = (
            28 + 8 * np.sin(2 * np.pi * current_time / (24 * 3600))
            + self.rng.uniform(-1, 1)
        )
        w.humidity = float(
            np.clip(
                60
                + 20 * np.sin(2 * np.pi * current_time / (12 * 3600))
                + self.rng.uniform(-5, 5),
                30,
                90,
            )
        )

        # Wind: 8-hour cycle, turbulence, 5% chance of a 5-15 m/s gust
        base_wind = 4 + 2 * np.sin(2 * np.pi * current_time / (8 * 3600))
        if self.rng.random() < 0.05:
            target_wind = base_wind + self.rng.uniform(5, 15)
        else:
            target_wind = base_wind + self.rng.uniform(-1, 1)
        w.wind_speed = max(0.0, float(0.9 * w.wind_speed + 0.1 * target_wind))
        w.wind_direction = float((w.wind_direction + self.rng.uniform(-10, 10)) % 360)

        self._update_precipitation()

        w.cloud_cover = float(np.clip(w.cloud_cover + self.rng.uniform(-5e-4, 5e-4), 0, 1))

    def _update_precipitation(self):
        w = self.weather
        rain_probability = np.clip((w.humidity - 60) / 40 * w.cloud_cover, 0, 0.3)

        if not w.rain and self.rng.random() < rain_probability * 0.01:
            w.rain = True
            w.precipitation_intensity = float(self.rng.uniform(2, 10))
            logger.info(f"Weather update: rain started ({w.precipitation_intensity:.1f} mm/hr)")
        elif w.rain and self.rng.random() < 0.05:
            w.rain = False
            w.precipitation_intensity = 0.0
            logger.info("Weather update: rain stopped")

        if w.rain:
            w.precipitation_intensity = max(
                1.0, w.precipitation_intensity + float(self.rng.uniform(-1, 1))
            )

        fog_probability = 0.02
        if w.humidity > 80:
            fog_probability *= 2
        if w.rain:
            fog_probability *= 1.5

        if not w.fog and self.rng.random() < fog_probability:
            w.fog = True
            logger.info("Weather update: fog started")
        elif w.fog and self.rng.random() < 0.1:
            w.fog = False
            logger.info("Weather update: fog cleared")

    def obstructions_on_path(self, uav_position, base_station_position) -> List[Obstruction]:
        """Obstructions whose footprint crosses the ground track of the link"""
        if not self.obstructions:
            return []

        start = np.asarray(base_station_position, dtype=float)[:2]
        end = np.asarray(uav_position, dtype=float)[:2]
        centers = np.array([o.position for o in self.obstructions], dtype=float)
        radii = np.array([o.radius_m for o in self.obstructions], dtype=float)

        segment = end - start
        length_sq = float(segment @ segment)
        if length_sq == 0.0:
            distances = np.linalg.norm(centers - start, axis=1)
        else:
            t = np.clip((centers - start) @ segment / length_sq, 0.0, 1.0)
            closest = start + t[:, None] * segment
            distances = np.linalg.norm(centers - closest, axis=1)

        return [o for o, hit in zip(self.obstructions, distances <= radii) if hit]

    def snapshot(self, uav_position, base_station_position) -> EnvironmentSnapshot:
        """Snapshot for one link; weather is copied so later updates don't leak in"""
        return EnvironmentSnapshot(
            terrain_type=self.terrain_type,
            obstructions=self.obstructions_on_path(uav_position, base_station_position),
            weather=replace(self.weather),
        )
