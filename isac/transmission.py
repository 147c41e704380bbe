"""
Transmission Filter - Mode-conditioned composition of outgoing UAV data.

Author: Vítor Eulálio Reis
Copyright (c) 2025

Given the raw sensor payload of one tick and the committed ISAC mode, builds the
TransmissionPackage that is actually sent to the base station.

Composition by mode:
    GOOD:   full video (1080p), all detections with metadata, full telemetry,
            model updates, environmental data
    MEDIUM: compressed video (480p, ~30%), detections with confidence > 0.6
            (reduced fields), telemetry limited to position/battery/altitude
    WEAK:   no video, detections with confidence > 0.8 (coordinates and
            confidence only), telemetry limited to position/battery

Size accounting follows fixed per-component estimates; the estimated transmit
time is size / mode throughput * 1.2 protocol overhead.

Example:
    >>> package = TransmissionFilter().filter(payload, ISACMode.WEAK)
    >>> package.includes(ComponentKind.VIDEO)
    False
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from . import config as C
from .config import section
from .mode_arbiter import ISACMode

logger = logging.getLogger(__name__)


class ComponentKind(Enum):
    VIDEO = "video"
    DETECTIONS = "detections"
    TELEMETRY = "telemetry"
    MODEL_UPDATE = "model_update"
    ENVIRONMENTAL_DATA = "environmental_data"


# =============================================================================
# Payload components
# =============================================================================


@dataclass(frozen=True)
class VideoFrame:
    """Opaque video frame; only its size matters to the link"""

    frame_id: int = 0
    size_bytes: int = C.FULL_VIDEO_BYTES
    resolution: str = "1080p"
    format: str = "H264"
    compression_ratio: float = 1.0


@dataclass(frozen=True)
class Detection:
    """Survivor detection produced by the onboard model"""

    id: str
    coordinates: Tuple[float, float]
    confidence: float
    type: str = "survivor"
    timestamp: Optional[float] = None
    bounding_box: Optional[Tuple[float, float, float, float]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def reduced(self) -> "Detection":
        """Fields kept in MEDIUM mode"""
        return Detection(
            id=self.id,
            coordinates=self.coordinates,
            confidence=self.confidence,
            type=self.type,
            timestamp=self.timestamp,
        )

    def coordinates_only(self) -> "Detection":
        """Fields kept in WEAK mode"""
        return Detection(
            id=self.id,
            coordinates=self.coordinates,
            confidence=self.confidence,
            type=None,
        )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "coordinates": list(self.coordinates),
            "confidence": self.confidence,
        }
        if self.type is not None:
            data["type"] = self.type
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp
        if self.bounding_box is not None:
            data["boundingBox"] = list(self.bounding_box)
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data


@dataclass(frozen=True)
class Telemetry:
    position: Optional[Tuple[float, float, float]] = None
    battery_level: Optional[float] = None
    altitude: Optional[float] = None
    velocity: Optional[Tuple[float, float, float]] = None
    heading: Optional[float] = None
    status: Optional[str] = None

    def critical(self) -> "Telemetry":
        """Position, battery and altitude (MEDIUM mode)"""
        return Telemetry(
            position=self.position,
            battery_level=self.battery_level,
            altitude=self.altitude,
        )

    def minimal(self) -> "Telemetry":
        """Position and battery (WEAK mode)"""
        return Telemetry(position=self.position, battery_level=self.battery_level)

    def to_dict(self) -> dict:
        keys = {
            "position": self.position,
            "batteryLevel": self.battery_level,
            "altitude": self.altitude,
            "velocity": self.velocity,
            "heading": self.heading,
            "status": self.status,
        }
        return {
            k: list(v) if isinstance(v, tuple) else v
            for k, v in keys.items()
            if v is not None
        }


@dataclass(frozen=True)
class ModelUpdate:
    """Federated-learning weight delta, treated as an opaque blob"""

    version: int = 0
    size_bytes: int = C.MODEL_UPDATE_BYTES


@dataclass(frozen=True)
class EnvironmentalReading:
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    air_quality: Optional[float] = None
    readings: Dict[str, float] = field(default_factory=dict)


@dataclass
class SensorPayload:
    """
    Raw sensor output of one tick. Every component is optional; absent components
    simply do not appear in the transmitted package.
    """

    video_frame: Optional[VideoFrame] = None
    detections: Optional[List[Detection]] = None
    telemetry: Optional[Telemetry] = None
    model_update: Optional[ModelUpdate] = None
    environmental_data: Optional[EnvironmentalReading] = None

    @classmethod
    def from_dict(cls, data: dict) -> "SensorPayload":
        """Build a payload from its JSON form (as sent by UAV clients)"""
        data = data or {}

        video = data.get("video_frame")
        detections = data.get("detections")
        telemetry = data.get("telemetry")
        model_update = data.get("model_update")
        env = data.get("environmental_data")

        return cls(
            video_frame=VideoFrame(
                frame_id=int(video.get("frame_id", 0)),
                size_bytes=int(video.get("size_bytes", C.FULL_VIDEO_BYTES)),
                resolution=video.get("resolution", "1080p"),
                format=video.get("format", "H264"),
            )
            if video
            else None,
            detections=[
                Detection(
                    id=str(d["id"]),
                    coordinates=tuple(d["coordinates"]),
                    confidence=float(d["confidence"]),
                    type=d.get("type", "survivor"),
                    timestamp=d.get("timestamp"),
                    bounding_box=tuple(d["bounding_box"])
                    if d.get("bounding_box")
                    else None,
                    metadata=d.get("metadata") or {},
                )
                for d in detections
            ]
            if detections is not None
            else None,
            telemetry=Telemetry(
                position=tuple(telemetry["position"])
                if telemetry.get("position") is not None
                else None,
                battery_level=telemetry.get("battery_level"),
                altitude=telemetry.get("altitude"),
                velocity=tuple(telemetry["velocity"])
                if telemetry.get("velocity") is not None
                else None,
                heading=telemetry.get("heading"),
                status=telemetry.get("status"),
            )
            if telemetry
            else None,
            model_update=ModelUpdate(
                version=int(model_update.get("version", 0)),
                size_bytes=int(model_update.get("size_bytes", C.MODEL_UPDATE_BYTES)),
            )
            if model_update
            else None,
            environmental_data=EnvironmentalReading(
                temperature=env.get("temperature"),
                humidity=env.get("humidity"),
                air_quality=env.get("air_quality"),
                readings=env.get("readings") or {},
            )
            if env
            else None,
        )


# =============================================================================
# Output package
# =============================================================================


@dataclass(frozen=True)
class TransmissionPackage:
    """
    Immutable package produced for one tick.

    Attributes:
        mode: ISAC mode the package was built for
        components: Component kinds actually included
        size_bytes: Estimated on-air size before protocol overhead
        estimated_transmission_time: Seconds, including protocol overhead
        compression_applied: True for every mode except GOOD
    """

    mode: ISACMode
    components: Tuple[ComponentKind, ...]
    size_bytes: int
    estimated_transmission_time: float
    uav_id: Optional[str] = None
    video: Optional[VideoFrame] = None
    detections: Tuple[Detection, ...] = ()
    telemetry: Optional[Telemetry] = None
    model_update: Optional[ModelUpdate] = None
    environmental_data: Optional[EnvironmentalReading] = None
    compression_applied: bool = False
    timestamp: float = 0.0

    def includes(self, kind: ComponentKind) -> bool:
        return kind in self.components

    def summary(self) -> dict:
        """Compact form for broadcast"""
        return {
            "uavId": self.uav_id,
            "isacMode": self.mode.value,
            "components": [k.value for k in self.components],
            "dataSizeBytes": self.size_bytes,
            "estimatedTransmissionTime": self.estimated_transmission_time,
            "compressionApplied": self.compression_applied,
            "videoQuality": self.video.resolution if self.video else "none",
            "detections": [d.to_dict() for d in self.detections],
            "telemetry": self.telemetry.to_dict() if self.telemetry else None,
            "timestamp": self.timestamp,
        }


def estimate_transmission_time(size_bytes: int, mode: ISACMode) -> float:
    """Seconds to send `size_bytes` at the mode's nominal throughput, with overhead"""
    throughput = C.MODE_THROUGHPUT_BPS[mode.value]
    return size_bytes / throughput * C.PROTOCOL_OVERHEAD_FACTOR


class TransmissionFilter:
    """
    Builds TransmissionPackages from raw payloads
    """

    def __init__(self, config: dict = None):
        tx_config = section(config, "transmission")
        self.compression_ratio = float(
            tx_config.get("compression_ratio", C.VIDEO_COMPRESSION_RATIO)
        )
        self.medium_confidence = float(
            tx_config.get("medium_confidence", C.MEDIUM_CONFIDENCE_THRESHOLD)
        )
        self.weak_confidence = float(
            tx_config.get("weak_confidence", C.WEAK_CONFIDENCE_THRESHOLD)
        )

    def filter(
        self,
        payload: Optional[SensorPayload],
        mode: ISACMode,
        uav_id: Optional[str] = None,
        timestamp: Optional[float] = None,
    ) -> TransmissionPackage:
        """Compose the package for `mode`"""
        payload = payload or SensorPayload()

        if mode is ISACMode.GOOD:
            parts = self._good(payload)
        elif mode is ISACMode.MEDIUM:
            parts = self._medium(payload)
        else:
            parts = self._weak(payload)

        components = tuple(
            kind
            for kind, present in (
                (ComponentKind.VIDEO, parts["video"] is not None),
                (ComponentKind.DETECTIONS, parts["detections"] is not None),
                (ComponentKind.TELEMETRY, parts["telemetry"] is not None),
                (ComponentKind.MODEL_UPDATE, parts["model_update"] is not None),
                (ComponentKind.ENVIRONMENTAL_DATA, parts["environmental_data"] is not None),
            )
            if present
        )

        size_bytes = parts["size_bytes"]
        package = TransmissionPackage(
            mode=mode,
            components=components,
            size_bytes=size_bytes,
            estimated_transmission_time=estimate_transmission_time(size_bytes, mode),
            uav_id=uav_id,
            video=parts["video"],
            detections=tuple(parts["detections"] or ()),
            telemetry=parts["telemetry"],
            model_update=parts["model_update"],
            environmental_data=parts["environmental_data"],
            compression_applied=mode is not ISACMode.GOOD,
            timestamp=timestamp if timestamp is not None else time.time(),
        )

        logger.debug(
            f"Data prepared for transmission: {mode.value.upper()} mode, "
            f"{size_bytes / 1024:.1f} KB"
        )
        return package

    def _good(self, payload: SensorPayload) -> dict:
        size = 0
        video = None
        if payload.video_frame is not None:
            video = payload.video_frame
            size += C.FULL_VIDEO_BYTES

        detections = None
        if payload.detections is not None:
            detections = list(payload.detections)
            size += len(detections) * C.DETECTION_BYTES["good"]

        model_update = None
        if payload.model_update is not None:
            model_update = payload.model_update
            size += C.MODEL_UPDATE_BYTES

        environmental_data = None
        if payload.environmental_data is not None:
            environmental_data = payload.environmental_data
            size += C.ENVIRONMENTAL_DATA_BYTES

        telemetry = None
        if payload.telemetry is not None:
            telemetry = payload.telemetry
            size += C.TELEMETRY_BYTES["good"]

        return {
            "video": video,
            "detections": detections,
            "telemetry": telemetry,
            "model_update": model_update,
            "environmental_data": environmental_data,
            "size_bytes": size,
        }

    def _medium(self, payload: SensorPayload) -> dict:
        size = 0
        video = None
        if payload.video_frame is not None:
            video = self.compress_video(payload.video_frame)
            size += C.COMPRESSED_VIDEO_BYTES

        detections = None
        if payload.detections is not None:
            detections = [
                d.reduced()
                for d in payload.detections
                if d.confidence > self.medium_confidence
            ]
            size += len(detections) * C.DETECTION_BYTES["medium"]

        telemetry = None
        if payload.telemetry is not None:
            telemetry = payload.telemetry.critical()
            size += C.TELEMETRY_BYTES["medium"]

        return {
            "video": video,
            "detections": detections,
            "telemetry": telemetry,
            "model_update": None,
            "environmental_data": None,
            "size_bytes": size,
        }

    def _weak(self, payload: SensorPayload) -> dict:
        size = 0
        detections = None
        if payload.detections is not None:
            detections = [
                d.coordinates_only()
                for d in payload.detections
                if d.confidence > self.weak_confidence
            ]
            size += len(detections) * C.DETECTION_BYTES["weak"]

        telemetry = None
        if payload.telemetry is not None:
            telemetry = payload.telemetry.minimal()
            size += C.TELEMETRY_BYTES["weak"]

        return {
            "video": None,
            "detections": detections,
            "telemetry": telemetry,
            "model_update": None,
            "environmental_data": None,
            "size_bytes": size,
        }

    def compress_video(self, frame: VideoFrame) -> VideoFrame:
        return VideoFrame(
            frame_id=frame.frame_id,
            size_bytes=int(round(frame.size_bytes * self.compression_ratio)),
            resolution="480p",
            format=frame.format,
            compression_ratio=self.compression_ratio,
        )
