"""
CalloutRay Entities - Analysis Result Data Model

Everything the engine draws comes from two immutable inputs:

- Entity: a committed subject from a completed analysis (box, optional
  timestamp, trajectory, detail call-outs, classification fields).
- LiveDetection: a transient box from the low-latency detection stream.

All geometry is in the fixed 0-1000 normalized space. Boxes are
(ymin, xmin, ymax, xmax); points are (y, x).

The parse_* helpers sanitize raw service output before it enters the
engine: malformed boxes become zero-area, missing lists become empty.
"""

import json
import math
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

NORMALIZED_EXTENT = 1000.0

ZERO_BOX: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)

logger = logging.getLogger("Entities")


class AnalysisFormatError(ValueError):
    """Raised when an analysis response is not a JSON document."""


def parse_timestamp(value: Union[str, float, int, None]) -> Optional[float]:
    """
    Convert a video timestamp to seconds.

    Accepts "MM:SS", "HH:MM:SS" or a number of seconds.

    Returns:
        Seconds, or None when missing or unparseable (scene-persistent).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) and value >= 0 else None

    parts = str(value).strip().split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        numbers = [float(p) for p in parts]
    except ValueError:
        return None
    if any(n < 0 or not math.isfinite(n) for n in numbers):
        return None

    seconds = 0.0
    for n in numbers:
        seconds = seconds * 60 + n
    return seconds


def format_timestamp(seconds: float) -> str:
    """Format seconds as MM:SS."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


def _clamp_normalized(v: float) -> float:
    return max(0.0, min(NORMALIZED_EXTENT, v))


def sanitize_box(raw: Any) -> Tuple[float, float, float, float]:
    """Return a clamped (ymin, xmin, ymax, xmax) box, or ZERO_BOX if malformed."""
    if not isinstance(raw, (list, tuple)) or len(raw) != 4:
        return ZERO_BOX
    try:
        values = [float(v) for v in raw]
    except (TypeError, ValueError):
        return ZERO_BOX
    if not all(math.isfinite(v) for v in values):
        return ZERO_BOX
    return tuple(_clamp_normalized(v) for v in values)


def sanitize_point(raw: Any) -> Optional[Tuple[float, float]]:
    """Return a clamped (y, x) point, or None if malformed."""
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        return None
    try:
        y, x = float(raw[0]), float(raw[1])
    except (TypeError, ValueError):
        return None
    if not (math.isfinite(y) and math.isfinite(x)):
        return None
    return (_clamp_normalized(y), _clamp_normalized(x))


def _as_list(raw: Any) -> list:
    return raw if isinstance(raw, list) else []


def _as_text(raw: Any) -> str:
    return "" if raw is None else str(raw)


@dataclass(frozen=True)
class Detail:
    """A named call-out on a point of an entity."""
    name: str
    point: Tuple[float, float]  # (y, x) normalized
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Optional["Detail"]:
        point = sanitize_point(data.get("location_point", data.get("point")))
        if point is None:
            logger.debug(f"Dropping detail with malformed point: {data!r}")
            return None
        return cls(
            name=_as_text(data.get("name")),
            point=point,
            description=_as_text(data.get("description")),
        )


@dataclass(frozen=True)
class Biometrics:
    is_face: bool = False
    estimated_age: Optional[str] = None
    gender_presentation: Optional[str] = None
    emotion_confidence: Optional[float] = None
    match_score: Optional[float] = None
    cluster_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Biometrics":
        return cls(
            is_face=bool(data.get("is_face", False)),
            estimated_age=data.get("estimated_age"),
            gender_presentation=data.get("gender_presentation"),
            emotion_confidence=data.get("emotion_confidence"),
            match_score=data.get("match_score"),
            cluster_id=data.get("cluster_id"),
        )


@dataclass(frozen=True)
class Tracking:
    track_id: Optional[str] = None
    trajectory: Tuple[Tuple[float, float], ...] = ()
    velocity_vector: Optional[str] = None
    estimated_speed: Optional[str] = None
    prediction: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Tracking":
        trajectory = tuple(
            p for p in (sanitize_point(raw) for raw in _as_list(data.get("trajectory")))
            if p is not None
        )
        return cls(
            track_id=data.get("track_id"),
            trajectory=trajectory,
            velocity_vector=data.get("velocity_vector"),
            estimated_speed=data.get("estimated_speed"),
            prediction=data.get("prediction"),
        )


@dataclass(frozen=True)
class Entity:
    """
    A committed, immutable subject from a completed analysis.

    Attributes:
        id: Stable identifier within the analysis result
        label: Display name ("Subject A", "Red Sedan", ...)
        box: (ymin, xmin, ymax, xmax) in 0-1000 space
        timestamp: Video-relative seconds, None for scene-persistent
        details: Sub-annotations rendered as detail labels
        material, state, distinctive_feature: Free text for label lines
        biometrics, tracking: Optional classification blocks
    """
    id: str
    label: str
    box: Tuple[float, float, float, float] = ZERO_BOX
    timestamp: Optional[float] = None
    details: Tuple[Detail, ...] = ()
    material: str = ""
    state: str = ""
    distinctive_feature: str = ""
    biometrics: Optional[Biometrics] = None
    tracking: Optional[Tracking] = None

    @property
    def trajectory(self) -> Tuple[Tuple[float, float], ...]:
        return self.tracking.trajectory if self.tracking else ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> "Entity":
        """Build a sanitized entity from a raw analysis object."""
        details = tuple(
            d for d in (
                Detail.from_dict(raw) for raw in _as_list(data.get("details"))
                if isinstance(raw, dict)
            )
            if d is not None
        )
        biometrics = data.get("biometrics")
        tracking = data.get("tracking")
        return cls(
            id=_as_text(data.get("id")) or f"obj_{index}",
            label=_as_text(data.get("name", data.get("label"))),
            box=sanitize_box(data.get("box_2d", data.get("box"))),
            timestamp=parse_timestamp(data.get("timestamp")),
            details=details,
            material=_as_text(data.get("material")),
            state=_as_text(data.get("state")),
            distinctive_feature=_as_text(data.get("distinctive_feature")),
            biometrics=Biometrics.from_dict(biometrics) if isinstance(biometrics, dict) else None,
            tracking=Tracking.from_dict(tracking) if isinstance(tracking, dict) else None,
        )


@dataclass(frozen=True)
class LiveDetection:
    """Ephemeral detection from the continuous stream. Never persisted."""
    label: str
    box: Tuple[float, float, float, float]
    capture_timestamp: Optional[float] = None


@dataclass(frozen=True)
class SubtitleSegment:
    start: float
    end: float
    text: str


@dataclass(frozen=True)
class AnalysisResult:
    """A complete analysis. A new result replaces the whole entity set."""
    entities: Tuple[Entity, ...] = ()
    subtitles: Tuple[SubtitleSegment, ...] = ()
    summary: str = ""


def parse_live_detections(
    raw: Any,
    capture_timestamp: Optional[float] = None
) -> List[LiveDetection]:
    """Sanitize a raw detection list and stamp it with its capture time."""
    detections = []
    for item in _as_list(raw):
        if not isinstance(item, dict):
            continue
        detections.append(LiveDetection(
            label=_as_text(item.get("label")),
            box=sanitize_box(item.get("box_2d", item.get("box"))),
            capture_timestamp=capture_timestamp,
        ))
    return detections


def parse_analysis_result(raw: Union[str, bytes, Dict[str, Any]]) -> AnalysisResult:
    """
    Parse and sanitize an analysis document.

    Args:
        raw: JSON text or an already-decoded dict

    Returns:
        AnalysisResult with every entity sanitized

    Raises:
        AnalysisFormatError: If raw text is not valid JSON
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise AnalysisFormatError(f"Analysis generated invalid format: {e}") from e
    if not isinstance(raw, dict):
        raw = {}

    entities = tuple(
        Entity.from_dict(obj, index=i)
        for i, obj in enumerate(_as_list(raw.get("objects")))
        if isinstance(obj, dict)
    )

    audio = raw.get("audio_analysis")
    subtitles = []
    if isinstance(audio, dict):
        for seg in _as_list(audio.get("subtitles")):
            if not isinstance(seg, dict):
                continue
            start = parse_timestamp(seg.get("start"))
            end = parse_timestamp(seg.get("end"))
            if start is None or end is None:
                continue
            subtitles.append(SubtitleSegment(start, end, _as_text(seg.get("text"))))

    logger.debug(f"Parsed analysis: {len(entities)} entities, {len(subtitles)} subtitles")
    return AnalysisResult(
        entities=entities,
        subtitles=tuple(subtitles),
        summary=_as_text(raw.get("summary")),
    )


def load_analysis_file(path: Union[str, Path]) -> AnalysisResult:
    """Read an analysis JSON document from disk."""
    return parse_analysis_result(Path(path).read_text(encoding="utf-8"))
