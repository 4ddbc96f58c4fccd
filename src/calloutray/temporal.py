"""
CalloutRay Temporal Filter - Which Annotations Are Live Right Now

Committed entities flash around their timestamp (short visibility window)
instead of being tracked continuously, so call-outs stay in step with
narration. Live detections are dropped once they fall too far behind the
playhead, which hides "ghost" boxes when detection runs slower than
rendering.
"""

import dataclasses
import math
from typing import List, Optional, Sequence

from .config import DEFAULT_CONFIG, OverlayConfig
from .entities import Entity, LiveDetection, SubtitleSegment


class TemporalFilter:
    """
    Selects the visible subset of entities and live detections.

    Usage:
        temporal = TemporalFilter(config)
        visible = temporal.visible_entities(result.entities, t, is_video=True)
        visible = temporal.apply_detail_budget(visible, detail_level=40)
    """

    def __init__(self, config: Optional[OverlayConfig] = None):
        self.config = config or DEFAULT_CONFIG

    def is_entity_visible(self, entity: Entity, t: float, is_video: bool) -> bool:
        if not is_video or entity.timestamp is None:
            return True
        return abs(t - entity.timestamp) < self.config.visibility_window

    def visible_entities(
        self,
        entities: Sequence[Entity],
        t: float,
        is_video: bool
    ) -> List[Entity]:
        """
        Filter entities by playback time.

        Args:
            entities: Full entity set of the current analysis
            t: Playback time in seconds (0 for static images)
            is_video: False for still images (everything visible)
        """
        return [e for e in entities if self.is_entity_visible(e, t, is_video)]

    def is_detection_fresh(self, detection: LiveDetection, t: float) -> bool:
        if detection.capture_timestamp is None:
            return True
        return abs(t - detection.capture_timestamp) <= self.config.staleness_bound

    def fresh_detections(
        self,
        detections: Sequence[LiveDetection],
        t: float,
        is_video: bool
    ) -> List[LiveDetection]:
        """Drop live detections older than the staleness bound (video only)."""
        if not is_video:
            return list(detections)
        return [d for d in detections if self.is_detection_fresh(d, t)]

    @staticmethod
    def apply_detail_budget(entities: Sequence[Entity], detail_level: int) -> List[Entity]:
        """
        Deterministically shrink the annotation load.

        Below 100, each entity keeps its first max(1, level // 20) details.
        Below 30, only the first max(1, floor(n * level / 30)) entities remain.
        """
        if detail_level >= 100:
            return list(entities)

        max_details = max(1, int(detail_level) // 20)
        reduced = [
            dataclasses.replace(e, details=e.details[:max_details])
            for e in entities
        ]
        if detail_level < 30:
            keep = max(1, math.floor(len(reduced) * detail_level / 30))
            reduced = reduced[:keep]
        return reduced

    @staticmethod
    def active_subtitles(
        subtitles: Sequence[SubtitleSegment],
        t: float,
        is_video: bool
    ) -> List[SubtitleSegment]:
        if not is_video:
            return []
        return [s for s in subtitles if s.start <= t <= s.end]
