"""
CalloutRay Connector Router

Every connector takes the same three-segment route through a vertical
channel just outside the media edge:

    anchor ──────► (channel_x, anchor_y)
                          │
                          ▼
                   (channel_x, target_y) ──────► label

Lines never cross the media content and no pathfinding is needed.
"""

from dataclasses import dataclass
from typing import List, Tuple

from .config import DEFAULT_CONFIG, OverlayConfig
from .layout import LayoutLabel, Side

Point = Tuple[float, float]


@dataclass(frozen=True)
class Connector:
    """Polyline from an anchor to its label, in media space."""
    points: Tuple[Point, Point, Point, Point]

    @property
    def anchor(self) -> Point:
        return self.points[0]

    @property
    def elbow(self) -> Point:
        """Where the connector enters the channel (junction dot)."""
        return self.points[1]

    @property
    def end(self) -> Point:
        return self.points[3]

    def segments(self) -> List[Tuple[Point, Point]]:
        return list(zip(self.points, self.points[1:]))


def channel_x(side: Side, media_width: float, offset: float = 50.0) -> float:
    return -offset if side == Side.LEFT else media_width + offset


def route_connector(
    label: LayoutLabel,
    media_width: float,
    config: OverlayConfig = DEFAULT_CONFIG
) -> Connector:
    """
    Route a label's connector through its side's channel.

    Args:
        label: Resolved label (anchor, target, side)
        media_width: Native media width
        config: Provides channel_offset
    """
    ax, ay = label.anchor
    tx, ty = label.target
    cx = channel_x(label.side, media_width, config.channel_offset)
    return Connector(points=((ax, ay), (cx, ay), (cx, ty), (tx, ty)))
