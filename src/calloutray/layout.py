"""
CalloutRay Layout Solver - Non-Overlapping Label Placement

Labels live in two lateral margin bands OUTSIDE the media, one per side.
Each band is a 1D problem along the vertical axis:

    ┌────────┐                          ┌────────┐
    │ LABEL  │──┐                    ┌──│ LABEL  │
    └────────┘  │   ┌────────────┐   │  └────────┘
    ┌────────┐  └───┼─●  media   │   │
    │ LABEL  │──────┼──●     ●───┼───┘
    └────────┘      └────────────┘
     margin band  channel         channel  margin band

Algorithm (iterative relaxation, not a global optimizer):
    1. Split labels by side, solve each side independently
    2. Stable sort by anchor y (keeps reading order)
    3. Each pass pushes every overlapping adjacent pair apart by half the
       deficit each, then clamps every label into the band
    4. Stop after a clean pass or when the iteration budget runs out

Residual overlap after the budget is accepted as visual degradation.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from .config import DEFAULT_CONFIG, OverlayConfig
from .entities import Entity
from .transform import box_to_media, is_valid_box, yx_to_media

Point = Tuple[float, float]
Color = Tuple[int, int, int]

HEADER_WIDTH = 260.0
DETAIL_WIDTH = 240.0
DETAIL_HEIGHT = 45.0
FONT_HEIGHT_HEADER = 20.0
FONT_HEIGHT_DETAIL = 14.0
LABEL_PADDING = 10.0
DETAIL_OUTSET = 50.0      # Detail labels sit further out than their header
DETAIL_SPACING = 80.0     # Initial vertical step between detail labels
BAND_INSET = 100.0

# BGR
PALETTE: List[Color] = [
    (175, 64, 30),    # Blue 800
    (27, 27, 153),    # Red 800
    (52, 101, 22),    # Green 800
    (14, 77, 133),    # Yellow 800
    (168, 33, 107),   # Purple 800
    (110, 118, 15),   # Teal 700
    (12, 65, 194),    # Orange 700
]


class Side(Enum):
    """Lateral channel a label is pinned to."""
    LEFT = "left"
    RIGHT = "right"


@dataclass
class LayoutLabel:
    """
    One call-out box: a header per entity or one per detail.

    Only the Layout Solver moves `target`; everything else is fixed at
    construction.
    """
    id: str
    text_lines: List[str]
    is_header: bool
    color: Color
    anchor: Point          # Media space, inside media bounds
    target: Point          # Label center, inside the margin band
    width: float
    height: float
    side: Side

    @property
    def top(self) -> float:
        return self.target[1] - self.height / 2

    @property
    def bottom(self) -> float:
        return self.target[1] + self.height / 2

    def set_target_y(self, y: float):
        self.target = (self.target[0], y)


@dataclass(frozen=True)
class MarginBand:
    """Vertical extent available to labels on either side."""
    y_min: float
    y_max: float

    def clamp(self, label: LayoutLabel):
        """Shift a label back flush with whichever boundary it crosses."""
        if label.top < self.y_min:
            label.set_target_y(self.y_min + label.height / 2)
        if label.bottom > self.y_max:
            label.set_target_y(self.y_max - label.height / 2)

    def contains(self, label: LayoutLabel, tolerance: float = 1e-6) -> bool:
        return label.top >= self.y_min - tolerance and label.bottom <= self.y_max + tolerance


@dataclass(frozen=True)
class SolveReport:
    iterations: int
    converged: bool


@dataclass
class Layout:
    labels: List[LayoutLabel] = field(default_factory=list)
    reports: Dict[Side, SolveReport] = field(default_factory=dict)

    def on_side(self, side: Side) -> List[LayoutLabel]:
        return [label for label in self.labels if label.side == side]


def margin_band(media_height: float, config: OverlayConfig = DEFAULT_CONFIG) -> MarginBand:
    return MarginBand(
        y_min=-config.margin_y + BAND_INSET,
        y_max=media_height + config.margin_y - BAND_INSET,
    )


def header_lines(entity: Entity) -> List[str]:
    """Upper-cased name plus one classification line, empty lines dropped."""
    bio = entity.biometrics
    if bio is not None and bio.is_face:
        second = f"AGE: {bio.estimated_age or '?'} | {bio.gender_presentation or '?'}"
    elif entity.tracking is not None and entity.tracking.estimated_speed:
        second = f"SPEED: {entity.tracking.estimated_speed}"
    else:
        second = entity.material
    return [line for line in (entity.label.upper(), second) if line]


def solve_1d_layout(
    items: List[LayoutLabel],
    band: MarginBand,
    iterations: int = 20,
    gap: float = 10.0,
    tolerance: float = 1e-6
) -> SolveReport:
    """
    Relax one side's labels along y until no adjacent pair overlaps.

    Sorts `items` in place by anchor y and mutates each label's target.

    Returns:
        SolveReport with the number of passes run and whether the last
        pass was overlap-free
    """
    if not items:
        return SolveReport(iterations=0, converged=True)

    items.sort(key=lambda label: label.anchor[1])
    for label in items:
        band.clamp(label)

    for i in range(iterations):
        overlap_found = False
        for a, b in zip(items, items[1:]):
            dist = b.target[1] - a.target[1]
            min_sep = (a.height + b.height) / 2 + gap
            deficit = min_sep - dist
            if deficit > tolerance:
                overlap_found = True
                push = deficit / 2
                a.set_target_y(a.target[1] - push)
                b.set_target_y(b.target[1] + push)

        for label in items:
            band.clamp(label)

        if not overlap_found:
            return SolveReport(iterations=i + 1, converged=True)

    return SolveReport(iterations=iterations, converged=False)


class LayoutSolver:
    """
    Builds call-out labels for the visible entities and resolves their
    positions.

    Usage:
        solver = LayoutSolver(config)
        layout = solver.compute(visible_entities, (w, h), colors)
        for label in layout.labels:
            draw(label)
    """

    def __init__(self, config: Optional[OverlayConfig] = None):
        self.config = config or DEFAULT_CONFIG
        self.logger = logging.getLogger("LayoutSolver")

    def _clamp_to_media(self, x: float, y: float, w: float, h: float) -> Point:
        return (max(0.0, min(w, x)), max(0.0, min(h, y)))

    def build_labels(
        self,
        entities: Sequence[Entity],
        media_size: Tuple[float, float],
        colors: Optional[Dict[str, Color]] = None
    ) -> List[LayoutLabel]:
        """
        Create header and detail labels with anchors, sides and start targets.

        Args:
            entities: Visible entities (already time/detail filtered)
            media_size: Native (width, height)
            colors: Optional entity id -> color; defaults to palette order
        """
        w, h = media_size
        labels: List[LayoutLabel] = []

        for idx, entity in enumerate(entities):
            if not is_valid_box(entity.box):
                self.logger.debug(f"Skipping label for {entity.id}: invalid box {entity.box}")
                continue

            color = (colors or {}).get(entity.id, PALETTE[idx % len(PALETTE)])
            xmin, ymin, xmax, ymax = box_to_media(entity.box, w, h)
            cx = (xmin + xmax) / 2
            cy = (ymin + ymax) / 2

            if cx > w / 2:
                side = Side.RIGHT
                anchor = self._clamp_to_media(xmax, cy, w, h)
                tx = w + self.config.label_offset
                detail_tx = tx + DETAIL_OUTSET
            else:
                side = Side.LEFT
                anchor = self._clamp_to_media(xmin, cy, w, h)
                tx = -self.config.label_offset
                detail_tx = tx - DETAIL_OUTSET

            lines = header_lines(entity)
            labels.append(LayoutLabel(
                id=f"head_{entity.id}",
                text_lines=lines,
                is_header=True,
                color=color,
                anchor=anchor,
                target=(tx, anchor[1]),
                width=HEADER_WIDTH,
                height=len(lines) * FONT_HEIGHT_HEADER + LABEL_PADDING * 2,
                side=side,
            ))

            for d_idx, detail in enumerate(entity.details):
                dx, dy = yx_to_media(detail.point, w, h)
                labels.append(LayoutLabel(
                    id=f"det_{entity.id}_{d_idx}",
                    text_lines=[detail.name.upper(), detail.description],
                    is_header=False,
                    color=color,
                    anchor=self._clamp_to_media(dx, dy, w, h),
                    target=(detail_tx, anchor[1] + (d_idx + 1) * DETAIL_SPACING),
                    width=DETAIL_WIDTH,
                    height=DETAIL_HEIGHT,
                    side=side,
                ))

        return labels

    def solve(self, labels: List[LayoutLabel], media_height: float) -> Dict[Side, SolveReport]:
        """Resolve both sides independently."""
        band = margin_band(media_height, self.config)
        reports = {}
        for side in Side:
            group = [label for label in labels if label.side == side]
            report = solve_1d_layout(
                group,
                band,
                iterations=self.config.layout_iterations,
                gap=self.config.layout_gap,
                tolerance=self.config.layout_tolerance,
            )
            if not report.converged:
                self.logger.debug(
                    f"{side.value} side: {len(group)} labels still overlap after "
                    f"{report.iterations} passes"
                )
            reports[side] = report
        return reports

    def compute(
        self,
        entities: Sequence[Entity],
        media_size: Tuple[float, float],
        colors: Optional[Dict[str, Color]] = None
    ) -> Layout:
        labels = self.build_labels(entities, media_size, colors)
        reports = self.solve(labels, media_size[1])
        return Layout(labels=labels, reports=reports)
