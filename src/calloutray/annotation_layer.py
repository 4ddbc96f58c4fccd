"""
CalloutRay Annotation Layer - Frame Compositor

Draws one complete frame onto a BGR canvas:

    (a) clear canvas (display size x device pixel ratio)
    (b) build the view matrix
    (c) media frame, or a placeholder while it is not decoded
    (d) faint reference grid
    (e) live detections (bright outline + label strip)
    (f) committed entities: box, corner accents, dashed trajectory
    (g) call-out labels with channel-routed connectors
    (h) video HUD: subtitles and playback time

Everything is laid out in media space and mapped through the SAME matrix.
Stroke widths are given in screen pixels so they stay constant while
zooming; label boxes and their text scale with the media.
"""

import math
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import cv2

from .config import DEFAULT_CONFIG, OverlayConfig
from .connectors import route_connector
from .entities import Entity, LiveDetection, SubtitleSegment, format_timestamp
from .interaction import ViewState
from .layout import (
    FONT_HEIGHT_DETAIL,
    FONT_HEIGHT_HEADER,
    LABEL_PADDING,
    PALETTE,
    Layout,
    LayoutLabel,
)
from .transform import apply_matrix, box_to_media, is_valid_box, to_pixels, view_matrix, yx_to_media

Color = Tuple[int, int, int]

# Pixel height of cv2.FONT_HERSHEY_SIMPLEX text at fontScale=1.0
HERSHEY_CAP_HEIGHT = 22.0
MIN_TEXT_PX = 4.0


@dataclass
class ColorScheme:
    """Colors used by the compositor (BGR)."""
    canvas: Color = (255, 255, 255)
    placeholder: Color = (0, 0, 0)
    placeholder_text: Color = (255, 255, 255)
    grid: Color = (0, 0, 0)
    live: Color = (94, 197, 34)               # Bright green
    live_text: Color = (255, 255, 255)
    header_text: Color = (255, 255, 255)
    header_subtext: Color = (235, 235, 235)
    detail_fill: Color = (255, 255, 255)
    detail_text: Color = (59, 41, 30)         # Slate 800
    hud_text: Color = (40, 40, 40)
    hud_background: Color = (245, 245, 245)
    subtitle_background: Color = (0, 0, 0)


@dataclass
class FrameInput:
    """Everything one frame needs, already filtered and solved."""
    media_frame: Optional[np.ndarray]
    media_size: Tuple[int, int]
    view: ViewState
    display_size: Tuple[int, int]
    dpr: float = 1.0
    is_video: bool = False
    current_time: float = 0.0
    entities: Sequence[Entity] = ()
    colors: Dict[str, Color] = field(default_factory=dict)
    live_detections: Sequence[LiveDetection] = ()
    layout: Optional[Layout] = None
    subtitles: Sequence[SubtitleSegment] = ()


def draw_dashed_polyline(
    canvas: np.ndarray,
    points: Sequence[Tuple[float, float]],
    color: Color,
    thickness: int = 1,
    dash: float = 5.0,
    gap: float = 5.0
):
    """Draw a dashed polyline; the dash pattern continues across vertices."""
    period = dash + gap
    travelled = 0.0
    for (x0, y0), (x1, y1) in zip(points, points[1:]):
        length = math.hypot(x1 - x0, y1 - y0)
        if length == 0:
            continue
        pos = 0.0
        while pos < length:
            phase = travelled % period
            if phase < dash:
                step = min(dash - phase, length - pos)
                a, b = pos / length, (pos + step) / length
                p = (int(round(x0 + (x1 - x0) * a)), int(round(y0 + (y1 - y0) * a)))
                q = (int(round(x0 + (x1 - x0) * b)), int(round(y0 + (y1 - y0) * b)))
                cv2.line(canvas, p, q, color, thickness, cv2.LINE_AA)
            else:
                step = min(period - phase, length - pos)
            pos += step
            travelled += step


class OverlayRenderer:
    """
    Composites media, overlays and call-outs into a single canvas.

    Features:
    - One view matrix for background, overlays and hit-testing
    - Placeholder frame while media is not ready
    - Zoom-independent stroke widths
    - Malformed boxes skipped, never fatal
    """

    def __init__(
        self,
        config: Optional[OverlayConfig] = None,
        colors: Optional[ColorScheme] = None,
        font: int = cv2.FONT_HERSHEY_SIMPLEX
    ):
        self.config = config or DEFAULT_CONFIG
        self.colors = colors or ColorScheme()
        self.font = font
        self.logger = logging.getLogger("OverlayRenderer")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _px(width: float, dpr: float) -> int:
        """Screen-pixel stroke width, at least 1."""
        return max(1, int(round(width * dpr)))

    def _font_scale(self, pixel_height: float) -> float:
        return pixel_height / HERSHEY_CAP_HEIGHT

    def _fit_text(self, text: str, font_scale: float, thickness: int, max_width: float) -> str:
        """Trim text with an ellipsis until it fits max_width pixels."""
        (w, _), _ = cv2.getTextSize(text, self.font, font_scale, thickness)
        if w <= max_width:
            return text
        while text:
            text = text[:-1]
            (w, _), _ = cv2.getTextSize(text + "...", self.font, font_scale, thickness)
            if w <= max_width:
                return text + "..."
        return ""

    # ------------------------------------------------------------------
    # (c) media / placeholder
    # ------------------------------------------------------------------

    def _draw_media(self, canvas: np.ndarray, frame: np.ndarray, matrix: np.ndarray, media_size):
        fh, fw = frame.shape[:2]
        mw, mh = media_size
        frame_matrix = matrix.copy()
        if (fw, fh) != (mw, mh) and fw > 0 and fh > 0:
            # Stretch the decoded frame over the native media rectangle
            frame_matrix[:, 0] *= mw / fw
            frame_matrix[:, 1] *= mh / fh
        if frame.ndim == 2:
            frame = cv2.cvtColor(frame, cv2.COLOR_GRAY2BGR)
        cv2.warpAffine(
            frame,
            frame_matrix,
            (canvas.shape[1], canvas.shape[0]),
            dst=canvas,
            flags=cv2.INTER_LINEAR,
            borderMode=cv2.BORDER_TRANSPARENT,
        )

    def _draw_placeholder(self, canvas: np.ndarray, matrix: np.ndarray, media_size, is_video: bool, dpr: float):
        mw, mh = media_size
        (x0, y0), (x1, y1) = to_pixels(matrix, [(0, 0), (mw, mh)])
        cv2.rectangle(canvas, (x0, y0), (x1, y1), self.colors.placeholder, -1)

        text = "VIDEO LOADING..." if is_video else "LOADING..."
        font_scale = self._font_scale(14 * dpr)
        thickness = self._px(1, dpr)
        (tw, th), _ = cv2.getTextSize(text, self.font, font_scale, thickness)
        cx, cy = (x0 + x1) // 2, (y0 + y1) // 2
        cv2.putText(
            canvas, text, (cx - tw // 2, cy + th // 2),
            self.font, font_scale, self.colors.placeholder_text, thickness, cv2.LINE_AA
        )

    # ------------------------------------------------------------------
    # (d) grid
    # ------------------------------------------------------------------

    def _draw_grid(self, canvas: np.ndarray, matrix: np.ndarray, media_size):
        spacing = self.config.grid_spacing
        if spacing <= 0 or spacing * matrix[0, 0] < 2:
            return  # Too dense to be a useful reference
        mw, mh = media_size
        overlay = canvas.copy()
        for x in range(0, int(mw) + 1, spacing):
            p, q = to_pixels(matrix, [(x, 0), (x, mh)])
            cv2.line(overlay, p, q, self.colors.grid, 1)
        for y in range(0, int(mh) + 1, spacing):
            p, q = to_pixels(matrix, [(0, y), (mw, y)])
            cv2.line(overlay, p, q, self.colors.grid, 1)
        opacity = self.config.grid_opacity
        cv2.addWeighted(overlay, opacity, canvas, 1 - opacity, 0, canvas)

    # ------------------------------------------------------------------
    # (e) live detections
    # ------------------------------------------------------------------

    def _draw_live_detection(self, canvas, det: LiveDetection, matrix, media_size, view: ViewState, dpr):
        if not is_valid_box(det.box):
            self.logger.debug(f"Skipping live detection with invalid box: {det.box}")
            return
        xmin, ymin, xmax, ymax = box_to_media(det.box, *media_size)
        (x0, y0), (x1, y1) = to_pixels(matrix, [(xmin, ymin), (xmax, ymax)])
        color = self.colors.live
        cv2.rectangle(canvas, (x0, y0), (x1, y1), color, self._px(4, dpr), cv2.LINE_AA)

        strip_h = int(round(25 * dpr))
        strip_w = int(round(min(200.0, xmax - xmin) * view.scale * dpr))
        cv2.rectangle(canvas, (x0, y0 - strip_h), (x0 + strip_w, y0), color, -1)

        font_scale = self._font_scale(11 * dpr)
        thickness = self._px(1.5, dpr)
        text = self._fit_text(det.label.upper(), font_scale, thickness, strip_w - 10 * dpr)
        if text:
            (_, th), _ = cv2.getTextSize(text, self.font, font_scale, thickness)
            cv2.putText(
                canvas, text, (x0 + int(5 * dpr), y0 - strip_h // 2 + th // 2),
                self.font, font_scale, self.colors.live_text, thickness, cv2.LINE_AA
            )

    # ------------------------------------------------------------------
    # (f) committed entities
    # ------------------------------------------------------------------

    def _draw_entity(self, canvas, entity: Entity, color: Color, matrix, media_size, dpr):
        if not is_valid_box(entity.box):
            self.logger.debug(f"Skipping entity {entity.id}: invalid box {entity.box}")
            return
        mw, mh = media_size
        xmin, ymin, xmax, ymax = box_to_media(entity.box, mw, mh)
        (x0, y0), (x1, y1) = to_pixels(matrix, [(xmin, ymin), (xmax, ymax)])
        cv2.rectangle(canvas, (x0, y0), (x1, y1), color, self._px(3, dpr), cv2.LINE_AA)

        # Corner accents
        n = int(round(min(40 * dpr, (x1 - x0) / 2, (y1 - y0) / 2)))
        accent = self._px(6, dpr)
        corners = [
            [(x0, y0 + n), (x0, y0), (x0 + n, y0)],
            [(x1 - n, y0), (x1, y0), (x1, y0 + n)],
            [(x0, y1 - n), (x0, y1), (x0 + n, y1)],
            [(x1 - n, y1), (x1, y1), (x1, y1 - n)],
        ]
        if n > 0:
            cv2.polylines(
                canvas, [np.array(c, dtype=np.int32) for c in corners],
                False, color, accent, cv2.LINE_AA
            )

        trajectory = entity.trajectory
        if len(trajectory) > 1:
            points = [apply_matrix(matrix, *yx_to_media(p, mw, mh)) for p in trajectory]
            draw_dashed_polyline(
                canvas, points, color, self._px(2, dpr), dash=5 * dpr, gap=5 * dpr
            )

    # ------------------------------------------------------------------
    # (g) labels and connectors
    # ------------------------------------------------------------------

    def _draw_label(self, canvas, label: LayoutLabel, matrix, media_size, dpr):
        connector = route_connector(label, media_size[0], self.config)
        points = to_pixels(matrix, connector.points)
        cv2.polylines(
            canvas, [np.array(points, dtype=np.int32)], False,
            label.color, self._px(1, dpr), cv2.LINE_AA
        )
        cv2.circle(canvas, points[0], self._px(4, dpr), label.color, -1, cv2.LINE_AA)
        cv2.circle(canvas, points[1], self._px(2, dpr), label.color, -1, cv2.LINE_AA)

        tx, ty = label.target
        box_x, box_y = tx - label.width / 2, ty - label.height / 2
        (x0, y0), (x1, y1) = to_pixels(matrix, [(box_x, box_y), (box_x + label.width, box_y + label.height)])
        fill = label.color if label.is_header else self.colors.detail_fill
        cv2.rectangle(canvas, (x0, y0), (x1, y1), fill, -1)
        cv2.rectangle(canvas, (x0, y0), (x1, y1), label.color, self._px(1, dpr), cv2.LINE_AA)

        # Text flows top-down from the padded top edge
        k = matrix[0, 0]
        line_height = FONT_HEIGHT_HEADER if label.is_header else FONT_HEIGHT_DETAIL
        max_width = (label.width - 2 * LABEL_PADDING) * k
        cursor_y = box_y + LABEL_PADDING
        for i, line in enumerate(label.text_lines):
            if label.is_header:
                size, bold = (14, True) if i == 0 else (10, False)
                color = self.colors.header_text if i == 0 else self.colors.header_subtext
            else:
                size, bold = (11, True) if i == 0 else (9, False)
                color = self.colors.detail_text

            pixel_height = size * k
            if pixel_height >= MIN_TEXT_PX and line:
                font_scale = self._font_scale(pixel_height)
                thickness = 2 if bold and pixel_height >= 10 else 1
                text = self._fit_text(line, font_scale, thickness, max_width)
                (_, th), _ = cv2.getTextSize(text, self.font, font_scale, thickness)
                ox, oy = apply_matrix(matrix, box_x + LABEL_PADDING, cursor_y)
                origin = (int(round(ox)), int(round(oy + th / 2)))
                cv2.putText(canvas, text, origin, self.font, font_scale, color, thickness, cv2.LINE_AA)
            cursor_y += line_height

    # ------------------------------------------------------------------
    # (h) HUD
    # ------------------------------------------------------------------

    def _draw_hud(self, canvas, current_time: float, subtitles: Sequence[SubtitleSegment], dpr):
        h, w = canvas.shape[:2]
        font_scale = self._font_scale(12 * dpr)
        thickness = self._px(1, dpr)
        pad = int(round(8 * dpr))

        badge = f"T: {format_timestamp(current_time)}"
        (tw, th), _ = cv2.getTextSize(badge, self.font, font_scale, thickness)
        x0, y0 = int(16 * dpr), int(16 * dpr)
        cv2.rectangle(canvas, (x0, y0), (x0 + tw + 2 * pad, y0 + th + 2 * pad), self.colors.hud_background, -1)
        cv2.rectangle(canvas, (x0, y0), (x0 + tw + 2 * pad, y0 + th + 2 * pad), (180, 180, 180), 1)
        cv2.putText(canvas, badge, (x0 + pad, y0 + pad + th), self.font, font_scale,
                    self.colors.hud_text, thickness, cv2.LINE_AA)

        y = h - int(32 * dpr)
        for segment in reversed(list(subtitles)):
            text = self._fit_text(segment.text, font_scale, thickness, w - 4 * pad)
            if not text:
                continue
            (tw, th), _ = cv2.getTextSize(text, self.font, font_scale, thickness)
            x = (w - tw) // 2
            top_left = (x - pad, y - th - pad)
            bottom_right = (x + tw + pad, y + pad)
            overlay = canvas.copy()
            cv2.rectangle(overlay, top_left, bottom_right, self.colors.subtitle_background, -1)
            cv2.addWeighted(overlay, 0.7, canvas, 0.3, 0, canvas)
            cv2.putText(canvas, text, (x, y), self.font, font_scale, (255, 255, 255), thickness, cv2.LINE_AA)
            y -= th + 3 * pad

    # ------------------------------------------------------------------
    # Frame
    # ------------------------------------------------------------------

    def render(self, frame: FrameInput, canvas: Optional[np.ndarray] = None) -> np.ndarray:
        """
        Composite one frame.

        Args:
            frame: Filtered entities, fresh detections, solved layout, view
            canvas: Optional buffer to reuse when it already has the right size

        Returns:
            BGR canvas of display_size * dpr pixels
        """
        dpr = frame.dpr if frame.dpr > 0 else 1.0
        width = max(1, int(round(frame.display_size[0] * dpr)))
        height = max(1, int(round(frame.display_size[1] * dpr)))

        # (a)
        if canvas is None or canvas.shape[:2] != (height, width):
            canvas = np.empty((height, width, 3), dtype=np.uint8)
        canvas[:] = self.colors.canvas

        # (b)
        matrix = view_matrix(frame.view, frame.display_size, frame.media_size, dpr)

        # (c)
        if frame.media_frame is not None and frame.media_frame.size > 0:
            self._draw_media(canvas, frame.media_frame, matrix, frame.media_size)
        else:
            self._draw_placeholder(canvas, matrix, frame.media_size, frame.is_video, dpr)

        # (d)
        self._draw_grid(canvas, matrix, frame.media_size)

        # (e)
        for det in frame.live_detections:
            self._draw_live_detection(canvas, det, matrix, frame.media_size, frame.view, dpr)

        # (f) + (g)
        if not frame.live_detections:
            for idx, entity in enumerate(frame.entities):
                color = frame.colors.get(entity.id, PALETTE[idx % len(PALETTE)])
                self._draw_entity(canvas, entity, color, matrix, frame.media_size, dpr)
            if frame.layout is not None:
                for label in frame.layout.labels:
                    self._draw_label(canvas, label, matrix, frame.media_size, dpr)

        # (h)
        if frame.is_video:
            self._draw_hud(canvas, frame.current_time, frame.subtitles, dpr)

        return canvas
