"""
CalloutRay Interaction Controller - Pan / Pinch / Wheel Viewport State

State machine (single writer of ViewState):

    ┌──────┐  pointer-down / 1 touch   ┌─────────┐
    │ IDLE │ ────────────────────────► │ PANNING │  offset = pointer - drag_anchor
    │      │ ◄──────────────────────── │         │
    │      │   pointer-up/leave, touch-end
    │      │
    │      │  2 touches                ┌──────────┐
    │      │ ────────────────────────► │ PINCHING │  scale = s0 * d / d0 (clamped)
    │      │ ◄──────────────────────── │          │
    └──────┘   any touch-end            └──────────┘

Wheel input zooms in every state. Reset restores the default view.
After a pinch, a remaining finger does not pan until a fresh touch-down.
"""

import math
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple, Union

import cv2

from .config import DEFAULT_CONFIG, OverlayConfig

Point = Tuple[float, float]


class InteractionMode(Enum):
    IDLE = "idle"
    PANNING = "panning"
    PINCHING = "pinching"


@dataclass(frozen=True)
class ViewState:
    """Camera over the media. Read-only outside the controller."""
    scale: float = DEFAULT_CONFIG.default_scale
    offset: Point = (0.0, 0.0)
    mode: InteractionMode = InteractionMode.IDLE


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Panning:
    drag_anchor: Point


@dataclass(frozen=True)
class Pinching:
    initial_distance: float
    initial_scale: float


GestureState = Union[Idle, Panning, Pinching]

_MODES = {
    Idle: InteractionMode.IDLE,
    Panning: InteractionMode.PANNING,
    Pinching: InteractionMode.PINCHING,
}


def _distance(a: Point, b: Point) -> float:
    return math.hypot(a[0] - b[0], a[1] - b[1])


class InteractionController:
    """
    Converts pointer, touch and wheel input into ViewState.

    Usage:
        controller = InteractionController(config)
        controller.add_listener(lambda view: loop.invalidate())
        cv2.setMouseCallback(window, controller.handle_cv2_mouse)
    """

    def __init__(self, config: Optional[OverlayConfig] = None):
        self.config = config or DEFAULT_CONFIG
        self._scale = self.config.default_scale
        self._offset: Point = (0.0, 0.0)
        self._gesture: GestureState = Idle()
        self._offset_limit: Optional[Point] = None
        self._listeners: List[Callable[[ViewState], None]] = []
        self.logger = logging.getLogger("InteractionController")

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    @property
    def view(self) -> ViewState:
        return ViewState(scale=self._scale, offset=self._offset, mode=self.mode)

    @property
    def mode(self) -> InteractionMode:
        return _MODES[type(self._gesture)]

    @property
    def gesture(self) -> GestureState:
        return self._gesture

    def add_listener(self, callback: Callable[[ViewState], None]):
        """Register a callback invoked after every view change."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[ViewState], None]):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify(self):
        view = self.view
        for callback in list(self._listeners):
            callback(view)

    def set_content_size(self, width: float, height: float):
        """Bound panning to the media plus its label margins."""
        self._offset_limit = (
            width / 2 + self.config.margin_x,
            height / 2 + self.config.margin_y,
        )
        self._set_offset(self._offset)

    def _set_offset(self, offset: Point):
        x, y = offset
        if self._offset_limit is not None:
            lx, ly = self._offset_limit
            x = max(-lx, min(lx, x))
            y = max(-ly, min(ly, y))
        changed = (x, y) != self._offset
        self._offset = (x, y)
        if changed:
            self._notify()

    def _set_scale(self, scale: float):
        scale = self.config.clamp_scale(scale)
        if scale != self._scale:
            self._scale = scale
            self._notify()

    def _set_gesture(self, gesture: GestureState):
        if type(gesture) is not type(self._gesture):
            self.logger.debug(f"{self.mode.value} -> {_MODES[type(gesture)].value}")
        self._gesture = gesture

    # ------------------------------------------------------------------
    # Pointer (mouse)
    # ------------------------------------------------------------------

    def pointer_down(self, x: float, y: float):
        if isinstance(self._gesture, Idle):
            ox, oy = self._offset
            self._set_gesture(Panning(drag_anchor=(x - ox, y - oy)))

    def pointer_move(self, x: float, y: float):
        if isinstance(self._gesture, Panning):
            ax, ay = self._gesture.drag_anchor
            self._set_offset((x - ax, y - ay))

    def pointer_up(self):
        if isinstance(self._gesture, Panning):
            self._set_gesture(Idle())

    pointer_leave = pointer_up

    # ------------------------------------------------------------------
    # Touch
    # ------------------------------------------------------------------

    def touch_start(self, touches: Sequence[Point]):
        """
        Begin a touch gesture.

        Args:
            touches: All current touch points in screen pixels
        """
        if len(touches) == 1:
            x, y = touches[0]
            ox, oy = self._offset
            self._set_gesture(Panning(drag_anchor=(x - ox, y - oy)))
        elif len(touches) >= 2:
            distance = _distance(touches[0], touches[1])
            if distance > 0:
                self._set_gesture(Pinching(initial_distance=distance, initial_scale=self._scale))
            else:
                self._set_gesture(Idle())

    def touch_move(self, touches: Sequence[Point]):
        if len(touches) == 1 and isinstance(self._gesture, Panning):
            ax, ay = self._gesture.drag_anchor
            x, y = touches[0]
            self._set_offset((x - ax, y - ay))
        elif len(touches) >= 2 and isinstance(self._gesture, Pinching):
            ratio = _distance(touches[0], touches[1]) / self._gesture.initial_distance
            self._set_scale(self._gesture.initial_scale * ratio)

    def touch_end(self, touches: Sequence[Point] = ()):
        """Any lifted finger ends the gesture; remaining fingers stay inert."""
        self._set_gesture(Idle())

    touch_cancel = touch_end

    # ------------------------------------------------------------------
    # Wheel / direct zoom / reset
    # ------------------------------------------------------------------

    def wheel(self, delta_y: float):
        """Scroll zoom, positive delta_y zooms out. Works in every mode."""
        self._set_scale(self._scale - delta_y * self.config.wheel_sensitivity)

    def zoom_to(self, scale: float):
        self._set_scale(scale)

    def reset(self):
        """Restore the default scale and zero offset."""
        self._set_gesture(Idle())
        changed = self._scale != self.config.default_scale or self._offset != (0.0, 0.0)
        self._scale = self.config.default_scale
        self._offset = (0.0, 0.0)
        if changed:
            self._notify()

    # ------------------------------------------------------------------
    # OpenCV adapter
    # ------------------------------------------------------------------

    def handle_cv2_mouse(self, event, x, y, flags, param=None):
        """Callback for cv2.setMouseCallback."""
        if event == cv2.EVENT_LBUTTONDOWN:
            self.pointer_down(x, y)
        elif event == cv2.EVENT_MOUSEMOVE:
            self.pointer_move(x, y)
        elif event == cv2.EVENT_LBUTTONUP:
            self.pointer_up()
        elif event == cv2.EVENT_MOUSEWHEEL:
            # cv2 reports +120 per notch when scrolling up (zoom in)
            self.wheel(-cv2.getMouseWheelDelta(flags))
