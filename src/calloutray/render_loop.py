"""
CalloutRay Render Loop - Frame Scheduling and Pipeline Wiring

Per frame, data flows one way:

    entities + playback time
        │
        ▼
    TemporalFilter ──► visible entities ──► LayoutSolver ──► labels
        │                                                     │
    live detections ──► staleness filter                      │
        │                                                     ▼
        └──────────────► OverlayRenderer ◄── ViewState (InteractionController)

Scheduling mirrors a browser's animation-frame API: callbacks are one-shot
and must re-register to keep drawing. Still images render once per state
change; video re-registers every frame. Every registration is released on
stop(), on media change and when leaving the running() context, so no
stale loop survives teardown.
"""

import time
import logging
import itertools
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from .annotation_layer import FrameInput, OverlayRenderer
from .config import DEFAULT_CONFIG, OverlayConfig
from .entities import AnalysisResult, LiveDetection
from .interaction import InteractionController
from .layout import PALETTE, Layout, LayoutSolver
from .temporal import TemporalFilter
from .video_pipeline import MediaSampler

FrameCallback = Callable[[float], None]


class FrameHandle:
    """Registration for a single upcoming display refresh."""

    def __init__(self, scheduler: "FrameScheduler", handle_id: int):
        self._scheduler = scheduler
        self.id = handle_id

    @property
    def active(self) -> bool:
        return self._scheduler.is_pending(self)

    def cancel(self):
        self._scheduler.cancel(self)


class FrameScheduler:
    """
    One-shot per-refresh callback queue, serviced by the host's tick().

    Usage:
        scheduler = FrameScheduler()
        handle = scheduler.request_frame(draw)
        while running:
            scheduler.tick()
            cv2.waitKey(1)
    """

    def __init__(self, clock: Callable[[], float] = time.perf_counter):
        self._clock = clock
        self._ids = itertools.count(1)
        self._pending: Dict[int, FrameCallback] = {}

    def request_frame(self, callback: FrameCallback) -> FrameHandle:
        handle = FrameHandle(self, next(self._ids))
        self._pending[handle.id] = callback
        return handle

    def cancel(self, handle: Optional[FrameHandle]):
        if handle is not None:
            self._pending.pop(handle.id, None)

    def is_pending(self, handle: FrameHandle) -> bool:
        return handle.id in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def tick(self, now: Optional[float] = None) -> int:
        """
        Run the callbacks registered before this tick.

        Callbacks registered while ticking run on the next tick.

        Returns:
            Number of callbacks run
        """
        if not self._pending:
            return 0
        timestamp = self._clock() if now is None else now
        due, self._pending = self._pending, {}
        for callback in due.values():
            callback(timestamp)
        return len(due)


class RenderLoop:
    """
    Drives the overlay pipeline from a FrameScheduler.

    Attributes:
        last_canvas: Most recent composited frame (for display/snapshot)
        frames_rendered: Counter, handy for tests and HUDs
    """

    def __init__(
        self,
        scheduler: FrameScheduler,
        controller: InteractionController,
        renderer: Optional[OverlayRenderer] = None,
        config: Optional[OverlayConfig] = None,
        display_size: Tuple[int, int] = (1280, 720),
        dpr: float = 1.0,
        on_frame: Optional[Callable[[np.ndarray], None]] = None
    ):
        self.config = config or DEFAULT_CONFIG
        self.scheduler = scheduler
        self.controller = controller
        self.renderer = renderer or OverlayRenderer(self.config)
        self.temporal = TemporalFilter(self.config)
        self.solver = LayoutSolver(self.config)
        self.on_frame = on_frame

        self.display_size = display_size
        self.dpr = dpr
        self.detail_level = self.config.detail_level

        self._media: Optional[MediaSampler] = None
        self._analysis = AnalysisResult()
        self._analysis_version = 0
        self._colors: Dict[str, Tuple[int, int, int]] = {}
        self._live_source: Callable[[], Sequence[LiveDetection]] = lambda: ()
        self._live_seen = None

        self._layout_key = None
        self._layout: Optional[Layout] = None

        self._handle: Optional[FrameHandle] = None
        self._running = False
        self._media_ready = False
        self.last_canvas: Optional[np.ndarray] = None
        self.frames_rendered = 0

        self.logger = logging.getLogger("RenderLoop")
        self.controller.add_listener(self._on_view_change)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    @property
    def media(self) -> Optional[MediaSampler]:
        return self._media

    @property
    def is_video(self) -> bool:
        return self._media is not None and self._media.is_video

    @property
    def analysis(self) -> AnalysisResult:
        return self._analysis

    def set_media(self, media: Optional[MediaSampler]):
        """Swap the media source; the old frame registration is released first."""
        self._cancel_registration()
        self._media = media
        self._layout_key = None
        if media is not None:
            w, h = media.dimensions
            self.controller.set_content_size(w, h)
            self.logger.info(
                f"Media set: {w}x{h} ({'video' if media.is_video else 'image'})"
            )
        self.invalidate()

    def set_analysis(self, result: AnalysisResult):
        """Replace the whole entity set with a new analysis."""
        self._analysis = result
        self._analysis_version += 1
        self._colors = {
            entity.id: PALETTE[i % len(PALETTE)]
            for i, entity in enumerate(result.entities)
        }
        self.logger.info(f"Analysis set: {len(result.entities)} entities")
        self.invalidate()

    def set_live_source(self, source: Optional[Callable[[], Sequence[LiveDetection]]]):
        """Callable returning the latest live detections (read every frame)."""
        self._live_source = source or (lambda: ())
        self.invalidate()

    def refresh_live(self):
        """
        Redraw if the live source published new detections since the last frame.

        Video redraws every frame anyway; a still image only redraws on demand,
        so the host calls this once per tick.
        """
        if self._live_source() is not self._live_seen:
            self.invalidate()

    def set_detail_level(self, level: int):
        level = max(0, min(100, int(level)))
        if level != self.detail_level:
            self.detail_level = level
            self.invalidate()

    def set_display_size(self, display_size: Tuple[int, int], dpr: float = 1.0):
        if display_size != self.display_size or dpr != self.dpr:
            self.display_size = display_size
            self.dpr = dpr
            self.invalidate()

    def _on_view_change(self, view):
        self.invalidate()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def has_pending_frame(self) -> bool:
        return self._handle is not None and self._handle.active

    def _schedule(self):
        if self._running and not self.has_pending_frame:
            self._handle = self.scheduler.request_frame(self._on_frame)

    def _cancel_registration(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def invalidate(self):
        """Request a redraw on the next refresh (state changed)."""
        self._schedule()

    def start(self):
        if self._running:
            return
        self._running = True
        self.logger.info("Render loop started")
        self._schedule()

    def stop(self):
        self._cancel_registration()
        if self._running:
            self._running = False
            self.logger.info("Render loop stopped")

    def close(self):
        """Stop and detach from the controller."""
        self.stop()
        self.controller.remove_listener(self._on_view_change)

    @contextmanager
    def running(self):
        """Run the loop for the duration of a with-block, always releasing it."""
        self.start()
        try:
            yield self
        finally:
            self.stop()

    def _on_frame(self, timestamp: float):
        self._handle = None
        if not self._running:
            return
        self.render_now()
        if self.is_video or not self._media_ready:
            # Video draws continuously; stills retry until the image is ready
            self._schedule()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _compute_layout(self, visible, media_size) -> Layout:
        key = (
            self._analysis_version,
            tuple((e.id, len(e.details)) for e in visible),
            media_size,
        )
        if key != self._layout_key or self._layout is None:
            self._layout = self.solver.compute(visible, media_size, self._colors)
            self._layout_key = key
        return self._layout

    def build_frame(self) -> FrameInput:
        """Run filter + layout for the current instant."""
        media = self._media
        media_frame = media.read_frame() if media is not None else None
        media_size = media.dimensions if media is not None else (1000, 1000)
        is_video = media is not None and media.is_video
        t = media.current_time if media is not None else 0.0
        self._media_ready = media_frame is not None

        visible = self.temporal.visible_entities(self._analysis.entities, t, is_video)
        visible = self.temporal.apply_detail_budget(visible, self.detail_level)
        self._live_seen = self._live_source()
        live = self.temporal.fresh_detections(self._live_seen, t, is_video)

        return FrameInput(
            media_frame=media_frame,
            media_size=media_size,
            view=self.controller.view,
            display_size=self.display_size,
            dpr=self.dpr,
            is_video=is_video,
            current_time=t,
            entities=visible,
            colors=self._colors,
            live_detections=live,
            layout=self._compute_layout(visible, media_size),
            subtitles=self.temporal.active_subtitles(self._analysis.subtitles, t, is_video),
        )

    def render_now(self) -> Optional[np.ndarray]:
        """Composite one frame immediately, regardless of scheduling."""
        frame = self.build_frame()
        self.last_canvas = self.renderer.render(frame, canvas=self.last_canvas)
        self.frames_rendered += 1
        if self.on_frame is not None:
            self.on_frame(self.last_canvas)
        return self.last_canvas

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    def snapshot(self) -> Optional[np.ndarray]:
        """Copy of the last composited frame."""
        return None if self.last_canvas is None else self.last_canvas.copy()

    def save_snapshot(self, path: Union[str, Path]) -> bool:
        image = self.snapshot()
        if image is None:
            self.logger.warning("No frame rendered yet, snapshot skipped")
            return False
        ok = cv2.imwrite(str(path), image)
        if ok:
            self.logger.info(f"Snapshot saved: {path}")
        else:
            self.logger.error(f"Failed to write snapshot: {path}")
        return ok
