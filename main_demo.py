#!/usr/bin/env python3
"""
CalloutRay Engine - Overlay Viewer Demo

Shows an image, video or camera feed with AI annotations drawn as call-out
labels in the margins:
1. Loads an analysis JSON file, or asks OpenAI to analyze the first frame
2. Entities flash around their timestamps while a video plays
3. Optional live detection stream (boxes drop out when they go stale)
4. Drag to pan, scroll to zoom, labels stay attached to their objects

Usage:
    python main_demo.py --source clip.mp4 --analysis clip.json

Controls:
    - LEFT DRAG: Pan
    - WHEEL: Zoom
    - R: Reset view
    - + / -: Raise / lower detail level
    - SPACE / P: Pause/resume playback (video files only)
    - A: Re-run AI analysis on the current frame
    - L: Toggle live detection
    - S: Save snapshot
    - Q/ESC: Quit
"""

import sys
import time
import logging
import argparse
import threading
from dataclasses import replace
from typing import Optional

import cv2  # pyright: ignore[reportMissingImports]
import numpy as np  # pyright: ignore[reportMissingImports]

# Add src to path
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from calloutray.config import OverlayConfig
from calloutray.entities import AnalysisFormatError, AnalysisResult, load_analysis_file
from calloutray.interaction import InteractionController
from calloutray.render_loop import FrameScheduler, RenderLoop
from calloutray.video_pipeline import MediaSampler, VideoFileSampler, open_media
from calloutray.ai_analyzer import AnalysisClient, LiveDetectionPoller

DETAIL_STEP = 10


class CalloutRayDemo:
    """
    Interactive viewer for the CalloutRay overlay engine.
    """

    WINDOW_NAME = "CalloutRay Viewer"

    def __init__(
            self,
            source: int | str = 0,
            analysis_path: Optional[str] = None,
            analyze: bool = False,
            live: bool = False,
            display_size: tuple = (1280, 720),
            config: Optional[OverlayConfig] = None,
            loop: bool = True
    ):
        """
        Initialize demo.

        Args:
            source: Camera index, video file or image path
            analysis_path: Pre-computed analysis JSON
            analyze: Request an AI analysis of the first frame
            live: Start the live detection poller
            display_size: Initial window size (width, height)
            config: Engine constants (defaults to environment overrides)
            loop: Loop video files
        """
        self.source = source
        self.analysis_path = analysis_path
        self.analyze = analyze
        self.live = live
        self.display_size = display_size
        self.config = config or OverlayConfig.from_env()
        self.loop = loop

        # Components
        self.media: Optional[MediaSampler] = None
        self.controller = InteractionController(self.config)
        self.scheduler = FrameScheduler()
        self.render_loop: Optional[RenderLoop] = None
        self.ai_client = AnalysisClient()
        self.poller: Optional[LiveDetectionPoller] = None

        # State
        self._running = False
        self._analysis_lock = threading.Lock()
        self._pending_analysis: Optional[AnalysisResult] = None
        self._analysis_in_flight = False
        self._snapshot_index = 0

        self.logger = logging.getLogger("CalloutRayDemo")

    def _show(self, canvas: np.ndarray):
        cv2.imshow(self.WINDOW_NAME, canvas)

    def _request_analysis(self):
        """Analyze the current frame in a worker thread."""
        if self._analysis_in_flight:
            self.logger.info("Analysis already running")
            return
        if not self.ai_client.is_available():
            self.logger.warning(f"AI analysis unavailable: {self.ai_client.status_message}")
            return

        frame, _ = self.media.sample() if self.media else (None, 0.0)
        if frame is None:
            self.logger.warning("No frame to analyze yet")
            return

        detail_level = self.render_loop.detail_level
        self._analysis_in_flight = True
        self.logger.info("Analyzing frame...")

        def worker():
            try:
                result = self.ai_client.analyze_frame(frame, detail_level)
            except AnalysisFormatError as e:
                self.logger.error(f"Analysis failed: {e}")
                return
            except Exception as e:
                self.logger.error(f"Analysis request failed: {e}")
                return
            finally:
                self._analysis_in_flight = False
            with self._analysis_lock:
                self._pending_analysis = result

        threading.Thread(target=worker, daemon=True).start()

    def _apply_pending_analysis(self):
        # The render loop is single-threaded; results are handed over here
        with self._analysis_lock:
            result, self._pending_analysis = self._pending_analysis, None
        if result is not None:
            self.render_loop.set_analysis(result)

    def _toggle_live(self):
        if self.poller is None:
            # Polls only while media.is_active, so a paused video costs no requests
            self.poller = LiveDetectionPoller(self.ai_client, self.media)
        if not self.poller.is_running:
            self.poller.start()
            self.render_loop.set_live_source(self.poller.latest)
        else:
            self.poller.stop()
            self.poller.clear()
            self.render_loop.set_live_source(None)

    def _toggle_pause(self):
        if isinstance(self.media, VideoFileSampler):
            self.media.toggle()
            self.logger.info("Playback resumed" if self.media.is_playing else "Playback paused")
            self.render_loop.invalidate()

    def _save_snapshot(self):
        self._snapshot_index += 1
        path = Path.cwd() / f"calloutray_snapshot_{self._snapshot_index:03d}.png"
        self.render_loop.save_snapshot(path)

    def _handle_key(self, key: int):
        if key == 255:
            return
        if key == ord('q') or key == 27:
            self._running = False
        elif key == ord('r'):
            self.controller.reset()
        elif key in (ord('+'), ord('=')):
            self.render_loop.set_detail_level(self.render_loop.detail_level + DETAIL_STEP)
            self.logger.info(f"Detail level: {self.render_loop.detail_level}")
        elif key in (ord('-'), ord('_')):
            self.render_loop.set_detail_level(self.render_loop.detail_level - DETAIL_STEP)
            self.logger.info(f"Detail level: {self.render_loop.detail_level}")
        elif key in (ord(' '), ord('p'), ord('P')):
            self._toggle_pause()
        elif key == ord('a'):
            self._request_analysis()
        elif key == ord('l'):
            self._toggle_live()
        elif key == ord('s'):
            self._save_snapshot()

    def _sync_window_size(self):
        try:
            _, _, w, h = cv2.getWindowImageRect(self.WINDOW_NAME)
        except cv2.error:
            return
        if w > 0 and h > 0:
            self.render_loop.set_display_size((w, h))

    def run(self):
        """Run the demo."""
        self.logger.info("Starting CalloutRay Demo...")

        self.media = open_media(self.source, loop=self.loop)
        if self.media is None:
            self.logger.error(f"Failed to open media source: {self.source}")
            return
        if isinstance(self.media, VideoFileSampler):
            self.media.play()

        self.render_loop = RenderLoop(
            self.scheduler,
            self.controller,
            config=self.config,
            display_size=self.display_size,
            on_frame=self._show,
        )
        self.render_loop.set_media(self.media)

        if self.analysis_path:
            try:
                self.render_loop.set_analysis(load_analysis_file(self.analysis_path))
            except (OSError, AnalysisFormatError) as e:
                self.logger.error(f"Could not load analysis {self.analysis_path}: {e}")

        # Setup window and mouse callback
        cv2.namedWindow(self.WINDOW_NAME, cv2.WINDOW_NORMAL)
        cv2.resizeWindow(self.WINDOW_NAME, *self.display_size)
        cv2.setMouseCallback(self.WINDOW_NAME, self.controller.handle_cv2_mouse)

        if self.analyze:
            self._request_analysis()
        if self.live:
            self._toggle_live()

        self._running = True
        self.logger.info("Viewer running. Drag to pan, scroll to zoom.")

        try:
            with self.render_loop.running():
                while self._running:
                    self._apply_pending_analysis()
                    self.render_loop.refresh_live()
                    self._sync_window_size()
                    if self.scheduler.tick() == 0:
                        time.sleep(0.005)

                    key = cv2.waitKey(1) & 0xFF
                    self._handle_key(key)

                    if cv2.getWindowProperty(self.WINDOW_NAME, cv2.WND_PROP_VISIBLE) < 1:
                        self._running = False

        except KeyboardInterrupt:
            self.logger.info("Interrupted by user")
        finally:
            if self.poller is not None:
                self.poller.stop()
            self.render_loop.close()
            self.media.release()
            cv2.destroyAllWindows()
            self.logger.info("Demo stopped.")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="CalloutRay Annotation Overlay Viewer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Controls:
  LEFT DRAG    Pan
  WHEEL        Zoom
  R            Reset view
  + / -        Raise / lower detail level
  SPACE / P    Pause/resume playback (video files only)
  A            Re-run AI analysis on the current frame
  L            Toggle live detection
  S            Save snapshot
  Q/ESC        Quit

AI Setup:
  Set OPENAI_API_KEY environment variable (or put it in .env):
    export OPENAI_API_KEY=your_key_here

Engine tuning (optional, also read from .env):
  CALLOUTRAY_VISIBILITY_WINDOW=0.6
  CALLOUTRAY_STALENESS_BOUND=1.2

Examples:
  python main_demo.py --source photo.jpg --analysis photo.json
  python main_demo.py --source clip.mp4 --analyze
  python main_demo.py --source camera --live
        """
    )

    parser.add_argument(
        "--source", "-s",
        default=0,
        help="Media source: camera index (0, 1, ...), video file or image path"
    )
    parser.add_argument(
        "--analysis",
        default=None,
        help="Analysis JSON file to overlay"
    )
    parser.add_argument(
        "--analyze",
        action="store_true",
        help="Ask OpenAI to analyze the first frame"
    )
    parser.add_argument(
        "--live",
        action="store_true",
        help="Start live detection polling"
    )
    parser.add_argument(
        "--detail-level",
        type=int,
        default=None,
        help="Initial detail level (0-100)"
    )
    parser.add_argument(
        "--display", "-d",
        type=str,
        default="1280x720",
        help="Window size as WxH (e.g., 1280x720)"
    )
    parser.add_argument(
        "--no-loop",
        action="store_true",
        help="Stop video files at the end instead of looping"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level"
    )

    args = parser.parse_args()

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Parse source (supports: camera, 0, 1, path/to/media)
    source_arg = args.source
    if isinstance(source_arg, str) and source_arg.lower() == "camera":
        source = 0  # Default camera
    else:
        try:
            source = int(source_arg)
        except ValueError:
            source = str(Path(source_arg).expanduser())

    # Parse display size
    try:
        w, h = args.display.lower().split('x')
        display_size = (int(w), int(h))
    except ValueError:
        print(f"Invalid display size format: {args.display}")
        sys.exit(1)

    config = OverlayConfig.from_env()
    if args.detail_level is not None:
        config = replace(config, detail_level=max(0, min(100, args.detail_level)))

    # Print banner
    print("\n" + "=" * 60)
    print("  CalloutRay Annotation Overlay")
    print("=" * 60)
    print(f"  Source: {source}")
    print(f"  Analysis: {args.analysis or ('AI' if args.analyze else 'none')}")
    print(f"  Live detection: {'Enabled' if args.live else 'Disabled'}")
    print(f"  Detail level: {config.detail_level}")
    print("=" * 60)
    print("\n  Drag to pan, scroll to zoom, R to reset.\n")

    # Run demo
    demo = CalloutRayDemo(
        source=source,
        analysis_path=args.analysis,
        analyze=args.analyze,
        live=args.live,
        display_size=display_size,
        config=config,
        loop=not args.no_loop
    )
    demo.run()


if __name__ == "__main__":
    main()
