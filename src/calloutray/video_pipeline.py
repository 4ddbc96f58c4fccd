"""
CalloutRay Video Pipeline - Media Samplers

A MediaSampler hides where pixels come from. The render loop only asks:

- is this a video (time-synchronized annotations) or a still image?
- what are the native dimensions?
- what is the current playback time?
- give me the current frame (or None while it is not decoded yet)

The render thread pulls frames every tick while the live detection
poller samples from its own thread. Samplers that own a capture guard it
with a lock, and sample() hands out a private copy together with the
playback time it belongs to.
"""

import time
import logging
import platform
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

import cv2
import numpy as np

# Dimensions assumed until the media reports its own
DEFAULT_DIMENSIONS = (1000, 1000)

VIDEO_EXTENSIONS = {
    ".mp4", ".mov", ".avi", ".mkv", ".m4v", ".wmv", ".webm", ".mpeg", ".mpg"
}


class MediaSampler(ABC):
    """Abstract source of the background frame."""

    is_video: bool = False
    is_live: bool = False

    @property
    @abstractmethod
    def dimensions(self) -> Tuple[int, int]:
        """Native (width, height)."""

    @property
    def current_time(self) -> float:
        """Playback time in seconds (0 for still images)."""
        return 0.0

    @property
    def is_active(self) -> bool:
        """Whether the picture is advancing (a paused video is not)."""
        return True

    @abstractmethod
    def read_frame(self) -> Optional[np.ndarray]:
        """Current BGR frame, or None if not ready yet."""

    def sample(self) -> Tuple[Optional[np.ndarray], float]:
        """
        Copy of the current frame and the playback time it was taken at.

        Safe to call from a worker thread.
        """
        frame = self.read_frame()
        return (None if frame is None else frame.copy()), self.current_time

    def release(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


class StaticImageSampler(MediaSampler):
    """Still image from a file path or an in-memory BGR array."""

    def __init__(self, source: Union[str, Path, np.ndarray]):
        self.logger = logging.getLogger("StaticImageSampler")
        self._frame: Optional[np.ndarray] = None

        if isinstance(source, np.ndarray):
            self._frame = source
        else:
            self._frame = cv2.imread(str(source), cv2.IMREAD_COLOR)
            if self._frame is None:
                self.logger.error(f"Failed to load image: {source}")
            else:
                h, w = self._frame.shape[:2]
                self.logger.info(f"Image loaded: {w}x{h}")

    @property
    def dimensions(self) -> Tuple[int, int]:
        if self._frame is None:
            return DEFAULT_DIMENSIONS
        h, w = self._frame.shape[:2]
        return (w, h)

    def read_frame(self) -> Optional[np.ndarray]:
        return self._frame


class VideoFileSampler(MediaSampler):
    """
    Video file with a wall-clock playhead.

    The playhead advances with `clock` while playing; read_frame() decodes
    whatever frame belongs to the current time, seeking only on jumps.

    Usage:
        video = VideoFileSampler("clip.mp4", loop=True)
        if video.open():
            video.play()
            frame = video.read_frame()
    """

    is_video = True

    def __init__(
        self,
        filepath: Union[str, Path],
        loop: bool = True,
        clock: Callable[[], float] = time.perf_counter
    ):
        self.filepath = str(filepath)
        self.loop = loop
        self._clock = clock
        self.logger = logging.getLogger("VideoFileSampler")

        self._cap: Optional[cv2.VideoCapture] = None
        self._width, self._height = 0, 0
        self._fps = 0.0
        self._total_frames = 0

        self._playing = False
        self._position = 0.0          # Playhead while paused
        self._play_started_at = 0.0   # Clock reading when play() was called

        self._frame: Optional[np.ndarray] = None
        self._frame_index = -1
        # Guards the capture, the decoded frame and the playhead
        self._frame_lock = threading.RLock()

    def open(self) -> bool:
        with self._frame_lock:
            self._cap = cv2.VideoCapture(self.filepath)
            if not self._cap.isOpened():
                self.logger.error(f"Failed to open video file: {self.filepath}")
                self._cap = None
                return False

            self._width = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
            self._height = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
            self._fps = self._cap.get(cv2.CAP_PROP_FPS) or 30.0
            self._total_frames = int(self._cap.get(cv2.CAP_PROP_FRAME_COUNT))
            self._frame, self._frame_index = None, -1

        self.logger.info(
            f"Video opened: {self._width}x{self._height} @ {self._fps:.1f}fps, "
            f"{self.duration:.1f}s"
        )
        return True

    @property
    def dimensions(self) -> Tuple[int, int]:
        if self._width <= 0 or self._height <= 0:
            return DEFAULT_DIMENSIONS
        return (self._width, self._height)

    @property
    def duration(self) -> float:
        return self._total_frames / self._fps if self._fps > 0 else 0.0

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def is_active(self) -> bool:
        return self._playing and self._cap is not None

    @property
    def current_time(self) -> float:
        with self._frame_lock:
            t = self._position
            if self._playing:
                t += self._clock() - self._play_started_at
        duration = self.duration
        if duration > 0:
            t = t % duration if self.loop else min(t, duration)
        return t

    def play(self):
        with self._frame_lock:
            if not self._playing:
                self._play_started_at = self._clock()
                self._playing = True

    def pause(self):
        with self._frame_lock:
            if self._playing:
                self._position = self.current_time
                self._playing = False

    def toggle(self):
        with self._frame_lock:
            if self._playing:
                self.pause()
            else:
                self.play()

    def seek(self, seconds: float):
        """Move the playhead, keeping play/pause state."""
        with self._frame_lock:
            self._position = max(0.0, seconds)
            self._play_started_at = self._clock()

    def read_frame(self) -> Optional[np.ndarray]:
        with self._frame_lock:
            return self._decode_at(self.current_time)

    def sample(self) -> Tuple[Optional[np.ndarray], float]:
        # Frame and time come from one playhead reading
        with self._frame_lock:
            t = self.current_time
            frame = self._decode_at(t)
            return (None if frame is None else frame.copy()), t

    def _decode_at(self, t: float) -> Optional[np.ndarray]:
        if self._cap is None:
            return None

        target = int(t * self._fps)
        if self._total_frames > 0:
            target = min(target, self._total_frames - 1)
        if target == self._frame_index:
            return self._frame

        # Decode forward for small steps, seek for jumps
        step = target - self._frame_index
        if not (0 < step <= 5):
            self._cap.set(cv2.CAP_PROP_POS_FRAMES, target)
            step = 1

        ret, frame = False, None
        for _ in range(step):
            ret, frame = self._cap.read()
            if not ret:
                break

        if ret:
            self._frame = frame
            self._frame_index = target
        else:
            self.logger.debug(f"Frame {target} not decoded yet")
        return self._frame

    def release(self):
        with self._frame_lock:
            if self._cap is not None:
                self._cap.release()
                self._cap = None
                self.logger.info("Video released")


class CameraSampler(MediaSampler):
    """Live camera; playback time is seconds since the stream opened."""

    is_video = True
    is_live = True

    def __init__(
        self,
        index: int = 0,
        resolution: Optional[Tuple[int, int]] = None,
        clock: Callable[[], float] = time.perf_counter
    ):
        self.index = index
        self.resolution = resolution
        self._clock = clock
        self._cap: Optional[cv2.VideoCapture] = None
        self._started_at = 0.0
        self._width, self._height = 0, 0
        self._frame: Optional[np.ndarray] = None
        self._frame_lock = threading.Lock()
        self.logger = logging.getLogger("CameraSampler")

    def open(self) -> bool:
        # Platform-specific backends have lower latency
        system = platform.system()
        if system == "Windows":
            self._cap = cv2.VideoCapture(self.index, cv2.CAP_DSHOW)
        elif system == "Darwin":
            self._cap = cv2.VideoCapture(self.index, cv2.CAP_AVFOUNDATION)
        else:
            self._cap = cv2.VideoCapture(self.index, cv2.CAP_V4L2)

        if not self._cap.isOpened():
            self._cap = cv2.VideoCapture(self.index)
            if not self._cap.isOpened():
                self.logger.error(f"Failed to open camera: {self.index}")
                self._cap = None
                return False

        if self.resolution:
            self._cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.resolution[0])
            self._cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.resolution[1])
        self._cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

        self._width = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self._height = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self._started_at = self._clock()
        self.logger.info(f"Camera opened: {self._width}x{self._height}")
        return True

    @property
    def dimensions(self) -> Tuple[int, int]:
        if self._width <= 0 or self._height <= 0:
            return DEFAULT_DIMENSIONS
        return (self._width, self._height)

    @property
    def is_active(self) -> bool:
        return self._cap is not None

    @property
    def current_time(self) -> float:
        return self._clock() - self._started_at if self._cap is not None else 0.0

    def read_frame(self) -> Optional[np.ndarray]:
        with self._frame_lock:
            if self._cap is None:
                return None
            ret, frame = self._cap.read()
            if ret:
                self._frame = frame
            return self._frame

    def sample(self) -> Tuple[Optional[np.ndarray], float]:
        # Reuse the render thread's last grab instead of draining the device
        with self._frame_lock:
            if self._frame is None:
                return None, self.current_time
            return self._frame.copy(), self.current_time

    def release(self):
        with self._frame_lock:
            if self._cap is not None:
                self._cap.release()
                self._cap = None
                self.logger.info("Camera released")


def open_media(source: Union[int, str], loop: bool = True) -> Optional[MediaSampler]:
    """
    Open a camera index, video file or image path.

    Returns:
        A ready sampler, or None if the source could not be opened
    """
    logger = logging.getLogger("open_media")

    if isinstance(source, int) or (isinstance(source, str) and source.isdigit()):
        camera = CameraSampler(int(source))
        return camera if camera.open() else None

    path = Path(source)
    if not path.exists():
        logger.error(f"Media file not found: {path}")
        return None

    if path.suffix.lower() in VIDEO_EXTENSIONS:
        video = VideoFileSampler(path, loop=loop)
        return video if video.open() else None

    return StaticImageSampler(path)
