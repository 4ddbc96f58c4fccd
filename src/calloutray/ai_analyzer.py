"""
CalloutRay AI Analyzer - Analysis and Live Detection via OpenAI Vision

External collaborator of the overlay engine. Produces the two inputs the
engine consumes:

- AnalysisResult: full scene analysis (entities, details, timestamps),
  requested once and handed to the render loop wholesale.
- LiveDetection stream: lightweight boxes polled on a fixed cadence in a
  background thread, stamped with the capture time of the frame they
  were computed from.

Usage:
    from calloutray.ai_analyzer import AnalysisClient, LiveDetectionPoller

    client = AnalysisClient()
    result = client.analyze_frame(frame, detail_level=50)

    poller = LiveDetectionPoller(client, media)
    poller.start()
    loop.set_live_source(poller.latest)
"""

import os
import json
import time
import base64
import logging
import threading
from dataclasses import replace
from typing import Callable, List, Optional, Tuple

import cv2
import numpy as np

from .config import load_env
from .entities import AnalysisResult, LiveDetection, parse_analysis_result, parse_live_detections
from .video_pipeline import MediaSampler

_env_loaded = load_env()


class AnalysisClient:
    """
    Scene analysis and object detection with OpenAI vision models.

    Blocking calls; run them off the render thread.
    """

    MODEL_NAME = "gpt-4o"
    LIVE_MODEL_NAME = "gpt-4o-mini"
    MAX_IMAGE_DIM = 1024
    LIVE_IMAGE_DIM = 512
    JPEG_QUALITY = 85

    ANALYSIS_PROMPT = """You are a visual forensics assistant.
Describe every relevant subject or object in the image as JSON:
{
  "summary": string,
  "objects": [{
    "id": string,
    "name": string,
    "box_2d": [ymin, xmin, ymax, xmax],   // integers 0-1000
    "material": string,
    "state": string,
    "distinctive_feature": string,
    "details": [{"name": string, "location_point": [y, x], "description": string}],
    "biometrics": {"is_face": bool, "estimated_age": string, "gender_presentation": string},
    "tracking": {"track_id": string, "trajectory": [[y, x], ...], "estimated_speed": string}
  }]
}
Return ONLY the JSON document."""

    LIVE_PROMPT = (
        "Detect objects. Return a JSON object {\"detections\": [...]} where each item has "
        "\"label\" and \"box_2d\" (ymin, xmin, ymax, xmax) on a 0-1000 scale."
    )

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None):
        self.logger = logging.getLogger("AnalysisClient")
        self._client = None
        self._initialized = False
        self._model_name = model_name or os.environ.get("OPENAI_MODEL", self.MODEL_NAME)
        self._live_model_name = os.environ.get("OPENAI_LIVE_MODEL", self.LIVE_MODEL_NAME)
        self._api_key = api_key or os.environ.get("OPENAI_API_KEY")

        if not self._api_key:
            self.logger.warning(
                "No OPENAI_API_KEY found. Set it in .env or environment. "
                "AI analysis will be disabled."
            )

    def _ensure_initialized(self) -> bool:
        """Lazy initialization of the OpenAI client."""
        if self._initialized:
            return self._client is not None

        self._initialized = True
        if not self._api_key:
            return False

        from openai import OpenAI

        self._client = OpenAI(api_key=self._api_key)
        self.logger.info(f"OpenAI client initialized (model: {self._model_name})")
        return True

    def is_available(self) -> bool:
        return self._ensure_initialized()

    @staticmethod
    def encode_image(image: np.ndarray, max_dim: int, quality: int = 85) -> str:
        """Downscale and JPEG/base64-encode a BGR frame."""
        h, w = image.shape[:2]
        if max(h, w) > max_dim:
            scale = max_dim / max(h, w)
            image = cv2.resize(image, (int(w * scale), int(h * scale)), interpolation=cv2.INTER_AREA)

        success, buffer = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, quality])
        if not success:
            raise ValueError("Failed to encode image")
        return base64.b64encode(buffer.tobytes()).decode("utf-8")

    def _complete(self, model: str, system: str, user_text: str, image_b64: str, detail: str) -> str:
        response = self._client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": user_text},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:image/jpeg;base64,{image_b64}",
                                "detail": detail,
                            },
                        },
                    ],
                },
            ],
            response_format={"type": "json_object"},
            temperature=0.1,
        )
        if not response or not response.choices:
            return ""
        return response.choices[0].message.content or ""

    def analyze_frame(self, frame: np.ndarray, detail_level: int = 50) -> AnalysisResult:
        """
        Request a full analysis of one frame.

        Args:
            frame: BGR frame
            detail_level: 0-100, how many details per object to ask for

        Returns:
            Sanitized AnalysisResult with scene-persistent entities
            (empty if AI is unavailable)

        Raises:
            AnalysisFormatError: If the model returns something that is not JSON
        """
        if not self._ensure_initialized():
            return AnalysisResult()

        max_details = max(1, detail_level // 20)
        user_text = f"Analyze this image. Give up to {max_details} details per object."
        image_b64 = self.encode_image(frame, self.MAX_IMAGE_DIM, self.JPEG_QUALITY)
        text = self._complete(self._model_name, self.ANALYSIS_PROMPT, user_text, image_b64, "high")
        result = parse_analysis_result(text or "{}")
        # A single frame says nothing about when objects appear in a clip
        result = replace(result, entities=tuple(replace(e, timestamp=None) for e in result.entities))
        self.logger.info(f"Analysis complete: {len(result.entities)} entities")
        return result

    def detect_live(self, frame: np.ndarray, capture_timestamp: Optional[float] = None) -> List[LiveDetection]:
        """
        Fast object detection for the live stream.

        Errors propagate so the poller can apply rate-limit backoff.
        """
        if not self._ensure_initialized():
            return []

        image_b64 = self.encode_image(frame, self.LIVE_IMAGE_DIM, self.JPEG_QUALITY)
        text = self._complete(self._live_model_name, "You are an object detector.", self.LIVE_PROMPT, image_b64, "low")
        try:
            data = json.loads(text) if text else {}
        except ValueError:
            self.logger.debug("Live detection returned invalid JSON")
            return []
        raw = data.get("detections", []) if isinstance(data, dict) else data
        return parse_live_detections(raw, capture_timestamp)

    @property
    def status_message(self) -> str:
        if not self._api_key:
            return "No API key configured"
        if not self._initialized:
            return "Not initialized"
        if self._client is None:
            return "Initialization failed"
        return f"Ready ({self._model_name})"


def is_rate_limit_error(error: Exception) -> bool:
    status = getattr(error, "status_code", None)
    if status == 429:
        return True
    text = str(error).lower()
    return "429" in text or "rate" in text or "quota" in text


class LiveDetectionPoller:
    """
    Polls the detector on a fixed cadence and keeps the latest result.

    - Base cadence: 1 request per second
    - Rate limited: skip for 10s, then poll every 5s until a success
    - Paused/not-ready media: retry after 0.5s

    Frames come from media.sample(), which copies under the sampler's
    lock, so polling never races the render thread's decoder.

    The render loop reads latest() every frame; results are immutable
    tuples swapped under a lock.
    """

    def __init__(
        self,
        client: AnalysisClient,
        media: MediaSampler,
        interval: float = 1.0,
        backoff: float = 10.0,
        slow_interval: float = 5.0,
        is_active: Optional[Callable[[], bool]] = None
    ):
        self.client = client
        self.media = media
        self.interval = interval
        self.backoff = backoff
        self.slow_interval = slow_interval
        self.is_active = is_active or (lambda: self.media.is_active)

        self._latest: Tuple[LiveDetection, ...] = ()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._backoff_until = 0.0
        self.logger = logging.getLogger("LiveDetectionPoller")

    def latest(self) -> Tuple[LiveDetection, ...]:
        with self._lock:
            return self._latest

    def clear(self):
        with self._lock:
            self._latest = ()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def rate_limited(self) -> bool:
        return time.monotonic() < self._backoff_until

    def poll_once(self) -> float:
        """
        Run one detection round.

        Returns:
            Seconds to wait before the next round
        """
        if self.rate_limited:
            return 1.0
        if not self.is_active():
            return 0.5

        # The capture time, not the arrival time, decides staleness
        frame, capture_timestamp = self.media.sample()
        if frame is None:
            return 0.5

        try:
            detections = self.client.detect_live(frame, capture_timestamp)
        except Exception as e:
            if is_rate_limit_error(e):
                self.logger.warning("Quota limit hit. Backing off.")
                self._backoff_until = time.monotonic() + self.backoff
                return self.slow_interval
            self.logger.error(f"Live detection failed: {e}")
            return self.interval

        if self.is_active():
            with self._lock:
                self._latest = tuple(detections)
        return self.interval

    def _run(self):
        while not self._stop.is_set():
            delay = self.poll_once()
            self._stop.wait(delay)

    def start(self):
        if self.is_running:
            return
        if not self.client.is_available():
            self.logger.warning("Live detection unavailable (check OPENAI_API_KEY)")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()
        self.logger.info("Live detection poller started")

    def stop(self):
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=1.0)
        self._thread = None
        self.logger.info("Live detection poller stopped")
