"""
CalloutRay - Annotation Layout & Synchronized Rendering Engine

Draws AI-produced object annotations over an image or video as a pannable,
zoomable overlay with call-out labels in the margins.

Features:
- Normalized (0-1000) boxes mapped to media and screen pixels through one view matrix
- Time-synchronized entity visibility for video, staleness filter for live detections
- Collision-free margin labels from an iterative 1D relaxation solver
- Orthogonal connectors from each object to its label
- Frame-callback render loop with clean cancellation
- Pan / pinch / wheel interaction state machine

Quick Start:
    from calloutray import (
        FrameScheduler, InteractionController, RenderLoop,
        load_analysis_file, open_media,
    )

    media = open_media("clip.mp4")
    controller = InteractionController()
    loop = RenderLoop(FrameScheduler(), controller)
    loop.set_media(media)
    loop.set_analysis(load_analysis_file("analysis.json"))

    with loop.running():
        while True:
            loop.scheduler.tick()
            display(loop.last_canvas)
"""

__version__ = "1.0.0"

# Configuration
from .config import OverlayConfig, DEFAULT_CONFIG, load_env

# Data model
from .entities import (
    AnalysisFormatError,
    AnalysisResult,
    Biometrics,
    Detail,
    Entity,
    LiveDetection,
    SubtitleSegment,
    Tracking,
    load_analysis_file,
    parse_analysis_result,
    parse_live_detections,
    parse_timestamp,
)

# Geometry
from .transform import (
    box_to_media,
    is_valid_box,
    media_to_screen,
    normalized_to_media,
    screen_to_media,
    view_matrix,
)
from .temporal import TemporalFilter
from .layout import Layout, LayoutLabel, LayoutSolver, MarginBand, Side, SolveReport, solve_1d_layout
from .connectors import Connector, route_connector

# Interaction and rendering
from .interaction import InteractionController, InteractionMode, ViewState
from .annotation_layer import ColorScheme, FrameInput, OverlayRenderer
from .render_loop import FrameHandle, FrameScheduler, RenderLoop

# Media
from .video_pipeline import (
    CameraSampler,
    MediaSampler,
    StaticImageSampler,
    VideoFileSampler,
    open_media,
)

# AI collaborator
from .ai_analyzer import AnalysisClient, LiveDetectionPoller

__all__ = [
    # Version
    "__version__",

    # Config
    "OverlayConfig",
    "DEFAULT_CONFIG",
    "load_env",

    # Data model
    "AnalysisFormatError",
    "AnalysisResult",
    "Biometrics",
    "Detail",
    "Entity",
    "LiveDetection",
    "SubtitleSegment",
    "Tracking",
    "load_analysis_file",
    "parse_analysis_result",
    "parse_live_detections",
    "parse_timestamp",

    # Geometry
    "box_to_media",
    "is_valid_box",
    "media_to_screen",
    "normalized_to_media",
    "screen_to_media",
    "view_matrix",
    "TemporalFilter",
    "Layout",
    "LayoutLabel",
    "LayoutSolver",
    "MarginBand",
    "Side",
    "SolveReport",
    "solve_1d_layout",
    "Connector",
    "route_connector",

    # Interaction / rendering
    "InteractionController",
    "InteractionMode",
    "ViewState",
    "ColorScheme",
    "FrameInput",
    "OverlayRenderer",
    "FrameHandle",
    "FrameScheduler",
    "RenderLoop",

    # Media
    "CameraSampler",
    "MediaSampler",
    "StaticImageSampler",
    "VideoFileSampler",
    "open_media",

    # AI
    "AnalysisClient",
    "LiveDetectionPoller",
]
