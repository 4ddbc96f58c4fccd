"""
CalloutRay Configuration - Environment-Tuned Engine Constants

Every timing, zoom and layout constant lives here so that hosts with a
different display refresh rate or detection cadence can retune the engine
without touching code.

Overrides are read from the environment (or a .env file) as
CALLOUTRAY_<FIELD_NAME>, e.g.:

    CALLOUTRAY_VISIBILITY_WINDOW=0.8
    CALLOUTRAY_STALENESS_BOUND=2.0
"""

import os
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


ENV_PREFIX = "CALLOUTRAY_"


def load_env() -> Optional[str]:
    """Load environment variables from the first .env file found."""
    possible_paths = [
        Path(__file__).resolve().parents[2] / ".env",  # src/calloutray/../../.env
        Path.cwd() / ".env",
        Path.home() / ".env",
    ]

    for env_path in possible_paths:
        if env_path.exists():
            load_dotenv(env_path, override=True)
            return str(env_path)

    load_dotenv()
    return None


@dataclass(frozen=True)
class OverlayConfig:
    """Tunable constants for the layout and rendering engine."""

    # Temporal filter (seconds)
    visibility_window: float = 0.6     # Entity flashes while |t - ts| < window
    staleness_bound: float = 1.2       # Live detections older than this are ghosts

    # Viewport
    min_scale: float = 0.05
    max_scale: float = 8.0
    default_scale: float = 0.45
    wheel_sensitivity: float = 0.001

    # Layout solver
    layout_iterations: int = 20
    layout_gap: float = 10.0
    layout_tolerance: float = 1e-6
    label_offset: float = 350.0        # Label center distance outside the media edge
    channel_offset: float = 50.0       # Connector channel distance outside the media edge
    margin_x: float = 800.0
    margin_y: float = 600.0

    # Rendering
    grid_spacing: int = 50
    grid_opacity: float = 0.05

    # Application defaults
    detail_level: int = 50

    @classmethod
    def from_env(cls, load_dotenv_files: bool = True) -> "OverlayConfig":
        """
        Build a config from CALLOUTRAY_* environment overrides.

        Unparseable values are logged and the default is kept.
        """
        logger = logging.getLogger("OverlayConfig")
        if load_dotenv_files:
            env_path = load_env()
            if env_path:
                logger.debug(f"Loaded environment from {env_path}")

        overrides = {}
        for f in fields(cls):
            raw = os.environ.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            caster = int if f.type in (int, "int") else float
            try:
                overrides[f.name] = caster(raw)
            except ValueError:
                logger.warning(f"Ignoring invalid {ENV_PREFIX}{f.name.upper()}={raw!r}")

        config = replace(cls(), **overrides)
        if config.min_scale <= 0 or config.min_scale > config.max_scale:
            logger.warning(
                f"Invalid scale bounds [{config.min_scale}, {config.max_scale}], using defaults"
            )
            config = replace(config, min_scale=cls.min_scale, max_scale=cls.max_scale)
        return config

    def clamp_scale(self, scale: float) -> float:
        """Clamp a zoom factor into [min_scale, max_scale]."""
        return max(self.min_scale, min(self.max_scale, scale))


DEFAULT_CONFIG = OverlayConfig()
