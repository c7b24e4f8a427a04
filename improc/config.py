"""Configuration objects for detection, description, matching and resampling.

Every stage takes its configuration explicitly per call; nothing here is
process-wide state. load_config() builds a PipelineConfig from a YAML file
laid out with one section per stage (see config.yaml at the repository root).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

INTERPOLATIONS = ("nearest", "bilinear")
EDGE_POLICIES = ("clamp", "constant", "skip")


@dataclass(frozen=True)
class DetectorConfig:
    """FAST corner detector settings.

    Attributes:
        intensity_threshold: Minimum brightness difference t between a ring
            sample and the centre pixel
        min_arc_length: Number of contiguous ring samples that must all be
            brighter (or all darker) than the centre
        suppression_window_radius: Half-size of the square NMS window
        ring_radius: Radius of the sampling circle (3 gives 16 samples)
        pyramid_levels: Number of image scales to scan (1 = full resolution only)
        orientation_radius: Radius of the disc whose intensity centroid gives
            the keypoint orientation
    """

    intensity_threshold: float = 20.0
    min_arc_length: int = 9
    suppression_window_radius: int = 3
    ring_radius: int = 3
    pyramid_levels: int = 1
    orientation_radius: int = 7

    def __post_init__(self):
        if self.intensity_threshold < 0:
            raise ValueError(
                f"intensity_threshold must be non-negative, got {self.intensity_threshold}"
            )
        if self.ring_radius < 1:
            raise ValueError(f"ring_radius must be >= 1, got {self.ring_radius}")
        if self.min_arc_length < 1:
            raise ValueError(f"min_arc_length must be >= 1, got {self.min_arc_length}")
        if self.suppression_window_radius < 0:
            raise ValueError(
                "suppression_window_radius must be non-negative, "
                f"got {self.suppression_window_radius}"
            )
        if self.pyramid_levels < 1:
            raise ValueError(f"pyramid_levels must be >= 1, got {self.pyramid_levels}")
        if self.orientation_radius < 1:
            raise ValueError(
                f"orientation_radius must be >= 1, got {self.orientation_radius}"
            )


@dataclass(frozen=True)
class DescriptorConfig:
    """BRIEF descriptor settings.

    With steered=True the test pattern is rotated to each keypoint's
    orientation, quantised to n_orientations steps over the full circle.
    """

    patch_size: int = 31
    n_bits: int = 256
    seed: int = 0
    blur_size: int = 9
    blur_sigma: float = 2.0
    steered: bool = False
    n_orientations: int = 32

    def __post_init__(self):
        if self.n_orientations < 1:
            raise ValueError(f"n_orientations must be >= 1, got {self.n_orientations}")
        if self.patch_size < 3:
            raise ValueError(f"patch_size must be >= 3, got {self.patch_size}")
        if self.n_bits < 1:
            raise ValueError(f"n_bits must be >= 1, got {self.n_bits}")
        if self.blur_size < 1 or self.blur_size % 2 == 0:
            raise ValueError(f"blur_size must be a positive odd number, got {self.blur_size}")
        if self.blur_sigma <= 0:
            raise ValueError(f"blur_sigma must be positive, got {self.blur_sigma}")


@dataclass(frozen=True)
class MatcherConfig:
    """Brute-force matcher settings.

    A correspondence is kept when best < max_distance and
    best < ambiguity_ratio * second_best. With unique=True a greedy
    one-to-one assignment by ascending distance is applied afterwards.
    """

    max_distance: float = 64.0
    ambiguity_ratio: float = 0.8
    unique: bool = False

    def __post_init__(self):
        if self.max_distance <= 0:
            raise ValueError(f"max_distance must be positive, got {self.max_distance}")
        if not 0 < self.ambiguity_ratio <= 1:
            raise ValueError(
                f"ambiguity_ratio must be in (0, 1], got {self.ambiguity_ratio}"
            )


@dataclass(frozen=True)
class ResampleConfig:
    """Affine resampler settings."""

    interpolation: str = "bilinear"
    edge_policy: str = "clamp"
    fill_value: float = 0.0

    def __post_init__(self):
        if self.interpolation not in INTERPOLATIONS:
            raise ValueError(
                f"Unknown interpolation: {self.interpolation} (expected one of {INTERPOLATIONS})"
            )
        if self.edge_policy not in EDGE_POLICIES:
            raise ValueError(
                f"Unknown edge policy: {self.edge_policy} (expected one of {EDGE_POLICIES})"
            )


@dataclass(frozen=True)
class RansacConfig:
    """Robust affine estimation settings.

    Attributes:
        threshold: Maximum reprojection error in pixels for an inlier
        max_iterations: Upper bound on random samples drawn
        confidence: Probability of drawing at least one outlier-free sample
    """

    threshold: float = 3.0
    max_iterations: int = 2000
    confidence: float = 0.99

    def __post_init__(self):
        if self.threshold <= 0:
            raise ValueError(f"threshold must be positive, got {self.threshold}")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if not 0 < self.confidence < 1:
            raise ValueError(f"confidence must be in (0, 1), got {self.confidence}")


@dataclass(frozen=True)
class PipelineConfig:
    """All stage configurations grouped together."""

    detector: DetectorConfig = field(default_factory=DetectorConfig)
    descriptor: DescriptorConfig = field(default_factory=DescriptorConfig)
    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    ransac: RansacConfig = field(default_factory=RansacConfig)
    resample: ResampleConfig = field(default_factory=ResampleConfig)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {
            f.name: {g.name: getattr(getattr(self, f.name), g.name)
                     for g in fields(getattr(self, f.name))}
            for f in fields(self)
        }


_SECTIONS = {
    "detector": DetectorConfig,
    "descriptor": DescriptorConfig,
    "matcher": MatcherConfig,
    "ransac": RansacConfig,
    "resample": ResampleConfig,
}


def _build_section(name: str, values: Optional[Dict[str, Any]]):
    cls = _SECTIONS[name]
    if values is None:
        return cls()
    if not isinstance(values, dict):
        raise ValueError(f"Config section '{name}' must be a mapping, got {type(values).__name__}")
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown keys in config section '{name}': {sorted(unknown)}")
    return cls(**values)


def config_from_dict(raw: Optional[Dict[str, Any]]) -> PipelineConfig:
    """Build a PipelineConfig from a plain dictionary.

    Missing sections fall back to defaults; unknown sections or keys raise
    ValueError.
    """
    raw = raw or {}
    unknown = set(raw) - set(_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown config sections: {sorted(unknown)}")
    return PipelineConfig(**{name: _build_section(name, raw.get(name)) for name in _SECTIONS})


def load_config(config_path: Optional[Union[str, Path]] = None) -> PipelineConfig:
    """Load configuration from YAML file.

    Args:
        config_path: Path to configuration file. Defaults to config.yaml
            at the repository root.

    Returns:
        PipelineConfig built from the file
    """
    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"

    with open(config_path, "r") as f:
        raw = yaml.safe_load(f)

    config = config_from_dict(raw)
    logger.debug(f"Loaded configuration from {config_path}: {config.to_dict()}")
    return config
